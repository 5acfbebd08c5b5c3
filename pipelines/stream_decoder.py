"""
Streaming answer decoder.

StreamDecoder is a pull-based cursor over the transport's frames. Nothing is
read from the transport until the consumer awaits next(); cancellation is
cooperative and takes effect at the next call. Every run ends with exactly one
chunk whose is_complete is True (success, error or user stop) and next()
returns None from then on.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from infrastructure.config.qa_config import QAConfig
from infrastructure.llm.client import Completion, StreamFrames
from infrastructure.llm.errors import ParsingError, classify_error
from pipelines.assembler import ResponseAssembler, elapsed_seconds, utc_now_iso
from pipelines.citations import CitationExtraction, CitationExtractor, SideChannel
from pipelines.text import extract_thinking
from schemas.qa import Citation, QARequest, QAResponse, StreamingChunk

logger = logging.getLogger(__name__)


class CancellationToken:
    """Stop signal shared between a stream consumer and its decoder."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class StreamDecoder:
    def __init__(
        self,
        request: QARequest | None,
        open_frames: Callable[[], Awaitable[StreamFrames]] | None,
        *,
        config: QAConfig,
        extractor: CitationExtractor,
        assembler: ResponseAssembler,
        cancel_token: CancellationToken | None = None,
        started_at: float | None = None,
        rejection: BaseException | None = None,
        question: Any = None,
    ):
        self._request = request
        self._open_frames = open_frames
        self._config = config
        self._extractor = extractor
        self._assembler = assembler
        self._token = cancel_token or CancellationToken()
        self._started_at = time.perf_counter() if started_at is None else started_at
        self._rejection = rejection
        self._question = question

        self._frames: StreamFrames | None = None
        self._raw = ""
        self._pending: list[str] = []
        self._deltas = 0
        self._chunk_index = 0
        self._side_channel = SideChannel()
        self._model_used: str | None = None
        self._usage: dict | None = None
        self._finish_reason: str | None = None

        self._finished = False
        self._stopped = False
        self._error: BaseException | None = None
        self._extraction: CitationExtraction | None = None

    @classmethod
    def rejected(
        cls,
        question: Any,
        error: BaseException,
        *,
        config: QAConfig,
        extractor: CitationExtractor,
        assembler: ResponseAssembler,
        started_at: float | None = None,
    ) -> "StreamDecoder":
        """A decoder whose only chunk reports a validation failure."""
        return cls(
            None,
            None,
            config=config,
            extractor=extractor,
            assembler=assembler,
            started_at=started_at,
            rejection=error,
            question=question,
        )

    @property
    def cancel_token(self) -> CancellationToken:
        return self._token

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def chunk_count(self) -> int:
        return self._chunk_index

    def stop(self) -> None:
        self._token.cancel()

    def __aiter__(self) -> "StreamDecoder":
        return self

    async def __anext__(self) -> StreamingChunk:
        chunk = await self.next()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    async def next(self) -> StreamingChunk | None:
        if self._finished:
            return None
        if self._rejection is not None:
            return await self._finish(error=self._rejection)

        try:
            if self._token.cancelled:
                return await self._finish(stopped=True)
            if self._frames is None:
                self._frames = await self._open_frames()
                self._model_used = self._config.model(self._frames.model_key).name

            while True:
                if self._token.cancelled:
                    return await self._finish(stopped=True)
                try:
                    frame = await self._frames.__anext__()
                except StopAsyncIteration:
                    return await self._finish()

                delta = self._absorb(frame)
                if self._finish_reason is not None:
                    return await self._finish()
                if delta and self._deltas % self._config.streaming.update_frequency == 0:
                    return await self._emit()
        except Exception as e:
            logger.error(f"[STREAM] Stream failed after {self._chunk_index} chunks: {e}")
            return await self._finish(error=e)

    async def aclose(self) -> None:
        """Release the upstream stream without emitting anything further."""
        self._token.cancel()
        await self._close_frames()

    def _absorb(self, frame: dict) -> str:
        self._side_channel = self._side_channel.merge(frame)
        if frame.get("model"):
            self._model_used = str(frame["model"])
        if frame.get("usage"):
            self._usage = frame["usage"]

        choices = frame.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return ""
        choice = choices[0]
        delta = (choice.get("delta") or {}).get("content") or ""
        if choice.get("finish_reason"):
            self._finish_reason = choice["finish_reason"]
        if delta:
            self._raw += delta
            self._pending.append(delta)
            self._deltas += 1
        return delta

    def _citations_so_far(self) -> list[Citation]:
        if self._request is None or not self._request.include_detailed_citations:
            return []
        if not self._side_channel.search_results and not self._side_channel.citations:
            return []
        try:
            return self._extractor.extract(self._raw, self._side_channel).citations
        except ParsingError:
            return []

    def _chunk(
        self,
        citations: list[Citation],
        *,
        is_complete: bool = False,
        error: BaseException | None = None,
        stopped: bool = False,
    ) -> StreamingChunk:
        self._chunk_index += 1
        content = "".join(self._pending)
        self._pending.clear()
        thinking = extract_thinking(self._raw)
        full_content = self._assembler.clean(self._raw, self._request) if self._request else ""

        metadata: dict[str, Any] = {"model": self._model_used}
        if self._frames is not None:
            metadata["fallback_used"] = self._frames.fallback_used
        if self._finish_reason:
            metadata["finish_reason"] = self._finish_reason
        if self._usage:
            metadata["usage"] = self._usage

        error_message = None
        if error is not None:
            classified = classify_error(error)
            error_message = classified.technical_message
            metadata.update(classified.to_metadata())

        return StreamingChunk(
            content=content,
            full_content=full_content,
            thinking_content=thinking,
            has_thinking_process=thinking is not None,
            timestamp=utc_now_iso(),
            citations=citations,
            search_queries=list(self._side_channel.search_queries),
            metadata=metadata,
            response_time=elapsed_seconds(self._started_at),
            is_complete=is_complete,
            chunk_index=self._chunk_index,
            error=error_message,
            stopped_by_user=stopped,
        )

    async def _emit(self) -> StreamingChunk:
        delay_ms = self._config.streaming.chunk_delay_ms
        if delay_ms and self._chunk_index > 0:
            await asyncio.sleep(delay_ms / 1000)
        return self._chunk(self._citations_so_far())

    async def _close_frames(self) -> None:
        if self._frames is None:
            return
        try:
            await self._frames.aclose()
        except Exception as e:
            logger.warning(f"[STREAM] Error closing upstream stream: {e}")

    async def _ground(self) -> CitationExtraction:
        if self._request.include_detailed_citations and self._config.citations.enabled:
            return await self._extractor.extract_with_timeout(self._raw, self._side_channel)
        return self._extractor.passthrough(self._side_channel)

    async def _finish(self, *, stopped: bool = False, error: BaseException | None = None) -> StreamingChunk:
        await self._close_frames()
        self._stopped = stopped
        self._error = error

        citations: list[Citation] = []
        if error is None and self._request is not None:
            self._extraction = await self._ground()
            citations = self._extraction.citations

        chunk = self._chunk(citations, is_complete=True, error=error, stopped=stopped)
        self._finished = True
        if stopped:
            logger.info(f"[STREAM] Stopped by user after {self._chunk_index} chunks")
        elif error is None:
            logger.info(f"[STREAM] Completed in {self._chunk_index} chunks ({len(self._raw)} chars)")
        return chunk

    def to_response(self) -> QAResponse:
        """The streamed run as a QAResponse; only valid once the terminal chunk was produced."""
        if not self._finished:
            raise RuntimeError("Stream has not finished yet")

        if self._error is not None or self._request is None:
            return self._assembler.error_response(
                self._question,
                self._error or self._rejection,
                self._started_at,
                request=self._request,
                streaming=True,
                chunk_count=self._chunk_index,
                stopped_by_user=self._stopped,
            )

        completion = Completion(
            raw_answer=self._raw,
            model_used=self._model_used or self._config.model(self._request.model_key).name,
            model_key=self._frames.model_key if self._frames else self._request.model_key,
            side_channel=self._side_channel,
            usage=self._usage,
            finish_reason=self._finish_reason,
            attempts=self._frames.attempts if self._frames else 0,
            fallback_used=self._frames.fallback_used if self._frames else False,
        )
        return self._assembler.assemble(
            self._request,
            completion,
            self._extraction,
            self._started_at,
            streaming=True,
            chunk_count=self._chunk_index,
            stopped_by_user=self._stopped,
        )
