"""
Question-answering pipeline.

Per request: RequestBuilder -> PerplexityTransport -> (StreamDecoder) ->
CitationExtractor -> ResponseAssembler. The entry points never raise for bad
input or upstream failures; they return a QAResponse (or a stream ending in a
terminal chunk) describing the failure instead.
"""
import logging
import time
from collections.abc import Mapping
from typing import Any

from infrastructure.config.qa_config import QAConfig, get_qa_config
from infrastructure.llm.client import Completion, PerplexityTransport
from infrastructure.llm.errors import QAError
from infrastructure.llm.factory import TransportManager
from pipelines.assembler import ResponseAssembler
from pipelines.citations import CitationExtraction, CitationExtractor
from pipelines.request_builder import RequestBuilder
from pipelines.result import Err, Ok, Result
from pipelines.stream_decoder import CancellationToken, StreamDecoder
from schemas.qa import QARequest, QAResponse

logger = logging.getLogger(__name__)


def _question_of(raw: Any) -> Any:
    if isinstance(raw, Mapping):
        return raw.get("user_question")
    return None


class QAPipeline:
    def __init__(
        self,
        config: QAConfig,
        transport: PerplexityTransport,
        *,
        builder: RequestBuilder | None = None,
        extractor: CitationExtractor | None = None,
        assembler: ResponseAssembler | None = None,
    ):
        self._config = config
        self._transport = transport
        self._builder = builder or RequestBuilder(config)
        self._extractor = extractor or CitationExtractor(config.citations)
        self._assembler = assembler or ResponseAssembler(config)

    @property
    def config(self) -> QAConfig:
        return self._config

    @property
    def builder(self) -> RequestBuilder:
        return self._builder

    @property
    def assembler(self) -> ResponseAssembler:
        return self._assembler

    def build(self, question: Any, options: Mapping[str, Any] | None = None) -> Result[QARequest]:
        return self._builder.build(question, options)

    def _resolve(self, raw: Any) -> Result[QARequest]:
        if isinstance(raw, QARequest):
            return Ok(raw)
        if isinstance(raw, (Ok, Err)):
            return raw
        return self._builder.parse(raw)

    async def ground(self, request: QARequest, completion: Completion) -> CitationExtraction:
        if request.include_detailed_citations and self._config.citations.enabled:
            return await self._extractor.extract_with_timeout(completion.raw_answer, completion.side_channel)
        return self._extractor.passthrough(completion.side_channel)

    async def complete(self, raw: Any) -> QAResponse:
        """Answer one question without streaming."""
        started_at = time.perf_counter()
        parsed = self._resolve(raw)
        if isinstance(parsed, Err):
            logger.info(f"[QA] Rejected request: {'; '.join(parsed.reasons)}")
            return self._assembler.error_response(_question_of(raw), parsed.error(), started_at)

        request = parsed.value
        logger.info(
            f"[QA] Answering with {request.model_key.value} "
            f"(context={request.question_context.value if request.question_context else 'none'}, "
            f"question_length={len(request.user_question)})"
        )
        try:
            completion = await self._transport.complete(request)
            extraction = await self.ground(request, completion)
            response = self._assembler.assemble(request, completion, extraction, started_at)
        except QAError as e:
            logger.error(f"[QA] Request failed ({e.category.value}): {e}")
            return self._assembler.error_response(request.user_question, e, started_at, request=request)
        except Exception as e:
            logger.exception(f"[QA] Unexpected pipeline failure: {e}")
            return self._assembler.error_response(request.user_question, e, started_at, request=request)

        logger.info(
            f"[QA] Answered in {response.processing_time:.2f}s "
            f"({response.answer_length} chars, {response.citation_count} citations)"
        )
        return response

    def complete_stream(self, raw: Any, cancel_token: CancellationToken | None = None) -> StreamDecoder:
        """Answer one question as a stream of chunks; nothing is sent until the first next()."""
        started_at = time.perf_counter()
        parsed = self._resolve(raw)
        if isinstance(parsed, Err):
            logger.info(f"[QA] Rejected streaming request: {'; '.join(parsed.reasons)}")
            return StreamDecoder.rejected(
                _question_of(raw),
                parsed.error(),
                config=self._config,
                extractor=self._extractor,
                assembler=self._assembler,
                started_at=started_at,
            )

        request = parsed.value
        logger.info(f"[QA] Streaming with {request.model_key.value}")
        return StreamDecoder(
            request,
            lambda: self._transport.open_stream(request),
            config=self._config,
            extractor=self._extractor,
            assembler=self._assembler,
            cancel_token=cancel_token,
            started_at=started_at,
        )

    async def aclose(self) -> None:
        await self._transport.aclose()


class QAPipelineManager:
    """Manages the process-wide pipeline with lazy initialization."""

    def __init__(self, transports: TransportManager | None = None):
        self._transports = transports or TransportManager()
        self._pipeline: QAPipeline | None = None

    def get_pipeline(self) -> QAPipeline:
        if self._pipeline is None:
            from app.settings import get_config_path

            config = get_qa_config(get_config_path())
            self._pipeline = QAPipeline(config, self._transports.get_transport())
            logger.info("[QA] Pipeline initialized")
        return self._pipeline

    async def aclose(self) -> None:
        await self._transports.aclose()
        self._pipeline = None

    def reset(self) -> None:
        self._transports.reset()
        self._pipeline = None


_default_manager = QAPipelineManager()


def get_default_pipeline() -> QAPipeline:
    return _default_manager.get_pipeline()


async def close_default_pipeline() -> None:
    await _default_manager.aclose()


def reset_default_pipeline() -> None:
    """Reset the default pipeline. Useful for testing."""
    _default_manager.reset()
