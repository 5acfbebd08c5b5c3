"""Builds the final QAResponse for both successful and failed requests."""
import logging
import time
from datetime import datetime, timezone
from typing import Any

from infrastructure.config.qa_config import QAConfig
from infrastructure.llm.client import Completion
from infrastructure.llm.errors import ERROR_ANSWER_TEMPLATE, classify_error
from pipelines.citations import CitationExtraction
from pipelines.text import clean_answer, extract_thinking
from schemas.qa import GroundingMetadata, QARequest, QAResponse

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def elapsed_seconds(started_at: float | None) -> float:
    if started_at is None:
        return 0.0
    return max(time.perf_counter() - started_at, 0.0)


class ResponseAssembler:
    def __init__(self, config: QAConfig):
        self._config = config

    def clean(self, raw_answer: str, request: QARequest) -> str:
        return clean_answer(
            raw_answer,
            show_thinking=request.show_thinking_process,
            strip_html=self._config.response.clean_html_tags,
            max_length=self._config.response.max_response_length,
        )

    def assemble(
        self,
        request: QARequest,
        completion: Completion,
        extraction: CitationExtraction,
        started_at: float | None,
        *,
        streaming: bool = False,
        chunk_count: int | None = None,
        stopped_by_user: bool | None = None,
    ) -> QAResponse:
        thinking = extract_thinking(completion.raw_answer)
        metadata: dict[str, Any] = {
            **completion.metadata(),
            "has_thinking_process": thinking is not None,
        }
        if thinking is not None:
            metadata["thinking_content"] = thinking
        if extraction.warning:
            metadata["citation_warning"] = extraction.warning

        return QAResponse(
            question=request.user_question,
            answer=self.clean(completion.raw_answer, request),
            raw_answer=completion.raw_answer,
            citations=extraction.citations,
            grounding_metadata=extraction.grounding,
            model_used=completion.model_used,
            model_key=completion.model_key,
            reasoning_effort=request.reasoning_effort,
            question_context=request.question_context,
            processing_time=elapsed_seconds(started_at),
            success=True,
            streaming=streaming,
            chunk_count=chunk_count,
            stopped_by_user=stopped_by_user,
            timestamp=utc_now_iso(),
            metadata=metadata,
        )

    def error_response(
        self,
        question: Any,
        exc: BaseException,
        started_at: float | None = None,
        *,
        request: QARequest | None = None,
        streaming: bool = False,
        chunk_count: int | None = None,
        stopped_by_user: bool | None = None,
    ) -> QAResponse:
        """Fully populated failure response; never raises."""
        classified = classify_error(exc, fallback_model=self._config.transport.fallback_model.value)
        if request is not None:
            question_text = request.user_question
        else:
            question_text = question.strip() if isinstance(question, str) else ""
        model_key = request.model_key if request is not None else self._config.defaults.model_key

        return QAResponse(
            question=question_text,
            answer=ERROR_ANSWER_TEMPLATE.format(message=classified.user_message),
            raw_answer=None,
            citations=[],
            grounding_metadata=GroundingMetadata(grounding_successful=False),
            model_used=self._config.model(model_key).name,
            model_key=model_key,
            reasoning_effort=request.reasoning_effort if request is not None else None,
            question_context=request.question_context if request is not None else None,
            processing_time=elapsed_seconds(started_at),
            success=False,
            streaming=streaming,
            chunk_count=chunk_count,
            stopped_by_user=stopped_by_user,
            timestamp=utc_now_iso(),
            error=classified.technical_message,
            metadata=classified.to_metadata(),
        )
