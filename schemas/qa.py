from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from infrastructure.llm.config import ModelKey, QuestionContext, ReasoningEffort

MAX_QUESTION_LENGTH = 1000
MAX_TOKENS_CEILING = 8000


class QARequest(BaseModel):
    """Canonical, immutable question request produced by RequestBuilder."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    user_question: str = Field(min_length=1, max_length=MAX_QUESTION_LENGTH)
    selected_text: str | None = None
    chapter_context: str | None = None
    current_chapter: str | None = None
    model_key: ModelKey = ModelKey.SONAR_REASONING_PRO
    reasoning_effort: ReasoningEffort | None = None
    question_context: QuestionContext | None = None
    enable_streaming: bool = True
    include_detailed_citations: bool = True
    show_thinking_process: bool = True
    temperature: float | None = Field(default=None, ge=0, le=1)
    max_tokens: int | None = Field(default=None, ge=1, le=MAX_TOKENS_CEILING)

    @field_validator("user_question", mode="before")
    @classmethod
    def question_must_have_text(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("user_question must not be blank")
        return v

    @field_validator("current_chapter", mode="before")
    @classmethod
    def chapter_as_text(cls, v: Any) -> Any:
        # Chapter numbers arrive as ints from some callers
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class CitationType(str, Enum):
    WEB_CITATION = "web_citation"
    DEFAULT = "default"
    ACADEMIC = "academic"
    NEWS = "news"


class SourceRecord(BaseModel):
    """One entry of the service's search-result side channel."""
    url: str
    title: str | None = None
    snippet: str | None = None
    date: str | None = None


class Citation(BaseModel):
    number: str
    title: str
    url: str
    type: CitationType = CitationType.WEB_CITATION
    snippet: str | None = None
    publish_date: str | None = None
    domain: str | None = None
    marker: int | None = None


class GroundingMetadata(BaseModel):
    search_queries: list[str] = Field(default_factory=list)
    web_sources: list[SourceRecord] = Field(default_factory=list)
    confidence_score: float | None = None
    grounding_successful: bool = False
    raw_metadata: dict[str, Any] | None = None


class QAResponse(BaseModel):
    """The single output unit of a question, on success and failure alike."""

    question: str
    answer: str
    raw_answer: str | None = None
    citations: list[Citation] = Field(default_factory=list)
    grounding_metadata: GroundingMetadata = Field(default_factory=GroundingMetadata)
    model_used: str
    model_key: ModelKey
    reasoning_effort: ReasoningEffort | None = None
    question_context: QuestionContext | None = None
    processing_time: float = Field(ge=0)
    success: bool
    streaming: bool = False
    chunk_count: int | None = None
    stopped_by_user: bool | None = None
    timestamp: str
    error: str | None = None
    metadata: dict[str, Any] | None = None

    @computed_field
    @property
    def answer_length(self) -> int:
        return len(self.answer)

    @computed_field
    @property
    def question_length(self) -> int:
        return len(self.question)

    @computed_field
    @property
    def citation_count(self) -> int:
        return len(self.citations)


class StreamingChunk(BaseModel):
    content: str
    full_content: str
    thinking_content: str | None = None
    has_thinking_process: bool = False
    timestamp: str
    citations: list[Citation] = Field(default_factory=list)
    search_queries: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    response_time: float = Field(ge=0)
    is_complete: bool = False
    chunk_index: int = Field(ge=1)
    error: str | None = None
    stopped_by_user: bool = False


class BatchRequest(BaseModel):
    questions: list[dict[str, Any]]
    shared_config: dict[str, Any] | None = None
    max_concurrency: int = Field(default=3, ge=1)
    batch_timeout: float | None = Field(default=None, gt=0)


class BatchError(BaseModel):
    question_index: int
    error: str
    question: str


class BatchMetadata(BaseModel):
    total_questions: int
    successful_responses: int
    failed_responses: int
    total_processing_time: float
    average_processing_time: float
    timestamp: str


class BatchResponse(BaseModel):
    responses: list[QAResponse]
    batch_metadata: BatchMetadata
    success: bool
    errors: list[BatchError] | None = None
