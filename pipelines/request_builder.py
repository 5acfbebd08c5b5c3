"""
Turns raw caller input into a canonical QARequest.

Validation never raises for bad input: every entry point returns
Ok(QARequest) or Err(reasons), and no network I/O happens here.
"""
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from infrastructure.config.qa_config import QAConfig
from pipelines.result import Err, Ok, Result
from schemas.qa import QARequest

QUESTION_FIELD = "user_question"


def _format_errors(exc: ValidationError) -> tuple[str, ...]:
    reasons = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "request"
        reasons.append(f"{location}: {err.get('msg', 'invalid value')}")
    return tuple(reasons)


class RequestBuilder:
    def __init__(self, config: QAConfig, *, default_streaming: bool | None = None):
        self._config = config
        self._default_streaming = (
            config.defaults.enable_streaming if default_streaming is None else default_streaming
        )

    def validate(self, raw: Any) -> bool:
        """True when raw input would produce a usable request."""
        return isinstance(self.parse(raw), Ok)

    def parse(self, raw: Any) -> Result[QARequest]:
        """Validate a raw request mapping such as a decoded JSON body."""
        if raw is None or not isinstance(raw, Mapping):
            return Err(("request must be an object with a user_question field",))
        if QUESTION_FIELD not in raw:
            return Err((f"{QUESTION_FIELD} is required",))

        question = raw[QUESTION_FIELD]
        options = {key: value for key, value in raw.items() if key != QUESTION_FIELD}
        return self.build(question, options)

    def build(self, question: Any, options: Mapping[str, Any] | None = None) -> Result[QARequest]:
        """Trim the question, merge options over defaults and clamp to the model."""
        if not isinstance(question, str):
            return Err((f"{QUESTION_FIELD} must be a string",))
        if options is not None and not isinstance(options, Mapping):
            return Err(("options must be an object",))

        defaults = self._config.defaults
        values: dict[str, Any] = {
            "model_key": defaults.model_key,
            "question_context": defaults.question_context,
            "temperature": defaults.temperature,
            "enable_streaming": self._default_streaming,
            "include_detailed_citations": defaults.include_detailed_citations,
            "show_thinking_process": defaults.show_thinking_process,
        }
        # None means "unset"; empty strings are kept as given
        values.update({key: value for key, value in (options or {}).items() if value is not None})
        values[QUESTION_FIELD] = question

        try:
            request = QARequest.model_validate(values)
        except ValidationError as e:
            return Err(_format_errors(e))

        try:
            spec = self._config.model(request.model_key)
        except KeyError as e:
            return Err((str(e.args[0]),))

        updates: dict[str, Any] = {}
        if spec.supports_reasoning:
            if request.reasoning_effort is None:
                updates["reasoning_effort"] = defaults.reasoning_effort
        elif request.reasoning_effort is not None:
            updates["reasoning_effort"] = None

        max_tokens = min(request.max_tokens or defaults.max_tokens, spec.max_tokens)
        if max_tokens != request.max_tokens:
            updates["max_tokens"] = max_tokens

        if updates:
            request = request.model_copy(update=updates)
        return Ok(request)

    def for_flow(
        self,
        question: Any,
        selected_text: str | None = None,
        chapter_context: str | None = None,
        current_chapter: str | int | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> Result[QARequest]:
        """Build a request from the reading view's context fields."""
        merged = dict(options or {})
        context = {
            "selected_text": selected_text,
            "chapter_context": chapter_context,
            "current_chapter": current_chapter,
        }
        merged.update({key: value for key, value in context.items() if value is not None})
        return self.build(question, merged)
