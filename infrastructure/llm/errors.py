"""
Error taxonomy for the QA service.

Every failure that can reach a caller is classified into an ErrorCategory with
a localized user message, recovery hints and a retry recommendation. Only
exceptions derived from QAError are raised deliberately; anything else is
treated as a fatal pipeline error and classified by message heuristics.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum

import httpx

MAX_BACKOFF_MS = 30000

ERROR_ANSWER_TEMPLATE = "抱歉，處理您的問題時發生錯誤：{message}"


class ErrorCategory(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    API_ERROR = "api_error"
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "authentication_error"
    VALIDATION_ERROR = "validation_error"
    STREAMING_ERROR = "streaming_error"
    UNKNOWN_ERROR = "unknown_error"


class QAError(Exception):
    """Base class for failures raised by the QA pipeline."""

    category = ErrorCategory.UNKNOWN_ERROR
    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class InputValidationError(QAError):
    """Caller input was rejected before any network call."""

    category = ErrorCategory.VALIDATION_ERROR

    def __init__(self, reasons: list[str] | tuple[str, ...]):
        self.reasons = list(reasons) or ["invalid request"]
        super().__init__("; ".join(self.reasons))


class TransportError(QAError):
    """Connection-level failure talking to the completion service."""

    category = ErrorCategory.NETWORK_ERROR
    retryable = True


class TransportTimeoutError(TransportError):
    category = ErrorCategory.TIMEOUT


class ServiceError(TransportError):
    """The service answered with a 5xx status or an unusable body."""

    category = ErrorCategory.API_ERROR


class RateLimitedError(ServiceError):
    category = ErrorCategory.RATE_LIMIT


class ServiceRejectedError(TransportError):
    """The service refused the request itself; retrying cannot help."""

    category = ErrorCategory.API_ERROR
    retryable = False


class AuthenticationError(ServiceRejectedError):
    category = ErrorCategory.AUTHENTICATION_ERROR


class StreamInterruptedError(TransportError):
    """The stream broke after the first frame was delivered."""

    category = ErrorCategory.STREAMING_ERROR
    retryable = False


class ParsingError(QAError):
    """Citation or metadata extraction failed; always recovered locally."""


def error_for_status(status_code: int, body: str = "") -> TransportError:
    """Map a non-success HTTP status to the matching TransportError."""
    detail = body.strip()[:200]
    message = f"HTTP {status_code}" + (f": {detail}" if detail else "")
    if status_code in (401, 403):
        return AuthenticationError(message, status_code=status_code)
    if status_code == 429:
        return RateLimitedError(message, status_code=status_code)
    if status_code >= 500:
        return ServiceError(message, status_code=status_code)
    return ServiceRejectedError(message, status_code=status_code)


def backoff_delay_ms(attempt: int, base_ms: int, cap_ms: int = MAX_BACKOFF_MS) -> int:
    """Exponential backoff: base * 2**attempt, capped."""
    return min(base_ms * (2 ** max(attempt, 0)), cap_ms)


@dataclass
class ClassifiedError:
    category: ErrorCategory
    user_message: str
    technical_message: str
    recovery_actions: list[str] = field(default_factory=list)
    should_retry: bool = False
    retry_delay_ms: int = 0
    fallback_model: str | None = None

    def to_metadata(self) -> dict:
        return {
            "error_category": self.category.value,
            "user_message": self.user_message,
            "recovery_actions": list(self.recovery_actions),
            "should_retry": self.should_retry,
            "retry_delay_ms": self.retry_delay_ms,
            "fallback_model": self.fallback_model,
        }


# category -> (user message, recovery actions, should retry, retry delay ms)
_CATEGORY_DETAILS: dict[ErrorCategory, tuple[str, list[str], bool, int]] = {
    ErrorCategory.TIMEOUT: (
        "請求逾時，AI 服務回應時間過長，請稍後再試。",
        ["稍後重試", "簡化問題內容", "改用回應較快的模型"],
        True,
        5000,
    ),
    ErrorCategory.RATE_LIMIT: (
        "請求過於頻繁，請稍候片刻再試。",
        ["等待一分鐘後重試", "減少同時提出的問題數量"],
        True,
        60000,
    ),
    ErrorCategory.API_ERROR: (
        "AI 服務暫時無法使用，請稍後再試。",
        ["稍後重試", "改用其他模型"],
        True,
        10000,
    ),
    ErrorCategory.NETWORK_ERROR: (
        "網路連線異常，請檢查網路後再試。",
        ["檢查網路連線", "重新整理頁面後重試"],
        True,
        3000,
    ),
    ErrorCategory.AUTHENTICATION_ERROR: (
        "API 金鑰無效或未設定，請聯絡系統管理員。",
        ["確認 API 金鑰設定", "聯絡系統管理員"],
        False,
        0,
    ),
    ErrorCategory.VALIDATION_ERROR: (
        "問題內容格式不正確，請檢查後重新輸入。",
        ["確認問題不為空白", "問題長度請勿超過 1000 字"],
        False,
        0,
    ),
    ErrorCategory.STREAMING_ERROR: (
        "串流回應中斷，請重新提問。",
        ["重新提問", "關閉串流模式後重試"],
        True,
        2000,
    ),
    ErrorCategory.UNKNOWN_ERROR: (
        "發生未預期的錯誤，請稍後再試。",
        ["稍後重試", "若問題持續發生請聯絡系統管理員"],
        True,
        5000,
    ),
}

_FALLBACK_CATEGORIES = {ErrorCategory.TIMEOUT, ErrorCategory.RATE_LIMIT, ErrorCategory.API_ERROR}


def _category_from_message(message: str) -> ErrorCategory:
    text = message.lower()
    if "timeout" in text or "timed out" in text:
        return ErrorCategory.TIMEOUT
    if "rate limit" in text or "429" in text:
        return ErrorCategory.RATE_LIMIT
    if "401" in text or "unauthorized" in text or "api key" in text:
        return ErrorCategory.AUTHENTICATION_ERROR
    if "network" in text or "connection" in text or "fetch" in text:
        return ErrorCategory.NETWORK_ERROR
    if "stream" in text:
        return ErrorCategory.STREAMING_ERROR
    if "api" in text or "http" in text:
        return ErrorCategory.API_ERROR
    return ErrorCategory.UNKNOWN_ERROR


def categorize(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, QAError):
        return exc.category
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code).category
    if isinstance(exc, httpx.TransportError):
        return ErrorCategory.NETWORK_ERROR
    return _category_from_message(str(exc))


def classify_error(exc: BaseException, *, fallback_model: str | None = None) -> ClassifiedError:
    """Classify any exception into a user-facing error description."""
    category = categorize(exc)
    user_message, actions, should_retry, delay_ms = _CATEGORY_DETAILS[category]
    technical = str(exc) or exc.__class__.__name__
    return ClassifiedError(
        category=category,
        user_message=user_message,
        technical_message=technical,
        recovery_actions=list(actions),
        should_retry=should_retry,
        retry_delay_ms=delay_ms,
        fallback_model=fallback_model if category in _FALLBACK_CATEGORIES else None,
    )
