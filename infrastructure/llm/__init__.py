"""
LLM Infrastructure - Perplexity Sonar completion service.

Supported models:
    - sonar-pro
    - sonar-reasoning
    - sonar-reasoning-pro

Configure via environment variables:
    PERPLEXITYAI_API_KEY: API key (required)
    PERPLEXITY_BASE_URL: Custom endpoint (optional)
    PERPLEXITY_DEBUG: Log outbound requests (optional)

The transport itself lives in infrastructure.llm.client and is created through
infrastructure.llm.factory; it is not re-exported here because it depends on
infrastructure.config, which imports the enums below.
"""
from .config import ModelKey, QuestionContext, ReasoningEffort, TransportCredentials
from .errors import ErrorCategory, QAError, classify_error

__all__ = [
    # Config
    "ModelKey",
    "QuestionContext",
    "ReasoningEffort",
    "TransportCredentials",
    # Errors
    "ErrorCategory",
    "QAError",
    "classify_error",
]
