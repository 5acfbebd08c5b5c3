"""
Model catalog keys and the transport credential container.

Provides:
- ModelKey enum: Sonar models the service can call
- ReasoningEffort / QuestionContext enums: request-level tuning knobs
- TransportCredentials dataclass: API key, base URL and debug flag resolved from settings

Behavioural configuration lives in config/qa.yml via infrastructure.config.qa_config.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class ModelKey(str, Enum):
    """Supported Perplexity Sonar models."""
    SONAR_PRO = "sonar-pro"
    SONAR_REASONING = "sonar-reasoning"
    SONAR_REASONING_PRO = "sonar-reasoning-pro"


class ReasoningEffort(str, Enum):
    """Deliberation depth for reasoning-capable models."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class QuestionContext(str, Enum):
    """What aspect of the novel a question is about."""
    CHARACTER = "character"
    PLOT = "plot"
    THEME = "theme"
    GENERAL = "general"


@dataclass
class TransportCredentials:
    """Connection settings for the completion service."""

    api_key: Optional[str] = None
    base_url: Optional[str] = None
    debug: bool = False

    @classmethod
    def from_env(cls) -> "TransportCredentials":
        """Resolve credentials from process settings (read once at start-up)."""
        from app.settings import get_base_url_override, get_perplexity_key, is_debug_enabled

        try:
            return cls(
                api_key=get_perplexity_key() or None,
                base_url=get_base_url_override(),
                debug=is_debug_enabled(),
            )
        except Exception as e:
            logger.error(f"Failed to load transport credentials: {e}")
            raise

    def __repr__(self) -> str:
        """Safe repr that doesn't expose API key."""
        return (
            f"TransportCredentials(api_key={'set' if self.api_key else 'missing'}, "
            f"base_url={self.base_url}, debug={self.debug})"
        )
