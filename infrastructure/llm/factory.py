"""
Transport factory - single entry point for PerplexityTransport instantiation.

Usage:
    from infrastructure.llm.factory import TransportManager
    manager = TransportManager(credentials, config)
    transport = manager.get_transport()
"""

import logging

from infrastructure.config.qa_config import QAConfig, get_qa_config

from .client import PerplexityTransport
from .config import TransportCredentials

logger = logging.getLogger(__name__)


def create_transport(credentials: TransportCredentials, config: QAConfig) -> PerplexityTransport:
    return PerplexityTransport(
        config,
        credentials.api_key,
        base_url=credentials.base_url,
        debug=credentials.debug,
    )


class TransportManager:
    """Manages transport lifecycle with lazy initialization."""

    def __init__(self, credentials: TransportCredentials | None = None, config: QAConfig | None = None):
        self._credentials = credentials
        self._config = config
        self._transport: PerplexityTransport | None = None

    def get_transport(self) -> PerplexityTransport:
        """Get or create the transport (lazy initialization)."""
        if self._transport is not None:
            return self._transport

        credentials = self._credentials or TransportCredentials.from_env()
        config = self._config or get_qa_config()
        base_url = credentials.base_url or config.transport.base_url
        logger.info(f"[TRANSPORT] Initializing Perplexity transport: {base_url} ({credentials!r})")

        self._transport = create_transport(credentials, config)
        return self._transport

    async def aclose(self) -> None:
        if self._transport is not None:
            await self._transport.aclose()
            self._transport = None
            logger.info("[TRANSPORT] Transport closed")

    def reset(self) -> None:
        """Drop the transport instance. Useful for testing or reconfiguration."""
        self._transport = None

