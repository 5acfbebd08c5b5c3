import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI

from core.logging import configure_logging
from app.settings import init_settings, get_base_url_override, get_config_path, get_perplexity_key
from infrastructure.config.qa_config import get_qa_config
from infrastructure.llm.validation import validate_api_key

configure_logging()
logger = logging.getLogger(__name__)


async def _validate_api_key_at_startup(base_url: str):
    """Validate the configured API key; an invalid key stops the process."""
    api_key = get_perplexity_key()
    if not api_key:
        logger.warning("[STARTUP] PERPLEXITYAI_API_KEY is not set, every question will fail until it is configured")
        return

    valid, error_message = await validate_api_key(api_key, base_url)
    if valid:
        logger.info("[STARTUP] Perplexity API key valid")
        return

    logger.error(f"[STARTUP] API key validation failed: {error_message}. Shutting down.")
    os._exit(1)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown."""
    await startup()
    yield
    await shutdown()


async def startup():
    """Load settings and configuration, then check the API key."""
    init_settings()
    config = get_qa_config(get_config_path())
    logger.info(
        f"[STARTUP] Default model {config.defaults.model_key.value}, "
        f"fallback {config.transport.fallback_model.value if config.transport.enable_fallback else 'disabled'}"
    )

    await _validate_api_key_at_startup(get_base_url_override() or config.transport.base_url)


async def shutdown():
    """Close the outbound HTTP client."""
    logger.info("[SHUTDOWN] Closing Perplexity transport...")
    try:
        from pipelines.inference import close_default_pipeline
        await close_default_pipeline()
        logger.info("[SHUTDOWN] Transport closed")
    except Exception as e:
        logger.error(f"[SHUTDOWN] Error closing transport: {e}")


app = FastAPI(title="Red Chamber QA", lifespan=lifespan)

from api.routes import health, query

app.include_router(health.router, tags=["health"])
app.include_router(query.router, tags=["qa"])
