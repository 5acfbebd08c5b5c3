import logging
import re

from app.settings import init_settings, is_debug_enabled


class URLShortenerFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        msg = str(record.msg) if hasattr(record, 'msg') else record.getMessage()

        # Shorten long URLs (keep protocol, host, and last path segment)
        msg = re.sub(
            r'(https?://[^/]+)/([^/]+/){3,}([^/\s"\']+)',
            r'\1/.../\3',
            msg
        )

        if hasattr(record, 'msg'):
            record.msg = msg
        else:
            record.args = ()

        return True


class APIKeyRedactionFilter(logging.Filter):
    """Masks Perplexity keys and bearer tokens that reach a log line."""

    _pattern = re.compile(r"(Bearer\s+|pplx-)[A-Za-z0-9_\-]{4,}")

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._pattern.sub(lambda m: m.group(1) + "***", message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


class HealthCheckFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return "/health" not in record.getMessage()


def configure_logging(log_level: str = None):
    if log_level is None:
        # Env vars and /run/secrets both feed the settings
        log_level = 'DEBUG' if is_debug_enabled() else init_settings().LOG_LEVEL.upper()

    log_format = '%(name)s - %(levelname)s - %(message)s'

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format=log_format,
        force=True
    )

    url_filter = URLShortenerFilter()
    redaction_filter = APIKeyRedactionFilter()
    for logger_name in ['httpx', 'httpcore', 'uvicorn']:
        logging.getLogger(logger_name).addFilter(url_filter)
        logging.getLogger(logger_name).addFilter(redaction_filter)
    for handler in logging.getLogger().handlers:
        handler.addFilter(redaction_filter)

    logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())

    # Outbound request lines are logged by the transport's own hooks in debug mode
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
