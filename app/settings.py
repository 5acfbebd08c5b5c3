from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        secrets_dir="/run/secrets",
        secrets_dir_missing="ok",
        case_sensitive=True,
        extra="ignore",
    )

    PERPLEXITYAI_API_KEY: SecretStr | None = None
    PERPLEXITY_BASE_URL: str | None = None
    PERPLEXITY_DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    QA_CONFIG_PATH: str | None = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Explicit values, then the process environment, then mounted secret files.
        return (init_settings, env_settings, file_secret_settings)


SETTINGS: Optional[Settings] = None


def _sanitize_secret(value: str) -> str:
    # Trim whitespace and remove null bytes commonly present in mounted secret files.
    return value.strip().replace("\x00", "")


def init_settings() -> Settings:
    global SETTINGS
    if SETTINGS is None:
        SETTINGS = Settings()
    return SETTINGS


def reset_settings() -> None:
    """Drop the cached settings so the next access re-reads the environment."""
    global SETTINGS
    SETTINGS = None


def get_perplexity_key() -> str:
    s = init_settings()
    if s.PERPLEXITYAI_API_KEY is None:
        return ""
    return _sanitize_secret(s.PERPLEXITYAI_API_KEY.get_secret_value())


def get_base_url_override() -> str | None:
    s = init_settings()
    if s.PERPLEXITY_BASE_URL is None:
        return None
    value = s.PERPLEXITY_BASE_URL.strip().rstrip("/")
    return value or None


def is_debug_enabled() -> bool:
    return init_settings().PERPLEXITY_DEBUG


def get_config_path() -> str | None:
    return init_settings().QA_CONFIG_PATH
