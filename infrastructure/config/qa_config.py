"""QA service configuration using Pydantic for type safety and validation."""

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from infrastructure.llm.config import ModelKey, QuestionContext, ReasoningEffort

logger = logging.getLogger(__name__)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ModelSpec(_Frozen):
    """One entry of the model catalog."""

    name: str
    display_name: str
    max_tokens: int = Field(gt=0)
    supports_reasoning: bool = False
    features: tuple[str, ...] = ()

    @field_validator("name")
    @classmethod
    def name_must_exist(cls, v: str) -> str:
        """Validate that model name is not empty."""
        if not v or not v.strip():
            raise ValueError("Model name is required and cannot be empty")
        return v


def _default_models() -> dict[ModelKey, ModelSpec]:
    return {
        ModelKey.SONAR_PRO: ModelSpec(
            name="sonar-pro",
            display_name="Sonar Pro",
            max_tokens=4000,
            supports_reasoning=False,
            features=("web_search", "citations", "streaming"),
        ),
        ModelKey.SONAR_REASONING: ModelSpec(
            name="sonar-reasoning",
            display_name="Sonar Reasoning",
            max_tokens=8000,
            supports_reasoning=True,
            features=("web_search", "citations", "streaming", "reasoning"),
        ),
        ModelKey.SONAR_REASONING_PRO: ModelSpec(
            name="sonar-reasoning-pro",
            display_name="Sonar Reasoning Pro",
            max_tokens=8000,
            supports_reasoning=True,
            features=("web_search", "citations", "streaming", "reasoning", "deep_analysis"),
        ),
    }


class DefaultsConfig(_Frozen):
    """Values applied to a request when the caller leaves them unset."""

    model_key: ModelKey = ModelKey.SONAR_REASONING_PRO
    reasoning_effort: ReasoningEffort = ReasoningEffort.HIGH
    question_context: QuestionContext = QuestionContext.GENERAL
    temperature: float = Field(default=0.2, ge=0, le=1)
    max_tokens: int = Field(default=2000, gt=0)
    enable_streaming: bool = True
    include_detailed_citations: bool = True
    show_thinking_process: bool = True


class TransportConfig(_Frozen):
    """Timeout, retry and fallback policy for outbound calls."""

    base_url: str = "https://api.perplexity.ai"
    chat_completions_endpoint: str = "/chat/completions"
    request_timeout_ms: int = Field(default=60000, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=2000, ge=0)
    retry_backoff: Literal["fixed", "exponential"] = "exponential"
    max_retry_delay_ms: int = Field(default=30000, ge=0)
    enable_fallback: bool = True
    fallback_model: ModelKey = ModelKey.SONAR_PRO
    client_name: str = "RedMansion-Learning-Platform/1.0"


class StreamingConfig(_Frozen):
    update_frequency: int = Field(default=15, ge=1)
    chunk_delay_ms: int = Field(default=50, ge=0)


class CitationsConfig(_Frozen):
    """Citation extraction limits and domain heuristics."""

    enabled: bool = True
    max_citations: int = Field(default=10, ge=0)
    citation_timeout_ms: int = Field(default=5000, gt=0)
    academic_domains: tuple[str, ...] = (
        "cnki.net",
        "jstor.org",
        "academia.edu",
        "researchgate.net",
        "arxiv.org",
        "scholar.google.com",
        "airitilibrary.com",
        "ncl.edu.tw",
    )
    news_domains: tuple[str, ...] = (
        "bbc.com",
        "cna.com.tw",
        "udn.com",
        "chinatimes.com",
        "ltn.com.tw",
        "xinhuanet.com",
        "people.com.cn",
        "thepaper.cn",
        "nytimes.com",
    )
    domain_titles: dict[str, str] = Field(
        default_factory=lambda: {
            "zh.wikipedia.org": "維基百科 (中文)",
            "wikipedia.org": "維基百科",
            "baidu.com": "百度百科",
            "zhihu.com": "知乎",
            "guoxue.com": "國學網",
            "literature.org.cn": "中國文學網",
            "cnki.net": "中國知網",
            "douban.com": "豆瓣",
            "academia.edu": "學術網",
            "jstor.org": "JSTOR",
        }
    )


class ResponseConfig(_Frozen):
    clean_html_tags: bool = True
    max_response_length: int = Field(default=10000, gt=0)


class BatchConfig(_Frozen):
    default_max_concurrency: int = Field(default=3, ge=1)


class PromptsConfig(_Frozen):
    """Prompt fragments assembled by infrastructure.llm.prompts."""

    system: str = (
        "你是一位專精《紅樓夢》的文學研究者，熟悉曹雪芹的生平、清代社會背景、\n"
        "歷代紅學研究成果與各版本之間的差異。請以嚴謹而易懂的方式回答讀者的問題。"
    )
    contexts: dict[QuestionContext, str] = Field(
        default_factory=lambda: {
            QuestionContext.CHARACTER: "請著重分析人物的性格特徵、人物關係、命運走向，以及作者塑造此人物的手法與用意。",
            QuestionContext.PLOT: "請著重說明情節的來龍去脈、前後呼應與伏筆，以及此段情節在全書結構中的作用。",
            QuestionContext.THEME: "請著重探討作品的主題思想、象徵意涵與文化背景，並適度引用紅學研究的觀點。",
            QuestionContext.GENERAL: "請全面而平衡地回答問題，兼顧文本依據與學術觀點。",
        }
    )
    answer_instructions: tuple[str, ...] = (
        "先直接回答問題的核心，再展開分析。",
        "引用原文時請標明出處章回。",
        "引用網路資料時請使用 [1]、[2] 等編號標註來源。",
        "區分文本事實與學者詮釋，避免過度推論。",
        "請使用繁體中文回答。",
    )
    suggested_questions: dict[QuestionContext, tuple[str, ...]] = Field(
        default_factory=lambda: {
            QuestionContext.CHARACTER: (
                "林黛玉的性格特點和悲劇命運如何體現？",
                "賈寶玉的叛逆精神在哪些情節中表現出來？",
                "王熙鳳的管理才能和性格缺陷有哪些？",
                "薛寶釵的待人處世之道體現了什麼價值觀？",
            ),
            QuestionContext.PLOT: (
                "第一回中真假虛實的設定有何深層意義？",
                "劉姥姥進大觀園的情節在小說中起什麼作用？",
                "黛玉葬花的象徵意義是什麼？",
                "寶黛初會的情節安排有什麼特殊之處？",
            ),
            QuestionContext.THEME: (
                "《紅樓夢》中體現了怎樣的愛情觀念？",
                "小說如何表現封建社會的興衰主題？",
                "真假虛實的哲學思辨在作品中如何體現？",
                "《紅樓夢》中的女性意識覺醒有哪些表現？",
            ),
            QuestionContext.GENERAL: (
                "《紅樓夢》的主要藝術成就有哪些？",
                "曹雪芹的寫作技巧有什麼特點？",
                "《紅樓夢》在中國文學史上的地位如何？",
                "《紅樓夢》的現實主義特色體現在哪裡？",
            ),
        }
    )


class QAConfig(_Frozen):
    """Root configuration for the question-answering service."""

    models: dict[ModelKey, ModelSpec] = Field(default_factory=_default_models)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    citations: CitationsConfig = Field(default_factory=CitationsConfig)
    response: ResponseConfig = Field(default_factory=ResponseConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    prompts: PromptsConfig = Field(default_factory=PromptsConfig)

    @model_validator(mode="after")
    def catalog_covers_configured_models(self) -> "QAConfig":
        """The default and fallback models must both be in the catalog."""
        for key in (self.defaults.model_key, self.transport.fallback_model):
            if key not in self.models:
                raise ValueError(f"Model '{key.value}' is configured but missing from the models catalog")
        return self

    def model(self, key: ModelKey) -> ModelSpec:
        """Look up a catalog entry; unknown keys are a configuration error."""
        try:
            return self.models[ModelKey(key)]
        except (KeyError, ValueError):
            raise KeyError(f"Unknown model key: {key}") from None

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "QAConfig":
        """Load configuration from a YAML file.

        Args:
            config_path: Path to qa.yml. If None, QA_CONFIG_PATH and the standard
                locations are searched, falling back to built-in defaults.

        Returns:
            Validated QAConfig instance.

        Raises:
            FileNotFoundError: If an explicit config_path does not exist.
            ValueError: If the file content is invalid.
        """
        if config_path is None:
            env_path = os.getenv("QA_CONFIG_PATH")
            possible_paths = [
                Path(env_path) if env_path else None,
                Path("/app/config/qa.yml"),  # Docker path
                Path(__file__).parent.parent.parent / "config" / "qa.yml",  # Development path
            ]
            config_path = next((p for p in possible_paths if p is not None and p.exists()), None)
            if config_path is None:
                logger.info("[CONFIG] qa.yml not found, using built-in defaults")
                return cls()
        else:
            config_path = Path(config_path)
            if not config_path.exists():
                raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping at the top level")

        logger.info(f"[CONFIG] Loaded QA configuration from {config_path}")
        return cls(**data)


class QAConfigManager:
    """
    Manages QAConfig lifecycle with lazy initialization.

    Supports dependency injection for testing and reconfiguration.
    """

    def __init__(self, config_path: str | Path | None = None):
        self._config_path = config_path
        self._config: QAConfig | None = None

    def get_config(self) -> QAConfig:
        """Get or load QAConfig. Loaded on first access."""
        if self._config is None:
            self._config = QAConfig.load(self._config_path)
        return self._config

    def reset(self) -> None:
        """Reset the config instance. Useful for testing."""
        self._config = None


_default_manager = QAConfigManager()


def get_qa_config(config_path: str | Path | None = None) -> QAConfig:
    """
    Get or load QAConfig using the default manager.

    Args:
        config_path: Optional path to config file. Only used on first call.
    """
    if _default_manager._config is None and config_path is not None:
        _default_manager._config_path = config_path
    return _default_manager.get_config()


def reset_qa_config() -> None:
    """Reset the default QA config. Useful for testing."""
    _default_manager.reset()
