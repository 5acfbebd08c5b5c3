from pydantic import BaseModel


class ModelInfo(BaseModel):
    key: str
    name: str
    display_name: str
    max_tokens: int
    supports_reasoning: bool
    supports_streaming: bool
    supports_citations: bool
    supports_web_search: bool
    features: list[str]


class ModelsInfoResponse(BaseModel):
    default_model: str
    fallback_model: str
    fallback_enabled: bool
    models: list[ModelInfo]
