from fastapi import APIRouter, Depends

from schemas.health import ModelInfo, ModelsInfoResponse
from infrastructure.config.qa_config import QAConfig, get_qa_config

router = APIRouter()


def get_config() -> QAConfig:
    return get_qa_config()


@router.get("/health")
async def health():
    return {"status": "healthy"}


@router.get("/models", response_model=ModelsInfoResponse)
async def get_models_info(config: QAConfig = Depends(get_config)):
    """Get the model catalog and what each model supports"""
    models = [
        ModelInfo(
            key=key.value,
            name=spec.name,
            display_name=spec.display_name,
            max_tokens=spec.max_tokens,
            supports_reasoning=spec.supports_reasoning,
            supports_streaming="streaming" in spec.features,
            supports_citations="citations" in spec.features,
            supports_web_search="web_search" in spec.features,
            features=list(spec.features),
        )
        for key, spec in config.models.items()
    ]

    return ModelsInfoResponse(
        default_model=config.defaults.model_key.value,
        fallback_model=config.transport.fallback_model.value,
        fallback_enabled=config.transport.enable_fallback,
        models=models,
    )
