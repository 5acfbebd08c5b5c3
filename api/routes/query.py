import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import StreamingResponse

from infrastructure.llm.config import QuestionContext
from infrastructure.llm.prompts import get_suggested_questions
from schemas.qa import BatchRequest, BatchResponse, QAResponse
from pipelines.inference import QAPipeline, get_default_pipeline
from services.batch import BatchOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter()


def get_pipeline() -> QAPipeline:
    return get_default_pipeline()


@router.post("/qa", response_model=QAResponse)
async def ask(payload: Any = Body(...), pipeline: QAPipeline = Depends(get_pipeline)):
    """
    Answer one question.

    Invalid input and upstream failures come back as a QAResponse with
    success=false rather than an HTTP error.
    """
    return await pipeline.complete(payload)


@router.post("/qa/stream")
async def ask_stream(
    request: Request,
    payload: Any = Body(...),
    pipeline: QAPipeline = Depends(get_pipeline),
):
    """
    Stream an answer using Server-Sent Events.

    Each event is `data: <StreamingChunk JSON>`; the last chunk has
    is_complete=true and is followed by `data: [DONE]`.
    """
    decoder = pipeline.complete_stream(payload)

    async def event_stream():
        try:
            async for chunk in decoder:
                yield f"data: {chunk.model_dump_json()}\n\n"
                if not chunk.is_complete and await request.is_disconnected():
                    logger.info("[QA_STREAM] Client disconnected, stopping stream")
                    decoder.stop()
            yield "data: [DONE]\n\n"
        finally:
            await decoder.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )


@router.get("/qa/stream")
async def describe_stream(pipeline: QAPipeline = Depends(get_pipeline)):
    """Describe the streaming endpoint and its accepted fields."""
    config = pipeline.config
    return {
        "endpoint": "/qa/stream",
        "method": "POST",
        "media_type": "text/event-stream",
        "required_fields": ["user_question"],
        "optional_fields": [
            "selected_text",
            "chapter_context",
            "current_chapter",
            "model_key",
            "reasoning_effort",
            "question_context",
            "include_detailed_citations",
            "show_thinking_process",
            "temperature",
            "max_tokens",
        ],
        "models": [key.value for key in config.models],
        "default_model": config.defaults.model_key.value,
    }


@router.get("/qa/suggestions")
async def suggested_questions(
    context: QuestionContext | None = None,
    pipeline: QAPipeline = Depends(get_pipeline),
):
    """Starter questions for each question context, or for one when `context` is given."""
    return {"suggestions": get_suggested_questions(pipeline.config.prompts, context)}


@router.post("/qa/batch", response_model=BatchResponse)
async def ask_batch(batch: BatchRequest, pipeline: QAPipeline = Depends(get_pipeline)):
    """Answer several questions concurrently; responses are index-aligned with questions."""
    return await BatchOrchestrator(pipeline).run(batch)
