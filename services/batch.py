"""Concurrent batch answering with a per-batch concurrency cap."""
import asyncio
import logging
import time
from typing import Any

from infrastructure.llm.errors import TransportTimeoutError
from pipelines.assembler import utc_now_iso
from pipelines.inference import QAPipeline
from schemas.qa import BatchError, BatchMetadata, BatchRequest, BatchResponse, QAResponse

logger = logging.getLogger(__name__)


def merge_shared(shared: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Layer one question over the shared settings; None in the question means unset."""
    return {**shared, **{k: v for k, v in overrides.items() if v is not None}}


class BatchOrchestrator:
    """
    Runs every question of a batch through the single-request pipeline.

    At most max_concurrency questions hold a semaphore slot at once. A failing
    question becomes an error response at its own index and never affects its
    siblings; the response list is always as long as the question list.
    """

    def __init__(self, pipeline: QAPipeline):
        self._pipeline = pipeline

    async def run(self, batch: BatchRequest) -> BatchResponse:
        started_at = time.perf_counter()
        total = len(batch.questions)
        shared = dict(batch.shared_config or {})
        limit = batch.max_concurrency
        if "max_concurrency" not in batch.model_fields_set:
            limit = self._pipeline.config.batch.default_max_concurrency
        semaphore = asyncio.Semaphore(limit)
        responses: list[QAResponse | None] = [None] * total
        unit_inputs: list[dict[str, Any]] = [merge_shared(shared, overrides) for overrides in batch.questions]

        logger.info(f"[BATCH] Processing {total} questions (max_concurrency={limit})")

        async def run_unit(index: int) -> None:
            async with semaphore:
                unit_started = time.perf_counter()
                raw = unit_inputs[index]
                try:
                    responses[index] = await self._pipeline.complete(raw)
                except Exception as e:
                    logger.error(f"[BATCH] Question {index} failed: {e}")
                    responses[index] = self._pipeline.assembler.error_response(
                        raw.get("user_question"), e, unit_started
                    )

        tasks = [asyncio.create_task(run_unit(i)) for i in range(total)]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=batch.batch_timeout)
            if pending:
                logger.warning(f"[BATCH] Timed out after {batch.batch_timeout}s, cancelling {len(pending)} questions")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        for index, response in enumerate(responses):
            if response is None:
                timeout_error = TransportTimeoutError(f"Batch timed out after {batch.batch_timeout}s")
                responses[index] = self._pipeline.assembler.error_response(
                    unit_inputs[index].get("user_question"), timeout_error, started_at
                )

        return self._aggregate(responses, time.perf_counter() - started_at)

    def _aggregate(self, responses: list[QAResponse], elapsed: float) -> BatchResponse:
        total = len(responses)
        successful = sum(1 for r in responses if r.success)
        errors = [
            BatchError(question_index=i, error=r.error or "Unknown error", question=r.question)
            for i, r in enumerate(responses)
            if not r.success
        ]

        logger.info(f"[BATCH] Completed: {successful}/{total} successful in {elapsed:.2f}s")
        return BatchResponse(
            responses=responses,
            batch_metadata=BatchMetadata(
                total_questions=total,
                successful_responses=successful,
                failed_responses=total - successful,
                total_processing_time=elapsed,
                average_processing_time=elapsed / total if total else 0.0,
                timestamp=utc_now_iso(),
            ),
            success=successful > 0,
            errors=errors or None,
        )
