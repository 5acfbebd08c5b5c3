"""Tests for concurrent batch answering."""

import asyncio
import pytest
from pathlib import Path
import sys
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import make_config
from infrastructure.llm.client import Completion
from infrastructure.llm.config import ModelKey
from infrastructure.llm.errors import TransportError
from pipelines.inference import QAPipeline
from schemas.qa import BatchRequest
from services.batch import BatchOrchestrator


class InstrumentedTransport:
    """Fake transport that tracks how many calls are in flight at once."""

    def __init__(self, delay=0.01, fail_questions=(), hang_questions=()):
        self.delay = delay
        self.fail_questions = set(fail_questions)
        self.hang_questions = set(hang_questions)
        self.in_flight = 0
        self.max_in_flight = 0
        self.seen = []

    async def complete(self, request):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.seen.append(request)
        try:
            if request.user_question in self.hang_questions:
                await asyncio.sleep(60)
            await asyncio.sleep(self.delay)
            if request.user_question in self.fail_questions:
                raise TransportError("Connection failed: network unreachable")
            return Completion(
                raw_answer=f"回答：{request.user_question}",
                model_used=request.model_key.value,
                model_key=request.model_key,
            )
        finally:
            self.in_flight -= 1

    async def aclose(self):
        pass


def _orchestrator(transport):
    return BatchOrchestrator(QAPipeline(make_config(), transport))


def _questions(*texts):
    return [{"user_question": t} for t in texts]


@pytest.mark.asyncio
async def test_one_failure_is_isolated():
    """Three questions with the second failing: two successes, one indexed error"""
    transport = InstrumentedTransport(fail_questions={"問二"})

    result = await _orchestrator(transport).run(BatchRequest(questions=_questions("問一", "問二", "問三")))

    assert result.batch_metadata.successful_responses == 2
    assert result.batch_metadata.failed_responses == 1
    assert len(result.errors) == 1
    assert result.errors[0].question_index == 1
    assert result.errors[0].question == "問二"
    assert result.responses[1].success is False
    assert result.success is True


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [1, 2, 3, 5])
async def test_concurrency_never_exceeds_limit(limit):
    """No more than max_concurrency units run at the same time"""
    transport = InstrumentedTransport()

    await _orchestrator(transport).run(
        BatchRequest(questions=_questions(*[f"問{i}" for i in range(8)]), max_concurrency=limit)
    )

    assert transport.max_in_flight <= limit
    assert len(transport.seen) == 8


@pytest.mark.asyncio
async def test_responses_are_index_aligned():
    """responses[i] answers questions[i] regardless of completion order"""
    transport = InstrumentedTransport()
    questions = _questions(*[f"問{i}" for i in range(6)])

    result = await _orchestrator(transport).run(BatchRequest(questions=questions, max_concurrency=6))

    assert len(result.responses) == len(questions)
    assert [r.question for r in result.responses] == [q["user_question"] for q in questions]


@pytest.mark.asyncio
async def test_invalid_question_keeps_its_slot():
    """A question failing validation is reported at its own index"""
    transport = InstrumentedTransport()

    result = await _orchestrator(transport).run(
        BatchRequest(questions=[{"user_question": "問一"}, {"user_question": "  "}, {"wrong": "x"}])
    )

    assert len(result.responses) == 3
    assert [e.question_index for e in result.errors] == [1, 2]
    assert len(transport.seen) == 1


@pytest.mark.asyncio
async def test_shared_config_merged_under_questions():
    """Shared settings apply unless the question overrides them"""
    transport = InstrumentedTransport()

    await _orchestrator(transport).run(
        BatchRequest(
            questions=[{"user_question": "問一"}, {"user_question": "問二", "model_key": "sonar-reasoning"}],
            shared_config={"model_key": "sonar-pro", "question_context": "character"},
        )
    )

    by_question = {r.user_question: r for r in transport.seen}
    assert by_question["問一"].model_key == ModelKey.SONAR_PRO
    assert by_question["問二"].model_key == ModelKey.SONAR_REASONING
    assert by_question["問二"].question_context.value == "character"


@pytest.mark.asyncio
async def test_all_failures_mark_batch_unsuccessful():
    """success is False only when no question succeeded"""
    transport = InstrumentedTransport(fail_questions={"問一", "問二"})

    result = await _orchestrator(transport).run(BatchRequest(questions=_questions("問一", "問二")))

    assert result.success is False
    assert result.batch_metadata.successful_responses == 0


@pytest.mark.asyncio
async def test_empty_batch():
    """An empty batch is a valid, unsuccessful, empty result"""
    result = await _orchestrator(InstrumentedTransport()).run(BatchRequest(questions=[]))

    assert result.responses == []
    assert result.errors is None
    assert result.batch_metadata.average_processing_time == 0.0
    assert result.success is False


@pytest.mark.asyncio
async def test_batch_timeout_fills_pending_slots():
    """Units still running at batch_timeout are cancelled and reported as timeouts"""
    transport = InstrumentedTransport(hang_questions={"問二"})

    result = await _orchestrator(transport).run(
        BatchRequest(questions=_questions("問一", "問二"), batch_timeout=0.2)
    )

    assert result.responses[0].success is True
    assert result.responses[1].success is False
    assert result.responses[1].question == "問二"
    assert result.responses[1].metadata["error_category"] == "timeout"
    assert transport.in_flight == 0


@pytest.mark.asyncio
async def test_pipeline_exception_is_contained():
    """Even a pipeline that raises cannot break the batch"""
    pipeline = QAPipeline(make_config(), InstrumentedTransport())
    original_complete = pipeline.complete

    async def explode(raw):
        if raw["user_question"] == "壞":
            raise RuntimeError("boom")
        return await original_complete(raw)

    with patch.object(pipeline, "complete", side_effect=explode):
        result = await BatchOrchestrator(pipeline).run(BatchRequest(questions=_questions("好", "壞")))

    assert result.responses[0].success is True
    assert result.responses[1].success is False
    assert result.responses[1].error == "boom"


@pytest.mark.asyncio
async def test_null_question_field_keeps_shared_value():
    """A question field set to null does not erase the shared setting"""
    transport = InstrumentedTransport()

    result = await _orchestrator(transport).run(
        BatchRequest(
            questions=[{"user_question": "問一", "model_key": None, "question_context": None}],
            shared_config={"model_key": "sonar-pro", "question_context": "plot"},
        )
    )

    assert result.responses[0].model_key == ModelKey.SONAR_PRO
    assert transport.seen[0].model_key == ModelKey.SONAR_PRO
    assert transport.seen[0].question_context.value == "plot"
