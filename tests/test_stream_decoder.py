"""Tests for the streaming decoder: ordering, termination and cancellation."""

import pytest
from pathlib import Path
import sys

import httpx

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import make_config, mock_client, sse_body
from infrastructure.llm.client import PerplexityTransport
from infrastructure.llm.config import ModelKey
from infrastructure.llm.errors import StreamInterruptedError
from pipelines.inference import QAPipeline
from pipelines.stream_decoder import CancellationToken


class ScriptedFrames:
    """Stand-in for StreamFrames that replays frames and counts reads."""

    def __init__(self, frames, *, fail_after=None):
        self.model_key = ModelKey.SONAR_REASONING_PRO
        self.attempts = 1
        self.fallback_used = False
        self.frames = list(frames)
        self.fail_after = fail_after
        self.reads = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.fail_after is not None and self.reads >= self.fail_after:
            raise StreamInterruptedError("Stream interrupted: connection reset")
        if self.closed or not self.frames:
            raise StopAsyncIteration
        self.reads += 1
        return self.frames.pop(0)

    async def aclose(self):
        self.closed = True


def delta_frame(text, finish=None, **extra):
    frame = {"model": "sonar-reasoning-pro", "choices": [{"delta": {"content": text}, "finish_reason": finish}]}
    frame.update(extra)
    return frame


class FakeTransport:
    def __init__(self, frames):
        self.frames = frames
        self.opened = 0

    async def open_stream(self, request):
        self.opened += 1
        return self.frames

    async def aclose(self):
        pass


def _pipeline(frames, **sections):
    transport = FakeTransport(frames)
    return QAPipeline(make_config(**sections), transport), transport


async def _drain(decoder):
    return [chunk async for chunk in decoder]


# ============================================================================
# Ordering and termination
# ============================================================================


@pytest.mark.asyncio
async def test_chunk_indices_increase_and_last_chunk_is_terminal():
    """chunk_index runs 1..n and only the final chunk is complete"""
    frames = ScriptedFrames([delta_frame("寶玉"), delta_frame("是"), delta_frame("公子", finish="stop")])
    pipeline, _ = _pipeline(frames)

    chunks = await _drain(pipeline.complete_stream({"user_question": "賈寶玉是誰？"}))

    assert [c.chunk_index for c in chunks] == list(range(1, len(chunks) + 1))
    assert [c.is_complete for c in chunks] == [False] * (len(chunks) - 1) + [True]
    assert chunks[-1].full_content == "寶玉是公子"
    assert [c.content for c in chunks] == ["寶玉", "是", "公子"]


@pytest.mark.asyncio
async def test_nothing_after_terminal_chunk():
    """next() returns None forever after the terminal chunk"""
    frames = ScriptedFrames([delta_frame("答", finish="stop")])
    pipeline, _ = _pipeline(frames)
    decoder = pipeline.complete_stream({"user_question": "q"})

    terminal = await decoder.next()

    assert terminal.is_complete is True
    assert await decoder.next() is None
    assert await decoder.next() is None


@pytest.mark.asyncio
async def test_upstream_exhaustion_without_finish_reason_completes():
    """A stream that just ends still produces exactly one terminal chunk"""
    frames = ScriptedFrames([delta_frame("甲"), delta_frame("乙")])
    pipeline, _ = _pipeline(frames)

    chunks = await _drain(pipeline.complete_stream({"user_question": "q"}))

    assert sum(c.is_complete for c in chunks) == 1
    assert chunks[-1].is_complete is True
    assert chunks[-1].error is None
    assert frames.closed is True


@pytest.mark.asyncio
async def test_update_frequency_batches_deltas():
    """Deltas are grouped into one chunk per update_frequency deltas"""
    frames = ScriptedFrames([delta_frame(t) for t in "一二三四五"] + [delta_frame("", finish="stop")])
    pipeline, _ = _pipeline(frames, streaming={"update_frequency": 2})

    chunks = await _drain(pipeline.complete_stream({"user_question": "q"}))

    assert [c.content for c in chunks] == ["一二", "三四", "五"]
    assert chunks[-1].full_content == "一二三四五"


@pytest.mark.asyncio
async def test_thinking_content_is_separated():
    """Reasoning inside think tags is reported apart from the answer"""
    frames = ScriptedFrames([delta_frame("<think>想"), delta_frame("一想</think>"), delta_frame("答案", finish="stop")])
    pipeline, _ = _pipeline(frames)

    chunks = await _drain(pipeline.complete_stream({"user_question": "q", "show_thinking_process": False}))

    assert chunks[-1].has_thinking_process is True
    assert chunks[-1].thinking_content == "想一想"
    assert chunks[-1].full_content == "答案"


@pytest.mark.asyncio
async def test_terminal_chunk_carries_citations():
    """Citations resolved from the side channel are attached to chunks"""
    urls = ["https://zh.wikipedia.org/wiki/紅樓夢"]
    frames = ScriptedFrames([delta_frame("曹雪芹著[1]", citations=urls), delta_frame("。", finish="stop", citations=urls)])
    pipeline, _ = _pipeline(frames)

    chunks = await _drain(pipeline.complete_stream({"user_question": "紅樓夢的作者？"}))

    assert chunks[0].citations[0].url == urls[0]
    assert chunks[-1].citations[0].number == "1"


# ============================================================================
# Cancellation
# ============================================================================


@pytest.mark.asyncio
async def test_stop_mid_stream_emits_stopped_terminal_chunk():
    """Stopping yields one complete, stopped chunk and nothing afterwards"""
    frames = ScriptedFrames([delta_frame(t) for t in "一二三四五"])
    pipeline, _ = _pipeline(frames)
    decoder = pipeline.complete_stream({"user_question": "q"})

    first = await decoder.next()
    decoder.stop()
    terminal = await decoder.next()

    assert first.is_complete is False
    assert terminal.is_complete is True
    assert terminal.stopped_by_user is True
    assert terminal.chunk_index == 2
    assert await decoder.next() is None
    assert frames.reads == 1
    assert frames.closed is True


@pytest.mark.asyncio
async def test_cancel_token_before_start_never_opens_stream():
    """A pre-cancelled token stops the stream without contacting the service"""
    frames = ScriptedFrames([delta_frame("答", finish="stop")])
    pipeline, transport = _pipeline(frames)
    token = CancellationToken()
    token.cancel()

    chunks = await _drain(pipeline.complete_stream({"user_question": "q"}, cancel_token=token))

    assert len(chunks) == 1
    assert chunks[0].stopped_by_user is True
    assert transport.opened == 0


@pytest.mark.asyncio
async def test_stopped_stream_response_reports_stop():
    """The assembled response of a stopped stream records the stop"""
    frames = ScriptedFrames([delta_frame("一"), delta_frame("二")])
    pipeline, _ = _pipeline(frames)
    decoder = pipeline.complete_stream({"user_question": "q"})

    await decoder.next()
    decoder.stop()
    await decoder.next()
    response = decoder.to_response()

    assert response.streaming is True
    assert response.stopped_by_user is True
    assert response.chunk_count == 2
    assert response.answer == "一"


# ============================================================================
# Errors
# ============================================================================


@pytest.mark.asyncio
async def test_mid_stream_error_emits_error_terminal_chunk():
    """An upstream failure ends the stream with one error chunk"""
    frames = ScriptedFrames([delta_frame("一"), delta_frame("二")], fail_after=1)
    pipeline, _ = _pipeline(frames)

    chunks = await _drain(pipeline.complete_stream({"user_question": "q"}))

    assert len(chunks) == 2
    assert chunks[-1].is_complete is True
    assert "interrupted" in chunks[-1].error
    assert chunks[-1].metadata["error_category"] == "streaming_error"


@pytest.mark.asyncio
async def test_invalid_request_streams_single_error_chunk():
    """Validation failures produce one terminal error chunk and no network call"""
    pipeline, transport = _pipeline(ScriptedFrames([]))
    decoder = pipeline.complete_stream({"user_question": "   "})

    chunks = await _drain(decoder)
    response = decoder.to_response()

    assert len(chunks) == 1
    assert chunks[0].is_complete is True
    assert chunks[0].error
    assert transport.opened == 0
    assert response.success is False
    assert response.answer_length == len(response.answer)


@pytest.mark.asyncio
async def test_to_response_before_finish_is_an_error():
    """Asking for the response of an unfinished stream is a programming error"""
    pipeline, _ = _pipeline(ScriptedFrames([delta_frame("一"), delta_frame("二")]))
    decoder = pipeline.complete_stream({"user_question": "q"})
    await decoder.next()

    with pytest.raises(RuntimeError):
        decoder.to_response()


@pytest.mark.asyncio
async def test_stream_over_http_transport():
    """End to end over the real transport with a mocked HTTP stream"""

    def handler(request):
        return httpx.Response(
            200,
            content=sse_body(["林黛玉", "是", "絳珠仙草轉世"]),
            headers={"content-type": "text/event-stream"},
        )

    config = make_config()
    transport = PerplexityTransport(config, "pplx-test", client=mock_client(handler))
    pipeline = QAPipeline(config, transport)

    decoder = pipeline.complete_stream({"user_question": "林黛玉的前世是什麼？"})
    chunks = await _drain(decoder)
    response = decoder.to_response()

    assert chunks[-1].full_content == "林黛玉是絳珠仙草轉世"
    assert response.success is True
    assert response.chunk_count == len(chunks)
    assert response.answer_length == len(response.answer)
