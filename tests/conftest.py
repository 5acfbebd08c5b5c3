"""
Shared pytest fixtures and configuration for QA service tests.
"""
import json
import pytest
import os
import sys
from pathlib import Path

import httpx

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Unit tests never talk to the real service
os.environ.setdefault("PERPLEXITYAI_API_KEY", "pplx-test-key")


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires PERPLEXITYAI_API_KEY for the real service)",
    )


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (calls the real service)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is provided."""
    if not config.getoption("--run-integration"):
        skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


def make_config(**sections):
    """QAConfig with one delta per chunk, zero pacing and retry delays, overridable per section."""
    from infrastructure.config.qa_config import QAConfig

    data = {
        "transport": {"retry_delay_ms": 0},
        "streaming": {"chunk_delay_ms": 0, "update_frequency": 1},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return QAConfig.model_validate(data)


def completion_body(content: str, *, search_results=None, citations=None, model="sonar-reasoning-pro", queries=None):
    """A non-streaming chat completion response body."""
    body = {
        "id": "cmpl-test",
        "model": model,
        "choices": [
            {"index": 0, "finish_reason": "stop", "message": {"role": "assistant", "content": content}}
        ],
        "usage": {"prompt_tokens": 120, "completion_tokens": 80, "total_tokens": 200},
    }
    if search_results is not None:
        body["search_results"] = search_results
    if citations is not None:
        body["citations"] = citations
    if queries is not None:
        body["web_search_queries"] = queries
    return body


def sse_body(deltas, *, citations=None, model="sonar-reasoning-pro", done=True) -> bytes:
    """Encode content deltas as an SSE stream; the last frame carries finish_reason."""
    lines = []
    for i, delta in enumerate(deltas):
        last = i == len(deltas) - 1
        frame = {
            "model": model,
            "choices": [{"index": 0, "delta": {"content": delta}, "finish_reason": "stop" if last else None}],
        }
        if citations is not None:
            frame["citations"] = citations
        lines.append(f"data: {json.dumps(frame, ensure_ascii=False)}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.perplexity.ai")


@pytest.fixture
def qa_config():
    return make_config()


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset config, settings and pipeline singletons around each test."""
    from infrastructure.config.qa_config import reset_qa_config
    from app.settings import reset_settings
    from pipelines.inference import reset_default_pipeline

    reset_qa_config()
    reset_settings()
    reset_default_pipeline()
    yield
    reset_qa_config()
    reset_settings()
    reset_default_pipeline()
