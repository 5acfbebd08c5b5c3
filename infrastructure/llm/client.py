"""
HTTP transport for the Perplexity chat completions endpoint.

One PerplexityTransport wraps one httpx.AsyncClient. Both the blocking and the
streaming path share the same attempt policy:

- each attempt has its own timeout (request_timeout_ms)
- timeouts, connection errors, 5xx and 429 are retried up to max_retries times
- once retries are exhausted, one more attempt is made with the fallback model
- any other rejection fails immediately without consuming further retries

For streams the policy covers opening the stream only; a failure after the
first frame surfaces to the reader as StreamInterruptedError.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from infrastructure.config.qa_config import QAConfig
from infrastructure.llm.config import ModelKey
from infrastructure.llm.errors import (
    AuthenticationError,
    ServiceError,
    StreamInterruptedError,
    TransportError,
    TransportTimeoutError,
    backoff_delay_ms,
    error_for_status,
)
from infrastructure.llm.prompts import build_messages
from pipelines.citations import SideChannel
from schemas.qa import QARequest

logger = logging.getLogger(__name__)

STREAM_DONE = object()


@dataclass
class Completion:
    """Result of a successful non-streaming call."""

    raw_answer: str
    model_used: str
    model_key: ModelKey
    side_channel: SideChannel = field(default_factory=SideChannel)
    usage: dict | None = None
    finish_reason: str | None = None
    attempts: int = 1
    fallback_used: bool = False

    def metadata(self) -> dict[str, Any]:
        return {
            "finish_reason": self.finish_reason,
            "usage": self.usage,
            "attempts": self.attempts,
            "fallback_used": self.fallback_used,
        }


def parse_sse_line(line: str) -> Any:
    """Decode one SSE line: a frame dict, STREAM_DONE, or None to skip."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data:
        return None
    if data == "[DONE]":
        return STREAM_DONE
    try:
        frame = json.loads(data)
    except json.JSONDecodeError:
        logger.warning(f"[STREAM] Skipping undecodable frame: {data[:80]}")
        return None
    return frame if isinstance(frame, dict) else None


class StreamFrames:
    """Async iterator over decoded frames of an open streaming response."""

    def __init__(
        self,
        response: httpx.Response,
        model_key: ModelKey,
        *,
        attempts: int = 1,
        fallback_used: bool = False,
    ):
        self.model_key = model_key
        self.attempts = attempts
        self.fallback_used = fallback_used
        self._response = response
        self._lines = response.aiter_lines()
        self._closed = False

    def __aiter__(self) -> "StreamFrames":
        return self

    async def __anext__(self) -> dict:
        while True:
            if self._closed:
                raise StopAsyncIteration
            try:
                line = await self._lines.__anext__()
            except StopAsyncIteration:
                await self.aclose()
                raise
            except httpx.HTTPError as e:
                await self.aclose()
                raise StreamInterruptedError(f"Stream interrupted: {e}") from e

            frame = parse_sse_line(line)
            if frame is None:
                continue
            if frame is STREAM_DONE:
                await self.aclose()
                raise StopAsyncIteration
            return frame

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


async def _log_request(request: httpx.Request) -> None:
    logger.debug(f"[TRANSPORT] {request.method} {request.url}")


async def _log_response(response: httpx.Response) -> None:
    request = response.request
    logger.debug(f"[TRANSPORT] {request.method} {request.url} -> {response.status_code}")


class PerplexityTransport:
    def __init__(
        self,
        config: QAConfig,
        api_key: str | None,
        *,
        base_url: str | None = None,
        debug: bool = False,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._config = config
        self._policy = config.transport
        self._api_key = api_key or ""
        self._timeout = httpx.Timeout(self._policy.request_timeout_ms / 1000)
        self._sleep = sleep
        self._owns_client = client is None
        if client is None:
            hooks = {"request": [_log_request], "response": [_log_response]} if debug else {}
            client = httpx.AsyncClient(
                base_url=base_url or self._policy.base_url,
                timeout=self._timeout,
                event_hooks=hooks,
            )
        self._client = client

    async def __aenter__(self) -> "PerplexityTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            "User-Agent": self._policy.client_name,
        }

    def build_payload(self, request: QARequest, model_key: ModelKey, *, stream: bool) -> dict[str, Any]:
        spec = self._config.model(model_key)
        max_tokens = min(request.max_tokens or self._config.defaults.max_tokens, spec.max_tokens)
        temperature = (
            request.temperature if request.temperature is not None else self._config.defaults.temperature
        )
        payload: dict[str, Any] = {
            "model": spec.name,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
            "messages": build_messages(request, self._config.prompts),
        }
        if spec.supports_reasoning:
            effort = request.reasoning_effort or self._config.defaults.reasoning_effort
            payload["reasoning_effort"] = effort.value
        return payload

    def attempt_plan(self, model_key: ModelKey) -> list[ModelKey]:
        """Models to try in order: the primary once per allowed attempt, then the fallback."""
        plan = [model_key] * (self._policy.max_retries + 1)
        fallback = self._policy.fallback_model
        if self._policy.enable_fallback and fallback != model_key:
            plan.append(fallback)
        return plan

    def _retry_delay_ms(self, retry: int) -> int:
        if self._policy.retry_backoff == "fixed":
            return self._policy.retry_delay_ms
        return backoff_delay_ms(retry - 1, self._policy.retry_delay_ms, self._policy.max_retry_delay_ms)

    async def _timed(self, attempt_fn, model_key: ModelKey, attempt: int, fallback: bool):
        # httpx timeouts bound each read; this bounds the whole attempt
        limit_ms = self._policy.request_timeout_ms
        try:
            async with asyncio.timeout(limit_ms / 1000):
                return await attempt_fn(model_key, attempt, fallback)
        except TimeoutError as e:
            raise TransportTimeoutError(f"Attempt on {model_key.value} exceeded {limit_ms}ms") from e

    async def _with_policy(self, request: QARequest, attempt_fn):
        if not self._api_key:
            raise AuthenticationError("PERPLEXITYAI_API_KEY is not configured")

        plan = self.attempt_plan(request.model_key)
        primary_attempts = self._policy.max_retries + 1
        last_error: TransportError | None = None

        for attempt, model_key in enumerate(plan, start=1):
            fallback = attempt > primary_attempts
            if fallback:
                logger.warning(
                    f"[TRANSPORT] Retries exhausted for {request.model_key.value}, "
                    f"falling back to {model_key.value}"
                )
            elif attempt > 1:
                delay_ms = self._retry_delay_ms(attempt - 1)
                logger.warning(f"[TRANSPORT] Retrying in {delay_ms}ms (attempt {attempt}/{primary_attempts})")
                if delay_ms:
                    await self._sleep(delay_ms / 1000)

            try:
                return await self._timed(attempt_fn, model_key, attempt, fallback)
            except TransportError as e:
                if not e.retryable:
                    logger.error(f"[TRANSPORT] Non-retryable failure on {model_key.value}: {e}")
                    raise
                last_error = e
                logger.warning(f"[TRANSPORT] Attempt {attempt}/{len(plan)} on {model_key.value} failed: {e}")

        assert last_error is not None
        raise last_error

    async def complete(self, request: QARequest) -> Completion:
        """Non-streaming completion under the retry and fallback policy."""

        async def attempt_fn(model_key: ModelKey, attempt: int, fallback: bool) -> Completion:
            payload = self.build_payload(request, model_key, stream=False)
            try:
                response = await self._client.post(
                    self._policy.chat_completions_endpoint,
                    json=payload,
                    headers=self._headers(),
                    timeout=self._timeout,
                )
            except httpx.TimeoutException as e:
                raise TransportTimeoutError(
                    f"Request timed out after {self._policy.request_timeout_ms}ms"
                ) from e
            except httpx.TransportError as e:
                raise TransportError(f"Connection failed: {e}") from e

            if response.status_code >= 400:
                raise error_for_status(response.status_code, response.text)

            try:
                body = response.json()
            except ValueError as e:
                raise ServiceError("Malformed response body") from e
            return self._to_completion(body, model_key, attempt, fallback)

        return await self._with_policy(request, attempt_fn)

    def _to_completion(self, body: Any, model_key: ModelKey, attempt: int, fallback: bool) -> Completion:
        if not isinstance(body, dict):
            raise ServiceError("Malformed response body")
        choices = body.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise ServiceError("Response contained no choices")

        message = choices[0].get("message") or {}
        content = message.get("content")
        if not isinstance(content, str):
            raise ServiceError("Response contained no answer content")

        return Completion(
            raw_answer=content,
            model_used=body.get("model") or self._config.model(model_key).name,
            model_key=model_key,
            side_channel=SideChannel.from_body(body),
            usage=body.get("usage"),
            finish_reason=choices[0].get("finish_reason"),
            attempts=attempt,
            fallback_used=fallback,
        )

    async def open_stream(self, request: QARequest) -> StreamFrames:
        """Open a streaming completion; the policy applies until headers arrive."""

        async def attempt_fn(model_key: ModelKey, attempt: int, fallback: bool) -> StreamFrames:
            payload = self.build_payload(request, model_key, stream=True)
            http_request = self._client.build_request(
                "POST",
                self._policy.chat_completions_endpoint,
                json=payload,
                headers={**self._headers(), "Accept": "text/event-stream"},
                timeout=self._timeout,
            )
            try:
                response = await self._client.send(http_request, stream=True)
            except httpx.TimeoutException as e:
                raise TransportTimeoutError(
                    f"Stream did not open within {self._policy.request_timeout_ms}ms"
                ) from e
            except httpx.TransportError as e:
                raise TransportError(f"Connection failed: {e}") from e

            if response.status_code >= 400:
                await response.aread()
                await response.aclose()
                raise error_for_status(response.status_code, response.text)

            logger.info(f"[STREAM] Stream opened on {model_key.value} (attempt {attempt})")
            return StreamFrames(response, model_key, attempts=attempt, fallback_used=fallback)

        return await self._with_policy(request, attempt_fn)
