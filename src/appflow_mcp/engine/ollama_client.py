"""Completion client for a local Ollama-compatible generation backend.

Two request shapes are supported on POST /api/generate:
- Blocking (`stream: false`): one JSON object `{response, done, ...}`
- Streaming (`stream: true`): newline-delimited JSON objects, one per line

Retry policy:
- Blocking calls retry timeout/transport failures with exponential backoff
  (base delay doubles each retry). Protocol failures are raised immediately.
- Streams restart from the beginning (a fresh request, not a resume) after a
  timeout/transport failure, up to the same attempt count. Every chunk
  carries the attempt it belongs to so consumers can discard text from an
  aborted attempt.

Deadlines:
- Every request attempt runs under its own client-side deadline (default 30s,
  5s for the availability probe, 2x default for model pulls). Exceeding it
  cancels only that request and raises CompletionTimeoutError; the retry loop
  around it decides what happens next.
- Streams are bounded by the deadline until response headers arrive; after
  that, each read is bounded by the same value as an httpx read timeout.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing, asynccontextmanager
from typing import Any, TypeVar

import httpx
from pydantic import ValidationError

from .exceptions import (
    CompletionError,
    CompletionProtocolError,
    CompletionTimeoutError,
    CompletionTransportError,
    RetriesExhaustedError,
)
from .models import GenerateChunk, GenerateRequest, ModelInfo, PullProgress
from .ndjson import iter_ndjson

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_TIMEOUT = 30.0
PROBE_TIMEOUT = 5.0
MAX_RETRIES = 3
RETRY_DELAY = 1.0

_RETRYABLE = (CompletionTimeoutError, CompletionTransportError)


class OllamaClient:
    """
    Async client for the generation backend.

    Usage:
        async with OllamaClient("http://localhost:11434") as client:
            text = await client.generate(GenerateRequest(model="llama2:7b", prompt="hi"))

            async for chunk in client.generate_stream(request):
                print(chunk.response, end="")

            async for progress in client.pull_model("llama2:7b"):
                print(progress.status, progress.percentage)

    One httpx.AsyncClient (connection pool) is shared by all calls; close it
    with aclose() or by leaving the async context.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        probe_timeout: float = PROBE_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize client.

        Args:
            base_url: Backend root URL (without /api)
            timeout: Default per-request deadline in seconds
            probe_timeout: Deadline for check_service()
            max_retries: Retries after the first attempt (blocking calls and stream restarts)
            retry_delay: Base delay in seconds before the first retry
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> OllamaClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    # -----------------------------------------------------------------------
    # Generation
    # -----------------------------------------------------------------------

    async def generate(self, request: GenerateRequest) -> str:
        """
        Blocking completion.

        Returns:
            Generated text (the `response` field)

        Raises:
            RetriesExhaustedError: Timeout/transport failures on every attempt
            CompletionProtocolError: Malformed reply (not retried)
        """
        data = await self.generate_raw(request)
        text = data.get("response")
        if not isinstance(text, str):
            raise CompletionProtocolError("Ollama returned null response")
        return text

    async def generate_raw(self, request: GenerateRequest) -> dict[str, Any]:
        """Blocking completion returning the full reply (durations, context, ...)."""
        body = request.to_body(stream=False)

        async def attempt() -> dict[str, Any]:
            response = await self._request("POST", "/api/generate", json_body=body)
            return self._json_object(response)

        data = await self._with_retry(attempt, f"generate ({request.model})")
        if data.get("error"):
            raise CompletionProtocolError(f"Backend error: {data['error']}")
        return data

    async def generate_stream(self, request: GenerateRequest) -> AsyncIterator[GenerateChunk]:
        """
        Streaming completion as a lazy sequence of chunks.

        Normal exhaustion of the iterator means the stream completed. A
        timeout/transport failure restarts the stream; chunks of the new
        attempt carry an incremented `attempt`. After the last restart fails,
        RetriesExhaustedError is raised once. Lines that fail to parse are
        skipped. Breaking out of the loop closes the HTTP response.
        """
        body = request.to_body(stream=True)
        description = f"generate stream ({request.model})"

        events = self._stream_events("POST", "/api/generate", body, description)
        async with aclosing(events):
            async for attempt, event in events:
                try:
                    chunk = GenerateChunk.model_validate({**event, "attempt": attempt})
                except ValidationError as e:
                    logger.warning(f"Skipping malformed stream chunk: {e.errors()[0]['msg']}")
                    continue
                yield chunk

    async def pull_model(self, model_name: str) -> AsyncIterator[PullProgress]:
        """
        Pull a model, yielding progress events.

        The final event has done=True and status "Model pull completed".

        Raises:
            RetriesExhaustedError: Pull failed on every attempt
            CompletionProtocolError: Backend reported an error event
        """
        attempt = 1
        events = self._stream_events(
            "POST",
            "/api/pull",
            {"name": model_name},
            f"pull {model_name}",
            timeout=self.timeout * 2,
        )
        async with aclosing(events):
            async for attempt, event in events:
                if event.get("error"):
                    raise CompletionProtocolError(
                        f"Pull of {model_name} failed: {event['error']}"
                    )
                yield PullProgress.from_event(event, attempt=attempt)

        logger.info(f"Model pull completed: {model_name}")
        yield PullProgress(status="Model pull completed", done=True, attempt=attempt)

    # -----------------------------------------------------------------------
    # Model management
    # -----------------------------------------------------------------------

    async def list_models(self) -> list[ModelInfo]:
        """List locally available models (GET /api/tags)."""

        async def attempt() -> dict[str, Any]:
            return self._json_object(await self._request("GET", "/api/tags"))

        data = await self._with_retry(attempt, "list models")
        try:
            return [ModelInfo.model_validate(item) for item in data.get("models") or []]
        except ValidationError as e:
            raise CompletionProtocolError(f"Unexpected /api/tags payload: {e}") from e

    async def show_model(self, model_name: str) -> dict[str, Any]:
        """Model details (POST /api/show)."""

        async def attempt() -> dict[str, Any]:
            response = await self._request("POST", "/api/show", json_body={"name": model_name})
            return self._json_object(response)

        return await self._with_retry(attempt, f"show {model_name}")

    async def copy_model(self, source: str, destination: str) -> None:
        """Copy a model under a new name (POST /api/copy)."""

        async def attempt() -> None:
            await self._request(
                "POST", "/api/copy", json_body={"source": source, "destination": destination}
            )

        await self._with_retry(attempt, f"copy {source} -> {destination}")

    async def delete_model(self, model_name: str) -> None:
        """Delete a model (DELETE /api/delete)."""

        async def attempt() -> None:
            await self._request("DELETE", "/api/delete", json_body={"name": model_name})

        await self._with_retry(attempt, f"delete {model_name}")

    async def check_service(self) -> bool:
        """Single availability probe with the short deadline. Never raises."""
        try:
            await self._request("GET", "/api/tags", timeout=self.probe_timeout)
        except CompletionError as e:
            logger.debug(f"Backend availability probe failed: {e}")
            return False
        return True

    # -----------------------------------------------------------------------
    # Transport helpers
    # -----------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """One attempt under its own deadline, body fully read."""
        deadline = timeout or self.timeout
        url = f"{self.base_url}{path}"

        try:
            async with asyncio.timeout(deadline):
                response = await self._client.request(
                    method, path, json=json_body, timeout=deadline
                )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise CompletionTimeoutError(url, deadline) from e
        except httpx.HTTPError as e:
            raise CompletionTransportError(f"Request to {url} failed: {e}") from e

        self._raise_for_status(response)
        return response

    @asynccontextmanager
    async def _open_stream(
        self, method: str, path: str, json_body: dict[str, Any], deadline: float
    ) -> AsyncIterator[httpx.Response]:
        """Send a streaming request; the deadline covers everything up to the headers."""
        url = f"{self.base_url}{path}"
        request = self._client.build_request(method, path, json=json_body, timeout=deadline)

        try:
            async with asyncio.timeout(deadline):
                response = await self._client.send(request, stream=True)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise CompletionTimeoutError(url, deadline) from e
        except httpx.HTTPError as e:
            raise CompletionTransportError(f"Request to {url} failed: {e}") from e

        try:
            self._raise_for_status(response)
            yield response
        finally:
            await response.aclose()

    async def _stream_events(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any],
        description: str,
        timeout: float | None = None,
    ) -> AsyncIterator[tuple[int, dict[str, Any]]]:
        """Yield (attempt, json_object) pairs, restarting the whole stream on failure."""
        deadline = timeout or self.timeout
        url = f"{self.base_url}{path}"
        total_attempts = self.max_retries + 1
        last_error: CompletionError | None = None

        for attempt in range(1, total_attempts + 1):
            try:
                async with self._open_stream(method, path, json_body, deadline) as response:
                    async for event in iter_ndjson(response.aiter_lines()):
                        yield attempt, event
                return
            except _RETRYABLE as e:
                last_error = e
            except httpx.TimeoutException as e:
                last_error = CompletionTimeoutError(url, deadline)
                last_error.__cause__ = e
            except httpx.HTTPError as e:
                last_error = CompletionTransportError(f"Stream from {url} failed: {e}")
                last_error.__cause__ = e

            if attempt == total_attempts:
                break

            logger.warning(
                f"{description} failed ({last_error}). "
                f"Retrying stream... {total_attempts - attempt} attempts remaining"
            )
            await asyncio.sleep(self.retry_delay)

        raise RetriesExhaustedError(
            f"{description} failed after {total_attempts} attempts: {last_error}",
            attempts=total_attempts,
            last_error=last_error,
        ) from last_error

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Run operation with bounded exponential backoff on timeout/transport failures."""
        total_attempts = self.max_retries + 1
        delay = self.retry_delay
        last_error: CompletionError | None = None

        for attempt in range(1, total_attempts + 1):
            try:
                return await operation()
            except _RETRYABLE as e:
                last_error = e

            if attempt == total_attempts:
                break

            logger.warning(
                f"{description} failed ({last_error}). Retrying in {delay:g}s "
                f"({total_attempts - attempt} attempts remaining)"
            )
            await asyncio.sleep(delay)
            delay *= 2

        raise RetriesExhaustedError(
            f"{description} failed after {total_attempts} attempts: {last_error}",
            attempts=total_attempts,
            last_error=last_error,
        ) from last_error

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_error:
            raise CompletionTransportError(
                f"HTTP error! status: {response.status_code}",
                status_code=response.status_code,
            )

    @staticmethod
    def _json_object(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise CompletionProtocolError(f"Response is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise CompletionProtocolError(
                f"Response is not a JSON object, got {type(data).__name__}"
            )
        return data


__all__ = [
    "OllamaClient",
    "DEFAULT_BASE_URL",
    "DEFAULT_TIMEOUT",
    "PROBE_TIMEOUT",
    "MAX_RETRIES",
    "RETRY_DELAY",
]
