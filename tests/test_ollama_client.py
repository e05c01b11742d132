"""Tests for OllamaClient.

Tests cover:
- Blocking generate: request body, retries with exponential backoff, error kinds
- Streaming generate: chunk framing, restart after mid-stream failure, attempt tags
- Model pull progress and model management endpoints
- Availability probe
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fakes import ndjson

from appflow_mcp.engine import (
    CompletionProtocolError,
    CompletionTimeoutError,
    CompletionTransportError,
    GenerateOptions,
    GenerateRequest,
    OllamaClient,
    RetriesExhaustedError,
)


def make_request(**kwargs) -> GenerateRequest:
    kwargs.setdefault("model", "llama2:7b")
    kwargs.setdefault("prompt", "Why is the sky blue?")
    return GenerateRequest(**kwargs)


class TestGenerate:
    @pytest.mark.asyncio
    async def test_returns_response_text(self, make_client):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"response": "Rayleigh scattering", "done": True})

        client = make_client(handler)
        request = make_request(options=GenerateOptions(temperature=0.3, num_predict=64))

        text = await client.generate(request)

        assert text == "Rayleigh scattering"
        assert bodies == [
            {
                "model": "llama2:7b",
                "prompt": "Why is the sky blue?",
                "options": {"temperature": 0.3, "num_predict": 64},
                "stream": False,
            }
        ]

    @pytest.mark.asyncio
    async def test_system_prompt_sent_when_present(self, make_client):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"response": "ok"})

        client = make_client(handler)
        await client.generate(make_request(system="Be brief."))

        assert bodies[0]["system"] == "Be brief."

    @pytest.mark.asyncio
    async def test_retries_transport_failures_with_backoff(self, make_client):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"response": "recovered"})

        client = make_client(handler, max_retries=3, retry_delay=1.0)

        with patch("appflow_mcp.engine.ollama_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            text = await client.generate(make_request())

        assert text == "recovered"
        assert calls == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted_after_max_attempts(self, make_client):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler, max_retries=3, retry_delay=0.5)

        with patch("appflow_mcp.engine.ollama_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(RetriesExhaustedError) as exc_info:
                await client.generate(make_request())

        assert calls == 4
        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.last_error, CompletionTransportError)
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_http_error_status_is_transport_failure(self, make_client):
        client = make_client(lambda request: httpx.Response(404), max_retries=0)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await client.generate(make_request())

        last_error = exc_info.value.last_error
        assert isinstance(last_error, CompletionTransportError)
        assert last_error.status_code == 404
        assert str(last_error) == "HTTP error! status: 404"

    @pytest.mark.asyncio
    async def test_null_response_is_protocol_failure_and_not_retried(self, make_client):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"response": None, "done": True})

        client = make_client(handler)

        with pytest.raises(CompletionProtocolError, match="null response"):
            await client.generate(make_request())
        assert calls == 1

    @pytest.mark.asyncio
    async def test_non_json_body_is_protocol_failure(self, make_client):
        client = make_client(lambda request: httpx.Response(200, text="<html>proxy</html>"))

        with pytest.raises(CompletionProtocolError, match="not valid JSON"):
            await client.generate(make_request())

    @pytest.mark.asyncio
    async def test_deadline_exceeded_is_timeout_failure(self, make_client):
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"response": "too late"})

        client = make_client(handler, timeout=0.05, max_retries=0)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await client.generate(make_request())

        assert isinstance(exc_info.value.last_error, CompletionTimeoutError)
        assert exc_info.value.attempts == 1


class TestGenerateStream:
    @pytest.mark.asyncio
    async def test_chunks_in_order(self, make_client):
        body = ndjson(
            {"response": "The", "done": False},
            {"response": " sky", "done": False},
            {"response": "", "done": True, "eval_count": 2},
        )

        async def split_body():
            # Deliberately split in the middle of a JSON object
            yield body[:20]
            yield body[20:]

        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(200, content=split_body())

        client = make_client(handler)

        chunks = [chunk async for chunk in client.generate_stream(make_request())]

        assert [c.response for c in chunks] == ["The", " sky", ""]
        assert [c.done for c in chunks] == [False, False, True]
        assert {c.attempt for c in chunks} == {1}

    @pytest.mark.asyncio
    async def test_restart_after_mid_stream_failure(self, make_client):
        calls = 0

        async def broken_body():
            yield ndjson({"response": "Hel"})
            raise httpx.ReadError("connection reset")

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(200, content=broken_body())
            return httpx.Response(
                200, content=ndjson({"response": "Hello"}, {"response": "", "done": True})
            )

        client = make_client(handler)

        chunks = [chunk async for chunk in client.generate_stream(make_request())]

        assert calls == 2
        assert [(c.response, c.attempt) for c in chunks] == [("Hel", 1), ("Hello", 2), ("", 2)]

    @pytest.mark.asyncio
    async def test_retries_exhausted_raised_once(self, make_client):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(500)

        client = make_client(handler, max_retries=2)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            async for _chunk in client.generate_stream(make_request()):
                pass

        assert calls == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error.status_code == 500

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self, make_client):
        body = b'{"response":"a"}\n{oops\n{"response":"b","done":true}\n'
        client = make_client(lambda request: httpx.Response(200, content=body))

        chunks = [chunk async for chunk in client.generate_stream(make_request())]

        assert [c.response for c in chunks] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_against_http_server(self, ollama_url):
        async with OllamaClient(ollama_url, retry_delay=0) as client:
            text = "".join(
                [chunk.response async for chunk in client.generate_stream(make_request(prompt="hi there"))]
            )

        assert text == "echo: hi there"


class TestPullModel:
    @pytest.mark.asyncio
    async def test_progress_percentage(self, make_client):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(
                200,
                content=ndjson(
                    {"status": "pulling manifest"},
                    {"status": "downloading", "completed": 50, "total": 200},
                    {"status": "downloading", "completed": 0, "total": 0},
                    {"status": "success"},
                ),
            )

        client = make_client(handler)

        events = [progress async for progress in client.pull_model("llama2:7b")]

        assert bodies == [{"name": "llama2:7b"}]
        assert [e.percentage for e in events] == [None, 25.0, None, None, None]
        assert events[1].completed_bytes == 50
        assert events[1].total_bytes == 200
        assert events[-1].done is True
        assert events[-1].status == "Model pull completed"

    @pytest.mark.asyncio
    async def test_error_event_raises(self, make_client):
        client = make_client(
            lambda request: httpx.Response(200, content=ndjson({"error": "pull model manifest: file does not exist"}))
        )

        with pytest.raises(CompletionProtocolError, match="does not exist"):
            async for _progress in client.pull_model("nope:1b"):
                pass

    @pytest.mark.asyncio
    async def test_against_http_server(self, ollama_url):
        async with OllamaClient(ollama_url) as client:
            events = [progress async for progress in client.pull_model("llama2:7b")]

        assert [e.status for e in events] == [
            "pulling manifest",
            "downloading",
            "success",
            "Model pull completed",
        ]
        assert events[1].percentage == 50.0


class TestModelManagement:
    @pytest.mark.asyncio
    async def test_list_models(self, ollama_url):
        async with OllamaClient(ollama_url) as client:
            models = await client.list_models()

        assert [m.name for m in models] == ["llama2:7b", "codellama:7b"]
        assert models[0].details.parameter_size == "7B"
        assert models[1].details is None

    @pytest.mark.asyncio
    async def test_delete_model(self, httpserver):
        httpserver.expect_request(
            "/api/delete", method="DELETE", json={"name": "llama2:7b"}
        ).respond_with_data("")

        async with OllamaClient(httpserver.url_for("/").rstrip("/")) as client:
            await client.delete_model("llama2:7b")

        httpserver.check_assertions()

    @pytest.mark.asyncio
    async def test_copy_and_show_model(self, make_client):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            if request.url.path == "/api/show":
                return httpx.Response(200, json={"modelfile": "FROM llama2", "parameters": ""})
            return httpx.Response(200)

        client = make_client(handler)

        await client.copy_model("llama2:7b", "llama2-backup")
        info = await client.show_model("llama2-backup")

        assert seen == [
            ("/api/copy", {"source": "llama2:7b", "destination": "llama2-backup"}),
            ("/api/show", {"name": "llama2-backup"}),
        ]
        assert info["modelfile"] == "FROM llama2"


class TestCheckService:
    @pytest.mark.asyncio
    async def test_available(self, ollama_url):
        async with OllamaClient(ollama_url) as client:
            assert await client.check_service() is True

    @pytest.mark.asyncio
    async def test_unavailable_never_raises(self, make_client):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler, max_retries=3)

        assert await client.check_service() is False
        assert calls == 1

    @pytest.mark.asyncio
    async def test_probe_uses_short_deadline(self, make_client):
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"models": []})

        client = make_client(handler, timeout=30, probe_timeout=0.05)

        assert await client.check_service() is False
