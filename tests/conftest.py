"""Shared test configuration for appflow-mcp tests.

Provides:
- A repository with two apps and a two-node workflow
- Node and workflow executors wired to a scripted FakeBackend
- An OllamaClient factory backed by httpx.MockTransport
- An Ollama-like mock HTTP server (pytest-httpserver)
"""

import json
from collections.abc import AsyncIterator, Callable

import httpx
import pytest
from fakes import FakeBackend, ndjson
from pytest_httpserver import HTTPServer
from werkzeug.wrappers import Request, Response

from appflow_mcp.engine import (
    AppConfig,
    NodeExecutor,
    OllamaClient,
    Workflow,
    WorkflowExecutor,
    WorkflowNode,
    WorkflowRepository,
)

MockHandler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def code_app() -> AppConfig:
    return AppConfig(
        app_name="Code Helper",
        model="coder",
        prompt="code_assistant",
        default_temperature=0.2,
        max_tokens=256,
        use_system_prompt=True,
        system_prompt="Answer with code only.",
    )


@pytest.fixture
def writing_app() -> AppConfig:
    return AppConfig(app_name="Writing Helper", model="writer", prompt="writing_assistant")


@pytest.fixture
def review_workflow() -> Workflow:
    # Declared out of order on purpose: execution follows position
    return Workflow(
        id="review",
        name="Review then polish",
        nodes=[
            WorkflowNode(id="polish", app_name="Writing Helper", position=1),
            WorkflowNode(id="draft", app_name="Code Helper", position=0),
        ],
    )


@pytest.fixture
def repository(code_app, writing_app, review_workflow) -> WorkflowRepository:
    repo = WorkflowRepository()
    repo.register_app(code_app)
    repo.register_app(writing_app)
    repo.register_workflow(review_workflow)
    return repo


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def node_executor(backend, repository) -> NodeExecutor:
    return NodeExecutor(backend, repository, max_retries=3, retry_delay=0)


@pytest.fixture
def workflow_executor(node_executor, repository) -> WorkflowExecutor:
    return WorkflowExecutor(node_executor, repository)


@pytest.fixture
async def make_client() -> AsyncIterator[Callable[..., OllamaClient]]:
    """Factory for OllamaClient instances routed through httpx.MockTransport.

    Retry delays default to zero; every client is closed after the test.
    """
    clients: list[OllamaClient] = []

    def _make(handler: MockHandler, **kwargs) -> OllamaClient:
        kwargs.setdefault("retry_delay", 0)
        client = OllamaClient(
            "http://ollama.test", transport=httpx.MockTransport(handler), **kwargs
        )
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.aclose()


@pytest.fixture
def ollama_server(httpserver: HTTPServer) -> HTTPServer:
    """
    Local HTTP server speaking a subset of the Ollama API.

    - GET /api/tags: two models
    - POST /api/generate: echoes the prompt (blocking or NDJSON stream)
    - POST /api/pull: three progress events
    """

    def tags_handler(request: Request) -> Response:
        data = {
            "models": [
                {
                    "name": "llama2:7b",
                    "modified_at": "2024-01-01T00:00:00Z",
                    "size": 3825819519,
                    "digest": "fe938a131f40",
                    "details": {"family": "llama", "parameter_size": "7B"},
                },
                {"name": "codellama:7b", "size": 3825910662, "digest": "8fdf8f752f6e"},
            ]
        }
        return Response(json.dumps(data), content_type="application/json")

    def generate_handler(request: Request) -> Response:
        body = request.get_json()
        text = f"echo: {body['prompt']}"
        if body.get("stream"):
            words = text.split(" ")
            chunks = [{"response": word + " ", "done": False} for word in words[:-1]]
            chunks.append({"response": words[-1], "done": False})
            chunks.append({"response": "", "done": True})
            return Response(ndjson(*chunks), content_type="application/x-ndjson")
        data = {"model": body["model"], "response": text, "done": True}
        return Response(json.dumps(data), content_type="application/json")

    def pull_handler(request: Request) -> Response:
        events = ndjson(
            {"status": "pulling manifest"},
            {"status": "downloading", "completed": 512, "total": 1024},
            {"status": "success"},
        )
        return Response(events, content_type="application/x-ndjson")

    httpserver.expect_request("/api/tags", method="GET").respond_with_handler(tags_handler)
    httpserver.expect_request("/api/generate", method="POST").respond_with_handler(
        generate_handler
    )
    httpserver.expect_request("/api/pull", method="POST").respond_with_handler(pull_handler)
    return httpserver


@pytest.fixture
def ollama_url(ollama_server: HTTPServer) -> str:
    return ollama_server.url_for("/").rstrip("/")
