"""Tests for MCP tool functions (called directly with a mocked request context)."""

import asyncio
import json
import logging
from datetime import datetime
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest
from fakes import FakeClock, FakeSleep, GatedBackend, RecordingExecutor, ndjson, wait_until

from appflow_mcp import tools
from appflow_mcp.context import AppContext
from appflow_mcp.engine import (
    AppflowConfig,
    CompletionTransportError,
    ConfigLoader,
    NodeExecutor,
    ScheduleConfig,
    Scheduler,
    WorkflowExecutor,
)
from appflow_mcp.server import app_lifespan, build_app_context


def backend_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/api/tags":
        return httpx.Response(200, json={"models": [{"name": "llama2:7b", "size": 1}]})
    if path == "/api/pull":
        return httpx.Response(
            200,
            content=ndjson(
                {"status": "downloading", "completed": 25, "total": 100},
                {"status": "downloading", "completed": 100, "total": 100},
                {"status": "success"},
            ),
        )
    if path == "/api/delete":
        return httpx.Response(404)
    if path == "/api/generate":
        body = json.loads(request.content)
        return httpx.Response(
            200,
            content=ndjson({"response": f"re: {body['prompt']}"}, {"response": "", "done": True}),
        )
    return httpx.Response(404)


@pytest.fixture
async def app_context(repository, make_client, backend):
    client = make_client(backend_handler, max_retries=0)
    workflow_executor = WorkflowExecutor(
        NodeExecutor(backend, repository, max_retries=1, retry_delay=0), repository
    )
    app_ctx = AppContext(
        config=AppflowConfig(),
        repository=repository,
        client=client,
        workflow_executor=workflow_executor,
        scheduler=Scheduler(workflow_executor),
    )
    yield app_ctx
    await app_ctx.scheduler.stop_all()


@pytest.fixture
def ctx(app_context):
    mock_ctx = Mock()
    mock_ctx.request_context.lifespan_context = app_context
    mock_ctx.report_progress = AsyncMock()
    return mock_ctx


class TestWorkflowTools:
    @pytest.mark.asyncio
    async def test_execute_workflow_sync(self, ctx):
        result = await tools.execute_workflow("review", "x", ctx=ctx)

        assert result["status"] == "success"
        assert result["final_output"] == "writer(coder(x))"
        assert len(result["execution"]["nodes"]) == 2

    @pytest.mark.asyncio
    async def test_execute_unknown_workflow(self, ctx):
        result = await tools.execute_workflow("nope", "x", ctx=ctx)

        assert result["status"] == "failure"
        assert result["available_workflows"] == ["review"]

    @pytest.mark.asyncio
    async def test_execute_workflow_node_failure(self, ctx, backend):
        failure = CompletionTransportError("HTTP error! status: 500", status_code=500)
        backend.results = [failure, failure]

        result = await tools.execute_workflow("review", "x", ctx=ctx)

        assert result["status"] == "failure"
        assert result["failed_node"] == "draft"
        assert result["nodes"][0]["state"] == "error"
        assert result["nodes"][1]["state"] == "pending"

    @pytest.mark.asyncio
    async def test_execute_async_then_poll_status(self, ctx, app_context):
        started = await tools.execute_workflow("review", "x", mode="async", ctx=ctx)
        assert started["status"] == "started"

        await wait_until(lambda: not app_context.background_runs)
        status = await tools.get_execution_status("review", ctx=ctx)

        assert status["executing"] is False
        assert status["final_output"] == "writer(coder(x))"
        assert [n["state"] for n in status["nodes"]] == ["completed", "completed"]

    @pytest.mark.asyncio
    async def test_second_async_start_in_same_tick_is_logged_as_skipped(
        self, ctx, app_context, repository, caplog
    ):
        gated = GatedBackend()
        app_context.workflow_executor = WorkflowExecutor(
            NodeExecutor(gated, repository, retry_delay=0), repository
        )

        with caplog.at_level(logging.WARNING, logger="appflow_mcp.tools"):
            first = await tools.execute_workflow("review", "a", mode="async", ctx=ctx)
            second = await tools.execute_workflow("review", "b", mode="async", ctx=ctx)
            await wait_until(lambda: len(app_context.background_runs) == 1)
            gated.release()
            await wait_until(lambda: not app_context.background_runs)

        assert first["status"] == second["status"] == "started"
        assert "Background run of workflow 'review' skipped" in caplog.text
        assert [run.input for run in repository.get_history("review")] == ["a"]

    @pytest.mark.asyncio
    async def test_history_and_list(self, ctx):
        await tools.execute_workflow("review", "first", ctx=ctx)
        await tools.execute_workflow("review", "second", ctx=ctx)

        history = await tools.get_workflow_history("review", ctx=ctx)
        markdown = await tools.get_workflow_history("review", format="markdown", ctx=ctx)
        workflows = await tools.list_workflows(ctx=ctx)

        assert [run["input"] for run in history["runs"]] == ["second", "first"]
        assert "## History: review (2 runs)" in markdown
        assert workflows[0]["id"] == "review"
        assert [n["id"] for n in workflows[0]["nodes"]] == ["draft", "polish"]


class TestScheduleTools:
    @pytest.mark.asyncio
    async def test_start_list_stop(self, ctx):
        started = await tools.start_schedule("review", "tick", type="interval", interval=30, ctx=ctx)
        schedules = await tools.list_schedules(ctx=ctx)
        stopped = await tools.stop_schedule("review", ctx=ctx)
        stopped_again = await tools.stop_schedule("review", ctx=ctx)

        assert started["status"] == "scheduled"
        assert schedules[0]["workflow_id"] == "review"
        assert stopped["status"] == "stopped"
        assert stopped_again["status"] == "not_scheduled"

    @pytest.mark.asyncio
    async def test_incomplete_schedule_rejected(self, ctx):
        result = await tools.start_schedule("review", "tick", type="monthly", time="09:00", ctx=ctx)

        assert result["status"] == "failure"
        assert "day_of_month" in result["error"]


class TestModelTools:
    @pytest.mark.asyncio
    async def test_list_models(self, ctx):
        result = await tools.list_models(ctx=ctx)

        assert result["models"][0]["name"] == "llama2:7b"

    @pytest.mark.asyncio
    async def test_pull_model_reports_progress(self, ctx):
        result = await tools.pull_model("llama2:7b", ctx=ctx)

        assert result == {"status": "success", "model": "llama2:7b", "message": "Model pull completed"}
        assert [c.args for c in ctx.report_progress.await_args_list] == [(25.0, 100.0), (100.0, 100.0)]

    @pytest.mark.asyncio
    async def test_delete_model_failure(self, ctx):
        result = await tools.delete_model("ghost", ctx=ctx)

        assert result["status"] == "failure"
        assert "404" in result["error"]

    @pytest.mark.asyncio
    async def test_check_backend(self, ctx):
        result = await tools.check_backend(ctx=ctx)

        assert result == {"available": True, "base_url": "http://ollama.test"}


class TestChatTool:
    @pytest.mark.asyncio
    async def test_chat(self, ctx):
        result = await tools.chat("Code Helper", "hello", ctx=ctx)

        assert result["reply"] == "re: hello"
        assert result["history_length"] == 2

    @pytest.mark.asyncio
    async def test_chat_unknown_app(self, ctx):
        result = await tools.chat("Nope", "hello", ctx=ctx)

        assert result == {"status": "failure", "error": "App Nope not found", "app_name": "Nope"}


@pytest.mark.asyncio
async def test_build_app_context_from_config(tmp_path, monkeypatch):
    monkeypatch.delenv("APPFLOW_BACKEND_URL", raising=False)
    path = tmp_path / "config.yml"
    path.write_text(
        "backend: {base_url: 'http://gpu-box:11434'}\n"
        "node: {max_retries: 5, retry_delay: 0.1}\n"
        "prompts: [{name: p, prompt_template: '{user_input}'}]\n"
        "apps: [{app_name: A, model: m, prompt: p}]\n"
        "workflows: [{id: w, name: W, nodes: [{id: n, app_name: A, position: 0}]}]\n",
        encoding="utf-8",
    )

    app_ctx = build_app_context(ConfigLoader(path))
    try:
        assert app_ctx.client.base_url == "http://gpu-box:11434"
        assert app_ctx.repository.get_workflow("w").nodes[0].app_name == "A"
        assert app_ctx.create_chat_service("A").app.model == "m"
    finally:
        await app_ctx.client.aclose()


@pytest.mark.asyncio
async def test_lifespan_shutdown_cancels_scheduled_runs(make_client, repository, backend):
    executor = RecordingExecutor()
    executor.gate = asyncio.Event()
    clock = FakeClock(datetime(2024, 1, 10, 8, 0))
    scheduler = Scheduler(executor, clock=clock, sleep=FakeSleep(clock, allow=1))
    app_ctx = AppContext(
        config=AppflowConfig(),
        repository=repository,
        client=make_client(backend_handler),
        workflow_executor=WorkflowExecutor(NodeExecutor(backend, repository), repository),
        scheduler=scheduler,
    )

    with patch("appflow_mcp.server.build_app_context", return_value=app_ctx):
        async with app_lifespan(Mock()) as lifespan_ctx:
            lifespan_ctx.scheduler.start(
                repository.get_workflow("review"),
                "tick",
                ScheduleConfig(type="interval", interval=1),
            )
            await wait_until(lambda: scheduler.running == 1)

    assert scheduler.running == 0
    assert executor.completed == 0
    assert not scheduler.is_armed("review")
