"""MCP tool implementations for app workflows.

This module contains all MCP tool function implementations that expose
workflow execution, scheduling, chat and model management via the MCP protocol.

Following official Anthropic MCP Python SDK patterns:
- Tool functions decorated with @mcp.tool()
- Flat parameter signatures with Annotated types for validation
- Async functions for all tools
- Clear docstrings (become tool descriptions)

Engine errors never escape a tool; they are returned as
{"status": "failure", "error": ...}.
"""

import asyncio
import logging
from typing import Annotated, Any, Literal

from mcp.types import ToolAnnotations
from pydantic import Field, ValidationError

from .context import AppContext, AppContextType
from .engine import AppflowError, ScheduleConfig, Workflow
from .engine.exceptions import NodeExecutionError, WorkflowNotFoundError
from .formatting import (
    execution_to_dict,
    format_history_markdown,
    format_workflow_list_markdown,
    statuses_to_list,
    workflow_to_dict,
)
from .server import mcp

logger = logging.getLogger(__name__)


def _failure(error: str, **extra: Any) -> dict[str, Any]:
    return {"status": "failure", "error": error, **extra}


def _workflow_not_found(e: WorkflowNotFoundError) -> dict[str, Any]:
    return _failure(str(e), available_workflows=e.available)


async def _run_in_background(app_ctx: AppContext, workflow: Workflow, input_text: str) -> None:
    try:
        execution = await app_ctx.workflow_executor.execute_workflow(workflow, input_text)
    except AppflowError as e:
        logger.error(f"Background run of workflow '{workflow.id}' failed: {e}")
        return

    if execution is None:
        logger.warning(f"Background run of workflow '{workflow.id}' skipped: already executing")


# =============================================================================
# Workflow Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Execute Workflow",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=True,  # Calls the generation backend
    )
)
async def execute_workflow(
    workflow_id: Annotated[
        str,
        Field(
            description="Workflow id (use list_workflows() to discover)",
            min_length=1,
            max_length=200,
        ),
    ],
    input: Annotated[  # noqa: A002
        str,
        Field(description="Input text for the first node"),
    ],
    mode: Annotated[
        Literal["sync", "async"],
        Field(description="sync=wait for result, async=start and poll get_execution_status()"),
    ] = "sync",
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Run a workflow on input text. Required: workflow_id, input. Optional: mode (sync|async)."""
    app_ctx = ctx.request_context.lifespan_context
    executor = app_ctx.workflow_executor

    try:
        workflow = app_ctx.repository.get_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        return _workflow_not_found(e)

    if executor.is_executing(workflow_id):
        return {
            "status": "skipped",
            "workflow_id": workflow_id,
            "message": "Workflow is already executing. Use get_execution_status() to follow it.",
        }

    if mode == "async":
        task = asyncio.create_task(
            _run_in_background(app_ctx, workflow, input), name=f"appflow-run:{workflow_id}"
        )
        app_ctx.track(task)
        return {
            "status": "started",
            "workflow_id": workflow_id,
            "message": "Workflow started. Use get_execution_status() to check progress.",
        }

    try:
        execution = await executor.execute_workflow(workflow, input)
    except NodeExecutionError as e:
        return _failure(
            str(e),
            workflow_id=workflow_id,
            failed_node=e.node_id,
            nodes=statuses_to_list(executor.get_statuses(workflow_id)),
        )
    except AppflowError as e:
        return _failure(
            str(e),
            workflow_id=workflow_id,
            nodes=statuses_to_list(executor.get_statuses(workflow_id)),
        )

    if execution is None:
        return {
            "status": "skipped",
            "workflow_id": workflow_id,
            "message": "Workflow is already executing.",
        }

    return {
        "status": "success",
        "workflow_id": workflow_id,
        "final_output": execution.final_output,
        "execution": execution_to_dict(execution),
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Execution Status",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_execution_status(
    workflow_id: Annotated[str, Field(description="Workflow id", min_length=1, max_length=200)],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Per-node status of the latest or current run. Required: workflow_id."""
    app_ctx = ctx.request_context.lifespan_context
    executor = app_ctx.workflow_executor

    try:
        app_ctx.repository.get_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        return _workflow_not_found(e)

    return {
        "workflow_id": workflow_id,
        "executing": executor.is_executing(workflow_id),
        "nodes": statuses_to_list(executor.get_statuses(workflow_id)),
        "final_output": executor.get_final_output(workflow_id),
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Workflow History",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_workflow_history(
    workflow_id: Annotated[str, Field(description="Workflow id", min_length=1, max_length=200)],
    limit: Annotated[
        int,
        Field(description="Maximum runs to return (most recent first)", ge=1, le=1000),
    ] = 20,
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Completed runs of a workflow, most recent first. Required: workflow_id."""
    app_ctx = ctx.request_context.lifespan_context
    repository = app_ctx.repository

    try:
        repository.get_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        return _workflow_not_found(e)

    history = repository.get_history(workflow_id, limit=limit)
    if format == "markdown":
        return format_history_markdown(workflow_id, history)
    return {
        "workflow_id": workflow_id,
        "runs": [execution_to_dict(execution) for execution in history],
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Workflows",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_workflows(
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> list[dict[str, Any]] | str:
    """List configured workflows (pinned first). Optional: format (json|markdown)."""
    app_ctx = ctx.request_context.lifespan_context
    workflows = app_ctx.repository.list_workflows()

    if format == "markdown":
        return format_workflow_list_markdown(workflows)
    return [workflow_to_dict(workflow) for workflow in workflows]


# =============================================================================
# Schedule Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Start Schedule",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,  # Replaces any existing schedule for the workflow
        openWorldHint=True,
    )
)
async def start_schedule(
    workflow_id: Annotated[str, Field(description="Workflow id", min_length=1, max_length=200)],
    input: Annotated[str, Field(description="Input text for every scheduled run")],  # noqa: A002
    type: Annotated[  # noqa: A002
        Literal["interval", "daily", "weekly", "monthly"],
        Field(description="Schedule type"),
    ] = "interval",
    interval: Annotated[
        int | None, Field(description="Minutes between runs (interval)", ge=1)
    ] = None,
    time: Annotated[
        str | None, Field(description="Time of day HH:MM (daily/weekly/monthly)")
    ] = None,
    day_of_week: Annotated[
        int | None, Field(description="0=Sunday .. 6=Saturday (weekly)", ge=0, le=6)
    ] = None,
    day_of_month: Annotated[
        int | None, Field(description="1-31, clamped to the month's last day (monthly)", ge=1, le=31)
    ] = None,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Arm a recurring schedule for a workflow. Required: workflow_id, input, type plus its fields."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        workflow = app_ctx.repository.get_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        return _workflow_not_found(e)

    try:
        config = ScheduleConfig(
            type=type,
            interval=interval,
            time=time,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
        )
        next_fire_time = app_ctx.scheduler.start(workflow, input, config)
    except ValidationError as e:
        return _failure(f"Invalid schedule: {e}")
    except AppflowError as e:
        return _failure(str(e))

    return {
        "status": "scheduled",
        "workflow_id": workflow_id,
        "next_fire_time": next_fire_time.isoformat(),
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="Stop Schedule",
        readOnlyHint=False,
        destructiveHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def stop_schedule(
    workflow_id: Annotated[str, Field(description="Workflow id", min_length=1, max_length=200)],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Stop a workflow's schedule (a run already in flight completes). Required: workflow_id."""
    app_ctx = ctx.request_context.lifespan_context

    if app_ctx.scheduler.stop(workflow_id):
        return {"status": "stopped", "workflow_id": workflow_id}
    return {
        "status": "not_scheduled",
        "workflow_id": workflow_id,
        "message": f"No schedule armed for workflow '{workflow_id}'",
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Schedules",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_schedules(*, ctx: AppContextType) -> list[dict[str, Any]]:
    """List armed schedules with their next fire times."""
    app_ctx = ctx.request_context.lifespan_context
    return app_ctx.scheduler.list_schedules()


# =============================================================================
# Model Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Models",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
async def list_models(*, ctx: AppContextType) -> dict[str, Any]:
    """List models available on the generation backend."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        models = await app_ctx.client.list_models()
    except AppflowError as e:
        return _failure(str(e))

    return {
        "status": "success",
        "models": [model.model_dump(mode="json", exclude_none=True) for model in models],
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="Pull Model",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,  # Downloads from the model registry
    )
)
async def pull_model(
    model: Annotated[str, Field(description="Model name, e.g. llama2:7b", min_length=1)],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Download a model to the backend, reporting progress. Required: model."""
    app_ctx = ctx.request_context.lifespan_context

    last_status = ""
    try:
        async for progress in app_ctx.client.pull_model(model):
            last_status = progress.status
            if progress.percentage is not None:
                await ctx.report_progress(progress.percentage, 100.0)
    except AppflowError as e:
        return _failure(str(e), model=model, last_status=last_status)

    return {"status": "success", "model": model, "message": last_status}


@mcp.tool(
    annotations=ToolAnnotations(
        title="Delete Model",
        readOnlyHint=False,
        destructiveHint=True,
        idempotentHint=True,
        openWorldHint=True,
    )
)
async def delete_model(
    model: Annotated[str, Field(description="Model name to delete", min_length=1)],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Delete a model from the backend. Required: model."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        await app_ctx.client.delete_model(model)
    except AppflowError as e:
        return _failure(str(e), model=model)

    return {"status": "success", "model": model}


@mcp.tool(
    annotations=ToolAnnotations(
        title="Check Backend",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
    )
)
async def check_backend(*, ctx: AppContextType) -> dict[str, Any]:
    """Check whether the generation backend is reachable."""
    app_ctx = ctx.request_context.lifespan_context
    available = await app_ctx.client.check_service()
    return {"available": available, "base_url": app_ctx.client.base_url}


# =============================================================================
# Chat Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Chat",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=True,
    )
)
async def chat(
    app_name: Annotated[str, Field(description="App to chat with", min_length=1)],
    message: Annotated[str, Field(description="User message")],
    clear_history: Annotated[
        bool, Field(description="Clear the app's chat history before sending")
    ] = False,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Send a message to an app and return its reply. Required: app_name, message."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        service = app_ctx.create_chat_service(app_name)
        if clear_history:
            service.clear_history()
        reply = await service.reply(message)
    except AppflowError as e:
        return _failure(str(e), app_name=app_name)

    return {
        "status": "success",
        "app_name": app_name,
        "reply": reply,
        "history_length": len(service.history),
    }
