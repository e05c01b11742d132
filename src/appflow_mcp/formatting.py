"""Shared formatting utilities for MCP tool responses.

Markdown output is human-readable; JSON output (plain dicts) is for
programmatic access.
"""

from datetime import datetime
from typing import Any

from .engine import ExecutionStatus, Workflow, WorkflowExecution

# =============================================================================
# JSON Formatting Utilities
# =============================================================================


def workflow_to_dict(workflow: Workflow) -> dict[str, Any]:
    return {
        "id": workflow.id,
        "name": workflow.name,
        "is_pinned": workflow.is_pinned,
        "nodes": [
            {"id": node.id, "app_name": node.app_name, "position": node.position}
            for node in workflow.ordered_nodes
        ],
    }


def statuses_to_list(statuses: list[ExecutionStatus]) -> list[dict[str, Any]]:
    return [status.model_dump(mode="json", exclude_none=True) for status in statuses]


def execution_to_dict(execution: WorkflowExecution) -> dict[str, Any]:
    return execution.model_dump(mode="json")


# =============================================================================
# Markdown Formatting Utilities
# =============================================================================


def format_workflow_list_markdown(workflows: list[Workflow]) -> str:
    """Format workflow list as markdown.

    Args:
        workflows: Workflows in display order (pinned first)

    Returns:
        Markdown-formatted workflow list with headers
    """
    if not workflows:
        return "No workflows configured"

    lines = [f"## Available Workflows ({len(workflows)})", ""]
    for workflow in workflows:
        pin = " (pinned)" if workflow.is_pinned else ""
        chain = " -> ".join(node.app_name for node in workflow.ordered_nodes) or "(empty)"
        lines.append(f"- **{workflow.id}**{pin}: {workflow.name} [{chain}]")
    return "\n".join(lines)


def format_history_markdown(workflow_id: str, history: list[WorkflowExecution]) -> str:
    """Format execution history (most recent first) as markdown.

    Args:
        workflow_id: Workflow the history belongs to
        history: Completed executions, most recent first

    Returns:
        Markdown-formatted history with one section per run
    """
    if not history:
        return f"No completed runs for workflow: {workflow_id}"

    lines = [f"## History: {workflow_id} ({len(history)} runs)", ""]
    for execution in history:
        started = datetime.fromtimestamp(execution.timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")
        lines.append(f"### {started}")
        lines.append(f"- **Input**: {execution.input}")
        for record in execution.nodes:
            lines.append(f"- **{record.node_id}**: {record.output}")
        lines.append(f"- **Final Output**: {execution.final_output}")
        lines.append("")
    return "\n".join(lines)


__all__ = [
    "workflow_to_dict",
    "statuses_to_list",
    "execution_to_dict",
    "format_workflow_list_markdown",
    "format_history_markdown",
]
