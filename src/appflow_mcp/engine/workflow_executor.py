"""
Sequential workflow orchestration.

Runs a workflow's nodes strictly in position order, feeding each node's output
into the next node's input, and records a WorkflowExecution in history when
(and only when) every node completed.

Concurrency:
- Single-flight per workflow: a second execute_workflow() call while a run of
  the same workflow is active returns None immediately (not queued).
- The in-flight flag is set before the first suspension point and cleared in
  a finally block on every exit path.
- Status lists are mutated only on the event loop thread; readers may inspect
  them between suspension points without locking.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from .exceptions import AppflowError
from .models import ExecutionStatus, NodeExecutionRecord, Workflow, WorkflowExecution, now_ms
from .node_executor import NodeExecutor

logger = logging.getLogger(__name__)

StatusSink = Callable[[str, list[ExecutionStatus]], None]


class HistoryStore(Protocol):
    def add_history(self, workflow_id: str, execution: WorkflowExecution) -> None: ...


class WorkflowExecutor:
    """
    Orchestrates one run of a linear workflow.

    Usage:
        executor = WorkflowExecutor(NodeExecutor(client, repository), repository)
        execution = await executor.execute_workflow(workflow, "input text")
        if execution is None:
            ...  # another run of this workflow was already in flight

    Failure semantics:
        If a node fails terminally the run aborts, no history entry is written,
        the final output stays unset, and the node's error propagates.
    """

    def __init__(
        self,
        node_executor: NodeExecutor,
        history: HistoryStore,
        status_sink: StatusSink | None = None,
    ):
        """
        Initialize workflow executor.

        Args:
            node_executor: Executes individual nodes
            history: Receives completed executions (WorkflowRepository in production)
            status_sink: Optional callback receiving (workflow_id, statuses) on every change
        """
        self._node_executor = node_executor
        self._history = history
        self._status_sink = status_sink
        self._executing: set[str] = set()
        self._statuses: dict[str, list[ExecutionStatus]] = {}
        self._final_outputs: dict[str, str | None] = {}

    def is_executing(self, workflow_id: str) -> bool:
        return workflow_id in self._executing

    def get_statuses(self, workflow_id: str) -> list[ExecutionStatus]:
        """Statuses of the latest (or current) run, in node order."""
        return self._statuses.get(workflow_id, [])

    def get_final_output(self, workflow_id: str) -> str | None:
        """Final output of the latest run, None if it failed or is still running."""
        return self._final_outputs.get(workflow_id)

    async def execute_workflow(self, workflow: Workflow, input_text: str) -> WorkflowExecution | None:
        """
        Execute all nodes in order.

        Returns:
            The completed WorkflowExecution (also prepended to history), or None
            if a run of this workflow was already in flight

        Raises:
            AppNotFoundError: A node references an unknown app
            NodeExecutionError: A node failed after its retries
        """
        if workflow.id in self._executing:
            logger.info(f"Workflow '{workflow.id}' is already executing; request ignored")
            return None

        self._executing.add(workflow.id)
        try:
            return await self._run(workflow, input_text)
        finally:
            self._executing.discard(workflow.id)

    async def _run(self, workflow: Workflow, input_text: str) -> WorkflowExecution:
        nodes = workflow.ordered_nodes
        statuses = [ExecutionStatus(node_id=node.id) for node in nodes]
        self._statuses[workflow.id] = statuses
        self._final_outputs[workflow.id] = None
        self._publish(workflow.id)

        started_at = now_ms()
        records: list[NodeExecutionRecord] = []
        current_input = input_text

        logger.info(f"Executing workflow '{workflow.id}' ({len(nodes)} nodes)")

        try:
            for node, status in zip(nodes, statuses, strict=True):
                output = await self._node_executor.execute_node(
                    node,
                    current_input,
                    status,
                    on_status=lambda _status: self._publish(workflow.id),
                )
                records.append(
                    NodeExecutionRecord(node_id=node.id, input=current_input, output=output)
                )
                current_input = output
        except AppflowError as e:
            logger.error(f"Workflow execution failed: {workflow.id}: {e}")
            raise

        execution = WorkflowExecution(
            input=input_text,
            nodes=tuple(records),
            timestamp=started_at,
            final_output=current_input,
        )
        self._final_outputs[workflow.id] = current_input
        self._history.add_history(workflow.id, execution)

        logger.info(f"Workflow '{workflow.id}' completed ({len(records)} nodes)")
        return execution

    def _publish(self, workflow_id: str) -> None:
        if self._status_sink is None:
            return
        try:
            self._status_sink(workflow_id, self._statuses[workflow_id])
        except Exception as e:
            logger.error(f"Status sink failed for workflow '{workflow_id}': {e}", exc_info=True)


__all__ = ["WorkflowExecutor", "StatusSink", "HistoryStore"]
