"""Single-node execution with node-level retry.

State machine per node per run: pending -> running -> completed | error.

Retry policy:
- App resolution failure is fatal and never retried.
- Any completion failure re-issues the full request after a fixed delay,
  up to max_retries times (max_retries + 1 attempts in total).
- The terminal failure records the last error message and the retry count
  on the node's ExecutionStatus and raises NodeExecutionError.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

from .exceptions import (
    AppNotFoundError,
    CompletionError,
    NodeExecutionError,
    RetriesExhaustedError,
)
from .models import AppConfig, ExecutionStatus, GenerateRequest, WorkflowNode
from .node_status import NodeState

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY = 3.0
RETRYING_MESSAGE = "Retrying..."

StatusCallback = Callable[[ExecutionStatus], None]


class AppLookup(Protocol):
    def get_app(self, app_name: str) -> AppConfig | None: ...


class CompletionBackend(Protocol):
    async def generate(self, request: GenerateRequest) -> str: ...


class NodeExecutor:
    """
    Executes one workflow node against the generation backend.

    Usage:
        executor = NodeExecutor(client, repository)
        status = ExecutionStatus(node_id=node.id)
        output = await executor.execute_node(node, "input text", status)
    """

    def __init__(
        self,
        client: CompletionBackend,
        apps: AppLookup,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
    ):
        """
        Initialize node executor.

        Args:
            client: Completion backend (OllamaClient in production)
            apps: App lookup by name (WorkflowRepository in production)
            max_retries: Node-level retries after the first attempt
            retry_delay: Fixed delay in seconds between attempts
        """
        self._client = client
        self._apps = apps
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def execute_node(
        self,
        node: WorkflowNode,
        input_text: str,
        status: ExecutionStatus | None = None,
        on_status: StatusCallback | None = None,
    ) -> str:
        """
        Execute node and return its output text.

        Args:
            node: Node to execute
            input_text: Prompt text for this node
            status: Status record mutated in place (created if omitted)
            on_status: Called after every state transition

        Returns:
            Generated output text

        Raises:
            AppNotFoundError: node.app_name does not resolve (not retried)
            NodeExecutionError: Every attempt failed
        """
        if status is None:
            status = ExecutionStatus(node_id=node.id)

        def transition(state: NodeState, **changes: object) -> None:
            status.state = state
            for field, value in changes.items():
                setattr(status, field, value)
            if on_status is not None:
                on_status(status)

        app = self._apps.get_app(node.app_name)
        if app is None:
            error = AppNotFoundError(node.app_name)
            logger.error(f"Error executing node {node.id}: {error}")
            transition(NodeState.ERROR, error=str(error))
            raise error

        for attempt in range(self.max_retries + 1):
            transition(NodeState.RUNNING, error=None)
            request = app.to_generate_request(input_text)

            try:
                output = await self._client.generate(request)
            except (CompletionError, RetriesExhaustedError) as e:
                logger.error(f"Error executing node {node.id} (attempt {attempt + 1}): {e}")

                if attempt < self.max_retries:
                    transition(NodeState.ERROR, error=RETRYING_MESSAGE, retries=attempt + 1)
                    await asyncio.sleep(self.retry_delay)
                    continue

                transition(NodeState.ERROR, error=str(e) or "Unknown error", retries=attempt)
                raise NodeExecutionError(node.id, attempts=attempt + 1, last_error=e) from e

            transition(NodeState.COMPLETED, output=output, error=None)
            return output

        # Loop always returns or raises
        raise RuntimeError(f"Node {node.id} exited retry loop without a result")


__all__ = [
    "NodeExecutor",
    "AppLookup",
    "CompletionBackend",
    "StatusCallback",
    "MAX_RETRIES",
    "RETRY_DELAY",
    "RETRYING_MESSAGE",
]
