"""
In-memory repository for apps, workflows, execution history and chat histories.

The repository is the collaborator the engine depends on for:
- App lookup by name (NodeExecutor)
- Ordered node lists (WorkflowExecutor, Scheduler)
- History storage, most recent first (WorkflowExecutor)
- Chat histories per app (ChatService)

It is injected by parameter into every engine component; nothing in the
engine reaches for a global store.
"""

from __future__ import annotations

import logging

from .config import AppflowConfig
from .exceptions import WorkflowNotFoundError
from .models import AppConfig, ChatHistory, Message, Workflow, WorkflowExecution

logger = logging.getLogger(__name__)


class WorkflowRepository:
    """
    Central store for app definitions, workflows and run history.

    Example:
        repository = WorkflowRepository.from_config(ConfigLoader().load_config())

        app = repository.get_app("Code Helper")
        workflow = repository.get_workflow("review")
        history = repository.get_history("review")
    """

    def __init__(self, history_limit: int | None = None) -> None:
        """
        Initialize empty repository.

        Args:
            history_limit: Maximum history entries kept per workflow (None = unbounded)
        """
        self._apps: dict[str, AppConfig] = {}
        self._workflows: dict[str, Workflow] = {}
        self._history: dict[str, list[WorkflowExecution]] = {}
        self._chat_histories: dict[str, ChatHistory] = {}
        self._history_limit = history_limit

    @classmethod
    def from_config(cls, config: AppflowConfig) -> WorkflowRepository:
        """Populate a repository from loaded configuration."""
        repository = cls(history_limit=config.history_limit)
        for app in config.apps:
            repository.register_app(app)
        for workflow in config.workflows:
            repository.register_workflow(workflow)
        return repository

    # -----------------------------------------------------------------------
    # Apps
    # -----------------------------------------------------------------------

    def register_app(self, app: AppConfig) -> None:
        """Register or replace an app definition."""
        self._apps[app.app_name] = app

    def get_app(self, app_name: str) -> AppConfig | None:
        """Look up an app by name, None if it does not exist."""
        return self._apps.get(app_name)

    def list_apps(self) -> list[AppConfig]:
        return list(self._apps.values())

    # -----------------------------------------------------------------------
    # Workflows
    # -----------------------------------------------------------------------

    def register_workflow(self, workflow: Workflow) -> None:
        """
        Register a workflow.

        Raises:
            ValueError: If a workflow with the same id already exists
        """
        if workflow.id in self._workflows:
            raise ValueError(
                f"Workflow '{workflow.id}' already registered. Use unregister_workflow() first."
            )
        self._workflows[workflow.id] = workflow
        logger.info(f"Registered workflow: {workflow.id} ({len(workflow.nodes)} nodes)")

    def unregister_workflow(self, workflow_id: str) -> None:
        """
        Remove a workflow and its history.

        Raises:
            WorkflowNotFoundError: If workflow not found
        """
        if workflow_id not in self._workflows:
            raise WorkflowNotFoundError(workflow_id)
        del self._workflows[workflow_id]
        self._history.pop(workflow_id, None)
        logger.info(f"Unregistered workflow: {workflow_id}")

    def get_workflow(self, workflow_id: str) -> Workflow:
        """
        Get workflow by id.

        Raises:
            WorkflowNotFoundError: If workflow not found
        """
        if workflow_id not in self._workflows:
            raise WorkflowNotFoundError(workflow_id, available=list(self._workflows))
        return self._workflows[workflow_id]

    def list_workflows(self) -> list[Workflow]:
        """All workflows, pinned first, then by name."""
        return sorted(self._workflows.values(), key=lambda w: (not w.is_pinned, w.name))

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._workflows

    def __len__(self) -> int:
        return len(self._workflows)

    # -----------------------------------------------------------------------
    # History
    # -----------------------------------------------------------------------

    def add_history(self, workflow_id: str, execution: WorkflowExecution) -> None:
        """Prepend a completed execution (most recent first)."""
        history = self._history.setdefault(workflow_id, [])
        history.insert(0, execution)
        if self._history_limit is not None and len(history) > self._history_limit:
            del history[self._history_limit :]

    def get_history(self, workflow_id: str, limit: int | None = None) -> list[WorkflowExecution]:
        """Completed executions, most recent first."""
        history = self._history.get(workflow_id, [])
        return list(history if limit is None else history[:limit])

    # -----------------------------------------------------------------------
    # Chat histories
    # -----------------------------------------------------------------------

    def add_message(self, app_name: str, message: Message) -> None:
        chat = self._chat_histories.setdefault(app_name, ChatHistory(app_name=app_name))
        chat.messages.append(message)

    def get_chat_history(self, app_name: str) -> list[Message]:
        chat = self._chat_histories.get(app_name)
        return list(chat.messages) if chat else []

    def clear_chat_history(self, app_name: str) -> None:
        self._chat_histories.pop(app_name, None)


__all__ = ["WorkflowRepository"]
