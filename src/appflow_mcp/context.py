"""Shared context types for MCP server.

This module contains context types used across server and tools modules,
separated to avoid circular imports.
"""

import asyncio
from dataclasses import dataclass, field

from mcp.server.fastmcp import Context
from mcp.server.session import ServerSession

from .engine import (
    AppflowConfig,
    ChatService,
    OllamaClient,
    Scheduler,
    WorkflowExecutor,
    WorkflowRepository,
)
from .engine.exceptions import AppNotFoundError


@dataclass
class AppContext:
    """Application context containing shared resources for MCP tools.

    This context is created during server startup and made available to all tools
    via dependency injection through the Context parameter.
    """

    config: AppflowConfig
    repository: WorkflowRepository
    client: OllamaClient
    workflow_executor: WorkflowExecutor
    scheduler: Scheduler
    background_runs: set[asyncio.Task[None]] = field(default_factory=set)

    def create_chat_service(self, app_name: str) -> ChatService:
        """Create a ChatService bound to an app.

        Raises:
            AppNotFoundError: If the app does not exist
        """
        app = self.repository.get_app(app_name)
        if app is None:
            raise AppNotFoundError(app_name)
        return ChatService(app, self.client, self.repository)

    def track(self, task: asyncio.Task[None]) -> None:
        """Keep a reference to a background run until it finishes."""
        self.background_runs.add(task)
        task.add_done_callback(self.background_runs.discard)


# Type alias for MCP tool context parameter
AppContextType = Context[ServerSession, AppContext]


__all__ = ["AppContext", "AppContextType"]
