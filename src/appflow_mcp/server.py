"""FastMCP server initialization for appflow-mcp.

This module initializes the MCP server and manages shared resources via lifespan context.
All tool implementations are in the tools module.

Shared resources:
- Configuration (apps, prompts, workflows, backend settings)
- WorkflowRepository (in-memory apps, workflows, history, chat histories)
- OllamaClient (one pooled HTTP client for the whole server)
- WorkflowExecutor and Scheduler
"""

import asyncio
import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from .context import AppContext, AppContextType
from .engine import ConfigLoader, NodeExecutor, Scheduler, WorkflowExecutor, WorkflowRepository

logger = logging.getLogger(__name__)

# =============================================================================
# Shared Resources and Lifespan Management
# =============================================================================


def build_app_context(loader: ConfigLoader | None = None) -> AppContext:
    """Wire engine components from configuration.

    Args:
        loader: Config loader (defaults to APPFLOW_CONFIG / ~/.appflow/config.yml)

    Returns:
        AppContext with every component constructed but nothing started
    """
    config = (loader or ConfigLoader()).load_config()

    repository = WorkflowRepository.from_config(config)
    client = config.backend.create_client()
    node_executor = NodeExecutor(
        client,
        repository,
        max_retries=config.node.max_retries,
        retry_delay=config.node.retry_delay,
    )
    workflow_executor = WorkflowExecutor(node_executor, repository)
    scheduler = Scheduler(workflow_executor)

    return AppContext(
        config=config,
        repository=repository,
        client=client,
        workflow_executor=workflow_executor,
        scheduler=scheduler,
    )


@asynccontextmanager
async def app_lifespan(_server: FastMCP) -> AsyncIterator[AppContext]:
    """Manage application lifecycle with resource initialization and cleanup.

    Environment Variables:
        APPFLOW_CONFIG: Path to YAML configuration
        APPFLOW_BACKEND_URL: Override for backend.base_url

    Args:
        _server: FastMCP server instance (unused, required by FastMCP signature)

    Yields:
        AppContext with initialized resources
    """
    logger.info("Initializing MCP server resources...")

    app_context = build_app_context()

    if await app_context.client.check_service():
        logger.info(f"Generation backend reachable at {app_context.client.base_url}")
    else:
        logger.warning(
            f"Generation backend not reachable at {app_context.client.base_url}. "
            "Workflow runs will fail until it is started."
        )

    try:
        yield app_context
    finally:
        # Shutdown: cleanup resources (reverse order)
        logger.info("Shutting down MCP server...")

        await app_context.scheduler.stop_all(cancel_runs=True)
        logger.info("Scheduler stopped")

        for task in list(app_context.background_runs):
            task.cancel()
        if app_context.background_runs:
            await asyncio.gather(*app_context.background_runs, return_exceptions=True)

        await app_context.client.aclose()
        logger.info("Backend client closed")


# Initialize MCP server with lifespan management
mcp = FastMCP("appflow_mcp", lifespan=app_lifespan)


# =============================================================================
# Server Entry Point
# =============================================================================


def main() -> None:
    """Entry point for running the MCP server.

    This function is called when the server is run directly via:
    - python -m appflow_mcp
    - appflow-mcp (console script)

    Defaults to stdio transport for MCP protocol communication.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    log_level_str = os.getenv("APPFLOW_LOG_LEVEL", "INFO").upper()

    if log_level_str not in valid_log_levels:
        print(
            f"Warning: Invalid APPFLOW_LOG_LEVEL '{log_level_str}'. "
            f"Valid levels: {', '.join(sorted(valid_log_levels))}. "
            "Using INFO.",
            file=sys.stderr,
        )
        log_level_str = "INFO"

    # Configure logging to stderr (MCP requirement)
    logging.basicConfig(
        level=getattr(logging, log_level_str),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    logger.info("Starting MCP server (press Ctrl+C to stop)...")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.exception(f"Server error: {e}")
        sys.exit(1)

    logger.info("Server shutdown complete")


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "mcp",
    "main",
    "AppContext",
    "AppContextType",
    "build_app_context",
]
