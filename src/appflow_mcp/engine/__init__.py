"""Appflow engine core components.

Runs linear chains of LLM "apps" against a local Ollama-compatible backend.

Key Components:

- OllamaClient: Async HTTP client (blocking, streaming, model management) with
  bounded retries and per-request deadlines
- iter_ndjson: Soft-fail JSON parsing of streamed response lines
- NodeExecutor: Executes one node with node-level retry and status tracking
- WorkflowExecutor: Sequential, single-flight workflow runs with history
- Scheduler: Recurring interval/daily/weekly/monthly schedules per workflow
- ChatService: Streaming chat with a single app
- WorkflowRepository: In-memory apps, workflows, history and chat histories
- ConfigLoader: YAML configuration with environment overrides

Architecture:
- Collaborators are injected by parameter; nothing reaches for a global store
- Retries are bounded loops; every network attempt has its own deadline
- Streams restart from the beginning and tag chunks with their attempt
- Typed exceptions (exceptions.py) carry the failure kind to the caller
"""

from .chat import ChatService
from .config import AppflowConfig, BackendConfig, ConfigLoader, NodeRetryConfig, default_config
from .exceptions import (
    AppflowError,
    AppNotFoundError,
    CompletionError,
    CompletionProtocolError,
    CompletionTimeoutError,
    CompletionTransportError,
    ConfigurationError,
    NodeExecutionError,
    RetriesExhaustedError,
    ScheduleValidationError,
    WorkflowNotFoundError,
)
from .models import (
    AppConfig,
    ExecutionStatus,
    GenerateChunk,
    GenerateOptions,
    GenerateRequest,
    Message,
    ModelInfo,
    NodeExecutionRecord,
    Prompt,
    PullProgress,
    ScheduleConfig,
    Workflow,
    WorkflowExecution,
    WorkflowNode,
)
from .ndjson import iter_ndjson, parse_line
from .node_executor import NodeExecutor
from .node_status import NodeState, ScheduleType
from .ollama_client import OllamaClient
from .repository import WorkflowRepository
from .scheduler import Scheduler, compute_next_fire_time
from .workflow_executor import WorkflowExecutor

__all__ = [
    # Backend
    "OllamaClient",
    "parse_line",
    "iter_ndjson",
    # Execution
    "NodeExecutor",
    "WorkflowExecutor",
    "Scheduler",
    "compute_next_fire_time",
    "ChatService",
    "WorkflowRepository",
    # Configuration
    "AppflowConfig",
    "BackendConfig",
    "NodeRetryConfig",
    "ConfigLoader",
    "default_config",
    # Models
    "AppConfig",
    "Prompt",
    "Workflow",
    "WorkflowNode",
    "ExecutionStatus",
    "NodeExecutionRecord",
    "WorkflowExecution",
    "ScheduleConfig",
    "Message",
    "GenerateOptions",
    "GenerateRequest",
    "GenerateChunk",
    "ModelInfo",
    "PullProgress",
    "NodeState",
    "ScheduleType",
    # Errors
    "AppflowError",
    "ConfigurationError",
    "ScheduleValidationError",
    "AppNotFoundError",
    "WorkflowNotFoundError",
    "CompletionError",
    "CompletionTimeoutError",
    "CompletionTransportError",
    "CompletionProtocolError",
    "RetriesExhaustedError",
    "NodeExecutionError",
]
