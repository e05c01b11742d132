"""Pydantic v2 models for apps, workflows, run state, schedules and backend payloads.

Definitions (AppConfig, Prompt, Workflow) are read-only to the engine. Run state
(ExecutionStatus) is mutated in place while a run progresses. History records
(WorkflowExecution) are frozen once built.
"""

from __future__ import annotations

import re
import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .exceptions import ScheduleValidationError
from .node_status import NodeState, ScheduleType

_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


# ===========================================================================
# Generation Backend Payloads
# ===========================================================================


class GenerateOptions(BaseModel):
    """Sampling options forwarded verbatim to the backend."""

    temperature: float | None = None
    top_k: int | None = None
    top_p: float | None = None
    num_predict: int | None = Field(default=None, description="Maximum tokens to generate")
    stop: list[str] | None = None
    repeat_last_n: int | None = None
    repeat_penalty: float | None = None
    num_ctx: int | None = None
    num_gpu: int | None = None
    seed: int | None = None


class GenerateRequest(BaseModel):
    """Body of POST /api/generate (the stream flag is set by the client)."""

    model: str = Field(description="Model name (e.g., llama2:7b)")
    prompt: str = Field(description="Prompt text")
    system: str | None = Field(default=None, description="System prompt (omitted when None)")
    template: str | None = None
    context: list[int] | None = None
    options: GenerateOptions = Field(default_factory=GenerateOptions)

    def to_body(self, stream: bool) -> dict[str, Any]:
        """Serialize for the wire, dropping absent fields."""
        body = self.model_dump(exclude_none=True)
        body["stream"] = stream
        return body


class GenerateChunk(BaseModel):
    """One decoded line of a streaming generate reply."""

    model_config = ConfigDict(extra="allow")

    response: str = Field(default="", description="Text fragment")
    done: bool = Field(default=False, description="True on the final line")
    error: str | None = None
    attempt: int = Field(
        default=1,
        description="Stream attempt this chunk belongs to (increments when the stream restarts)",
    )


class ModelDetails(BaseModel):
    """Model metadata reported by GET /api/tags."""

    model_config = ConfigDict(extra="allow")

    format: str | None = None
    family: str | None = None
    families: list[str] | None = None
    parameter_size: str | None = None
    quantization_level: str | None = None


class ModelInfo(BaseModel):
    """Locally available model."""

    model_config = ConfigDict(extra="allow")

    name: str
    modified_at: str | None = None
    size: int = 0
    digest: str = ""
    details: ModelDetails | None = None


class PullProgress(BaseModel):
    """Progress event while pulling a model."""

    status: str
    completed_bytes: int | None = None
    total_bytes: int | None = None
    percentage: float | None = None
    done: bool = False
    attempt: int = 1

    @classmethod
    def from_event(cls, event: dict[str, Any], attempt: int = 1) -> PullProgress:
        """Build from a wire event {status, completed?, total?}."""
        completed = event.get("completed")
        total = event.get("total")
        percentage = None
        if completed is not None and total:
            percentage = completed / total * 100
        return cls(
            status=str(event.get("status", "")),
            completed_bytes=completed,
            total_bytes=total,
            percentage=percentage,
            attempt=attempt,
        )


# ===========================================================================
# Definitions (read-only to the engine)
# ===========================================================================


class ModelParameters(BaseModel):
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, ge=1)


class ModelConfig(BaseModel):
    """Known model with default sampling parameters."""

    name: str
    parameters: ModelParameters = Field(default_factory=ModelParameters)


class Prompt(BaseModel):
    """Named prompt template."""

    name: str
    description: str = ""
    prompt_template: str = Field(description="Template with a {user_input} placeholder")
    system_prompt: str | None = None


class AppConfig(BaseModel):
    """Named bundle of model, prompt, sampling and system-prompt settings."""

    app_name: str = Field(description="Unique app name (referenced by workflow nodes)")
    model: str = Field(description="Backend model name")
    prompt: str = Field(description="Prompt reference (name of a Prompt)")
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, ge=1)
    use_system_prompt: bool = False
    system_prompt: str | None = None

    def to_generate_request(self, prompt_text: str) -> GenerateRequest:
        """Build the backend request for this app with the given prompt text."""
        return GenerateRequest(
            model=self.model,
            prompt=prompt_text,
            system=self.system_prompt if self.use_system_prompt else None,
            options=GenerateOptions(
                temperature=self.default_temperature,
                num_predict=self.max_tokens,
            ),
        )


class WorkflowNode(BaseModel):
    """Reference to one app plus its position in a workflow."""

    id: str
    app_name: str
    position: int = Field(ge=0)


class Workflow(BaseModel):
    """Named, strictly linear chain of nodes."""

    id: str
    name: str
    nodes: list[WorkflowNode] = Field(default_factory=list)
    is_pinned: bool = False

    @model_validator(mode="after")
    def validate_node_positions(self) -> Workflow:
        """Node positions must be exactly 0..n-1 and node ids unique."""
        positions = sorted(node.position for node in self.nodes)
        if positions != list(range(len(self.nodes))):
            raise ValueError(
                f"Workflow '{self.id}' node positions must be contiguous 0..{len(self.nodes) - 1}, "
                f"got {positions}"
            )
        node_ids = [node.id for node in self.nodes]
        if len(set(node_ids)) != len(node_ids):
            raise ValueError(f"Workflow '{self.id}' has duplicate node ids")
        return self

    @property
    def ordered_nodes(self) -> list[WorkflowNode]:
        """Nodes sorted by position."""
        return sorted(self.nodes, key=lambda node: node.position)


# ===========================================================================
# Run State and History
# ===========================================================================


class ExecutionStatus(BaseModel):
    """Transient per-node state for one run (mutated in place)."""

    node_id: str
    state: NodeState = NodeState.PENDING
    retries: int = 0
    error: str | None = None
    output: str | None = None


class NodeExecutionRecord(BaseModel):
    """Input/output of one completed node."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    input: str
    output: str
    timestamp: int = Field(default_factory=now_ms, description="Epoch milliseconds")


class WorkflowExecution(BaseModel):
    """Immutable record of one fully completed run."""

    model_config = ConfigDict(frozen=True)

    input: str
    nodes: tuple[NodeExecutionRecord, ...] = ()
    timestamp: int = Field(default_factory=now_ms, description="Run start, epoch milliseconds")
    final_output: str | None = None


# ===========================================================================
# Schedules
# ===========================================================================


class ScheduleConfig(BaseModel):
    """
    Recurring trigger definition.

    Only the fields relevant to `type` are required; the rest are ignored.
    day_of_week uses 0=Sunday .. 6=Saturday.
    """

    type: ScheduleType = ScheduleType.INTERVAL
    interval: int | None = Field(default=None, description="Minutes between runs (interval)")
    time: str | None = Field(default=None, description="Time of day HH:MM (daily/weekly/monthly)")
    day_of_week: int | None = Field(default=None, description="0=Sunday .. 6=Saturday (weekly)")
    day_of_month: int | None = Field(default=None, description="1-31 (monthly)")

    def ensure_complete(self) -> None:
        """
        Check that the fields required by `type` are present and in range.

        Raises:
            ScheduleValidationError: Missing or out-of-range field
        """
        kind = self.type.value
        if self.type == ScheduleType.INTERVAL:
            if self.interval is None or self.interval < 1:
                raise ScheduleValidationError(kind, "interval must be a positive number of minutes")
            return

        if not self.time:
            raise ScheduleValidationError(kind, "time of day (HH:MM) is required")
        self.parsed_time()

        if self.type == ScheduleType.WEEKLY:
            if self.day_of_week is None or not 0 <= self.day_of_week <= 6:
                raise ScheduleValidationError(kind, "day_of_week must be between 0 and 6")
        elif self.type == ScheduleType.MONTHLY:
            if self.day_of_month is None or not 1 <= self.day_of_month <= 31:
                raise ScheduleValidationError(kind, "day_of_month must be between 1 and 31")

    def parsed_time(self) -> tuple[int, int]:
        """Return (hour, minute) from `time`."""
        match = _TIME_PATTERN.match(self.time or "")
        if not match:
            raise ScheduleValidationError(self.type.value, f"time must be HH:MM, got {self.time!r}")
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise ScheduleValidationError(self.type.value, f"time out of range: {self.time!r}")
        return hour, minute


# ===========================================================================
# Chat
# ===========================================================================


class Message(BaseModel):
    """Single chat message."""

    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: int = Field(default_factory=now_ms)


class ChatHistory(BaseModel):
    """Conversation with one app."""

    app_name: str
    messages: list[Message] = Field(default_factory=list)


__all__ = [
    "GenerateOptions",
    "GenerateRequest",
    "GenerateChunk",
    "ModelDetails",
    "ModelInfo",
    "PullProgress",
    "ModelParameters",
    "ModelConfig",
    "Prompt",
    "AppConfig",
    "WorkflowNode",
    "Workflow",
    "ExecutionStatus",
    "NodeExecutionRecord",
    "WorkflowExecution",
    "ScheduleConfig",
    "Message",
    "ChatHistory",
    "now_ms",
]
