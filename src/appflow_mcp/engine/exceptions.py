"""Exception hierarchy for the appflow execution and scheduling engine.

Taxonomy:
- ConfigurationError: bad schedule config, unresolved app or workflow reference.
  Surfaces immediately, never retried.
- CompletionError: failures talking to the generation backend.
  - CompletionTimeoutError: client-side deadline exceeded
  - CompletionTransportError: connection failure or non-2xx HTTP status
  - CompletionProtocolError: malformed response payload
- RetriesExhaustedError: terminal failure after a retry policy gave up.
  - NodeExecutionError: a workflow node failed on every attempt
"""

from __future__ import annotations


class AppflowError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(AppflowError):
    """Invalid or incomplete configuration (ValidationFailure)."""


class ScheduleValidationError(ConfigurationError):
    """Schedule configuration is missing fields required by its type."""

    def __init__(self, schedule_type: str, message: str):
        self.schedule_type = schedule_type
        super().__init__(f"Invalid {schedule_type} schedule: {message}")


class AppNotFoundError(ConfigurationError):
    """A workflow node references an app that does not exist."""

    def __init__(self, app_name: str):
        self.app_name = app_name
        super().__init__(f"App {app_name} not found")


class WorkflowNotFoundError(ConfigurationError):
    """Requested workflow id is not in the repository."""

    def __init__(self, workflow_id: str, available: list[str] | None = None):
        self.workflow_id = workflow_id
        self.available = available or []
        message = f"Workflow '{workflow_id}' not found"
        if available is not None:
            message += f". Available workflows: {sorted(available)}"
        super().__init__(message)


class CompletionError(AppflowError):
    """Base class for generation backend failures."""


class CompletionTimeoutError(CompletionError):
    """Client-side deadline exceeded for a single request."""

    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout
        super().__init__(f"Request timeout after {timeout:g}s: {url}")


class CompletionTransportError(CompletionError):
    """Network failure or HTTP error status from the backend."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class CompletionProtocolError(CompletionError):
    """Backend replied with a payload that cannot be interpreted."""


class RetriesExhaustedError(AppflowError):
    """
    Terminal failure after a bounded retry policy gave up.

    Attributes:
        attempts: Total number of attempts made (first try included)
        last_error: Failure observed on the final attempt
    """

    def __init__(self, message: str, attempts: int, last_error: BaseException | None = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"{type(self).__name__}(attempts={self.attempts}, last_error={self.last_error!r})"


class NodeExecutionError(RetriesExhaustedError):
    """A workflow node failed on its final attempt; the run aborts."""

    def __init__(self, node_id: str, attempts: int, last_error: BaseException | None = None):
        self.node_id = node_id
        reason = str(last_error) if last_error else "Unknown error"
        super().__init__(
            f"Node '{node_id}' failed after {attempts} attempts: {reason}",
            attempts=attempts,
            last_error=last_error,
        )


__all__ = [
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
