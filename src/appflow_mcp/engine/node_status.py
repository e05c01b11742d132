"""Node lifecycle states and schedule types."""

from enum import Enum


class NodeState(str, Enum):
    """
    Per-node lifecycle within one workflow run.

    pending -> running -> completed | error. A node that is being retried
    sits in ERROR with a transient "Retrying..." message until the next
    attempt moves it back to RUNNING.
    """

    PENDING = "pending"
    """Created at the start of the run, not started yet."""

    RUNNING = "running"
    """Request to the generation backend in flight."""

    COMPLETED = "completed"
    """Output received and stored."""

    ERROR = "error"
    """Attempt failed (retrying) or node failed terminally."""

    def is_pending(self) -> bool:
        """Check if node is pending."""
        return self == NodeState.PENDING

    def is_running(self) -> bool:
        """Check if node is running."""
        return self == NodeState.RUNNING

    def is_completed(self) -> bool:
        """Check if node completed."""
        return self == NodeState.COMPLETED

    def is_error(self) -> bool:
        """Check if node is in error."""
        return self == NodeState.ERROR


class ScheduleType(str, Enum):
    """Recurring trigger kinds."""

    INTERVAL = "interval"
    """Every N minutes."""

    DAILY = "daily"
    """Every day at HH:MM."""

    WEEKLY = "weekly"
    """Every week on a weekday at HH:MM."""

    MONTHLY = "monthly"
    """Every month on a day of month at HH:MM."""
