"""Recurring workflow schedules.

State machine per workflow: Idle -> Armed -> (fires, re-arms) -> ... -> Idle (stop).

Each armed schedule is one asyncio task that sleeps until the next fire time,
spawns the workflow run as a separate task, recomputes the next fire time and
sleeps again. Cancelling the armed task (stop) never cancels a run that is
already in flight, and a failed run never stops the schedule.

Schedule semantics (compute_next_fire_time):
- interval: now + N minutes
- daily: today at HH:MM, or tomorrow if that is not strictly after now
- weekly: next given weekday (0=Sunday .. 6=Saturday) at HH:MM, +7 days if
  that is not strictly after now
- monthly: this month's day_of_month at HH:MM, else next month's. A day past
  the end of a month is clamped to the month's last day (31 -> Apr 30).
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .models import ScheduleConfig, Workflow
from .node_status import ScheduleType
from .workflow_executor import WorkflowExecutor

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[Any]]


def compute_next_fire_time(now: datetime, config: ScheduleConfig) -> datetime:
    """
    Next instant strictly after `now` at which the schedule fires.

    Pure: identical (now, config) always yields the identical result. The
    result keeps now's tzinfo; seconds and microseconds are zero for
    time-of-day schedules.

    Raises:
        ScheduleValidationError: Config incomplete for its type
    """
    config.ensure_complete()

    if config.type == ScheduleType.INTERVAL:
        assert config.interval is not None
        return now + timedelta(minutes=config.interval)

    hour, minute = config.parsed_time()
    at_time = now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if config.type == ScheduleType.DAILY:
        return at_time if at_time > now else at_time + timedelta(days=1)

    if config.type == ScheduleType.WEEKLY:
        assert config.day_of_week is not None
        today = now.isoweekday() % 7  # 0=Sunday
        candidate = at_time + timedelta(days=(config.day_of_week - today + 7) % 7)
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate

    assert config.day_of_month is not None
    candidate = _day_of_month(at_time, now.year, now.month, config.day_of_month)
    if candidate <= now:
        year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
        candidate = _day_of_month(at_time, year, month, config.day_of_month)
    return candidate


def _day_of_month(at_time: datetime, year: int, month: int, day_of_month: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return at_time.replace(year=year, month=month, day=min(day_of_month, last_day))


@dataclass
class ScheduleHandle:
    """Armed schedule for one workflow."""

    workflow: Workflow
    input_text: str
    config: ScheduleConfig
    armed_at: datetime
    next_fire_time: datetime
    task: asyncio.Task[None] | None = None
    fire_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow.id,
            "workflow_name": self.workflow.name,
            "input": self.input_text,
            "schedule": self.config.model_dump(exclude_none=True, mode="json"),
            "next_fire_time": self.next_fire_time.isoformat(),
            "fire_count": self.fire_count,
        }


class Scheduler:
    """
    Arms at most one recurring schedule per workflow.

    Usage:
        scheduler = Scheduler(workflow_executor)
        next_run = scheduler.start(workflow, "daily digest", ScheduleConfig(type="daily", time="09:00"))
        ...
        scheduler.stop(workflow.id)

    The clock and sleep callables are injectable for tests.
    """

    def __init__(
        self,
        workflow_executor: WorkflowExecutor,
        clock: Clock = datetime.now,
        sleep: Sleep = asyncio.sleep,
    ):
        self._executor = workflow_executor
        self._clock = clock
        self._sleep = sleep
        self._schedules: dict[str, ScheduleHandle] = {}
        self._runs: set[asyncio.Task[None]] = set()

    def start(self, workflow: Workflow, input_text: str, config: ScheduleConfig) -> datetime:
        """
        Validate config and arm a schedule, replacing any armed one for this workflow.

        Must be called from a running event loop.

        Returns:
            First fire time

        Raises:
            ScheduleValidationError: Config incomplete for its type (nothing is armed)
        """
        config.ensure_complete()

        if self.stop(workflow.id):
            logger.info(f"Replacing existing schedule for workflow '{workflow.id}'")

        now = self._clock()
        handle = ScheduleHandle(
            workflow=workflow,
            input_text=input_text,
            config=config,
            armed_at=now,
            next_fire_time=compute_next_fire_time(now, config),
        )
        handle.task = asyncio.create_task(
            self._arm_loop(handle), name=f"appflow-schedule:{workflow.id}"
        )
        self._schedules[workflow.id] = handle

        logger.info(
            f"Scheduled workflow '{workflow.id}' ({config.type.value}): "
            f"next run at {handle.next_fire_time.isoformat()}"
        )
        return handle.next_fire_time

    def stop(self, workflow_id: str) -> bool:
        """
        Cancel the armed schedule (runs already in flight keep going).

        Returns:
            True if a schedule was armed, False otherwise
        """
        handle = self._schedules.pop(workflow_id, None)
        if handle is None:
            return False

        if handle.task is not None and not handle.task.done():
            handle.task.cancel()
        logger.info(f"Stopped schedule for workflow '{workflow_id}'")
        return True

    async def stop_all(self, wait_for_runs: bool = False, cancel_runs: bool = False) -> None:
        """
        Cancel every armed schedule.

        Args:
            wait_for_runs: Wait for scheduled runs already in flight to finish
            cancel_runs: Cancel scheduled runs already in flight (and wait for them)
        """
        tasks = [handle.task for handle in self._schedules.values() if handle.task is not None]
        for workflow_id in list(self._schedules):
            self.stop(workflow_id)

        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        runs = list(self._runs)
        if cancel_runs:
            for run in runs:
                run.cancel()
        if (wait_for_runs or cancel_runs) and runs:
            await asyncio.gather(*runs, return_exceptions=True)

    @property
    def running(self) -> int:
        """Number of scheduled runs still in flight."""
        return len(self._runs)

    def is_armed(self, workflow_id: str) -> bool:
        return workflow_id in self._schedules

    def get_next_fire_time(self, workflow_id: str) -> datetime | None:
        handle = self._schedules.get(workflow_id)
        return handle.next_fire_time if handle else None

    def list_schedules(self) -> list[dict[str, Any]]:
        return [handle.to_dict() for handle in self._schedules.values()]

    async def _arm_loop(self, handle: ScheduleHandle) -> None:
        workflow_id = handle.workflow.id
        try:
            while True:
                # Elapsed seconds, not wall-clock difference (DST changes)
                delay = max(0.0, handle.next_fire_time.timestamp() - handle.armed_at.timestamp())
                await self._sleep(delay)

                handle.fire_count += 1
                self._fire(handle)

                # Never recompute from before the instant that just fired
                fired_at = handle.next_fire_time
                now = max(self._clock(), fired_at)
                handle.armed_at = now
                handle.next_fire_time = compute_next_fire_time(now, handle.config)
                logger.info(
                    f"Re-armed workflow '{workflow_id}': "
                    f"next run at {handle.next_fire_time.isoformat()}"
                )
        except asyncio.CancelledError:
            logger.debug(f"Schedule task for workflow '{workflow_id}' cancelled")
            raise

    def _fire(self, handle: ScheduleHandle) -> None:
        logger.info(f"Schedule fired for workflow '{handle.workflow.id}' (#{handle.fire_count})")
        run = asyncio.create_task(
            self._run_scheduled(handle), name=f"appflow-run:{handle.workflow.id}"
        )
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)

    async def _run_scheduled(self, handle: ScheduleHandle) -> None:
        workflow_id = handle.workflow.id
        try:
            execution = await self._executor.execute_workflow(handle.workflow, handle.input_text)
        except Exception as e:
            logger.error(f"Scheduled run of workflow '{workflow_id}' failed: {e}", exc_info=True)
            return

        if execution is None:
            logger.info(f"Scheduled run of workflow '{workflow_id}' skipped: already executing")


__all__ = ["Scheduler", "ScheduleHandle", "compute_next_fire_time"]
