"""
Recurring task scheduler.

Runs named jobs on cron schedules for as long as the process lives.

Design decisions:
- Cron expressions are parsed once, at registration, into a CronSchedule
- One timer thread decides what is due; each firing runs on its own worker
  thread so different tasks run concurrently
- At most one execution per task at a time: a firing that finds the task
  still running is skipped and logged (no queuing, no backlog)
- Job failures never leave the scheduler: they are logged, recorded and
  published as `system:task_error`
- stop()/start() only affect future firings; in-flight runs are never
  interrupted
"""

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from croniter import croniter
from pydantic import BaseModel, Field

from monitoring.event_bus import EventBus
from monitoring.events import task_error
from shared.errors import DuplicateTaskError, InvalidScheduleError, NotFoundError
from shared.models import utcnow
from shared.repositories import TaskMetadataStore

logger = logging.getLogger("scheduler")


TaskHandler = Callable[[], Any]


class CronSchedule:
    """
    A parsed 5-field cron expression (minute hour day month weekday).

    The expression is validated and normalized once, at construction; the
    expanded field values are kept for display.
    """

    def __init__(self, expression: str):
        normalized = " ".join(str(expression).split())
        if len(normalized.split(" ")) != 5 or not croniter.is_valid(normalized):
            raise InvalidScheduleError(expression)
        self.expression = normalized
        self.fields = croniter(normalized).expanded

    def next_after(self, moment: datetime) -> datetime:
        """The first fire time strictly after `moment`."""
        return croniter(self.expression, moment).get_next(datetime)

    def __repr__(self) -> str:
        return f"CronSchedule({self.expression!r})"


class TaskRun(BaseModel):
    """Outcome of a single firing."""
    task: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    success: bool = False
    skipped: bool = False
    error: Optional[str] = None


class TaskSnapshot(BaseModel):
    """Read-only view of a task for health and ops surfaces."""
    name: str
    expression: str
    options: dict[str, Any] = Field(default_factory=dict)
    enabled: bool
    running: bool
    last_run_at: Optional[datetime] = None
    last_duration_seconds: Optional[float] = None
    last_error: Optional[str] = None
    next_run_at: Optional[datetime] = None
    run_count: int = 0
    skip_count: int = 0


@dataclass
class ScheduledTask:
    """
    A named job bound to a schedule.

    `running` is only read and written under `_lock`, which is what makes the
    check-and-set in TaskScheduler.fire() atomic.
    """
    name: str
    schedule: CronSchedule
    handler: TaskHandler
    options: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    running: bool = False
    last_run_at: Optional[datetime] = None
    last_duration: Optional[float] = None
    last_error: Optional[str] = None
    next_run_at: Optional[datetime] = None
    run_count: int = 0
    skip_count: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def snapshot(self) -> TaskSnapshot:
        with self._lock:
            return TaskSnapshot(
                name=self.name,
                expression=self.schedule.expression,
                options=dict(self.options),
                enabled=self.enabled,
                running=self.running,
                last_run_at=self.last_run_at,
                last_duration_seconds=self.last_duration,
                last_error=self.last_error,
                next_run_at=self.next_run_at,
                run_count=self.run_count,
                skip_count=self.skip_count,
            )


class TaskScheduler:
    """
    Registers recurring jobs and fires them on schedule.

    Example:
        scheduler = TaskScheduler(event_bus)
        scheduler.register("hourly-checks", "0 * * * *", jobs.inventory_sweep)
        scheduler.run_in_background()
        ...
        scheduler.shutdown()
    """

    def __init__(
        self,
        event_bus: EventBus,
        metadata_store: Optional[TaskMetadataStore] = None,
        clock: Callable[[], datetime] = utcnow,
        poll_interval: float = 1.0,
    ):
        """
        Args:
            event_bus: Bus that receives `system:task_error`
            metadata_store: Optional store for run history
            clock: Source of "now", injectable for tests
            poll_interval: Upper bound on how long the timer thread sleeps
        """
        self.event_bus = event_bus
        self.metadata_store = metadata_store
        self._clock = clock
        self.poll_interval = poll_interval

        self._tasks: dict[str, ScheduledTask] = {}
        self._registry_lock = threading.Lock()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wakeup = threading.Event()
        self._workers: list[threading.Thread] = []

    # =========================================================================
    # Registration
    # =========================================================================

    def register(
        self,
        name: str,
        schedule_expr: str,
        handler: TaskHandler,
        options: Optional[dict[str, Any]] = None,
    ) -> ScheduledTask:
        """
        Register a recurring job.

        Raises:
            InvalidScheduleError: If schedule_expr is not a valid 5-field cron expression
            DuplicateTaskError: If a task with this name already exists
        """
        schedule = CronSchedule(schedule_expr)

        with self._registry_lock:
            if name in self._tasks:
                raise DuplicateTaskError(name)
            task = ScheduledTask(
                name=name,
                schedule=schedule,
                handler=handler,
                options=dict(options or {}),
                next_run_at=schedule.next_after(self._clock()),
            )
            self._tasks[name] = task

        logger.info(f"Scheduled task registered: {name} ({schedule.expression})")
        self._wakeup.set()
        return task

    def get_task(self, name: str) -> ScheduledTask:
        with self._registry_lock:
            task = self._tasks.get(name)
        if task is None:
            raise NotFoundError(f"Scheduled task not found: {name}")
        return task

    def stop(self, name: str) -> None:
        """Disable future firings. A run already in progress completes normally."""
        task = self.get_task(name)
        with task._lock:
            task.enabled = False
        logger.info(f"Stopped scheduled task: {name}")

    def start(self, name: str) -> None:
        """Re-enable a stopped task from its next scheduled instant."""
        task = self.get_task(name)
        with task._lock:
            task.enabled = True
            task.next_run_at = task.schedule.next_after(self._clock())
        logger.info(f"Started scheduled task: {name}")
        self._wakeup.set()

    def list_tasks(self) -> list[TaskSnapshot]:
        with self._registry_lock:
            tasks = list(self._tasks.values())
        return [task.snapshot() for task in tasks]

    def recent_runs(self, name: Optional[str] = None, limit: int = 50) -> list[TaskRun]:
        if self.metadata_store is None:
            return []
        return self.metadata_store.recent_runs(name, limit)

    # =========================================================================
    # Execution
    # =========================================================================

    def fire(self, name: str) -> TaskRun:
        """
        Execute one firing of a task.

        If the task is already running the firing is skipped. Handler
        failures are caught here: they are recorded on the task, logged and
        published as `system:task_error`, never raised.
        """
        task = self.get_task(name)
        started_at = self._clock()

        with task._lock:
            if task.running:
                task.skip_count += 1
                skipped = True
            else:
                task.running = True
                skipped = False

        if skipped:
            logger.warning(f"Skipping scheduled task {name}: previous run still in progress")
            run = TaskRun(task=name, started_at=started_at, finished_at=started_at, skipped=True)
            self._record(run)
            return run

        logger.info(f"Starting scheduled task: {name}")
        t0 = time.monotonic()
        error: Optional[Exception] = None
        try:
            self._invoke(task.handler)
        except Exception as e:
            error = e
        finally:
            duration = time.monotonic() - t0
            finished_at = self._clock()
            with task._lock:
                task.running = False
                task.last_run_at = started_at
                task.last_duration = duration
                task.last_error = str(error) if error else None
                task.run_count += 1

        run = TaskRun(
            task=name,
            started_at=started_at,
            finished_at=finished_at,
            duration_seconds=duration,
            success=error is None,
            error=str(error) if error else None,
        )
        self._record(run)

        if error is None:
            logger.info(f"Completed scheduled task: {name} ({duration * 1000:.0f}ms)")
        else:
            logger.error(f"Error in scheduled task {name}: {error}", exc_info=error)
            self.event_bus.publish(task_error(task=name, error=str(error)))

        return run

    def _invoke(self, handler: TaskHandler) -> None:
        result = handler()
        if inspect.iscoroutine(result):
            asyncio.run(result)

    def _record(self, run: TaskRun) -> None:
        if self.metadata_store is None:
            return
        try:
            self.metadata_store.record_run(run)
        except Exception as e:
            logger.error(f"Failed to record run of {run.task}: {e}")

    # =========================================================================
    # Timer
    # =========================================================================

    def due_tasks(self, now: Optional[datetime] = None) -> list[str]:
        """
        Names of enabled tasks whose fire time has arrived.

        Advances every due task's next fire time past `now`, so a task is
        returned at most once per scheduled instant. Disabled tasks advance
        too but are not returned.
        """
        now = now or self._clock()
        due = []
        with self._registry_lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            with task._lock:
                if task.next_run_at is None or task.next_run_at > now:
                    continue
                task.next_run_at = task.schedule.next_after(now)
                if task.enabled:
                    due.append(task.name)
        return due

    def run_in_background(self) -> None:
        """Start the timer thread. Calling it twice is a no-op."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Scheduler already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started with {len(self._tasks)} tasks")

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop the timer thread.

        Args:
            wait: Also wait for in-flight firings to finish
            timeout: Per-thread join timeout
        """
        self._stop_event.set()
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if wait:
            for worker in list(self._workers):
                worker.join(timeout)
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            now = self._clock()
            for name in self.due_tasks(now):
                self._dispatch(name)

            self._wakeup.wait(self._seconds_until_next(now))
            self._wakeup.clear()

    def _dispatch(self, name: str) -> None:
        self._workers = [w for w in self._workers if w.is_alive()]
        worker = threading.Thread(target=self.fire, args=(name,), name=f"task-{name}", daemon=True)
        self._workers.append(worker)
        worker.start()

    def _seconds_until_next(self, now: datetime) -> float:
        with self._registry_lock:
            upcoming = [t.next_run_at for t in self._tasks.values() if t.next_run_at is not None]
        if not upcoming:
            return self.poll_interval
        delta = (min(upcoming) - now).total_seconds()
        return max(0.0, min(delta, self.poll_interval))
