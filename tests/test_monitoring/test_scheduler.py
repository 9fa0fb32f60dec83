"""
Tests for the task scheduler.

These tests verify cron parsing, registration rules, failure isolation and
the at-most-one-run-per-task guarantee.
"""

import threading
from datetime import datetime, timezone

import pytest

from monitoring.event_bus import EventBus, EventName
from monitoring.scheduler import CronSchedule, TaskScheduler
from shared.errors import DuplicateTaskError, InvalidScheduleError, NotFoundError
from shared.repositories import InMemoryTaskMetadataStore


def noop():
    pass


@pytest.fixture
def timed_scheduler(event_bus: EventBus, clock) -> TaskScheduler:
    """Scheduler driven by the settable test clock."""
    scheduler = TaskScheduler(
        event_bus,
        metadata_store=InMemoryTaskMetadataStore(),
        clock=clock,
        poll_interval=0.05,
    )
    yield scheduler
    scheduler.shutdown(timeout=2)


class TestCronSchedule:
    """Tests for cron expression parsing."""

    @pytest.mark.parametrize("expression,expected", [
        ("*/5 * * * *", datetime(2024, 6, 1, 12, 5, tzinfo=timezone.utc)),
        ("0 * * * *", datetime(2024, 6, 1, 13, 0, tzinfo=timezone.utc)),
        ("0 0 * * *", datetime(2024, 6, 2, 0, 0, tzinfo=timezone.utc)),
    ])
    def test_next_after(self, expression, expected):
        moment = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        assert CronSchedule(expression).next_after(moment) == expected

    def test_whitespace_normalized(self):
        assert CronSchedule("  0   0 * *  * ").expression == "0 0 * * *"

    @pytest.mark.parametrize("expression", [
        "",
        "not a cron",
        "61 * * * *",
        "* * * *",
        "0 0 * * * *",
    ])
    def test_invalid_expressions(self, expression):
        with pytest.raises(InvalidScheduleError):
            CronSchedule(expression)


class TestRegistration:
    def test_register_sets_next_run(self, timed_scheduler: TaskScheduler):
        task = timed_scheduler.register("health-check", "*/5 * * * *", noop, {"owner": "ops"})

        assert task.next_run_at == datetime(2024, 6, 1, 12, 5, tzinfo=timezone.utc)
        assert task.enabled
        assert not task.running
        assert task.options == {"owner": "ops"}

    def test_invalid_schedule(self, timed_scheduler: TaskScheduler):
        with pytest.raises(InvalidScheduleError):
            timed_scheduler.register("bad", "every minute", noop)
        assert timed_scheduler.list_tasks() == []

    def test_duplicate_name(self, timed_scheduler: TaskScheduler):
        timed_scheduler.register("job", "* * * * *", noop)
        with pytest.raises(DuplicateTaskError):
            timed_scheduler.register("job", "0 * * * *", noop)

    def test_invalid_schedule_checked_before_duplicate(self, timed_scheduler: TaskScheduler):
        timed_scheduler.register("job", "* * * * *", noop)
        with pytest.raises(InvalidScheduleError):
            timed_scheduler.register("job", "nope", noop)

    def test_unknown_task(self, timed_scheduler: TaskScheduler):
        with pytest.raises(NotFoundError):
            timed_scheduler.get_task("missing")
        with pytest.raises(NotFoundError):
            timed_scheduler.stop("missing")
        with pytest.raises(NotFoundError):
            timed_scheduler.fire("missing")

    def test_list_tasks(self, timed_scheduler: TaskScheduler):
        timed_scheduler.register("a", "0 * * * *", noop)
        timed_scheduler.register("b", "0 0 * * *", noop)

        snapshots = timed_scheduler.list_tasks()

        assert [s.name for s in snapshots] == ["a", "b"]
        assert snapshots[0].expression == "0 * * * *"
        assert snapshots[0].run_count == 0


class TestFiring:
    """Tests for single firings."""

    def test_successful_run(self, timed_scheduler: TaskScheduler):
        calls = []
        timed_scheduler.register("job", "* * * * *", lambda: calls.append(1))

        run = timed_scheduler.fire("job")

        assert run.success
        assert not run.skipped
        assert calls == [1]
        task = timed_scheduler.get_task("job")
        assert task.run_count == 1
        assert task.last_run_at is not None
        assert task.last_duration is not None
        assert task.last_error is None
        assert not task.running

    def test_failure_is_contained_and_published(self, timed_scheduler: TaskScheduler, event_bus: EventBus):
        def broken():
            raise RuntimeError("disk full")

        timed_scheduler.register("daily-cleanup", "0 0 * * *", broken)

        run = timed_scheduler.fire("daily-cleanup")

        assert not run.success
        assert run.error == "disk full"
        assert timed_scheduler.get_task("daily-cleanup").last_error == "disk full"
        assert not timed_scheduler.get_task("daily-cleanup").running

        events = event_bus.events_named(EventName.TASK_ERROR)
        assert len(events) == 1
        assert events[0].payload == {"task": "daily-cleanup", "error": "disk full"}

    def test_coroutine_handler(self, timed_scheduler: TaskScheduler):
        calls = []

        async def job():
            calls.append("ran")

        timed_scheduler.register("async-job", "* * * * *", job)

        assert timed_scheduler.fire("async-job").success
        assert calls == ["ran"]

    def test_runs_are_recorded(self, timed_scheduler: TaskScheduler):
        timed_scheduler.register("job", "* * * * *", noop)
        timed_scheduler.fire("job")
        timed_scheduler.fire("job")

        runs = timed_scheduler.recent_runs("job")
        assert len(runs) == 2
        assert all(r.success for r in runs)

    def test_overlapping_firing_is_skipped(self, timed_scheduler: TaskScheduler, caplog):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow():
            calls.append(1)
            started.set()
            release.wait(5)

        timed_scheduler.register("slow", "* * * * *", slow)

        first = threading.Thread(target=timed_scheduler.fire, args=("slow",))
        first.start()
        assert started.wait(5)

        skipped = timed_scheduler.fire("slow")

        release.set()
        first.join(5)

        assert skipped.skipped
        assert calls == [1]
        task = timed_scheduler.get_task("slow")
        assert task.skip_count == 1
        assert task.run_count == 1
        assert "previous run still in progress" in caplog.text
        assert [r.skipped for r in timed_scheduler.recent_runs("slow")] == [True, False]

    def test_stop_does_not_interrupt_running_task(self, timed_scheduler: TaskScheduler):
        started = threading.Event()
        release = threading.Event()
        finished = []
        runs = []

        def slow():
            started.set()
            release.wait(5)
            finished.append(1)

        timed_scheduler.register("slow", "* * * * *", slow)

        worker = threading.Thread(target=lambda: runs.append(timed_scheduler.fire("slow")))
        worker.start()
        assert started.wait(5)

        timed_scheduler.stop("slow")
        assert timed_scheduler.get_task("slow").running

        release.set()
        worker.join(5)

        run = runs[0]
        assert run.success
        assert finished == [1]
        task = timed_scheduler.get_task("slow")
        assert task.run_count == 1
        assert task.enabled is False
        assert not task.running

    def test_different_tasks_run_concurrently(self, timed_scheduler: TaskScheduler):
        a_started = threading.Event()
        release = threading.Event()

        def a():
            a_started.set()
            release.wait(5)

        timed_scheduler.register("a", "* * * * *", a)
        timed_scheduler.register("b", "* * * * *", noop)

        worker = threading.Thread(target=timed_scheduler.fire, args=("a",))
        worker.start()
        assert a_started.wait(5)

        run_b = timed_scheduler.fire("b")

        release.set()
        worker.join(5)
        assert run_b.success and not run_b.skipped


class TestTimer:
    """Tests for due-time computation and the background thread."""

    def test_due_tasks_advance(self, timed_scheduler: TaskScheduler, clock):
        timed_scheduler.register("job", "*/5 * * * *", noop)

        assert timed_scheduler.due_tasks(clock.advance(minutes=4)) == []
        assert timed_scheduler.due_tasks(clock.advance(minutes=1)) == ["job"]
        assert timed_scheduler.due_tasks(clock.now) == []
        assert timed_scheduler.get_task("job").next_run_at == datetime(2024, 6, 1, 12, 10, tzinfo=timezone.utc)

    def test_stopped_task_is_not_due(self, timed_scheduler: TaskScheduler, clock):
        timed_scheduler.register("job", "*/5 * * * *", noop)
        timed_scheduler.stop("job")

        assert timed_scheduler.due_tasks(clock.advance(minutes=5)) == []
        assert not timed_scheduler.get_task("job").enabled

    def test_start_resumes_from_next_instant(self, timed_scheduler: TaskScheduler, clock):
        timed_scheduler.register("job", "*/5 * * * *", noop)
        timed_scheduler.stop("job")
        clock.advance(minutes=7)

        timed_scheduler.start("job")

        task = timed_scheduler.get_task("job")
        assert task.enabled
        assert task.next_run_at == datetime(2024, 6, 1, 12, 10, tzinfo=timezone.utc)

    def test_background_thread_fires_due_task(self, timed_scheduler: TaskScheduler, clock):
        fired = threading.Event()
        timed_scheduler.register("job", "*/5 * * * *", fired.set)
        clock.advance(minutes=5)

        timed_scheduler.run_in_background()

        assert fired.wait(2)
        assert timed_scheduler.is_running
        timed_scheduler.shutdown(timeout=2)
        assert not timed_scheduler.is_running
        assert timed_scheduler.get_task("job").run_count == 1

    def test_shutdown_without_start(self, scheduler: TaskScheduler):
        scheduler.shutdown()
        assert not scheduler.is_running
