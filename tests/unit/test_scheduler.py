"""
Unit tests for the cron scheduler.

Tests the scheduler's ability to:
- Validate cron expressions
- Replace entries only when their expression changes
- Run due entries in their own threads
- Report health
"""
import sys
import threading
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from renovate_operator.health import HealthCheck
from renovate_operator.scheduler import Scheduler, is_valid_schedule, next_run


def later(hours: int = 2) -> datetime:
    return datetime.now().astimezone() + timedelta(hours=hours)


def run_due(scheduler: Scheduler, now: datetime = None) -> None:
    """Helper: fire everything due and wait for the callbacks."""
    for thread in scheduler.run_pending(now or later()):
        thread.join(timeout=5)


class TestExpressions:
    """Cron expression handling."""

    @pytest.mark.parametrize("expr", ["*/5 * * * *", "0 3 * * 1", "@hourly", "@daily"])
    def test_valid(self, expr):
        assert is_valid_schedule(expr)
        assert next_run(expr) is not None

    @pytest.mark.parametrize("expr", ["", "not a cron", "* * *", "61 * * * *", "*/5 * * * * *"])
    def test_invalid(self, expr):
        assert not is_valid_schedule(expr)
        assert next_run(expr) is None

    def test_next_run_after_base(self):
        base = datetime(2024, 1, 1, 10, 2).astimezone()
        assert next_run("*/5 * * * *", base) == datetime(2024, 1, 1, 10, 5).astimezone()


class TestScheduleEntries:
    """Adding, replacing and removing entries."""

    def test_add_invalid_raises(self):
        scheduler = Scheduler()
        with pytest.raises(ValueError):
            scheduler.add_schedule("bogus", "job", lambda: None)
        assert scheduler.list_schedules() == []

    def test_add_and_list(self):
        scheduler = Scheduler()
        scheduler.add_schedule("*/5 * * * *", "job", lambda: None)
        [entry] = scheduler.list_schedules()
        assert entry['name'] == "job"
        assert entry['schedule'] == "*/5 * * * *"
        assert entry['is_running'] is False
        assert entry['next_run'] > datetime.now().astimezone()

    def test_replace_same_expression_is_noop(self):
        """The original callback stays registered."""
        calls = []
        scheduler = Scheduler()
        scheduler.add_schedule_replace_existing("*/5 * * * *", "job", lambda: calls.append("first"))
        scheduler.add_schedule_replace_existing("*/5 * * * *", "job", lambda: calls.append("second"))
        run_due(scheduler)
        assert calls == ["first"]

    def test_replace_new_expression(self):
        calls = []
        scheduler = Scheduler()
        scheduler.add_schedule_replace_existing("*/5 * * * *", "job", lambda: calls.append("first"))
        scheduler.add_schedule_replace_existing("0 * * * *", "job", lambda: calls.append("second"))
        run_due(scheduler)
        assert calls == ["second"]
        assert [e['schedule'] for e in scheduler.list_schedules()] == ["0 * * * *"]

    def test_remove(self):
        calls = []
        scheduler = Scheduler()
        scheduler.add_schedule("*/5 * * * *", "job", lambda: calls.append(1))
        scheduler.remove_schedule("job")
        scheduler.remove_schedule("job")
        run_due(scheduler)
        assert calls == []
        assert not scheduler.has_schedule("job")


class TestExecution:
    """Running due entries."""

    def test_not_due_not_run(self):
        calls = []
        scheduler = Scheduler()
        scheduler.add_schedule("*/5 * * * *", "job", lambda: calls.append(1))
        run_due(scheduler, datetime.now().astimezone() - timedelta(minutes=10))
        assert calls == []

    def test_due_entry_runs_once_per_fire(self):
        calls = []
        scheduler = Scheduler()
        scheduler.add_schedule("*/5 * * * *", "job", lambda: calls.append(1))
        now = later()
        run_due(scheduler, now)
        run_due(scheduler, now)
        assert calls == [1]

    def test_exception_does_not_break_others(self):
        calls = []

        def boom():
            raise RuntimeError("boom")

        scheduler = Scheduler()
        scheduler.add_schedule("*/5 * * * *", "bad", boom)
        scheduler.add_schedule("*/5 * * * *", "good", lambda: calls.append(1))
        run_due(scheduler)
        assert calls == [1]
        run_due(scheduler, later(hours=4))
        assert calls == [1, 1]

    def test_health_tracks_running(self):
        health = HealthCheck()
        scheduler = Scheduler(health)
        started = threading.Event()
        release = threading.Event()

        def slow():
            started.set()
            release.wait(timeout=5)

        scheduler.add_schedule("*/5 * * * *", "job", slow)
        threads = scheduler.run_pending(later())
        assert started.wait(timeout=5)
        assert health.scheduler_health().schedules["job"].is_running is True
        release.set()
        for t in threads:
            t.join(timeout=5)
        assert health.scheduler_health().schedules["job"].is_running is False

    def test_start_stop(self):
        health = HealthCheck()
        scheduler = Scheduler(health)
        scheduler.start()
        assert health.scheduler_health().running is True
        scheduler.stop()
        assert health.scheduler_health().running is False
