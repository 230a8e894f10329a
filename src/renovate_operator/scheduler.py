"""
Named cron schedules.

A single dispatcher thread sleeps until the earliest entry is due and
starts each due callback in its own daemon thread. Cron expressions are
the standard five fields (or an @-descriptor such as @hourly), evaluated
in local time.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from croniter import croniter

from renovate_operator.health import HealthCheck

logger = logging.getLogger(__name__)

# Upper bound on one dispatcher sleep so clock jumps are noticed
MAX_WAIT = 60.0


def _now() -> datetime:
    return datetime.now().astimezone()


def is_valid_schedule(expr: str) -> bool:
    expr = (expr or "").strip()
    if not expr:
        return False
    if not expr.startswith("@") and len(expr.split()) != 5:
        return False
    return croniter.is_valid(expr)


def next_run(expr: str, base: Optional[datetime] = None) -> Optional[datetime]:
    """Next fire time of expr after base (now if None), None if expr is invalid."""
    if not is_valid_schedule(expr):
        return None
    return croniter(expr, base or _now()).get_next(datetime)


@dataclass
class ScheduleEntry:
    name: str
    expr: str
    fn: Callable[[], None]
    next_run: datetime
    is_running: bool = False


class Scheduler:
    """
    Cron engine keyed by schedule name.

    Example:
        scheduler = Scheduler(health)
        scheduler.start()
        scheduler.add_schedule("*/5 * * * *", "renovate-default", tick)
    """

    def __init__(self, health: Optional[HealthCheck] = None):
        self.health = health or HealthCheck()
        self._entries: Dict[str, ScheduleEntry] = {}
        self._cond = threading.Condition(threading.Lock())
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the dispatcher thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._dispatch_loop, name="scheduler", daemon=True)
        self._thread.start()
        self.health.set_scheduler_running(True)
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop the dispatcher. Callbacks already running are not interrupted."""
        self._stop_event.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self.health.set_scheduler_running(False)
        logger.info("Scheduler stopped")

    def add_schedule(self, expr: str, name: str, fn: Callable[[], None]) -> None:
        """
        Register fn under name.

        Raises:
            ValueError: If expr is not a valid cron expression
        """
        upcoming = next_run(expr)
        if upcoming is None:
            raise ValueError(f"Invalid cron expression for {name}: {expr!r}")

        with self._cond:
            self._entries[name] = ScheduleEntry(name=name, expr=expr, fn=fn, next_run=upcoming)
            self._cond.notify_all()
        self.health.set_schedule(name, expr, upcoming, is_running=False)
        logger.info(f"Added schedule {name} ({expr}), next run at {upcoming.isoformat()}")

    def add_schedule_replace_existing(self, expr: str, name: str, fn: Callable[[], None]) -> None:
        """Register fn under name unless name already runs on the same expression."""
        with self._cond:
            existing = self._entries.get(name)
        if existing is not None:
            if existing.expr == expr:
                return
            self.remove_schedule(name)
        self.add_schedule(expr, name, fn)

    def remove_schedule(self, name: str) -> None:
        with self._cond:
            removed = self._entries.pop(name, None)
            self._cond.notify_all()
        self.health.remove_schedule(name)
        if removed is not None:
            logger.info(f"Removed schedule {name}")

    def get_next_run_on_schedule(self, expr: str) -> Optional[datetime]:
        return next_run(expr)

    def has_schedule(self, name: str) -> bool:
        with self._cond:
            return name in self._entries

    def list_schedules(self) -> List[Dict]:
        """Snapshot of all entries."""
        with self._cond:
            return [
                {
                    'name': e.name,
                    'schedule': e.expr,
                    'next_run': e.next_run,
                    'is_running': e.is_running,
                }
                for e in self._entries.values()
            ]

    def run_pending(self, now: Optional[datetime] = None) -> List[threading.Thread]:
        """
        Start every entry that is due at now.

        Returns:
            The threads started, one per due entry
        """
        now = now or _now()
        due: List[ScheduleEntry] = []
        with self._cond:
            for entry in self._entries.values():
                if entry.next_run <= now:
                    entry.next_run = croniter(entry.expr, now).get_next(datetime)
                    due.append(entry)

        threads = []
        for entry in due:
            thread = threading.Thread(
                target=self._execute,
                args=(entry,),
                name=f"schedule-{entry.name}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        return threads

    def _execute(self, entry: ScheduleEntry) -> None:
        with self._cond:
            entry.is_running = True
        self.health.set_schedule(entry.name, entry.expr, entry.next_run, is_running=True)
        logger.info(f"Executing schedule {entry.name}")
        try:
            entry.fn()
            logger.info(f"Schedule {entry.name} executed")
        except Exception as e:
            logger.error(f"Schedule {entry.name} failed: {e}", exc_info=True)
        finally:
            with self._cond:
                entry.is_running = False
                still_registered = self._entries.get(entry.name) is entry
            if still_registered:
                self.health.set_schedule(entry.name, entry.expr, entry.next_run, is_running=False)

    def _seconds_until_next(self, now: datetime) -> float:
        with self._cond:
            if not self._entries:
                return MAX_WAIT
            earliest = min(e.next_run for e in self._entries.values())
        return max(0.0, min(MAX_WAIT, (earliest - now).total_seconds()))

    def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_pending()
            except Exception as e:
                logger.error(f"Scheduler dispatch failed: {e}", exc_info=True)

            wait = self._seconds_until_next(_now())
            with self._cond:
                if not self._stop_event.is_set():
                    self._cond.wait(timeout=wait)
