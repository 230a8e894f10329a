"""
Health state of the scheduler and executor.

Both components report into one HealthCheck; the run loop checks it
after every resync.
"""
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Optional


@dataclass
class ScheduleHealth:
    name: str
    schedule: str
    next_run: Optional[datetime]
    is_running: bool = False


@dataclass
class SchedulerHealth:
    running: bool = False
    schedules: Dict[str, ScheduleHealth] = field(default_factory=dict)


@dataclass
class ExecutorHealth:
    running: bool = False
    # RenovateJob fullname -> currently inside an executor pass
    jobs: Dict[str, bool] = field(default_factory=dict)


class HealthCheck:
    """Thread-safe holder of scheduler and executor health."""

    def __init__(self):
        self._lock = threading.Lock()
        self._scheduler = SchedulerHealth()
        self._executor = ExecutorHealth()

    def set_scheduler_running(self, running: bool) -> None:
        with self._lock:
            self._scheduler.running = running

    def set_schedule(self, name: str, schedule: str, next_run: Optional[datetime], is_running: bool) -> None:
        with self._lock:
            self._scheduler.schedules[name] = ScheduleHealth(name, schedule, next_run, is_running)

    def remove_schedule(self, name: str) -> None:
        with self._lock:
            self._scheduler.schedules.pop(name, None)

    def set_executor_running(self, running: bool) -> None:
        with self._lock:
            self._executor.running = running

    def set_executor_job(self, fullname: str, is_running: bool) -> None:
        with self._lock:
            self._executor.jobs[fullname] = is_running

    def scheduler_health(self) -> SchedulerHealth:
        with self._lock:
            return SchedulerHealth(
                running=self._scheduler.running,
                schedules={k: replace(v) for k, v in self._scheduler.schedules.items()},
            )

    def executor_health(self) -> ExecutorHealth:
        with self._lock:
            return ExecutorHealth(running=self._executor.running, jobs=dict(self._executor.jobs))

    def is_healthy(self) -> bool:
        """Liveness: both background components are running."""
        with self._lock:
            return self._scheduler.running and self._executor.running
