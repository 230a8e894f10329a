"""
Executor control loop.

Every tick walks all RenovateJobs and drives their projects forward:
running projects are checked against their workload and finished,
scheduled projects are launched while the RenovateJob's parallelism
allows it. A RenovateJob whose previous pass is still in progress is
skipped for the tick.
"""
import logging
import threading
from typing import Optional

from renovate_operator.errors import NotFoundError
from renovate_operator.health import HealthCheck
from renovate_operator.job_definitions import new_renovate_job
from renovate_operator.job_manager import RenovateJobManager
from renovate_operator.locks import KeyedLocks
from renovate_operator.log_parser import LogParseResult, parse_renovate_logs
from renovate_operator.logging_utils import correlation_context
from renovate_operator.metrics import MetricStore
from renovate_operator.models import JobIdentifier, JobStatus, OperatorConfig, ProjectStatus, RenovateJob, StatusUpdate
from renovate_operator.store import RemoteStore
from renovate_operator.workloads import (
    Workload,
    create_workload_with_generation,
    delete_workload,
    executor_selector,
    get_workload_by_label,
    get_workload_status,
)

logger = logging.getLogger(__name__)


class RenovateExecutor:
    """Periodically launches and finishes Renovate runs for all RenovateJobs."""

    def __init__(
        self,
        store: RemoteStore,
        manager: RenovateJobManager,
        config: Optional[OperatorConfig] = None,
        metrics: Optional[MetricStore] = None,
        health: Optional[HealthCheck] = None,
    ):
        self.store = store
        self.manager = manager
        self.config = config or OperatorConfig()
        self.metrics = metrics
        self.health = health or HealthCheck()
        self._locks: KeyedLocks[threading.Lock] = KeyedLocks(threading.Lock)
        self._thread: Optional[threading.Thread] = None

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Start the control loop in a background thread and return it."""
        self._thread = threading.Thread(
            target=self._loop,
            args=(stop_event,),
            name="executor",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def _loop(self, stop_event: threading.Event) -> None:
        interval = self.config.executor.loop_interval
        self.health.set_executor_running(True)
        logger.info(f"Starting executor loop (interval {interval}s)")
        try:
            while not stop_event.is_set():
                try:
                    self.execute()
                except Exception as e:
                    logger.error(f"Error in executor loop: {e}", exc_info=True)
                if stop_event.wait(interval):
                    break
        finally:
            self.health.set_executor_running(False)
            logger.info("Executor loop stopped")

    def execute(self) -> None:
        """One pass over every RenovateJob."""
        try:
            jobs = self.manager.list_renovate_jobs()
        except Exception as e:
            logger.error(f"Failed to list RenovateJobs: {e}")
            return

        logger.debug(f"Executor pass over {len(jobs)} RenovateJobs")
        for job in jobs:
            try:
                self.execute_renovate_job(job)
            except Exception as e:
                logger.error(f"Executor pass failed for {job.fullname}: {e}", exc_info=True)

    def execute_renovate_job(self, job: JobIdentifier) -> bool:
        """
        Drive one RenovateJob forward.

        Returns:
            False if another pass for the same RenovateJob is still running
        """
        lock = self._locks.get(job.fullname)
        if not lock.acquire(blocking=False):
            self.health.set_executor_job(job.fullname, False)
            logger.info(f"Previous execution of {job.fullname} still running, skipping")
            return False

        self.health.set_executor_job(job.fullname, True)
        try:
            with correlation_context(renovatejob=job.fullname):
                renovate_job = self.manager.get_renovate_job(job.name, job.namespace)
                self._process_projects(renovate_job)
            return True
        finally:
            self.health.set_executor_job(job.fullname, False)
            lock.release()

    def _process_projects(self, renovate_job: RenovateJob) -> None:
        running = sum(1 for p in renovate_job.status.projects if p.status == JobStatus.RUNNING)

        for project in renovate_job.status.projects:
            if project.status == JobStatus.RUNNING:
                if self._check_running(renovate_job, project):
                    running -= 1
            elif project.status == JobStatus.SCHEDULED:
                if running < renovate_job.spec.parallelism:
                    self._launch(renovate_job, project)
                    running += 1

    def _check_running(self, renovate_job: RenovateJob, project: ProjectStatus) -> bool:
        """Finish a running project if its workload is done. Returns True if it finished."""
        workload: Optional[Workload]
        try:
            workload = get_workload_by_label(self.store, executor_selector(renovate_job, project.name))
        except NotFoundError:
            logger.warning(f"Workload for running project {project.name} vanished, marking failed")
            workload = None

        status, duration = get_workload_status(workload)
        if status == JobStatus.RUNNING:
            return False

        parsed = self._parse_logs(workload, project.name)

        if self.metrics is not None:
            self.metrics.capture_run(
                renovate_job.namespace,
                renovate_job.name,
                project.name,
                failed=status == JobStatus.FAILED,
                has_issues=parsed.has_issues,
            )

        self.manager.update_project_status(
            project.name,
            renovate_job.identifier,
            StatusUpdate(
                status=status,
                renovate_result_status=parsed.renovate_result_status,
                duration=duration or None,
            ),
        )
        logger.info(f"Project {project.name} {status.value} after {duration or 'unknown time'}")

        if (
            workload is not None
            and status == JobStatus.COMPLETED
            and self.config.executor.delete_successful_jobs
        ):
            delete_workload(self.store, workload)
            logger.debug(f"Deleted successful workload {workload.name}")

        return True

    def _parse_logs(self, workload: Optional[Workload], project: str) -> LogParseResult:
        if workload is None:
            return LogParseResult()
        try:
            logs = self.store.get_workload_log(workload)
        except Exception as e:
            logger.error(f"Failed to read logs of {project}: {e}")
            return LogParseResult()
        return parse_renovate_logs(logs)

    def _launch(self, renovate_job: RenovateJob, project: ProjectStatus) -> None:
        manifest = new_renovate_job(renovate_job, project.name, self.config)
        create_workload_with_generation(
            self.store, manifest, executor_selector(renovate_job, project.name)
        )
        self.manager.update_project_status(
            project.name,
            renovate_job.identifier,
            StatusUpdate(status=JobStatus.RUNNING),
        )
        logger.info(f"Started Renovate run for {project.name}")
