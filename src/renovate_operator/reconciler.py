"""
RenovateJob reconciler.

Keeps exactly one cron entry per existing RenovateJob. When an entry
fires, the RenovateJob's projects are rediscovered and every project not
currently running is scheduled again; the executor picks them up from
there.
"""
import logging
import threading
from typing import Callable, Dict, Optional

from renovate_operator.discovery import DiscoveryAgent
from renovate_operator.errors import NotFoundError
from renovate_operator.job_manager import RenovateJobManager
from renovate_operator.logging_utils import correlation_context
from renovate_operator.models import JobIdentifier, JobStatus, RenovateJob, StatusUpdate
from renovate_operator.scheduler import Scheduler

logger = logging.getLogger(__name__)


class RenovateJobReconciler:
    """Maps RenovateJobs onto scheduler entries."""

    def __init__(
        self,
        manager: RenovateJobManager,
        discovery: DiscoveryAgent,
        scheduler: Scheduler,
        stop_event: Optional[threading.Event] = None,
    ):
        self.manager = manager
        self.discovery = discovery
        self.scheduler = scheduler
        self.stop_event = stop_event
        self._known: Dict[str, JobIdentifier] = {}
        self._lock = threading.Lock()

    def reconcile(self, name: str, namespace: str) -> None:
        """
        Install, refresh or remove the cron entry of one RenovateJob.

        Raises:
            Exception: Any store error other than the RenovateJob being gone
        """
        identifier = JobIdentifier(name=name, namespace=namespace)
        try:
            renovate_job = self.manager.get_renovate_job(name, namespace)
        except NotFoundError:
            self._remove(identifier)
            return
        except Exception as e:
            logger.error(f"Failed to get RenovateJob {identifier.fullname}: {e}")
            raise

        self._install(renovate_job)

    def resync(self) -> None:
        """Reconcile every RenovateJob and drop entries of deleted ones."""
        identifiers = self.manager.list_renovate_jobs()
        present = {i.fullname for i in identifiers}

        for identifier in identifiers:
            try:
                self.reconcile(identifier.name, identifier.namespace)
            except Exception as e:
                logger.error(f"Reconcile of {identifier.fullname} failed: {e}")

        with self._lock:
            stale = [i for fullname, i in self._known.items() if fullname not in present]
        for identifier in stale:
            self._remove(identifier)

    def _install(self, renovate_job: RenovateJob) -> None:
        fullname = renovate_job.fullname
        try:
            self.scheduler.add_schedule_replace_existing(
                renovate_job.spec.schedule,
                fullname,
                self.make_tick(renovate_job.identifier),
            )
        except ValueError as e:
            logger.error(f"Failed to add schedule for {fullname}: {e}")
            return
        with self._lock:
            self._known[fullname] = renovate_job.identifier
        logger.debug(f"Schedule for {fullname}: {renovate_job.spec.schedule}")

    def _remove(self, identifier: JobIdentifier) -> None:
        with self._lock:
            self._known.pop(identifier.fullname, None)
        if self.scheduler.has_schedule(identifier.fullname):
            logger.info(f"RenovateJob {identifier.fullname} is gone, removing its schedule")
        self.scheduler.remove_schedule(identifier.fullname)

    def make_tick(self, identifier: JobIdentifier) -> Callable[[], None]:
        """Callback run on every cron fire of a RenovateJob."""
        def tick() -> None:
            with correlation_context(renovatejob=identifier.fullname):
                self.run_tick(identifier)
        return tick

    def run_tick(self, identifier: JobIdentifier) -> None:
        """
        Rediscover projects and schedule every project not running.

        Failures are logged and abort only this tick.
        """
        logger.debug(f"Executing schedule for {identifier.fullname}")
        try:
            renovate_job = self.manager.get_renovate_job(identifier.name, identifier.namespace)
        except Exception as e:
            logger.error(f"Failed to get current RenovateJob {identifier.fullname}: {e}")
            return

        try:
            projects = self.discovery.discover(renovate_job, stop_event=self.stop_event)
        except Exception as e:
            logger.error(f"Failed to discover projects for {identifier.fullname}: {e}")
            return

        try:
            self.manager.reconcile_projects(identifier, projects)
        except Exception as e:
            logger.error(f"Failed to reconcile projects of {identifier.fullname}: {e}")
            return

        try:
            self.manager.update_project_status_batched(
                lambda p: p.status != JobStatus.RUNNING,
                identifier,
                StatusUpdate(status=JobStatus.SCHEDULED),
            )
        except Exception as e:
            logger.error(f"Failed to schedule projects of {identifier.fullname}: {e}")
            return

        logger.info(f"Scheduled {len(projects)} projects of {identifier.fullname}")
