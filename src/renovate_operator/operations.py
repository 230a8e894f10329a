"""
Operator actions requested from outside the control loop.

A UI, HTTP API or webhook receiver calls these; the CLI uses them too.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from renovate_operator.discovery import DiscoveryAgent
from renovate_operator.errors import DiscoveryError, NotFoundError, UnauthorizedError
from renovate_operator.job_manager import RenovateJobManager
from renovate_operator.models import JobIdentifier, JobStatus, ProjectStatus, RenovateJob, StatusUpdate
from renovate_operator.scheduler import next_run

logger = logging.getLogger(__name__)


@dataclass
class RenovateJobInfo:
    """Overview of one RenovateJob."""
    name: str
    namespace: str
    cron_expression: str
    next_schedule: Optional[datetime]
    discovery_status: JobStatus
    projects: List[ProjectStatus] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'namespace': self.namespace,
            'cronExpression': self.cron_expression,
            'nextSchedule': self.next_schedule.isoformat() if self.next_schedule else None,
            'discoveryStatus': self.discovery_status.value,
            'projects': [p.model_dump(mode="json", by_alias=True) for p in self.projects],
        }


class OperatorService:
    """Manual triggers, discovery control, listings and webhook checks."""

    def __init__(self, manager: RenovateJobManager, discovery: DiscoveryAgent):
        self.manager = manager
        self.discovery = discovery

    def trigger_project(self, name: str, namespace: str, project: str) -> None:
        """Schedule one project for the next executor pass."""
        if not (name and namespace and project):
            raise ValueError("name, namespace and project are required")
        self.manager.update_project_status(
            project,
            JobIdentifier(name=name, namespace=namespace),
            StatusUpdate(status=JobStatus.SCHEDULED),
        )
        logger.info(f"Triggered Renovate for {project} in {name}-{namespace}")

    def discovery_status(self, renovate_job: RenovateJob) -> JobStatus:
        """Discovery status for display: never run counts as scheduled."""
        try:
            return self.discovery.get_discovery_job_status(renovate_job)
        except NotFoundError:
            return JobStatus.SCHEDULED
        except Exception as e:
            logger.warning(f"Failed to get discovery status of {renovate_job.fullname}: {e}")
            return JobStatus.FAILED

    def get_discovery_status(self, name: str, namespace: str) -> JobStatus:
        renovate_job = self.manager.get_renovate_job(name, namespace)
        try:
            return self.discovery.get_discovery_job_status(renovate_job)
        except NotFoundError:
            return JobStatus.SCHEDULED

    def start_discovery(self, name: str, namespace: str) -> threading.Thread:
        """
        Launch discovery and reconcile its result in the background.

        Returns:
            The background thread waiting for the discovery job

        Raises:
            DiscoveryError: If discovery is already running or could not start
            NotFoundError: If the RenovateJob does not exist
        """
        renovate_job = self.manager.get_renovate_job(name, namespace)
        if self.discovery_status(renovate_job) == JobStatus.RUNNING:
            raise DiscoveryError(f"discovery of {renovate_job.fullname} is already running")

        self.discovery.create_discovery_job(renovate_job)

        thread = threading.Thread(
            target=self._finish_discovery,
            args=(renovate_job,),
            name=f"discovery-{renovate_job.fullname}",
            daemon=True,
        )
        thread.start()
        logger.info(f"Started discovery for {renovate_job.fullname}")
        return thread

    def _finish_discovery(self, renovate_job: RenovateJob) -> None:
        try:
            projects = self.discovery.wait_for_discovery_job(renovate_job)
            self.manager.reconcile_projects(renovate_job.identifier, projects)
        except Exception as e:
            logger.error(f"Discovery for {renovate_job.fullname} failed: {e}")

    def list_renovate_jobs(self) -> List[RenovateJobInfo]:
        result = []
        for renovate_job in self.manager.list_renovate_jobs_full():
            result.append(RenovateJobInfo(
                name=renovate_job.name,
                namespace=renovate_job.namespace,
                cron_expression=renovate_job.spec.schedule,
                next_schedule=next_run(renovate_job.spec.schedule),
                discovery_status=self.discovery_status(renovate_job),
                projects=[p.model_copy() for p in renovate_job.status.projects],
            ))
        return result

    def get_project_logs(self, name: str, namespace: str, project: str) -> str:
        """
        Raises:
            NotFoundError: If the run's workload was already cleaned up
        """
        return self.manager.get_logs_for_project(JobIdentifier(name=name, namespace=namespace), project)

    def authorize_webhook(
        self,
        name: str,
        namespace: str,
        token: Optional[str] = None,
        signature: Optional[str] = None,
        body: bytes = b"",
    ) -> None:
        """
        Accept a webhook call if its token or its body signature is valid.

        Raises:
            UnauthorizedError: If neither check passes
            WebhookConfigError: If the referenced secret is missing
        """
        identifier = JobIdentifier(name=name, namespace=namespace)
        if token and self.manager.is_webhook_token_valid(identifier, token):
            return
        if signature and self.manager.is_webhook_signature_valid(identifier, signature, body):
            return
        logger.warning(f"Rejected webhook call for {identifier.fullname}")
        raise UnauthorizedError(f"webhook call for {identifier.fullname} not authorized")
