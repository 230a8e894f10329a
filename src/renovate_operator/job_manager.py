"""
RenovateJob manager.

The only component that reads or writes RenovateJob state. Every
mutation is a read-modify-write cycle retried on version conflicts, and
the project state machine decides what each requested transition
actually does.
"""
import logging
from typing import Callable, List, Optional

from renovate_operator.errors import NotFoundError, WebhookConfigError
from renovate_operator.locks import ReadWriteLock
from renovate_operator.metrics import MetricStore
from renovate_operator.models import (
    JobIdentifier,
    JobStatus,
    ProjectStatus,
    RenovateJob,
    StatusUpdate,
    utcnow,
)
from renovate_operator.project_status import apply_transition
from renovate_operator.retry import RetryConfig, read_modify_write
from renovate_operator.signing import split_secrets, verify_signature, verify_token
from renovate_operator.store import RemoteStore
from renovate_operator.workloads import executor_selector, get_workload_by_label

logger = logging.getLogger(__name__)

ProjectPredicate = Callable[[ProjectStatus], bool]


class RenovateJobManager:
    """
    Reads and mutates RenovateJob status.

    One process-wide readers-writer lock: reads share it, each mutation
    holds the write side for its whole retry loop.
    """

    def __init__(
        self,
        store: RemoteStore,
        metrics: Optional[MetricStore] = None,
        retry_config: Optional[RetryConfig] = None,
        watch_namespace: str = "",
    ):
        self.store = store
        self.metrics = metrics
        self.retry_config = retry_config
        self.watch_namespace = watch_namespace
        self._lock = ReadWriteLock()

    # Reads

    def get_renovate_job(self, name: str, namespace: str) -> RenovateJob:
        """
        Fetch a RenovateJob.

        Raises:
            NotFoundError: If it does not exist
        """
        with self._lock.read():
            return self.store.get_renovate_job(name, namespace)

    def list_renovate_jobs(self) -> List[JobIdentifier]:
        with self._lock.read():
            jobs = self.store.list_renovate_jobs(self.watch_namespace)
        return [job.identifier for job in jobs]

    def list_renovate_jobs_full(self) -> List[RenovateJob]:
        with self._lock.read():
            return self.store.list_renovate_jobs(self.watch_namespace)

    def get_projects_for_renovate_job(self, job: JobIdentifier) -> List[ProjectStatus]:
        with self._lock.read():
            renovate_job = self.store.get_renovate_job(job.name, job.namespace)
        return [p.model_copy() for p in renovate_job.status.projects]

    def get_projects_by_status(self, job: JobIdentifier, status: JobStatus) -> List[ProjectStatus]:
        return [p for p in self.get_projects_for_renovate_job(job) if p.status == status]

    def get_logs_for_project(self, job: JobIdentifier, project: str) -> str:
        """
        Log of the newest Renovate run for a project.

        Raises:
            NotFoundError: If the RenovateJob or the project's workload is gone
        """
        with self._lock.read():
            renovate_job = self.store.get_renovate_job(job.name, job.namespace)
            workload = get_workload_by_label(self.store, executor_selector(renovate_job, project))
            return self.store.get_workload_log(workload)

    # Mutations

    def _mutate(self, job: JobIdentifier, mutate: Callable[[RenovateJob], RenovateJob], operation: str) -> RenovateJob:
        with self._lock.write():
            return read_modify_write(
                read=lambda: self.store.get_renovate_job(job.name, job.namespace),
                mutate=mutate,
                write=self.store.update_renovate_job_status,
                config=self.retry_config,
                operation=f"{operation} {job.fullname}",
            )

    @staticmethod
    def _with_projects(renovate_job: RenovateJob, projects: List[ProjectStatus]) -> RenovateJob:
        status = renovate_job.status.model_copy(update={"projects": projects})
        return renovate_job.model_copy(update={"status": status})

    def update_project_status(self, project: str, job: JobIdentifier, update: StatusUpdate) -> None:
        """
        Request a status transition for one project.

        A project not yet known is added only when it is being scheduled
        (manual trigger ahead of discovery). Any other request for an
        unknown project is ignored.

        Args:
            project: Project name
            job: Owning RenovateJob
            update: Requested status plus payload
        """
        def mutate(renovate_job: RenovateJob) -> RenovateJob:
            projects = list(renovate_job.status.projects)
            for i, current in enumerate(projects):
                if current.name == project:
                    projects[i] = apply_transition(current, update)
                    break
            else:
                if update.status != JobStatus.SCHEDULED:
                    logger.warning(
                        f"Ignoring {update.status.value} for unknown project {project} in {job.fullname}"
                    )
                    return renovate_job
                projects.append(ProjectStatus(
                    name=project,
                    status=JobStatus.SCHEDULED,
                    renovate_result_status=update.renovate_result_status,
                ))
            return self._with_projects(renovate_job, projects)

        self._mutate(job, mutate, "update project status")
        logger.debug(f"Requested {update.status.value} for {project} in {job.fullname}")

    def update_project_status_batched(
        self,
        predicate: ProjectPredicate,
        job: JobIdentifier,
        update: StatusUpdate,
    ) -> None:
        """Request the same transition for every project matching predicate."""
        def mutate(renovate_job: RenovateJob) -> RenovateJob:
            projects = [
                apply_transition(p, update) if predicate(p) else p
                for p in renovate_job.status.projects
            ]
            return self._with_projects(renovate_job, projects)

        self._mutate(job, mutate, "batch update project status")

    def reconcile_projects(self, job: JobIdentifier, names: List[str]) -> List[ProjectStatus]:
        """
        Replace the project set with a freshly discovered one.

        Known projects keep their record, new ones start scheduled and
        vanished ones are dropped together with their metrics.

        Args:
            job: Owning RenovateJob
            names: Discovered project names, in discovery order

        Returns:
            The stored project list
        """
        wanted = list(dict.fromkeys(names))
        dropped: List[str] = []

        def mutate(renovate_job: RenovateJob) -> RenovateJob:
            existing = {p.name: p for p in renovate_job.status.projects}
            now = utcnow()
            projects = [
                existing[name] if name in existing
                else ProjectStatus(name=name, status=JobStatus.SCHEDULED, last_run=now)
                for name in wanted
            ]
            dropped[:] = [name for name in existing if name not in set(wanted)]
            return self._with_projects(renovate_job, projects)

        stored = self._mutate(job, mutate, "reconcile projects")

        for name in dropped:
            logger.info(f"Project {name} no longer discovered in {job.fullname}")
            if self.metrics is not None:
                self.metrics.delete_project_metrics(job.namespace, job.name, name)

        return [p.model_copy() for p in stored.status.projects]

    # Webhook trust

    def _webhook_secrets(self, renovate_job: RenovateJob) -> List[str]:
        secret_ref = renovate_job.spec.webhook.authentication.secret_ref
        if secret_ref is None or not secret_ref.name or not secret_ref.key:
            raise WebhookConfigError(
                f"RenovateJob {renovate_job.fullname} enables webhook authentication without a secretRef"
            )
        try:
            raw = self.store.get_secret_value(secret_ref.name, renovate_job.namespace, secret_ref.key)
        except NotFoundError as e:
            raise WebhookConfigError(
                f"secret key {secret_ref.key} not found in secret {secret_ref.name}: {e}"
            ) from e
        return split_secrets(raw)

    def is_webhook_token_valid(self, job: JobIdentifier, token: str) -> bool:
        """
        Check a plain webhook token.

        Returns:
            False when webhook authentication is not enabled

        Raises:
            WebhookConfigError: If the referenced secret key is missing
        """
        with self._lock.read():
            renovate_job = self.store.get_renovate_job(job.name, job.namespace)
            if not renovate_job.webhook_auth_enabled():
                return False
            return verify_token(token, self._webhook_secrets(renovate_job))

    def is_webhook_signature_valid(self, job: JobIdentifier, signature: str, body: bytes) -> bool:
        """
        Check an HMAC-SHA256 webhook signature ("sha256=<hex>").

        Returns:
            False when webhook authentication is not enabled

        Raises:
            WebhookConfigError: If the referenced secret key is missing
        """
        with self._lock.read():
            renovate_job = self.store.get_renovate_job(job.name, job.namespace)
            if not renovate_job.webhook_auth_enabled():
                return False
            return verify_signature(signature, body, self._webhook_secrets(renovate_job))
