"""
Remote store interface.

Everything the operator persists or launches goes through a RemoteStore:
RenovateJob resources (with their status), the secrets they reference,
and the batch workloads that run discovery and Renovate itself.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from renovate_operator.models import RenovateJob
from renovate_operator.workloads import Workload


class RemoteStore(ABC):
    """
    Control-plane operations consumed by the core.

    Implementations raise NotFoundError for missing objects and
    ConflictError when a status write carries a stale resource_version.
    """

    @abstractmethod
    def get_renovate_job(self, name: str, namespace: str) -> RenovateJob:
        """Fetch one RenovateJob, raising NotFoundError if it does not exist."""

    @abstractmethod
    def list_renovate_jobs(self, namespace: str = "") -> List[RenovateJob]:
        """List RenovateJobs in a namespace (all namespaces if empty)."""

    @abstractmethod
    def update_renovate_job_status(self, job: RenovateJob) -> RenovateJob:
        """
        Write job.status, guarded by job.resource_version.

        Returns:
            The stored job with its new resource_version

        Raises:
            ConflictError: If the stored version moved on since job was read
            NotFoundError: If the job was deleted
        """

    @abstractmethod
    def get_secret_value(self, name: str, namespace: str, key: str) -> str:
        """Read one key of a secret, raising NotFoundError if secret or key is missing."""

    @abstractmethod
    def create_workload(self, manifest: Dict[str, Any]) -> Workload:
        """Create a batch workload from its manifest (metadata.generateName is honoured)."""

    @abstractmethod
    def list_workloads(self, namespace: str, labels: Dict[str, str]) -> List[Workload]:
        """List workloads in namespace carrying all the given labels."""

    @abstractmethod
    def delete_workload(self, name: str, namespace: str) -> None:
        """Delete a workload and its pods in the background. Missing is not an error."""

    @abstractmethod
    def get_workload_log(self, workload: Workload) -> str:
        """Log of the newest pod of a workload (first container)."""

    @abstractmethod
    def get_successful_pod_log(self, workload: Workload) -> str:
        """Log of the most recently started pod of a workload that succeeded."""
