"""
Pytest fixtures for renovate operator tests.

Provides an in-memory RemoteStore with optimistic concurrency so the
manager, discovery, executor and reconciler can run without a cluster.
"""
import copy
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from renovate_operator.errors import ConflictError, NotFoundError
from renovate_operator.job_manager import RenovateJobManager
from renovate_operator.metrics import MetricStore
from renovate_operator.models import OperatorConfig, RenovateJob
from renovate_operator.retry import RetryConfig
from renovate_operator.store import RemoteStore
from renovate_operator.workloads import JOB_LABEL_NAME, Workload

FAST_RETRY = RetryConfig(max_attempts=5, backoff_base=0.001, backoff_max=0.01, jitter=0)


class FakeStore(RemoteStore):
    """
    In-memory RemoteStore.

    Status writes carry a resource version and are rejected with
    ConflictError when it is stale. Everything handed out is a deep copy.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.jobs: Dict[tuple, Dict[str, Any]] = {}
        self.secrets: Dict[tuple, Dict[str, str]] = {}
        self.workloads: Dict[tuple, Dict[str, Any]] = {}
        self.logs: Dict[str, str] = {}
        self.deleted: List[str] = []
        self.status_writes = 0
        # Next N status writes fail with ConflictError
        self.inject_conflicts = 0
        # logical name -> (succeeded, log) applied to workloads on create
        self._scripts: Dict[str, tuple] = {}
        self._name_counter = 0

    # Test helpers

    def add_renovate_job(
        self,
        name: str = "renovate",
        namespace: str = "default",
        schedule: str = "*/5 * * * *",
        parallelism: int = 1,
        projects: Optional[List[Dict[str, Any]]] = None,
        **spec: Any,
    ) -> RenovateJob:
        resource = {
            "metadata": {
                "name": name,
                "namespace": namespace,
                "resourceVersion": "1",
                "uid": f"uid-{name}-{namespace}",
            },
            "spec": {"schedule": schedule, "image": "renovate/renovate:latest", "parallelism": parallelism, **spec},
            "status": {"projects": projects or []},
        }
        with self._lock:
            self.jobs[(namespace, name)] = resource
        return RenovateJob.from_resource(copy.deepcopy(resource))

    def delete_renovate_job(self, name: str, namespace: str = "default") -> None:
        with self._lock:
            self.jobs.pop((namespace, name), None)

    def add_secret(self, name: str, namespace: str, data: Dict[str, str]) -> None:
        with self._lock:
            self.secrets[(namespace, name)] = dict(data)

    def script_workload(self, logical_name: str, succeeded: Optional[bool], log: str = "") -> None:
        """Workloads created with this generateName finish immediately."""
        with self._lock:
            self._scripts[logical_name] = (succeeded, log)

    def add_workload(self, name: str, namespace: str, labels: Dict[str, str], **status: Any) -> Workload:
        manifest = {
            "metadata": {"name": name, "namespace": namespace, "labels": dict(labels)},
            "spec": {},
            "status": status,
        }
        with self._lock:
            self.workloads[(namespace, name)] = manifest
        return Workload.from_manifest(copy.deepcopy(manifest))

    def finish_workload(self, name: str, namespace: str, succeeded: bool = True, log: str = "", seconds: int = 65) -> None:
        with self._lock:
            manifest = self.workloads[(namespace, name)]
            self._finish(manifest, succeeded, seconds)
            self.logs[name] = log

    @staticmethod
    def _finish(manifest: Dict[str, Any], succeeded: bool, seconds: int = 65) -> None:
        start = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        status = manifest.setdefault("status", {})
        status["startTime"] = start.isoformat()
        status["completionTime"] = (start + timedelta(seconds=seconds)).isoformat()
        if succeeded:
            status["succeeded"] = 1
            status["conditions"] = [{"type": "Complete", "status": "True"}]
        else:
            status["failed"] = 1
            status["conditions"] = [{"type": "Failed", "status": "True"}]

    def workloads_named(self, logical_name: str) -> List[Workload]:
        with self._lock:
            return [
                Workload.from_manifest(copy.deepcopy(m))
                for m in self.workloads.values()
                if m["metadata"]["labels"].get(JOB_LABEL_NAME) == logical_name
            ]

    def project_statuses(self, name: str = "renovate", namespace: str = "default") -> Dict[str, str]:
        job = self.get_renovate_job(name, namespace)
        return {p.name: p.status.value for p in job.status.projects}

    # RemoteStore

    def get_renovate_job(self, name: str, namespace: str) -> RenovateJob:
        with self._lock:
            resource = self.jobs.get((namespace, name))
            if resource is None:
                raise NotFoundError("RenovateJob", f"{namespace}/{name}")
            return RenovateJob.from_resource(copy.deepcopy(resource))

    def list_renovate_jobs(self, namespace: str = "") -> List[RenovateJob]:
        with self._lock:
            return [
                RenovateJob.from_resource(copy.deepcopy(r))
                for (ns, _), r in sorted(self.jobs.items())
                if not namespace or ns == namespace
            ]

    def update_renovate_job_status(self, job: RenovateJob) -> RenovateJob:
        with self._lock:
            resource = self.jobs.get((job.namespace, job.name))
            if resource is None:
                raise NotFoundError("RenovateJob", job.fullname)
            if self.inject_conflicts > 0:
                self.inject_conflicts -= 1
                raise ConflictError(f"RenovateJob {job.fullname} was modified (injected)")
            if job.resource_version != resource["metadata"]["resourceVersion"]:
                raise ConflictError(f"RenovateJob {job.fullname} was modified")
            resource["status"] = job.to_resource()["status"]
            resource["metadata"]["resourceVersion"] = str(int(resource["metadata"]["resourceVersion"]) + 1)
            self.status_writes += 1
            return RenovateJob.from_resource(copy.deepcopy(resource))

    def get_secret_value(self, name: str, namespace: str, key: str) -> str:
        with self._lock:
            secret = self.secrets.get((namespace, name))
            if secret is None:
                raise NotFoundError("Secret", f"{namespace}/{name}")
            if key not in secret:
                raise NotFoundError("secret key", f"{namespace}/{name}/{key}")
            return secret[key]

    def create_workload(self, manifest: Dict[str, Any]) -> Workload:
        manifest = copy.deepcopy(manifest)
        metadata = manifest["metadata"]
        with self._lock:
            self._name_counter += 1
            generate_name = metadata.get("generateName", "")
            metadata["name"] = metadata.get("name") or f"{generate_name}-{self._name_counter:05d}"
            metadata["creationTimestamp"] = datetime.now(timezone.utc).isoformat()
            manifest["status"] = {}
            script = self._scripts.get(generate_name)
            if script is not None:
                succeeded, log = script
                if succeeded is not None:
                    self._finish(manifest, succeeded)
                self.logs[metadata["name"]] = log
            self.workloads[(metadata["namespace"], metadata["name"])] = manifest
            return Workload.from_manifest(copy.deepcopy(manifest))

    def list_workloads(self, namespace: str, labels: Dict[str, str]) -> List[Workload]:
        with self._lock:
            return [
                Workload.from_manifest(copy.deepcopy(m))
                for (ns, _), m in self.workloads.items()
                if ns == namespace
                and all(m["metadata"].get("labels", {}).get(k) == v for k, v in labels.items())
            ]

    def delete_workload(self, name: str, namespace: str) -> None:
        with self._lock:
            if self.workloads.pop((namespace, name), None) is not None:
                self.deleted.append(name)

    def get_workload_log(self, workload: Workload) -> str:
        with self._lock:
            if workload.name not in self.logs:
                raise NotFoundError("pod", workload.name)
            return self.logs[workload.name]

    def get_successful_pod_log(self, workload: Workload) -> str:
        if workload.succeeded <= 0:
            raise NotFoundError("succeeded pod", workload.name)
        return self.get_workload_log(workload)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def metrics():
    return MetricStore()


@pytest.fixture
def manager(store, metrics):
    return RenovateJobManager(store, metrics=metrics, retry_config=FAST_RETRY)


@pytest.fixture
def operator_config():
    return OperatorConfig()
