"""
Workload lifecycle helpers.

A workload is one Kubernetes batch Job. Workloads are addressed by labels
rather than names: the platform generates the final name, and every
launch stamps a generation label (Unix time) so the newest attempt for a
label set can be found and older ones cleaned up.
"""
import hashlib
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

from renovate_operator.errors import NotFoundError
from renovate_operator.models import JobIdentifier, JobStatus, RenovateJob, utcnow

if TYPE_CHECKING:
    from renovate_operator.store import RemoteStore

logger = logging.getLogger(__name__)

LABEL_PREFIX = "renovate-operator.mogenius.com"
JOB_LABEL_TYPE = f"{LABEL_PREFIX}/job-type"
JOB_LABEL_NAME = f"{LABEL_PREFIX}/job-name"
JOB_LABEL_GENERATION = f"{LABEL_PREFIX}/generation"

# leaves room for the suffix the platform appends to generateName
MAX_NAME_LENGTH = 52
NAME_HASH_LENGTH = 8

CLEANUP_TIMEOUT = 30.0

JobRef = Union[RenovateJob, JobIdentifier]


class WorkloadType(str, Enum):
    DISCOVERY = "discovery"
    EXECUTOR = "executor"


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class Workload:
    """Observed state of one batch workload."""
    name: str
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)
    manifest: Dict[str, Any] = field(default_factory=dict)
    succeeded: int = 0
    failed: int = 0
    conditions: List[Dict[str, Any]] = field(default_factory=list)
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def generation(self) -> int:
        """Generation label value, 0 when missing or not a number."""
        try:
            return int(self.labels.get(JOB_LABEL_GENERATION, "0"))
        except ValueError:
            return 0

    @classmethod
    def from_manifest(cls, obj: Dict[str, Any]) -> "Workload":
        """Build from a batch Job object in its JSON form."""
        metadata = obj.get("metadata") or {}
        status = obj.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            labels=dict(metadata.get("labels") or {}),
            manifest=obj,
            succeeded=status.get("succeeded") or 0,
            failed=status.get("failed") or 0,
            conditions=list(status.get("conditions") or []),
            start_time=_parse_time(status.get("startTime")),
            completion_time=_parse_time(status.get("completionTime")),
            created_at=_parse_time(metadata.get("creationTimestamp")),
        )


@dataclass(frozen=True)
class WorkloadSelector:
    """Label set identifying all attempts of one logical workload."""
    namespace: str
    job_type: WorkloadType
    job_name: str

    @property
    def labels(self) -> Dict[str, str]:
        return {
            JOB_LABEL_TYPE: self.job_type.value,
            JOB_LABEL_NAME: self.job_name,
        }


def _dns_safe(value: str) -> str:
    value = re.sub(r"[^a-z0-9-]+", "-", value.lower())
    return re.sub(r"-{2,}", "-", value).strip("-")


def _bounded_name(raw: str) -> str:
    """
    DNS-safe logical name for raw.

    Whenever raw had to be rewritten or truncated a hash of it is appended,
    so distinct raw names never share a logical name.
    """
    name = _dns_safe(raw)
    if name == raw and len(name) <= MAX_NAME_LENGTH:
        return name
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:NAME_HASH_LENGTH]
    prefix = name[:MAX_NAME_LENGTH - NAME_HASH_LENGTH - 1].rstrip("-")
    return f"{prefix}-{digest}"


def discovery_job_name(job: JobRef) -> str:
    """Logical name of a RenovateJob's discovery workload."""
    return _bounded_name(f"{job.name}-discovery")


def executor_job_name(job: JobRef, project: str) -> str:
    """Logical name of the workload running Renovate on one project."""
    return _bounded_name(f"{job.name}-{project}")


def discovery_selector(job: JobRef) -> WorkloadSelector:
    return WorkloadSelector(job.namespace, WorkloadType.DISCOVERY, discovery_job_name(job))


def executor_selector(job: JobRef, project: str) -> WorkloadSelector:
    return WorkloadSelector(job.namespace, WorkloadType.EXECUTOR, executor_job_name(job, project))


def get_workloads_by_label(store: "RemoteStore", selector: WorkloadSelector) -> List[Workload]:
    return store.list_workloads(selector.namespace, selector.labels)


def get_workload_by_label(store: "RemoteStore", selector: WorkloadSelector) -> Workload:
    """
    Find the newest attempt of a logical workload.

    Args:
        store: Remote store
        selector: Label set of the logical workload

    Returns:
        Workload with the highest generation

    Raises:
        NotFoundError: If no workload carries the labels
    """
    workloads = get_workloads_by_label(store, selector)
    if not workloads:
        raise NotFoundError("workload", selector.job_name)
    return max(workloads, key=lambda w: w.generation)


def _cleanup_other_generations(
    store: "RemoteStore",
    selector: WorkloadSelector,
    keep_generation: int,
    timeout: float,
) -> None:
    deadline = time.monotonic() + timeout
    try:
        for workload in get_workloads_by_label(store, selector):
            if time.monotonic() > deadline:
                logger.debug(f"Cleanup of {selector.job_name} timed out")
                return
            if workload.generation != keep_generation:
                store.delete_workload(workload.name, workload.namespace)
                logger.debug(
                    f"Deleted old workload {workload.name} (generation {workload.generation})"
                )
    except Exception as e:
        logger.debug(f"Cleanup of old {selector.job_name} workloads failed: {e}")


def create_workload_with_generation(
    store: "RemoteStore",
    manifest: Dict[str, Any],
    selector: WorkloadSelector,
    cleanup_timeout: float = CLEANUP_TIMEOUT,
) -> Workload:
    """
    Launch a workload stamped with a fresh generation.

    After the create succeeds, a background thread removes every other
    generation of the same logical workload. Cleanup is best effort and
    never fails the launch.

    Args:
        store: Remote store
        manifest: Batch Job manifest (labels from selector are added)
        selector: Label set of the logical workload
        cleanup_timeout: Deadline for the background cleanup

    Returns:
        The created Workload
    """
    generation = int(time.time())
    metadata = manifest.setdefault("metadata", {})
    labels = metadata.setdefault("labels", {})
    labels.update(selector.labels)
    labels[JOB_LABEL_GENERATION] = str(generation)
    template_metadata = manifest.setdefault("spec", {}).setdefault("template", {}).setdefault("metadata", {})
    template_metadata.setdefault("labels", {}).update(labels)

    created = store.create_workload(manifest)
    logger.info(f"Created workload {created.name} (generation {generation})")

    cleanup = threading.Thread(
        target=_cleanup_other_generations,
        args=(store, selector, generation, cleanup_timeout),
        name=f"cleanup-{selector.job_name}",
        daemon=True,
    )
    cleanup.start()
    return created


def delete_workload(store: "RemoteStore", workload: Workload) -> None:
    store.delete_workload(workload.name, workload.namespace)


def human_duration(seconds: float) -> str:
    """Format seconds as '1h 2m 3s', '2m 5s' or '42s'."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def get_workload_status(workload: Optional[Workload]) -> Tuple[JobStatus, str]:
    """
    Derive a project status from a workload's conditions.

    A missing workload counts as failed. Duration runs from start to
    completion, or to now while still running; empty if never started.
    """
    if workload is None:
        return JobStatus.FAILED, ""

    status = JobStatus.RUNNING
    for condition in workload.conditions:
        if str(condition.get("status")) != "True":
            continue
        if condition.get("type") == "Complete":
            status = JobStatus.COMPLETED
            break
        if condition.get("type") == "Failed":
            status = JobStatus.FAILED
            break

    duration = ""
    if workload.start_time is not None:
        end = workload.completion_time or utcnow()
        duration = human_duration((end - workload.start_time).total_seconds())

    return status, duration
