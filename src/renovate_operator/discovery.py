"""
Project discovery.

Discovery runs Renovate in autodiscover mode as a one-off workload and
reads the list of repositories it prints. Launching and polling are
serialised per RenovateJob: launches take the write side of the
RenovateJob's lock, status reads the read side.
"""
import json
import logging
import threading
import time
from typing import Callable, List, Optional

from renovate_operator.errors import DiscoveryError, DiscoveryParseError, NotFoundError
from renovate_operator.job_definitions import new_discovery_job
from renovate_operator.locks import KeyedLocks, ReadWriteLock
from renovate_operator.logging_utils import log_with_fields
from renovate_operator.models import JobStatus, OperatorConfig, RenovateJob
from renovate_operator.store import RemoteStore
from renovate_operator.workloads import (
    Workload,
    create_workload_with_generation,
    discovery_selector,
    get_workload_by_label,
)

logger = logging.getLogger(__name__)


def _as_project_list(value) -> Optional[List[str]]:
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return value
    return None


def parse_discovered_projects(output: str) -> List[str]:
    """
    Extract the discovered project list from the discovery job's output.

    The discovery job prints a JSON array of repository names. When Renovate
    failed it prints its own log instead, so the array may also appear
    on one line among other output.

    Args:
        output: Raw log of the discovery pod

    Returns:
        Project names as printed

    Raises:
        DiscoveryParseError: If no JSON array of strings is found
    """
    text = (output or "").strip()
    try:
        projects = _as_project_list(json.loads(text))
        if projects is not None:
            return projects
    except json.JSONDecodeError:
        pass

    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("["):
            continue
        try:
            projects = _as_project_list(json.loads(line))
        except json.JSONDecodeError:
            continue
        if projects is not None:
            return projects

    preview = text[:200]
    raise DiscoveryParseError(f"discovery output contains no project list: {preview!r}")


class DiscoveryAgent:
    """Launches, polls and reads the discovery workload of a RenovateJob."""

    def __init__(
        self,
        store: RemoteStore,
        config: Optional[OperatorConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.config = config or OperatorConfig()
        self._sleep = sleep
        self._locks: KeyedLocks[ReadWriteLock] = KeyedLocks(ReadWriteLock)

    def discover(self, job: RenovateJob, stop_event: Optional[threading.Event] = None) -> List[str]:
        """
        Run discovery to completion.

        Raises:
            DiscoveryError: If the discovery job failed or was cancelled
            DiscoveryParseError: If its output holds no project list
        """
        logger.debug(f"Discovering projects for {job.fullname}")
        self.create_discovery_job(job)
        return self.wait_for_discovery_job(job, stop_event=stop_event)

    def create_discovery_job(self, job: RenovateJob) -> Workload:
        """Launch a fresh discovery job, replacing earlier generations."""
        with self._locks.get(job.fullname).write():
            manifest = new_discovery_job(job, self.config)
            try:
                return create_workload_with_generation(self.store, manifest, discovery_selector(job))
            except Exception as e:
                raise DiscoveryError(f"failed to create discovery job for {job.fullname}: {e}") from e

    def get_discovery_job_status(self, job: RenovateJob) -> JobStatus:
        """
        Status of the newest discovery job.

        A discovery job that was just created may not be listed yet, so a missing
        workload is looked up again a few times before giving up.

        Raises:
            NotFoundError: If the discovery job never shows up
        """
        settings = self.config.discovery
        with self._locks.get(job.fullname).read():
            selector = discovery_selector(job)
            try:
                workload = get_workload_by_label(self.store, selector)
            except NotFoundError:
                workload = None
                for attempt in range(settings.not_found_retries):
                    self._sleep(settings.not_found_delay)
                    try:
                        workload = get_workload_by_label(self.store, selector)
                        break
                    except NotFoundError:
                        logger.debug(
                            f"Discovery job for {job.fullname} not found "
                            f"(attempt {attempt + 1}/{settings.not_found_retries})"
                        )
                if workload is None:
                    raise

        if workload.failed > 0:
            return JobStatus.FAILED
        if workload.succeeded > 0:
            return JobStatus.COMPLETED
        return JobStatus.RUNNING

    def wait_for_discovery_job(self, job: RenovateJob, stop_event: Optional[threading.Event] = None) -> List[str]:
        """
        Poll the discovery job until it finishes and return the sorted project list.

        Args:
            job: RenovateJob whose discovery job to wait for
            stop_event: Cancels the wait when set

        Raises:
            DiscoveryError: If the discovery job failed, vanished or the wait was cancelled
            DiscoveryParseError: If its output holds no project list
        """
        poll_interval = self.config.discovery.poll_interval
        while True:
            try:
                status = self.get_discovery_job_status(job)
            except NotFoundError as e:
                raise DiscoveryError(f"discovery job for {job.fullname} not found: {e}") from e

            if status == JobStatus.COMPLETED:
                break
            if status == JobStatus.FAILED:
                raise DiscoveryError(f"discovery job for {job.fullname} failed")

            if stop_event is not None:
                if stop_event.wait(poll_interval):
                    raise DiscoveryError(f"discovery for {job.fullname} cancelled")
            else:
                self._sleep(poll_interval)

        workload = get_workload_by_label(self.store, discovery_selector(job))
        output = self.store.get_successful_pod_log(workload)
        projects = sorted(parse_discovered_projects(output))
        log_with_fields(logger, logging.INFO, f"Discovered projects for {job.fullname}", projects=len(projects))
        return projects
