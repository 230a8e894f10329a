"""
Prometheus metrics for Renovate runs.

Each MetricStore owns its own registry so several operators (or tests)
in one process never share series.
"""
import logging
import threading
from typing import Optional, Set, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

logger = logging.getLogger(__name__)

PROJECT_LABELS = ['namespace', 'renovatejob', 'project']


class MetricStore:
    """Per-project run metrics."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.run_failed = Gauge(
            'renovate_project_run_failed',
            'Whether the last Renovate run of a project failed (1=failed, 0=succeeded)',
            PROJECT_LABELS,
            registry=self.registry
        )
        self.dependency_issues = Gauge(
            'renovate_project_dependency_issues',
            'Whether the last Renovate run logged warnings or errors (1=yes, 0=no)',
            PROJECT_LABELS,
            registry=self.registry
        )
        self.executions = Counter(
            'renovate_project_executions',
            'Total number of finished Renovate runs per project',
            PROJECT_LABELS + ['status'],
            registry=self.registry
        )

        self._lock = threading.Lock()
        self._execution_statuses: Set[Tuple[str, str, str, str]] = set()
        self._projects: Set[Tuple[str, str, str]] = set()

    def capture_run(self, namespace: str, renovatejob: str, project: str, failed: bool, has_issues: bool) -> None:
        """Record the outcome of one finished run."""
        status = "failed" if failed else "completed"
        with self._lock:
            self.run_failed.labels(namespace, renovatejob, project).set(1 if failed else 0)
            self.dependency_issues.labels(namespace, renovatejob, project).set(1 if has_issues else 0)
            self.executions.labels(namespace, renovatejob, project, status).inc()
            self._projects.add((namespace, renovatejob, project))
            self._execution_statuses.add((namespace, renovatejob, project, status))

    def delete_project_metrics(self, namespace: str, renovatejob: str, project: str) -> None:
        """Drop every series of a project that is no longer discovered."""
        key = (namespace, renovatejob, project)
        with self._lock:
            if key in self._projects:
                self.run_failed.remove(*key)
                self.dependency_issues.remove(*key)
                self._projects.discard(key)
            for labels in [s for s in self._execution_statuses if s[:3] == key]:
                self.executions.remove(*labels)
                self._execution_statuses.discard(labels)
        logger.debug(f"Deleted metrics for {namespace}/{renovatejob}/{project}")

    def render(self) -> bytes:
        """Exposition text for a /metrics endpoint."""
        return generate_latest(self.registry)
