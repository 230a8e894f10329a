"""Unit tests for the executor control loop."""
import json
import sys
import threading
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from renovate_operator.executor import RenovateExecutor
from renovate_operator.health import HealthCheck
from renovate_operator.models import OperatorConfig
from renovate_operator.workloads import JOB_LABEL_GENERATION, executor_job_name, executor_selector

RUN_LOG = "\n".join([
    json.dumps({"level": 30, "msg": "Repository started"}),
    json.dumps({"level": 40, "msg": "Package lookup failures"}),
    json.dumps({"level": 30, "msg": "Repository finished", "result": "disabled-no-config"}),
])


def make_projects(**statuses):
    return [{"name": name, "status": status} for name, status in statuses.items()]


def make_executor(store, manager, metrics, delete_successful_jobs=False):
    """Helper to create an executor with test settings."""
    config = OperatorConfig()
    config.executor.delete_successful_jobs = delete_successful_jobs
    return RenovateExecutor(store, manager, config=config, metrics=metrics, health=HealthCheck())


def labels_for(project):
    return {"namespace": "default", "renovatejob": "renovate", "project": project}


class TestLaunching:
    """Scheduled projects are started up to the parallelism limit."""

    def test_parallelism_limits_launches(self, store, manager, metrics):
        job = store.add_renovate_job(parallelism=2, projects=make_projects(a="scheduled", b="scheduled", c="scheduled"))
        make_executor(store, manager, metrics).execute()

        assert store.project_statuses() == {"a": "running", "b": "running", "c": "scheduled"}
        assert len(store.workloads_named(executor_job_name(job, "a"))) == 1
        assert len(store.workloads_named(executor_job_name(job, "b"))) == 1
        assert store.workloads_named(executor_job_name(job, "c")) == []

    def test_existing_running_counts(self, store, manager, metrics):
        job = store.add_renovate_job(parallelism=1, projects=make_projects(a="running", b="scheduled"))
        store.add_workload("a-run", "default", executor_selector(job, "a").labels)
        make_executor(store, manager, metrics).execute()
        assert store.project_statuses() == {"a": "running", "b": "scheduled"}

    def test_finished_projects_untouched(self, store, manager, metrics):
        store.add_renovate_job(projects=make_projects(a="completed", b="failed"))
        make_executor(store, manager, metrics).execute()
        assert store.project_statuses() == {"a": "completed", "b": "failed"}
        assert store.workloads == {}

    def test_workload_manifest(self, store, manager, metrics):
        job = store.add_renovate_job(projects=make_projects(**{"org/a": "scheduled"}))
        make_executor(store, manager, metrics).execute()
        [workload] = store.workloads_named(executor_job_name(job, "org/a"))
        container = workload.manifest["spec"]["template"]["spec"]["containers"][0]
        assert container["args"] == ["--base-dir", "/tmp", "org/a"]
        assert workload.generation > 0


class TestFinishing:
    """Running projects are finished from their workload."""

    def test_vanished_workload_fails_project(self, store, manager, metrics):
        store.add_renovate_job(projects=make_projects(a="running"))
        make_executor(store, manager, metrics).execute()
        assert store.project_statuses() == {"a": "failed"}
        assert metrics.registry.get_sample_value("renovate_project_run_failed", labels_for("a")) == 1

    def test_still_running(self, store, manager, metrics):
        job = store.add_renovate_job(projects=make_projects(a="running"))
        store.add_workload("a-run", "default", executor_selector(job, "a").labels)
        make_executor(store, manager, metrics).execute()
        assert store.project_statuses() == {"a": "running"}

    def test_completion_records_result_and_metrics(self, store, manager, metrics):
        job = store.add_renovate_job(projects=make_projects(a="running"))
        store.add_workload("a-run", "default", executor_selector(job, "a").labels)
        store.finish_workload("a-run", "default", succeeded=True, log=RUN_LOG, seconds=65)

        make_executor(store, manager, metrics).execute()

        [project] = manager.get_projects_for_renovate_job(job.identifier)
        assert project.status.value == "completed"
        assert project.duration == "1m 5s"
        assert project.renovate_result_status == "No Config"
        assert metrics.registry.get_sample_value("renovate_project_run_failed", labels_for("a")) == 0
        assert metrics.registry.get_sample_value("renovate_project_dependency_issues", labels_for("a")) == 1
        executions = dict(labels_for("a"), status="completed")
        assert metrics.registry.get_sample_value("renovate_project_executions_total", executions) == 1
        assert store.deleted == []

    def test_failed_workload(self, store, manager, metrics):
        job = store.add_renovate_job(projects=make_projects(a="running"))
        store.add_workload("a-run", "default", executor_selector(job, "a").labels)
        store.finish_workload("a-run", "default", succeeded=False, log="")
        make_executor(store, manager, metrics, delete_successful_jobs=True).execute()
        assert store.project_statuses() == {"a": "failed"}
        assert store.deleted == []

    def test_missing_log_is_not_fatal(self, store, manager, metrics):
        job = store.add_renovate_job(projects=make_projects(a="running"))
        store.add_workload("a-run", "default", executor_selector(job, "a").labels)
        store.finish_workload("a-run", "default", succeeded=True)
        del store.logs["a-run"]
        make_executor(store, manager, metrics).execute()
        assert store.project_statuses() == {"a": "completed"}

    def test_delete_successful_jobs(self, store, manager, metrics):
        job = store.add_renovate_job(projects=make_projects(a="running"))
        store.add_workload("a-run", "default", executor_selector(job, "a").labels)
        store.finish_workload("a-run", "default", succeeded=True, log=RUN_LOG)
        make_executor(store, manager, metrics, delete_successful_jobs=True).execute()
        assert store.deleted == ["a-run"]

    def test_newest_generation_decides(self, store, manager, metrics):
        job = store.add_renovate_job(projects=make_projects(a="running"))
        labels = executor_selector(job, "a").labels
        store.add_workload("a-old", "default", {**labels, JOB_LABEL_GENERATION: "100"})
        store.finish_workload("a-old", "default", succeeded=False)
        store.add_workload("a-new", "default", {**labels, JOB_LABEL_GENERATION: "200"})
        make_executor(store, manager, metrics).execute()
        assert store.project_statuses() == {"a": "running"}

    def test_similar_project_names_keep_own_workloads(self, store, manager, metrics):
        """Projects whose names differ only in punctuation are finished independently."""
        job = store.add_renovate_job(
            parallelism=2, projects=make_projects(**{"org/my.repo": "scheduled", "org/my-repo": "scheduled"})
        )
        executor = make_executor(store, manager, metrics)
        executor.execute()

        [dotted] = store.workloads_named(executor_job_name(job, "org/my.repo"))
        [dashed] = store.workloads_named(executor_job_name(job, "org/my-repo"))
        assert dotted.name != dashed.name
        store.finish_workload(dotted.name, "default", succeeded=True, log=RUN_LOG)

        executor.execute()
        assert store.project_statuses() == {"org/my.repo": "completed", "org/my-repo": "running"}

    def test_finished_slot_is_reused_same_pass(self, store, manager, metrics):
        """A project finishing frees its slot for a scheduled one in the same pass."""
        job = store.add_renovate_job(parallelism=1, projects=make_projects(a="running", b="scheduled"))
        store.add_workload("a-run", "default", executor_selector(job, "a").labels)
        store.finish_workload("a-run", "default", succeeded=True, log=RUN_LOG)
        make_executor(store, manager, metrics).execute()
        assert store.project_statuses() == {"a": "completed", "b": "running"}


class TestIsolation:
    """Failures and overlapping passes."""

    def test_pass_in_progress_is_skipped(self, store, manager, metrics):
        job = store.add_renovate_job(projects=make_projects(a="scheduled"))
        executor = make_executor(store, manager, metrics)
        lock = executor._locks.get(job.fullname)
        lock.acquire()
        try:
            assert executor.execute_renovate_job(job.identifier) is False
        finally:
            lock.release()
        assert store.project_statuses() == {"a": "scheduled"}
        assert executor.execute_renovate_job(job.identifier) is True
        assert store.project_statuses() == {"a": "running"}

    def test_error_isolated_per_job(self, store, manager, metrics, monkeypatch):
        store.add_renovate_job("broken", projects=make_projects(a="scheduled"))
        store.add_renovate_job("healthy", projects=make_projects(a="scheduled"))
        original = store.create_workload

        def create_workload(manifest):
            if manifest["metadata"]["generateName"].startswith("broken"):
                raise RuntimeError("quota exceeded")
            return original(manifest)

        monkeypatch.setattr(store, "create_workload", create_workload)
        make_executor(store, manager, metrics).execute()
        assert store.project_statuses("broken") == {"a": "scheduled"}
        assert store.project_statuses("healthy") == {"a": "running"}

    def test_loop_stops_on_event(self, store, manager, metrics):
        store.add_renovate_job(projects=make_projects(a="scheduled"))
        executor = make_executor(store, manager, metrics)
        stop_event = threading.Event()
        thread = executor.start(stop_event)
        stop_event.set()
        thread.join(timeout=5)
        assert not thread.is_alive()
        assert executor.health.executor_health().running is False
