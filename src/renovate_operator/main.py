#!/usr/bin/env python3
"""
Renovate Operator - Main entry point.
"""
import json
import logging
import signal
import sys
import threading
from typing import Optional

import click

from renovate_operator import __version__
from renovate_operator.config import load_config
from renovate_operator.discovery import DiscoveryAgent
from renovate_operator.executor import RenovateExecutor
from renovate_operator.health import HealthCheck
from renovate_operator.job_manager import RenovateJobManager
from renovate_operator.kube_store import KubernetesStore, load_kube_config
from renovate_operator.logging_utils import log_with_fields, setup_logging
from renovate_operator.metrics import MetricStore
from renovate_operator.models import OperatorConfig
from renovate_operator.operations import OperatorService
from renovate_operator.reconciler import RenovateJobReconciler
from renovate_operator.scheduler import Scheduler
from renovate_operator.store import RemoteStore

# Setup logging will be called in cli()
logger = logging.getLogger(__name__)


class Operator:
    """Wires the store, manager, discovery, scheduler, executor and reconciler together."""

    def __init__(self, config: OperatorConfig, store: Optional[RemoteStore] = None):
        self.config = config
        self.store = store
        self.stop_event = threading.Event()
        self.health = HealthCheck()
        self.metrics = MetricStore()
        self.manager = None
        self.discovery = None
        self.scheduler = None
        self.executor = None
        self.reconciler = None
        self.service = None

    def initialize(self):
        """Create all components (connects to the cluster if no store was given)."""
        if self.store is None:
            load_kube_config()
            self.store = KubernetesStore()

        self.manager = RenovateJobManager(
            self.store,
            metrics=self.metrics,
            watch_namespace=self.config.watch_namespace,
        )
        self.discovery = DiscoveryAgent(self.store, self.config)
        self.scheduler = Scheduler(self.health)
        self.executor = RenovateExecutor(
            self.store,
            self.manager,
            config=self.config,
            metrics=self.metrics,
            health=self.health,
        )
        self.reconciler = RenovateJobReconciler(
            self.manager, self.discovery, self.scheduler, stop_event=self.stop_event
        )
        self.service = OperatorService(self.manager, self.discovery)

    def _handle_stop_signal(self, signum, frame):
        logger.info(f"Received signal {signum} - shutting down")
        self.stop_event.set()

    def run(self):
        """Run scheduler, executor and periodic resync until stopped."""
        logger.info("=" * 60)
        logger.info(f"Renovate Operator {__version__} starting...")
        logger.info(f"  Namespace: {self.config.watch_namespace or '(all)'}")
        logger.info(f"  Executor interval: {self.config.executor.loop_interval}s")
        logger.info(f"  Reconcile interval: {self.config.reconcile_interval}s")
        logger.info("=" * 60)

        self.initialize()

        signal.signal(signal.SIGINT, self._handle_stop_signal)
        signal.signal(signal.SIGTERM, self._handle_stop_signal)

        self.scheduler.start()
        executor_thread = self.executor.start(self.stop_event)

        try:
            while not self.stop_event.is_set():
                try:
                    self.reconciler.resync()
                except Exception as e:
                    logger.error(f"Resync failed: {e}", exc_info=True)
                self.check_health()
                self.stop_event.wait(self.config.reconcile_interval)
        finally:
            self.shutdown()
            executor_thread.join(timeout=self.config.executor.loop_interval + 5)

    def check_health(self) -> bool:
        """Warn when the scheduler or executor is not running."""
        if self.health.is_healthy():
            return True
        log_with_fields(
            logger, logging.WARNING, "Operator unhealthy",
            scheduler=self.health.scheduler_health().running,
            executor=self.health.executor_health().running,
        )
        return False

    def shutdown(self):
        """Clean shutdown."""
        self.stop_event.set()
        if self.scheduler is not None:
            self.scheduler.stop()
        logger.info("Renovate Operator stopped")


def _build_operator(ctx) -> Operator:
    operator = Operator(ctx.obj['config'])
    operator.initialize()
    return operator


@click.group()
@click.option(
    '--config', '-c',
    default=None,
    type=click.Path(exists=True),
    help='Path to operator configuration file'
)
@click.option(
    '--log-level', '-l',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    help='Override log level from config'
)
@click.version_option(__version__)
@click.pass_context
def cli(ctx, config, log_level):
    """Renovate Operator - runs Renovate across discovered projects on a schedule."""
    ctx.ensure_object(dict)
    try:
        operator_config = load_config(config)
    except (OSError, ValueError) as e:
        click.echo(f"Failed to load configuration: {e}", err=True)
        sys.exit(1)

    log_config = operator_config.logging
    setup_logging(
        level=log_level or log_config.level,
        json_output=log_config.json_format,
        log_file=log_config.file,
        module_levels=log_config.module_levels,
    )
    ctx.obj['config'] = operator_config


@cli.command()
@click.pass_context
def run(ctx):
    """Run the operator (scheduler, executor and reconciler)."""
    operator = Operator(ctx.obj['config'])
    try:
        operator.run()
    except Exception as e:
        logger.error(f"Operator failed: {e}", exc_info=True)
        sys.exit(1)


@cli.command()
@click.option('--json', 'output_json', is_flag=True, help='Output as JSON')
@click.pass_context
def status(ctx, output_json):
    """Show RenovateJobs and the status of their projects."""
    try:
        operator = _build_operator(ctx)
        jobs = operator.service.list_renovate_jobs()
    except Exception as e:
        logger.error(f"Status check failed: {e}", exc_info=True)
        sys.exit(1)

    if output_json:
        click.echo(json.dumps([j.to_dict() for j in jobs], indent=2))
        return

    click.echo("=" * 60)
    click.echo("Renovate Operator Status")
    click.echo("=" * 60)
    click.echo(f"RenovateJobs: {len(jobs)}")
    for job in jobs:
        next_run = job.next_schedule.isoformat() if job.next_schedule else "invalid schedule"
        click.echo("")
        click.echo(f"{job.namespace}/{job.name}")
        click.echo(f"  Schedule: {job.cron_expression} (next: {next_run})")
        click.echo(f"  Discovery: {job.discovery_status.value}")
        for project in job.projects:
            extra = []
            if project.duration:
                extra.append(project.duration)
            if project.renovate_result_status:
                extra.append(project.renovate_result_status)
            suffix = f" ({', '.join(extra)})" if extra else ""
            click.echo(f"  - {project.name}: {project.status.value}{suffix}")


@cli.command()
@click.argument('name')
@click.argument('namespace')
@click.pass_context
def discover(ctx, name, namespace):
    """Run discovery for a RenovateJob and reconcile its projects."""
    try:
        operator = _build_operator(ctx)
        renovate_job = operator.manager.get_renovate_job(name, namespace)
        projects = operator.discovery.discover(renovate_job)
        operator.manager.reconcile_projects(renovate_job.identifier, projects)
    except Exception as e:
        click.echo(f"Discovery failed: {e}", err=True)
        sys.exit(1)

    click.echo(f"Discovered {len(projects)} projects:")
    for project in projects:
        click.echo(f"  {project}")


@cli.command()
@click.argument('name')
@click.argument('namespace')
@click.argument('project')
@click.pass_context
def trigger(ctx, name, namespace, project):
    """Schedule a Renovate run for one project."""
    try:
        operator = _build_operator(ctx)
        operator.service.trigger_project(name, namespace, project)
    except Exception as e:
        click.echo(f"Trigger failed: {e}", err=True)
        sys.exit(1)
    click.echo(f"Scheduled {project}")


@cli.command()
@click.argument('name')
@click.argument('namespace')
@click.argument('project')
@click.pass_context
def logs(ctx, name, namespace, project):
    """Print the log of the last Renovate run of a project."""
    try:
        operator = _build_operator(ctx)
        output = operator.service.get_project_logs(name, namespace, project)
    except Exception as e:
        click.echo(f"Failed to get logs (the workload may have been cleaned up already): {e}", err=True)
        sys.exit(1)
    click.echo(output)


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
