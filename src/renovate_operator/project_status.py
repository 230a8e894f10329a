"""
Project status state machine.

Computes the next ProjectStatus for a requested transition. Pure: the
input record is never modified, a new one is returned.

    scheduled -> running -> completed | failed
        ^                        |
        +------------------------+

A running project is never rescheduled, only a scheduled project can
start running and only a running project can be completed or failed.
"""
from typing import Optional

from renovate_operator.models import JobStatus, ProjectStatus, StatusUpdate, utcnow


def apply_transition(current: ProjectStatus, update: StatusUpdate) -> ProjectStatus:
    """
    Apply a requested status transition to a project.

    Args:
        current: Current project status record
        update: Requested status plus payload

    Returns:
        New ProjectStatus (unchanged copy if the transition is not allowed)
    """
    if update.status == JobStatus.SCHEDULED:
        return _to_scheduled(current, update)
    if update.status == JobStatus.RUNNING:
        return _to_running(current, update)
    if update.status in (JobStatus.COMPLETED, JobStatus.FAILED):
        return _to_finished(current, update)
    return current.model_copy()


def _to_scheduled(current: ProjectStatus, update: StatusUpdate) -> ProjectStatus:
    changes = {}
    # a run in flight is never rescheduled, but the classification still merges
    if current.status != JobStatus.RUNNING:
        changes["status"] = JobStatus.SCHEDULED
    _merge_result(changes, update.renovate_result_status)
    return current.model_copy(update=changes)


def _to_running(current: ProjectStatus, update: StatusUpdate) -> ProjectStatus:
    if current.status != JobStatus.SCHEDULED:
        return current.model_copy()
    changes = {"status": JobStatus.RUNNING, "duration": None}
    _merge_result(changes, update.renovate_result_status)
    return current.model_copy(update=changes)


def _to_finished(current: ProjectStatus, update: StatusUpdate) -> ProjectStatus:
    if current.status != JobStatus.RUNNING:
        return current.model_copy()
    changes = {
        "status": update.status,
        "last_run": utcnow(),
        "duration": update.duration,
    }
    _merge_result(changes, update.renovate_result_status)
    return current.model_copy(update=changes)


def _merge_result(changes: dict, result_status: Optional[str]) -> None:
    if result_status is not None:
        changes["renovate_result_status"] = result_status
