"""
Batch Job manifests for discovery and Renovate runs.

Manifests are plain dicts in the API's JSON form so they can be handed to
the Kubernetes client as-is.
"""
import copy
from typing import Any, Dict, List, Optional

from renovate_operator.models import API_GROUP, API_VERSION, OperatorConfig, RenovateJob
from renovate_operator.workloads import (
    JOB_LABEL_NAME,
    JOB_LABEL_TYPE,
    WorkloadType,
    discovery_job_name,
    executor_job_name,
)

RUNNER_UID = 12021

DISCOVERY_COMMAND = (
    "renovate --autodiscover --write-discovered-repos /tmp/repos.json "
    ">> /tmp/logs.json 2>&1 && cat /tmp/repos.json || cat /tmp/logs.json"
)


def default_pod_security_context() -> Dict[str, Any]:
    return {
        "runAsUser": RUNNER_UID,
        "runAsGroup": RUNNER_UID,
        "fsGroup": RUNNER_UID,
        "runAsNonRoot": True,
        "seccompProfile": {"type": "RuntimeDefault"},
    }


def default_container_security_context() -> Dict[str, Any]:
    return {
        "runAsUser": RUNNER_UID,
        "runAsGroup": RUNNER_UID,
        "runAsNonRoot": True,
        "seccompProfile": {"type": "RuntimeDefault"},
        "readOnlyRootFilesystem": False,
        "privileged": False,
        "allowPrivilegeEscalation": False,
        "capabilities": {"drop": ["ALL"]},
    }


def merge_env_vars(extra_env: List[Dict[str, Any]], predefined: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Combine user env vars with operator defaults.

    User entries come first and win on name conflicts.
    """
    extra_names = {env.get("name") for env in extra_env}
    merged = [copy.deepcopy(env) for env in extra_env]
    merged.extend(env for env in predefined if env["name"] not in extra_names)
    return merged


def _pod_security_context(job: RenovateJob) -> Dict[str, Any]:
    sc = job.spec.security_context
    if sc is not None and sc.pod is not None:
        return copy.deepcopy(sc.pod)
    return default_pod_security_context()


def _container_security_context(job: RenovateJob) -> Dict[str, Any]:
    sc = job.spec.security_context
    if sc is not None and sc.container is not None:
        return copy.deepcopy(sc.container)
    return default_container_security_context()


def _automount_token(job: RenovateJob) -> bool:
    sa = job.spec.service_account
    if sa is not None and sa.automount_service_account_token is not None:
        return sa.automount_service_account_token
    return False


def _job_labels(job: RenovateJob, job_type: WorkloadType, job_name: str) -> Dict[str, str]:
    labels = {JOB_LABEL_TYPE: job_type.value, JOB_LABEL_NAME: job_name}
    if job.spec.metadata is not None:
        labels.update(job.spec.metadata.labels)
    return labels


def owner_reference(job: RenovateJob) -> Dict[str, Any]:
    """Controller reference so workloads are garbage collected with their RenovateJob."""
    return {
        "apiVersion": f"{API_GROUP}/{API_VERSION}",
        "kind": "RenovateJob",
        "name": job.name,
        "uid": job.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def _build_job(
    job: RenovateJob,
    config: OperatorConfig,
    job_type: WorkloadType,
    job_name: str,
    container: Dict[str, Any],
    env: List[Dict[str, Any]],
    ttl_seconds_after_finished: Optional[int],
) -> Dict[str, Any]:
    spec = job.spec

    env_from = []
    if spec.secret_ref:
        env_from.append({"secretRef": {"name": spec.secret_ref}})

    container.update({
        "image": spec.image,
        "env": merge_env_vars(spec.extra_env, env),
        "envFrom": env_from,
        "resources": copy.deepcopy(spec.resources),
        "volumeMounts": [{"name": "tmp", "mountPath": "/tmp"}] + copy.deepcopy(spec.extra_volume_mounts),
        "securityContext": _container_security_context(job),
    })

    pod_spec: Dict[str, Any] = {
        "imagePullSecrets": copy.deepcopy(spec.image_pull_secrets) + copy.deepcopy(config.jobs.image_pull_secrets),
        "terminationGracePeriodSeconds": 0,
        "containers": [container],
        "securityContext": _pod_security_context(job),
        "automountServiceAccountToken": _automount_token(job),
        "restartPolicy": "OnFailure",
        "volumes": [{"name": "tmp", "emptyDir": {}}] + copy.deepcopy(spec.extra_volumes),
    }
    if spec.service_account is not None and spec.service_account.name:
        pod_spec["serviceAccountName"] = spec.service_account.name
    if spec.node_selector:
        pod_spec["nodeSelector"] = dict(spec.node_selector)
    if spec.affinity:
        pod_spec["affinity"] = copy.deepcopy(spec.affinity)
    if spec.tolerations:
        pod_spec["tolerations"] = copy.deepcopy(spec.tolerations)
    if spec.topology_spread_constraints:
        pod_spec["topologySpreadConstraints"] = copy.deepcopy(spec.topology_spread_constraints)

    labels = _job_labels(job, job_type, job_name)
    annotations = dict(spec.metadata.annotations) if spec.metadata is not None else {}

    job_spec: Dict[str, Any] = {
        "activeDeadlineSeconds": config.jobs.timeout_seconds,
        "backoffLimit": config.jobs.backoff_limit,
        "template": {
            "metadata": {"labels": dict(labels), "annotations": dict(annotations)},
            "spec": pod_spec,
        },
    }
    if ttl_seconds_after_finished is not None and ttl_seconds_after_finished >= 0:
        job_spec["ttlSecondsAfterFinished"] = ttl_seconds_after_finished

    metadata: Dict[str, Any] = {
        "generateName": job_name,
        "namespace": job.namespace,
        "labels": labels,
        "annotations": annotations,
    }
    if job.uid:
        metadata["ownerReferences"] = [owner_reference(job)]

    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": metadata,
        "spec": job_spec,
    }


def new_discovery_job(job: RenovateJob, config: OperatorConfig) -> Dict[str, Any]:
    """
    Manifest of the discovery job.

    The discovery job prints the discovered repositories as a JSON array on
    success, or Renovate's own log when autodiscovery fails.
    """
    env = [
        {"name": "LOG_FORMAT", "value": "json"},
        {"name": "NODE_NO_WARNINGS", "value": "1"},
    ]
    if job.spec.discovery_filter:
        env.append({"name": "RENOVATE_AUTODISCOVER_FILTER", "value": job.spec.discovery_filter})
    if job.spec.discover_topics:
        env.append({"name": "RENOVATE_AUTODISCOVER_TOPICS", "value": job.spec.discover_topics})

    container = {
        "name": "discovery",
        "command": ["/bin/sh", "-c"],
        "args": [DISCOVERY_COMMAND],
    }
    return _build_job(
        job, config, WorkloadType.DISCOVERY, discovery_job_name(job), container, env,
        ttl_seconds_after_finished=None,
    )


def new_renovate_job(job: RenovateJob, project: str, config: OperatorConfig) -> Dict[str, Any]:
    """Manifest of a Renovate run on a single project."""
    env = [{"name": "LOG_FORMAT", "value": "json"}]
    container = {
        "name": "renovate",
        "command": ["renovate"],
        "args": ["--base-dir", "/tmp", project],
    }
    return _build_job(
        job, config, WorkloadType.EXECUTOR, executor_job_name(job, project), container, env,
        ttl_seconds_after_finished=config.jobs.ttl_seconds_after_finished,
    )
