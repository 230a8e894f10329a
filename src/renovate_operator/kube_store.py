"""
RemoteStore backed by the Kubernetes API.
"""
import base64
import logging
from typing import Any, Dict, List, Optional

from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException

from renovate_operator.errors import ConflictError, NotFoundError, OperatorError
from renovate_operator.models import API_GROUP, API_VERSION, RENOVATEJOB_PLURAL, RenovateJob
from renovate_operator.store import RemoteStore
from renovate_operator.workloads import Workload

logger = logging.getLogger(__name__)

# Label the Job controller puts on the pods it creates
POD_JOB_NAME_LABEL = "job-name"


def load_kube_config() -> None:
    """In-cluster service account first, local kubeconfig as fallback."""
    try:
        k8s_config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration")
    except k8s_config.ConfigException:
        k8s_config.load_kube_config()
        logger.info("Using local kubeconfig")


def _label_selector(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _translate(e: ApiException, kind: str, name: str) -> Exception:
    if e.status == 404:
        return NotFoundError(kind, name)
    if e.status == 409:
        return ConflictError(f"{kind} '{name}' was modified concurrently: {e.reason}")
    return OperatorError(f"Kubernetes API error on {kind} '{name}': {e.status} {e.reason}")


class KubernetesStore(RemoteStore):
    """
    Kubernetes implementation of the remote store.

    RenovateJobs are custom objects; workloads are batch/v1 Jobs.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.api_client = api_client or client.ApiClient()
        self.custom = client.CustomObjectsApi(self.api_client)
        self.batch = client.BatchV1Api(self.api_client)
        self.core = client.CoreV1Api(self.api_client)

    # RenovateJobs

    def get_renovate_job(self, name: str, namespace: str) -> RenovateJob:
        try:
            obj = self.custom.get_namespaced_custom_object(
                API_GROUP, API_VERSION, namespace, RENOVATEJOB_PLURAL, name
            )
        except ApiException as e:
            raise _translate(e, "RenovateJob", f"{namespace}/{name}") from e
        return RenovateJob.from_resource(obj)

    def list_renovate_jobs(self, namespace: str = "") -> List[RenovateJob]:
        try:
            if namespace:
                result = self.custom.list_namespaced_custom_object(
                    API_GROUP, API_VERSION, namespace, RENOVATEJOB_PLURAL
                )
            else:
                result = self.custom.list_cluster_custom_object(
                    API_GROUP, API_VERSION, RENOVATEJOB_PLURAL
                )
        except ApiException as e:
            raise _translate(e, "RenovateJob list", namespace or "*") from e

        jobs = []
        for item in result.get("items", []):
            try:
                jobs.append(RenovateJob.from_resource(item))
            except ValueError as e:
                metadata = item.get("metadata") or {}
                logger.warning(
                    f"Skipping invalid RenovateJob {metadata.get('namespace')}/{metadata.get('name')}: {e}"
                )
        return jobs

    def update_renovate_job_status(self, job: RenovateJob) -> RenovateJob:
        body = job.to_resource()
        try:
            obj = self.custom.replace_namespaced_custom_object_status(
                API_GROUP, API_VERSION, job.namespace, RENOVATEJOB_PLURAL, job.name, body
            )
        except ApiException as e:
            raise _translate(e, "RenovateJob", job.fullname) from e
        return RenovateJob.from_resource(obj)

    # Secrets

    def get_secret_value(self, name: str, namespace: str, key: str) -> str:
        try:
            secret = self.core.read_namespaced_secret(name, namespace)
        except ApiException as e:
            raise _translate(e, "Secret", f"{namespace}/{name}") from e

        data = secret.data or {}
        if key not in data:
            raise NotFoundError("secret key", f"{namespace}/{name}/{key}")
        return base64.b64decode(data[key]).decode("utf-8")

    # Workloads

    def _to_workload(self, job: client.V1Job) -> Workload:
        return Workload.from_manifest(self.api_client.sanitize_for_serialization(job))

    def create_workload(self, manifest: Dict[str, Any]) -> Workload:
        metadata = manifest.get("metadata") or {}
        namespace = metadata.get("namespace", "")
        try:
            created = self.batch.create_namespaced_job(namespace, manifest)
        except ApiException as e:
            raise _translate(e, "Job", metadata.get("generateName") or metadata.get("name", "")) from e
        return self._to_workload(created)

    def list_workloads(self, namespace: str, labels: Dict[str, str]) -> List[Workload]:
        try:
            result = self.batch.list_namespaced_job(namespace, label_selector=_label_selector(labels))
        except ApiException as e:
            raise _translate(e, "Job list", namespace) from e
        return [self._to_workload(job) for job in result.items]

    def delete_workload(self, name: str, namespace: str) -> None:
        try:
            self.batch.delete_namespaced_job(name, namespace, propagation_policy="Background")
        except ApiException as e:
            if e.status == 404:
                return
            raise _translate(e, "Job", f"{namespace}/{name}") from e

    def _list_pods(self, workload: Workload) -> List[client.V1Pod]:
        try:
            result = self.core.list_namespaced_pod(
                workload.namespace,
                label_selector=f"{POD_JOB_NAME_LABEL}={workload.name}",
            )
        except ApiException as e:
            raise _translate(e, "Pod list", workload.name) from e
        return list(result.items)

    def _read_log(self, pod: client.V1Pod) -> str:
        container = pod.spec.containers[0].name if pod.spec and pod.spec.containers else None
        try:
            return self.core.read_namespaced_pod_log(
                pod.metadata.name, pod.metadata.namespace, container=container
            )
        except ApiException as e:
            raise _translate(e, "Pod log", pod.metadata.name) from e

    def get_workload_log(self, workload: Workload) -> str:
        pods = self._list_pods(workload)
        if not pods:
            raise NotFoundError("pod", workload.name)
        newest = max(pods, key=lambda p: p.metadata.creation_timestamp)
        return self._read_log(newest)

    def get_successful_pod_log(self, workload: Workload) -> str:
        succeeded = [
            p for p in self._list_pods(workload)
            if p.status is not None and p.status.phase == "Succeeded" and p.status.start_time is not None
        ]
        if not succeeded:
            raise NotFoundError("succeeded pod", workload.name)
        latest = max(succeeded, key=lambda p: p.status.start_time)
        return self._read_log(latest)
