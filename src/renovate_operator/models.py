"""
Data models for the renovate operator.
"""
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


API_GROUP = "renovate-operator.mogenius.com"
API_VERSION = "v1alpha1"
RENOVATEJOB_PLURAL = "renovatejobs"


class JobStatus(str, Enum):
    """Status of a project (and of discovery) within a RenovateJob."""
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectStatus(BaseModel):
    """Status of a single project within a RenovateJob."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    status: JobStatus = JobStatus.SCHEDULED
    last_run: Optional[datetime] = Field(default=None, alias="lastRun")
    duration: Optional[str] = None
    renovate_result_status: Optional[str] = Field(
        default=None,
        alias="renovateResultStatus",
        description="Classification of the last run, e.g. 'No Config' or 'Disabled'"
    )


@dataclass(frozen=True)
class StatusUpdate:
    """A requested status transition plus its payload."""
    status: JobStatus
    renovate_result_status: Optional[str] = None
    duration: Optional[str] = None


@dataclass(frozen=True)
class JobIdentifier:
    """Name/namespace pair identifying a RenovateJob."""
    name: str
    namespace: str

    @property
    def fullname(self) -> str:
        """Unique key used for schedules and lock tables."""
        return f"{self.name}-{self.namespace}"


class SecretKeyReference(BaseModel):
    name: str = ""
    key: str = ""


class WebhookAuthentication(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    secret_ref: Optional[SecretKeyReference] = Field(default=None, alias="secretRef")


class WebhookConfig(BaseModel):
    enabled: bool = False
    authentication: Optional[WebhookAuthentication] = None


class ServiceAccountConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    automount_service_account_token: Optional[bool] = Field(
        default=None, alias="automountServiceAccountToken"
    )


class MetadataConfig(BaseModel):
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class SecurityContextConfig(BaseModel):
    """Pod/container security context overrides (passed through unchanged)."""
    pod: Optional[Dict[str, Any]] = None
    container: Optional[Dict[str, Any]] = None


class RenovateJobSpec(BaseModel):
    """Desired state of a RenovateJob."""
    model_config = ConfigDict(populate_by_name=True)

    schedule: str = Field(description="Cron schedule in standard 5-field format")
    image: str = ""
    discovery_filter: str = Field(default="", alias="discoveryFilter")
    discover_topics: str = Field(default="", alias="discoverTopics")
    secret_ref: str = Field(default="", alias="secretRef")
    extra_env: List[Dict[str, Any]] = Field(default_factory=list, alias="extraEnv")
    parallelism: int = Field(default=1, ge=1)
    # Scheduling constraints, opaque to the core
    resources: Dict[str, Any] = Field(default_factory=dict)
    node_selector: Dict[str, str] = Field(default_factory=dict, alias="nodeSelector")
    affinity: Optional[Dict[str, Any]] = None
    tolerations: List[Dict[str, Any]] = Field(default_factory=list)
    topology_spread_constraints: List[Dict[str, Any]] = Field(
        default_factory=list, alias="topologySpreadConstraints"
    )
    service_account: Optional[ServiceAccountConfig] = Field(default=None, alias="serviceAccount")
    metadata: Optional[MetadataConfig] = None
    security_context: Optional[SecurityContextConfig] = Field(default=None, alias="securityContext")
    webhook: Optional[WebhookConfig] = None
    extra_volumes: List[Dict[str, Any]] = Field(default_factory=list, alias="extraVolumes")
    extra_volume_mounts: List[Dict[str, Any]] = Field(default_factory=list, alias="extraVolumeMounts")
    image_pull_secrets: List[Dict[str, str]] = Field(default_factory=list, alias="imagePullSecrets")


class RenovateJobStatus(BaseModel):
    projects: List[ProjectStatus] = Field(default_factory=list)


class RenovateJob(BaseModel):
    """A tenant: spec plus the observed status of its discovered projects."""
    name: str
    namespace: str
    resource_version: Optional[str] = None
    uid: Optional[str] = None
    spec: RenovateJobSpec
    status: RenovateJobStatus = Field(default_factory=RenovateJobStatus)

    @property
    def fullname(self) -> str:
        return f"{self.name}-{self.namespace}"

    @property
    def identifier(self) -> JobIdentifier:
        return JobIdentifier(name=self.name, namespace=self.namespace)

    def webhook_auth_enabled(self) -> bool:
        """True only if webhook authentication is configured and enabled."""
        webhook = self.spec.webhook
        return bool(
            webhook is not None
            and webhook.authentication is not None
            and webhook.authentication.enabled
        )

    @classmethod
    def from_resource(cls, obj: Dict[str, Any]) -> "RenovateJob":
        """Build from a custom resource object as returned by the API server."""
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            resource_version=metadata.get("resourceVersion"),
            uid=metadata.get("uid"),
            spec=RenovateJobSpec.model_validate(obj.get("spec") or {}),
            status=RenovateJobStatus.model_validate(obj.get("status") or {}),
        )

    def to_resource(self) -> Dict[str, Any]:
        """Serialise back into a custom resource object."""
        metadata: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version
        if self.uid is not None:
            metadata["uid"] = self.uid
        return {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": "RenovateJob",
            "metadata": metadata,
            "spec": self.spec.model_dump(mode="json", by_alias=True, exclude_none=True),
            "status": self.status.model_dump(mode="json", by_alias=True, exclude_none=True),
        }


class OperatorConfig(BaseModel):
    """Operator configuration."""
    class ExecutorConfig(BaseModel):
        loop_interval: float = Field(default=10, gt=0)
        delete_successful_jobs: bool = False

    class DiscoveryConfig(BaseModel):
        poll_interval: float = Field(default=5, gt=0)
        not_found_retries: int = Field(default=5, ge=1)
        not_found_delay: float = Field(default=1, ge=0)

    class JobsConfig(BaseModel):
        timeout_seconds: int = Field(default=1800, ge=1)
        backoff_limit: int = Field(default=1, ge=0)
        ttl_seconds_after_finished: int = Field(
            default=-1,
            description="Seconds until finished workloads are garbage collected, -1 disables"
        )
        image_pull_secrets: List[Dict[str, str]] = Field(default_factory=list)

        @field_validator('ttl_seconds_after_finished')
        @classmethod
        def validate_ttl(cls, v: int) -> int:
            if v < -1:
                raise ValueError(f"ttl_seconds_after_finished needs to be -1 or greater, got {v}")
            return v

    class LoggingConfig(BaseModel):
        level: str = Field(
            default="INFO",
            description="Global log level: DEBUG, INFO, WARNING, ERROR"
        )
        file: Optional[str] = Field(
            default=None,
            description="Optional log file path (in addition to stdout)"
        )
        json_format: bool = Field(
            default=False,
            description="Output logs in JSON format for machine parsing"
        )
        module_levels: Dict[str, str] = Field(
            default_factory=dict,
            description="Per-module log levels, e.g. {'executor': 'DEBUG'}"
        )

    watch_namespace: str = Field(default="", description="Namespace to watch, empty for all")
    reconcile_interval: float = Field(default=60, gt=0)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class OperatorConfigFile(BaseModel):
    """Root structure of the operator config file."""
    operator: OperatorConfig = Field(default_factory=OperatorConfig)


def parse_image_pull_secrets(raw: str) -> List[Dict[str, str]]:
    """Parse the IMAGE_PULL_SECRETS env value (a JSON list of {name: ...})."""
    if not raw or raw.strip() == "[]":
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"IMAGE_PULL_SECRETS is not valid JSON: {e}")
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise ValueError("IMAGE_PULL_SECRETS must be a JSON list of objects")
    return value
