from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, model_validator


class WorkloadKind(str, Enum):
    DEPLOYMENT = "Deployment"
    STATEFULSET = "StatefulSet"
    DAEMONSET = "DaemonSet"
    ROLLOUT = "Rollout"
    JOB = "Job"
    CRONJOB = "CronJob"


API_VERSIONS: dict[WorkloadKind, str] = {
    WorkloadKind.DEPLOYMENT: "apps/v1",
    WorkloadKind.STATEFULSET: "apps/v1",
    WorkloadKind.DAEMONSET: "apps/v1",
    WorkloadKind.ROLLOUT: "argoproj.io/v1alpha1",
    WorkloadKind.JOB: "batch/v1",
    WorkloadKind.CRONJOB: "batch/v1",
}

# kinds whose spec carries replicas and a label selector
SCALABLE_KINDS = frozenset({WorkloadKind.DEPLOYMENT, WorkloadKind.STATEFULSET, WorkloadKind.ROLLOUT})
SELECTOR_KINDS = SCALABLE_KINDS | {WorkloadKind.DAEMONSET}


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


class ContainerPort(BaseModel):
    container_port: int
    name: str | None = None
    protocol: str | None = None
    host_port: int | None = None


class ConfigMapKeyRef(BaseModel):
    source: Literal["configMapKeyRef"] = "configMapKeyRef"
    name: str = ""
    key: str = ""
    optional: bool | None = None


class SecretKeyRef(BaseModel):
    source: Literal["secretKeyRef"] = "secretKeyRef"
    name: str = ""
    key: str = ""
    optional: bool | None = None


class FieldRef(BaseModel):
    source: Literal["fieldRef"] = "fieldRef"
    field_path: str = ""
    api_version: str | None = None


class ResourceFieldRef(BaseModel):
    source: Literal["resourceFieldRef"] = "resourceFieldRef"
    resource: str = ""
    container_name: str | None = None
    divisor: str | None = None


class OtherValueSource(BaseModel):
    """valueFrom variants this model does not know, kept as written."""

    source: Literal["other"] = "other"
    raw: dict[str, Any] = Field(default_factory=dict)


EnvValueSource = Annotated[
    Union[ConfigMapKeyRef, SecretKeyRef, FieldRef, ResourceFieldRef, OtherValueSource],
    Field(discriminator="source"),
]


class EnvVar(BaseModel):
    name: str
    value: str | None = None
    value_from: EnvValueSource | None = None


class EnvFromSource(BaseModel):
    source: Literal["configMapRef", "secretRef"] = "configMapRef"
    name: str = ""
    prefix: str | None = None
    optional: bool | None = None


class ResourceRequirements(BaseModel):
    requests: dict[str, str] = Field(default_factory=dict)
    limits: dict[str, str] = Field(default_factory=dict)


class VolumeMount(BaseModel):
    name: str
    mount_path: str
    sub_path: str | None = None
    read_only: bool | None = None


class HTTPHeader(BaseModel):
    name: str
    value: str = ""


class Handler(BaseModel):
    """Probe / lifecycle action. Only the fields of ``type`` are emitted."""

    type: Literal["httpGet", "exec", "tcpSocket", "grpc", "sleep"] = "httpGet"
    path: str | None = None
    port: int | str | None = None
    host: str | None = None
    scheme: str | None = None
    http_headers: list[HTTPHeader] = Field(default_factory=list)
    command: list[str] = Field(default_factory=list)
    service: str | None = None
    seconds: int | None = None


class Probe(Handler):
    initial_delay_seconds: int | None = None
    period_seconds: int | None = None
    timeout_seconds: int | None = None
    success_threshold: int | None = None
    failure_threshold: int | None = None


class Lifecycle(BaseModel):
    post_start: Handler | None = None
    pre_stop: Handler | None = None


class Container(BaseModel):
    name: str = ""
    image: str = ""
    image_pull_policy: str | None = None
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    working_dir: str | None = None
    ports: list[ContainerPort] = Field(default_factory=list)
    env_from: list[EnvFromSource] = Field(default_factory=list)
    env: list[EnvVar] = Field(default_factory=list)
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    volume_mounts: list[VolumeMount] = Field(default_factory=list)
    liveness_probe: Probe | None = None
    readiness_probe: Probe | None = None
    startup_probe: Probe | None = None
    lifecycle: Lifecycle | None = None
    security_context: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Volumes
# ---------------------------------------------------------------------------


class EmptyDirVolume(BaseModel):
    type: Literal["emptyDir"] = "emptyDir"
    name: str
    medium: str | None = None
    size_limit: str | None = None


class HostPathVolume(BaseModel):
    type: Literal["hostPath"] = "hostPath"
    name: str
    path: str = ""
    host_path_type: str | None = None


class ConfigMapVolume(BaseModel):
    type: Literal["configMap"] = "configMap"
    name: str
    config_map_name: str = ""
    default_mode: int | None = None
    optional: bool | None = None


class SecretVolume(BaseModel):
    type: Literal["secret"] = "secret"
    name: str
    secret_name: str = ""
    default_mode: int | None = None
    optional: bool | None = None


class PersistentVolumeClaimVolume(BaseModel):
    type: Literal["persistentVolumeClaim"] = "persistentVolumeClaim"
    name: str
    claim_name: str = ""
    read_only: bool | None = None


class RawVolume(BaseModel):
    """Any other volume source; ``source`` is the volume mapping without ``name``."""

    type: Literal["raw"] = "raw"
    name: str
    source: dict[str, Any] = Field(default_factory=dict)


Volume = Annotated[
    Union[EmptyDirVolume, HostPathVolume, ConfigMapVolume, SecretVolume, PersistentVolumeClaimVolume, RawVolume],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Pod template
# ---------------------------------------------------------------------------


class Toleration(BaseModel):
    key: str | None = None
    operator: str | None = None
    value: str | None = None
    effect: str | None = None
    toleration_seconds: int | None = None


class DNSConfigOption(BaseModel):
    name: str
    value: str | None = None


class DNSConfig(BaseModel):
    nameservers: list[str] = Field(default_factory=list)
    searches: list[str] = Field(default_factory=list)
    options: list[DNSConfigOption] = Field(default_factory=list)


class PodTemplate(BaseModel):
    annotations: dict[str, str] = Field(default_factory=dict)
    init_containers: list[Container] = Field(default_factory=list)
    containers: list[Container] = Field(default_factory=list)
    volumes: list[Volume] = Field(default_factory=list)
    image_pull_secrets: list[str] = Field(default_factory=list)
    node_selector: dict[str, str] = Field(default_factory=dict)
    affinity: dict[str, Any] | None = None
    tolerations: list[Toleration] = Field(default_factory=list)
    dns_policy: str | None = None
    dns_config: DNSConfig | None = None
    host_network: bool | None = None
    service_account_name: str | None = None
    security_context: dict[str, Any] | None = None
    restart_policy: str | None = None
    termination_grace_period_seconds: int | None = None


# ---------------------------------------------------------------------------
# Kind-specific sections
# ---------------------------------------------------------------------------


class DeploymentStrategy(BaseModel):
    type: Literal["RollingUpdate", "Recreate"] = "RollingUpdate"
    max_unavailable: int | str | None = None
    max_surge: int | str | None = None

    @model_validator(mode="after")
    def _recreate_has_no_rolling_params(self) -> "DeploymentStrategy":
        if self.type == "Recreate":
            self.max_unavailable = None
            self.max_surge = None
        return self


class DeploymentSpec(BaseModel):
    strategy: DeploymentStrategy | None = None
    min_ready_seconds: int | None = None
    revision_history_limit: int | None = None
    progress_deadline_seconds: int | None = None
    paused: bool | None = None


class PauseStep(BaseModel):
    # None means an indefinite pause that waits for promotion
    duration: int | str | None = None


class CanaryStep(BaseModel):
    set_weight: int | None = None
    pause: PauseStep | None = None
    raw: dict[str, Any] | None = None


class CanaryStrategy(BaseModel):
    steps: list[CanaryStep] = Field(default_factory=list)
    stable_service: str | None = None
    canary_service: str | None = None
    max_surge: int | str | None = None
    max_unavailable: int | str | None = None
    traffic_routing: dict[str, Any] | None = None


class BlueGreenStrategy(BaseModel):
    active_service: str = ""
    preview_service: str | None = None
    auto_promotion_enabled: bool | None = None
    auto_promotion_seconds: int | None = None
    scale_down_delay_seconds: int | None = None
    scale_down_delay_revision_limit: int | None = None
    preview_replica_count: int | None = None


class RolloutSpec(BaseModel):
    canary: CanaryStrategy | None = None
    blue_green: BlueGreenStrategy | None = None
    min_ready_seconds: int | None = None
    revision_history_limit: int | None = None
    progress_deadline_seconds: int | None = None


class StatefulSetSpec(BaseModel):
    service_name: str | None = None
    pod_management_policy: Literal["OrderedReady", "Parallel"] | None = None
    update_strategy_type: Literal["RollingUpdate", "OnDelete"] | None = None
    partition: int | None = None
    volume_claim_templates: list[dict[str, Any]] = Field(default_factory=list)


class DaemonSetSpec(BaseModel):
    update_strategy_type: Literal["RollingUpdate", "OnDelete"] | None = None
    max_unavailable: int | str | None = None
    min_ready_seconds: int | None = None
    revision_history_limit: int | None = None


class JobSpec(BaseModel):
    completions: int | None = None
    parallelism: int | None = None
    backoff_limit: int | None = None
    active_deadline_seconds: int | None = None
    ttl_seconds_after_finished: int | None = None


class CronJobSpec(BaseModel):
    schedule: str | None = None
    time_zone: str | None = None
    suspend: bool | None = None
    concurrency_policy: Literal["Allow", "Forbid", "Replace"] | None = None
    starting_deadline_seconds: int | None = None
    successful_jobs_history_limit: int | None = None
    failed_jobs_history_limit: int | None = None


class ManifestModel(BaseModel):
    """Normalized, kind-agnostic workload form model.

    Only the section matching ``kind`` is meaningful; CronJob uses both
    ``cronjob`` and ``job`` (the latter describes the nested job template).
    """

    kind: WorkloadKind
    name: str = ""
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    replicas: int | None = Field(default=None, ge=0)
    pod: PodTemplate = Field(default_factory=PodTemplate)
    deployment: DeploymentSpec | None = None
    rollout: RolloutSpec | None = None
    statefulset: StatefulSetSpec | None = None
    daemonset: DaemonSetSpec | None = None
    job: JobSpec | None = None
    cronjob: CronJobSpec | None = None


class ParsedManifest(BaseModel):
    kind: WorkloadKind
    model: ManifestModel
