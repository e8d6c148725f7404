from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, TypeVar

import structlog
from pydantic import ValidationError

from kubeforge.exceptions import ManifestShapeError
from kubeforge.schemas.workload import (
    BlueGreenStrategy,
    CanaryStep,
    CanaryStrategy,
    ConfigMapKeyRef,
    ConfigMapVolume,
    Container,
    ContainerPort,
    CronJobSpec,
    DaemonSetSpec,
    DeploymentSpec,
    DeploymentStrategy,
    DNSConfig,
    DNSConfigOption,
    EmptyDirVolume,
    EnvFromSource,
    EnvVar,
    FieldRef,
    Handler,
    HostPathVolume,
    HTTPHeader,
    JobSpec,
    Lifecycle,
    ManifestModel,
    OtherValueSource,
    ParsedManifest,
    PauseStep,
    PersistentVolumeClaimVolume,
    PodTemplate,
    Probe,
    RawVolume,
    ResourceFieldRef,
    ResourceRequirements,
    RolloutSpec,
    SecretKeyRef,
    SecretVolume,
    StatefulSetSpec,
    Toleration,
    VolumeMount,
    WorkloadKind,
)
from kubeforge.services.manifest.emitter import load_manifest
from kubeforge.services.manifest.synthesizer import resolve_kind

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_HANDLER_TYPES = ("httpGet", "exec", "tcpSocket", "grpc", "sleep")

# keys each typed volume understands; anything more falls back to RawVolume
_VOLUME_KEYS: dict[str, frozenset[str]] = {
    "emptyDir": frozenset({"medium", "sizeLimit"}),
    "hostPath": frozenset({"path", "type"}),
    "configMap": frozenset({"name", "defaultMode", "optional"}),
    "secret": frozenset({"secretName", "defaultMode", "optional"}),
    "persistentVolumeClaim": frozenset({"claimName", "readOnly"}),
}


# ---------------------------------------------------------------------------
# Tolerant field readers: wrong types read as "unset"
# ---------------------------------------------------------------------------


def _map(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


def _str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def _int_or_str(value: Any) -> int | str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, str)):
        return value
    return None


def _str_map(value: Any) -> dict[str, str]:
    return {str(k): _str(v) or "" for k, v in _map(value).items()}


def _str_list(value: Any) -> list[str]:
    return [s for s in (_str(v) for v in _list(value)) if s is not None]


def _items(value: Any, reader: Callable[[dict[str, Any]], T | None], what: str) -> list[T]:
    """Read a list of mappings, skipping entries that cannot be understood."""
    result: list[T] = []
    for raw in _list(value):
        if not isinstance(raw, Mapping):
            continue
        try:
            item = reader(dict(raw))
        except ValidationError as exc:
            logger.debug("manifest.parse_item_skipped", item=what, error=str(exc))
            continue
        if item is not None:
            result.append(item)
    return result


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


def _handler_fields(raw: dict[str, Any]) -> dict[str, Any] | None:
    for handler_type in _HANDLER_TYPES:
        if handler_type in raw:
            body = _map(raw[handler_type])
            return {
                "type": handler_type,
                "path": _str(body.get("path")),
                "port": _int_or_str(body.get("port")),
                "host": _str(body.get("host")),
                "scheme": _str(body.get("scheme")),
                "http_headers": _items(
                    body.get("httpHeaders"),
                    lambda h: HTTPHeader(name=_str(h.get("name")) or "", value=_str(h.get("value")) or ""),
                    "httpHeader",
                ),
                "command": _str_list(body.get("command")),
                "service": _str(body.get("service")),
                "seconds": _int(body.get("seconds")),
            }
    return None


def _probe(value: Any) -> Probe | None:
    raw = _map(value)
    if not raw:
        return None
    fields = _handler_fields(raw) or {}
    return Probe(
        **fields,
        initial_delay_seconds=_int(raw.get("initialDelaySeconds")),
        period_seconds=_int(raw.get("periodSeconds")),
        timeout_seconds=_int(raw.get("timeoutSeconds")),
        success_threshold=_int(raw.get("successThreshold")),
        failure_threshold=_int(raw.get("failureThreshold")),
    )


def _lifecycle(value: Any) -> Lifecycle | None:
    raw = _map(value)
    post_start = _handler_fields(_map(raw.get("postStart")))
    pre_stop = _handler_fields(_map(raw.get("preStop")))
    if post_start is None and pre_stop is None:
        return None
    return Lifecycle(
        post_start=Handler(**post_start) if post_start else None,
        pre_stop=Handler(**pre_stop) if pre_stop else None,
    )


def _value_from(raw: dict[str, Any]) -> Any:
    if len(raw) == 1:
        if "configMapKeyRef" in raw or "secretKeyRef" in raw:
            source = "configMapKeyRef" if "configMapKeyRef" in raw else "secretKeyRef"
            ref = _map(raw[source])
            cls = ConfigMapKeyRef if source == "configMapKeyRef" else SecretKeyRef
            return cls(name=_str(ref.get("name")) or "", key=_str(ref.get("key")) or "", optional=_bool(ref.get("optional")))
        if "fieldRef" in raw:
            ref = _map(raw["fieldRef"])
            return FieldRef(field_path=_str(ref.get("fieldPath")) or "", api_version=_str(ref.get("apiVersion")))
        if "resourceFieldRef" in raw:
            ref = _map(raw["resourceFieldRef"])
            return ResourceFieldRef(
                resource=_str(ref.get("resource")) or "",
                container_name=_str(ref.get("containerName")),
                divisor=_str(ref.get("divisor")),
            )
    return OtherValueSource(raw=raw)


def _env(raw: dict[str, Any]) -> EnvVar | None:
    name = _str(raw.get("name"))
    if not name:
        return None
    value_from = _map(raw.get("valueFrom"))
    if value_from:
        return EnvVar(name=name, value_from=_value_from(value_from))
    return EnvVar(name=name, value=_str(raw.get("value")))


def _env_from(raw: dict[str, Any]) -> EnvFromSource | None:
    for source in ("configMapRef", "secretRef"):
        if source in raw:
            ref = _map(raw[source])
            return EnvFromSource(
                source=source,
                name=_str(ref.get("name")) or "",
                prefix=_str(raw.get("prefix")),
                optional=_bool(ref.get("optional")),
            )
    return None


def _port(raw: dict[str, Any]) -> ContainerPort | None:
    container_port = _int(raw.get("containerPort"))
    if container_port is None:
        return None
    return ContainerPort(
        container_port=container_port,
        name=_str(raw.get("name")),
        protocol=_str(raw.get("protocol")),
        host_port=_int(raw.get("hostPort")),
    )


def _volume_mount(raw: dict[str, Any]) -> VolumeMount | None:
    name, path = _str(raw.get("name")), _str(raw.get("mountPath"))
    if not name or path is None:
        return None
    return VolumeMount(name=name, mount_path=path, sub_path=_str(raw.get("subPath")), read_only=_bool(raw.get("readOnly")))


def _container(raw: dict[str, Any]) -> Container:
    resources = _map(raw.get("resources"))
    security_context = _map(raw.get("securityContext"))
    return Container(
        name=_str(raw.get("name")) or "",
        image=_str(raw.get("image")) or "",
        image_pull_policy=_str(raw.get("imagePullPolicy")),
        command=_str_list(raw.get("command")),
        args=_str_list(raw.get("args")),
        working_dir=_str(raw.get("workingDir")),
        ports=_items(raw.get("ports"), _port, "port"),
        env_from=_items(raw.get("envFrom"), _env_from, "envFrom"),
        env=_items(raw.get("env"), _env, "env"),
        resources=ResourceRequirements(
            requests=_str_map(resources.get("requests")),
            limits=_str_map(resources.get("limits")),
        ),
        volume_mounts=_items(raw.get("volumeMounts"), _volume_mount, "volumeMount"),
        liveness_probe=_probe(raw.get("livenessProbe")),
        readiness_probe=_probe(raw.get("readinessProbe")),
        startup_probe=_probe(raw.get("startupProbe")),
        lifecycle=_lifecycle(raw.get("lifecycle")),
        security_context=security_context or None,
    )


# ---------------------------------------------------------------------------
# Pod template
# ---------------------------------------------------------------------------


def _volume(raw: dict[str, Any]) -> Any:
    name = _str(raw.get("name"))
    if not name:
        return None
    source = {k: v for k, v in raw.items() if k != "name"}
    if len(source) == 1:
        volume_type, body = next(iter(source.items()))
        body = body if isinstance(body, Mapping) else None
        if volume_type in _VOLUME_KEYS and body is not None and set(body) <= _VOLUME_KEYS[volume_type]:
            if volume_type == "emptyDir":
                return EmptyDirVolume(name=name, medium=_str(body.get("medium")), size_limit=_str(body.get("sizeLimit")))
            if volume_type == "hostPath":
                return HostPathVolume(name=name, path=_str(body.get("path")) or "", host_path_type=_str(body.get("type")))
            if volume_type == "configMap":
                return ConfigMapVolume(
                    name=name,
                    config_map_name=_str(body.get("name")) or "",
                    default_mode=_int(body.get("defaultMode")),
                    optional=_bool(body.get("optional")),
                )
            if volume_type == "secret":
                return SecretVolume(
                    name=name,
                    secret_name=_str(body.get("secretName")) or "",
                    default_mode=_int(body.get("defaultMode")),
                    optional=_bool(body.get("optional")),
                )
            return PersistentVolumeClaimVolume(
                name=name,
                claim_name=_str(body.get("claimName")) or "",
                read_only=_bool(body.get("readOnly")),
            )
    return RawVolume(name=name, source=source)


def _toleration(raw: dict[str, Any]) -> Toleration:
    return Toleration(
        key=_str(raw.get("key")),
        operator=_str(raw.get("operator")),
        value=_str(raw.get("value")),
        effect=_str(raw.get("effect")),
        toleration_seconds=_int(raw.get("tolerationSeconds")),
    )


def _dns_config(value: Any) -> DNSConfig | None:
    raw = _map(value)
    if not raw:
        return None
    return DNSConfig(
        nameservers=_str_list(raw.get("nameservers")),
        searches=_str_list(raw.get("searches")),
        options=_items(
            raw.get("options"),
            lambda o: DNSConfigOption(name=_str(o.get("name")) or "", value=_str(o.get("value"))),
            "dnsOption",
        ),
    )


def _pod_template(template: dict[str, Any]) -> PodTemplate:
    metadata = _map(template.get("metadata"))
    spec = _map(template.get("spec"))
    return PodTemplate(
        annotations=_str_map(metadata.get("annotations")),
        init_containers=_items(spec.get("initContainers"), _container, "initContainer"),
        containers=_items(spec.get("containers"), _container, "container"),
        volumes=_items(spec.get("volumes"), _volume, "volume"),
        image_pull_secrets=[s for s in (_str(_map(i).get("name")) for i in _list(spec.get("imagePullSecrets"))) if s],
        node_selector=_str_map(spec.get("nodeSelector")),
        affinity=_map(spec.get("affinity")) or None,
        tolerations=_items(spec.get("tolerations"), _toleration, "toleration"),
        dns_policy=_str(spec.get("dnsPolicy")),
        dns_config=_dns_config(spec.get("dnsConfig")),
        host_network=_bool(spec.get("hostNetwork")),
        service_account_name=_str(spec.get("serviceAccountName")),
        security_context=_map(spec.get("securityContext")) or None,
        restart_policy=_str(spec.get("restartPolicy")),
        termination_grace_period_seconds=_int(spec.get("terminationGracePeriodSeconds")),
    )


# ---------------------------------------------------------------------------
# Kind sections
# ---------------------------------------------------------------------------


def _choice(value: Any, allowed: tuple[str, ...]) -> str | None:
    text = _str(value)
    return text if text in allowed else None


def _deployment(spec: dict[str, Any]) -> DeploymentSpec:
    strategy = None
    raw_strategy = _map(spec.get("strategy"))
    if raw_strategy:
        rolling = _map(raw_strategy.get("rollingUpdate"))
        strategy = DeploymentStrategy(
            type=_choice(raw_strategy.get("type"), ("RollingUpdate", "Recreate")) or "RollingUpdate",
            max_unavailable=_int_or_str(rolling.get("maxUnavailable")),
            max_surge=_int_or_str(rolling.get("maxSurge")),
        )
    return DeploymentSpec(
        strategy=strategy,
        min_ready_seconds=_int(spec.get("minReadySeconds")),
        revision_history_limit=_int(spec.get("revisionHistoryLimit")),
        progress_deadline_seconds=_int(spec.get("progressDeadlineSeconds")),
        paused=_bool(spec.get("paused")),
    )


def _canary_step(raw: dict[str, Any]) -> CanaryStep:
    if set(raw) == {"setWeight"} and _int(raw["setWeight"]) is not None:
        return CanaryStep(set_weight=raw["setWeight"])
    if set(raw) == {"pause"} and isinstance(raw["pause"], Mapping) and set(raw["pause"]) <= {"duration"}:
        return CanaryStep(pause=PauseStep(duration=_int_or_str(raw["pause"].get("duration"))))
    return CanaryStep(raw=raw)


def _rollout(spec: dict[str, Any]) -> RolloutSpec:
    strategy = _map(spec.get("strategy"))
    canary = blue_green = None
    if "blueGreen" in strategy:
        bg = _map(strategy.get("blueGreen"))
        blue_green = BlueGreenStrategy(
            active_service=_str(bg.get("activeService")) or "",
            preview_service=_str(bg.get("previewService")),
            auto_promotion_enabled=_bool(bg.get("autoPromotionEnabled")),
            auto_promotion_seconds=_int(bg.get("autoPromotionSeconds")),
            scale_down_delay_seconds=_int(bg.get("scaleDownDelaySeconds")),
            scale_down_delay_revision_limit=_int(bg.get("scaleDownDelayRevisionLimit")),
            preview_replica_count=_int(bg.get("previewReplicaCount")),
        )
    elif "canary" in strategy:
        c = _map(strategy.get("canary"))
        canary = CanaryStrategy(
            steps=_items(c.get("steps"), _canary_step, "canaryStep"),
            stable_service=_str(c.get("stableService")),
            canary_service=_str(c.get("canaryService")),
            max_surge=_int_or_str(c.get("maxSurge")),
            max_unavailable=_int_or_str(c.get("maxUnavailable")),
            traffic_routing=_map(c.get("trafficRouting")) or None,
        )
    return RolloutSpec(
        canary=canary,
        blue_green=blue_green,
        min_ready_seconds=_int(spec.get("minReadySeconds")),
        revision_history_limit=_int(spec.get("revisionHistoryLimit")),
        progress_deadline_seconds=_int(spec.get("progressDeadlineSeconds")),
    )


def _statefulset(spec: dict[str, Any]) -> StatefulSetSpec:
    update = _map(spec.get("updateStrategy"))
    return StatefulSetSpec(
        service_name=_str(spec.get("serviceName")),
        pod_management_policy=_choice(spec.get("podManagementPolicy"), ("OrderedReady", "Parallel")),
        update_strategy_type=_choice(update.get("type"), ("RollingUpdate", "OnDelete")),
        partition=_int(_map(update.get("rollingUpdate")).get("partition")),
        volume_claim_templates=[dict(t) for t in _list(spec.get("volumeClaimTemplates")) if isinstance(t, Mapping)],
    )


def _daemonset(spec: dict[str, Any]) -> DaemonSetSpec:
    update = _map(spec.get("updateStrategy"))
    return DaemonSetSpec(
        update_strategy_type=_choice(update.get("type"), ("RollingUpdate", "OnDelete")),
        max_unavailable=_int_or_str(_map(update.get("rollingUpdate")).get("maxUnavailable")),
        min_ready_seconds=_int(spec.get("minReadySeconds")),
        revision_history_limit=_int(spec.get("revisionHistoryLimit")),
    )


def _job(spec: dict[str, Any]) -> JobSpec:
    return JobSpec(
        completions=_int(spec.get("completions")),
        parallelism=_int(spec.get("parallelism")),
        backoff_limit=_int(spec.get("backoffLimit")),
        active_deadline_seconds=_int(spec.get("activeDeadlineSeconds")),
        ttl_seconds_after_finished=_int(spec.get("ttlSecondsAfterFinished")),
    )


def _cronjob(spec: dict[str, Any]) -> CronJobSpec:
    return CronJobSpec(
        schedule=_str(spec.get("schedule")),
        time_zone=_str(spec.get("timeZone")),
        suspend=_bool(spec.get("suspend")),
        concurrency_policy=_choice(spec.get("concurrencyPolicy"), ("Allow", "Forbid", "Replace")),
        starting_deadline_seconds=_int(spec.get("startingDeadlineSeconds")),
        successful_jobs_history_limit=_int(spec.get("successfulJobsHistoryLimit")),
        failed_jobs_history_limit=_int(spec.get("failedJobsHistoryLimit")),
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def decode_document(source: str | Mapping[str, Any]) -> dict[str, Any]:
    """Decode text and check it is a single workload-shaped mapping."""
    document = load_manifest(source) if isinstance(source, str) else source
    if document is None:
        raise ManifestShapeError("Manifest is empty")
    if not isinstance(document, Mapping):
        raise ManifestShapeError("Manifest must be a mapping at the top level")
    if not document.get("kind"):
        raise ManifestShapeError("Manifest has no kind")
    return dict(document)


def parse(source: str | Mapping[str, Any]) -> ParsedManifest:
    """Read a manifest into a partial model.

    Missing sections are never an error; only undecodable text, a
    non-mapping document, a missing kind or a kind outside the supported
    six are rejected.
    """
    document = decode_document(source)
    kind = resolve_kind(document.get("kind"))

    metadata = _map(document.get("metadata"))
    spec = _map(document.get("spec"))
    if kind == WorkloadKind.CRONJOB:
        job_spec = _map(_map(spec.get("jobTemplate")).get("spec"))
    else:
        job_spec = spec
    template = _map(job_spec.get("template"))

    labels = _str_map(metadata.get("labels")) or _str_map(_map(template.get("metadata")).get("labels"))
    model = ManifestModel(
        kind=kind,
        name=_str(metadata.get("name")) or "",
        namespace=_str(metadata.get("namespace")) or "default",
        labels=labels,
        annotations=_str_map(metadata.get("annotations")),
        pod=_pod_template(template),
    )

    replicas = _int(spec.get("replicas"))
    if kind == WorkloadKind.DEPLOYMENT:
        model.replicas = replicas
        model.deployment = _deployment(spec)
    elif kind == WorkloadKind.ROLLOUT:
        model.replicas = replicas
        model.rollout = _rollout(spec)
    elif kind == WorkloadKind.STATEFULSET:
        model.replicas = replicas
        model.statefulset = _statefulset(spec)
    elif kind == WorkloadKind.DAEMONSET:
        model.daemonset = _daemonset(spec)
    elif kind == WorkloadKind.JOB:
        model.job = _job(spec)
    else:
        model.cronjob = _cronjob(spec)
        model.job = _job(job_spec)

    if model.replicas is not None and model.replicas < 0:
        model.replicas = None
    return ParsedManifest(kind=kind, model=model)
