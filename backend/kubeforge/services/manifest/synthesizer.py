from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from typing import Any

from kubeforge.exceptions import ManifestShapeError, UnsupportedKindError
from kubeforge.schemas.workload import (
    API_VERSIONS,
    SCALABLE_KINDS,
    BlueGreenStrategy,
    CanaryStep,
    CanaryStrategy,
    ConfigMapKeyRef,
    ConfigMapVolume,
    Container,
    CronJobSpec,
    DaemonSetSpec,
    DeploymentSpec,
    EmptyDirVolume,
    EnvFromSource,
    EnvVar,
    FieldRef,
    Handler,
    HostPathVolume,
    JobSpec,
    ManifestModel,
    PauseStep,
    PersistentVolumeClaimVolume,
    PodTemplate,
    Probe,
    RawVolume,
    ResourceFieldRef,
    RolloutSpec,
    SecretKeyRef,
    SecretVolume,
    StatefulSetSpec,
    WorkloadKind,
)
from kubeforge.services.manifest.emitter import dump_manifest, rewrite_preserving

DEFAULT_NAMESPACE = "default"
DEFAULT_CRON_SCHEDULE = "0 0 * * *"

# (model attribute, section type) per kind; CronJob also owns the job template
_SECTIONS: dict[WorkloadKind, tuple[tuple[str, type], ...]] = {
    WorkloadKind.DEPLOYMENT: (("deployment", DeploymentSpec),),
    WorkloadKind.ROLLOUT: (("rollout", RolloutSpec),),
    WorkloadKind.STATEFULSET: (("statefulset", StatefulSetSpec),),
    WorkloadKind.DAEMONSET: (("daemonset", DaemonSetSpec),),
    WorkloadKind.JOB: (("job", JobSpec),),
    WorkloadKind.CRONJOB: (("cronjob", CronJobSpec), ("job", JobSpec)),
}
_ALL_SECTIONS = ("deployment", "rollout", "statefulset", "daemonset", "job", "cronjob")


def resolve_kind(kind: WorkloadKind | str | None) -> WorkloadKind:
    if isinstance(kind, WorkloadKind):
        return kind
    try:
        return WorkloadKind(str(kind))
    except ValueError:
        raise UnsupportedKindError(kind) from None


def default_rollout_steps() -> list[CanaryStep]:
    return [
        CanaryStep(set_weight=20),
        CanaryStep(pause=PauseStep(duration="10s")),
        CanaryStep(set_weight=50),
        CanaryStep(pause=PauseStep(duration="10s")),
    ]


def default_model(
    kind: WorkloadKind | str,
    *,
    name: str | None = None,
    namespace: str = DEFAULT_NAMESPACE,
    image: str = "nginx:latest",
    container_name: str = "main",
) -> ManifestModel:
    """新建工作负载时的初始表单模型。"""
    k = resolve_kind(kind)
    model = ManifestModel(
        kind=k,
        name=name or f"example-{k.value.lower()}",
        namespace=namespace,
        pod=PodTemplate(containers=[Container(name=container_name, image=image)]),
    )
    return with_defaults(k, model)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


def _normalize_container(container: Container) -> None:
    for env in container.env:
        if env.value_from is not None:
            env.value = None
    if container.lifecycle is not None and container.lifecycle.post_start is None and container.lifecycle.pre_stop is None:
        container.lifecycle = None
    if not container.security_context:
        container.security_context = None


def _normalize_pod(pod: PodTemplate) -> None:
    for container in [*pod.init_containers, *pod.containers]:
        _normalize_container(container)
    if not pod.affinity:
        pod.affinity = None
    if not pod.security_context:
        pod.security_context = None
    dns = pod.dns_config
    if dns is not None and not (dns.nameservers or dns.searches or dns.options):
        pod.dns_config = None


def with_defaults(kind: WorkloadKind | str, model: ManifestModel) -> ManifestModel:
    """Return a copy of ``model`` carrying every default the synthesizer injects."""
    k = resolve_kind(kind)
    m = model.model_copy(deep=True)
    m.kind = k

    if not m.namespace:
        m.namespace = DEFAULT_NAMESPACE
    if not m.labels:
        m.labels = {"app": m.name}
    if k in SCALABLE_KINDS:
        if m.replicas is None:
            m.replicas = 1
    else:
        m.replicas = None

    wanted = dict(_SECTIONS[k])
    for attr in _ALL_SECTIONS:
        if attr not in wanted:
            setattr(m, attr, None)
        elif getattr(m, attr) is None:
            setattr(m, attr, wanted[attr]())

    if k == WorkloadKind.STATEFULSET and not m.statefulset.service_name:
        m.statefulset.service_name = m.name
    elif k == WorkloadKind.ROLLOUT:
        if m.rollout.blue_green is not None:
            m.rollout.canary = None
        elif m.rollout.canary is None:
            m.rollout.canary = CanaryStrategy(steps=default_rollout_steps())
    elif k == WorkloadKind.JOB and not m.pod.restart_policy:
        m.pod.restart_policy = "Never"
    elif k == WorkloadKind.CRONJOB:
        if not m.pod.restart_policy:
            m.pod.restart_policy = "OnFailure"
        if not m.cronjob.schedule:
            m.cronjob.schedule = DEFAULT_CRON_SCHEDULE

    _normalize_pod(m.pod)
    return m


# ---------------------------------------------------------------------------
# Document builders
# ---------------------------------------------------------------------------


def _put(target: dict[str, Any], key: str, value: Any) -> None:
    """Set ``key`` only when ``value`` carries something; False and 0 count."""
    if value is None:
        return
    if isinstance(value, (dict, list, str)) and not value:
        return
    target[key] = value


def _handler(handler: Handler) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if handler.type == "httpGet":
        _put(body, "path", handler.path)
        _put(body, "port", handler.port)
        _put(body, "host", handler.host)
        _put(body, "scheme", handler.scheme)
        _put(body, "httpHeaders", [{"name": h.name, "value": h.value} for h in handler.http_headers])
    elif handler.type == "exec":
        _put(body, "command", list(handler.command))
    elif handler.type == "tcpSocket":
        _put(body, "port", handler.port)
        _put(body, "host", handler.host)
    elif handler.type == "grpc":
        _put(body, "port", handler.port)
        _put(body, "service", handler.service)
    elif handler.type == "sleep":
        _put(body, "seconds", handler.seconds)
    # the handler key is always written so the probe type survives
    return {handler.type: body}


def _probe(probe: Probe | None) -> dict[str, Any] | None:
    if probe is None:
        return None
    out = _handler(probe)
    _put(out, "initialDelaySeconds", probe.initial_delay_seconds)
    _put(out, "periodSeconds", probe.period_seconds)
    _put(out, "timeoutSeconds", probe.timeout_seconds)
    _put(out, "successThreshold", probe.success_threshold)
    _put(out, "failureThreshold", probe.failure_threshold)
    return out


def _value_from(source: Any) -> dict[str, Any]:
    if isinstance(source, (ConfigMapKeyRef, SecretKeyRef)):
        ref: dict[str, Any] = {"name": source.name, "key": source.key}
        _put(ref, "optional", source.optional)
        return {source.source: ref}
    if isinstance(source, FieldRef):
        ref = {"fieldPath": source.field_path}
        _put(ref, "apiVersion", source.api_version)
        return {"fieldRef": ref}
    if isinstance(source, ResourceFieldRef):
        ref = {"resource": source.resource}
        _put(ref, "containerName", source.container_name)
        _put(ref, "divisor", source.divisor)
        return {"resourceFieldRef": ref}
    return dict(source.raw)


def _env(env: EnvVar) -> dict[str, Any]:
    out: dict[str, Any] = {"name": env.name}
    if env.value_from is not None:
        out["valueFrom"] = _value_from(env.value_from)
    elif env.value is not None:
        out["value"] = env.value
    return out


def _env_from(source: EnvFromSource) -> dict[str, Any]:
    out: dict[str, Any] = {}
    _put(out, "prefix", source.prefix)
    ref: dict[str, Any] = {"name": source.name}
    _put(ref, "optional", source.optional)
    out[source.source] = ref
    return out


def _container(container: Container) -> dict[str, Any]:
    out: dict[str, Any] = {"name": container.name, "image": container.image}
    _put(out, "imagePullPolicy", container.image_pull_policy)
    _put(out, "command", list(container.command))
    _put(out, "args", list(container.args))
    _put(out, "workingDir", container.working_dir)

    ports = []
    for p in container.ports:
        port: dict[str, Any] = {}
        _put(port, "name", p.name)
        port["containerPort"] = p.container_port
        _put(port, "hostPort", p.host_port)
        _put(port, "protocol", p.protocol)
        ports.append(port)
    _put(out, "ports", ports)
    _put(out, "envFrom", [_env_from(s) for s in container.env_from])
    _put(out, "env", [_env(e) for e in container.env])

    resources: dict[str, Any] = {}
    _put(resources, "requests", dict(container.resources.requests))
    _put(resources, "limits", dict(container.resources.limits))
    _put(out, "resources", resources)

    mounts = []
    for vm in container.volume_mounts:
        mount: dict[str, Any] = {"name": vm.name, "mountPath": vm.mount_path}
        _put(mount, "subPath", vm.sub_path)
        _put(mount, "readOnly", vm.read_only)
        mounts.append(mount)
    _put(out, "volumeMounts", mounts)

    _put(out, "livenessProbe", _probe(container.liveness_probe))
    _put(out, "readinessProbe", _probe(container.readiness_probe))
    _put(out, "startupProbe", _probe(container.startup_probe))
    if container.lifecycle is not None:
        lifecycle: dict[str, Any] = {}
        if container.lifecycle.post_start is not None:
            lifecycle["postStart"] = _handler(container.lifecycle.post_start)
        if container.lifecycle.pre_stop is not None:
            lifecycle["preStop"] = _handler(container.lifecycle.pre_stop)
        _put(out, "lifecycle", lifecycle)
    _put(out, "securityContext", container.security_context)
    return out


def _volume(volume: Any) -> dict[str, Any]:
    if isinstance(volume, RawVolume):
        return {"name": volume.name, **volume.source}
    body: dict[str, Any] = {}
    if isinstance(volume, EmptyDirVolume):
        _put(body, "medium", volume.medium)
        _put(body, "sizeLimit", volume.size_limit)
    elif isinstance(volume, HostPathVolume):
        body["path"] = volume.path
        _put(body, "type", volume.host_path_type)
    elif isinstance(volume, ConfigMapVolume):
        body["name"] = volume.config_map_name
        _put(body, "defaultMode", volume.default_mode)
        _put(body, "optional", volume.optional)
    elif isinstance(volume, SecretVolume):
        body["secretName"] = volume.secret_name
        _put(body, "defaultMode", volume.default_mode)
        _put(body, "optional", volume.optional)
    elif isinstance(volume, PersistentVolumeClaimVolume):
        body["claimName"] = volume.claim_name
        _put(body, "readOnly", volume.read_only)
    return {"name": volume.name, volume.type: body}


def build_pod_spec(pod: PodTemplate) -> dict[str, Any]:
    spec: dict[str, Any] = {}
    _put(spec, "initContainers", [_container(c) for c in pod.init_containers])
    spec["containers"] = [_container(c) for c in pod.containers]
    _put(spec, "volumes", [_volume(v) for v in pod.volumes])
    _put(spec, "imagePullSecrets", [{"name": s} for s in pod.image_pull_secrets])
    _put(spec, "nodeSelector", dict(pod.node_selector))
    _put(spec, "affinity", pod.affinity)

    tolerations = []
    for t in pod.tolerations:
        tol: dict[str, Any] = {}
        _put(tol, "key", t.key)
        _put(tol, "operator", t.operator)
        _put(tol, "value", t.value)
        _put(tol, "effect", t.effect)
        _put(tol, "tolerationSeconds", t.toleration_seconds)
        tolerations.append(tol)
    _put(spec, "tolerations", tolerations)
    _put(spec, "dnsPolicy", pod.dns_policy)
    if pod.dns_config is not None:
        dns: dict[str, Any] = {}
        _put(dns, "nameservers", list(pod.dns_config.nameservers))
        _put(dns, "searches", list(pod.dns_config.searches))
        options = []
        for o in pod.dns_config.options:
            opt: dict[str, Any] = {"name": o.name}
            _put(opt, "value", o.value)
            options.append(opt)
        _put(dns, "options", options)
        _put(spec, "dnsConfig", dns)
    _put(spec, "hostNetwork", pod.host_network)
    _put(spec, "serviceAccountName", pod.service_account_name)
    _put(spec, "securityContext", pod.security_context)
    _put(spec, "restartPolicy", pod.restart_policy)
    _put(spec, "terminationGracePeriodSeconds", pod.termination_grace_period_seconds)
    return spec


def _template(model: ManifestModel) -> dict[str, Any]:
    metadata: dict[str, Any] = {"labels": dict(model.labels)}
    _put(metadata, "annotations", dict(model.pod.annotations))
    return {"metadata": metadata, "spec": build_pod_spec(model.pod)}


def _deployment_fields(spec: dict[str, Any], model: ManifestModel) -> None:
    section = model.deployment
    if section.strategy is not None:
        strategy: dict[str, Any] = {"type": section.strategy.type}
        rolling: dict[str, Any] = {}
        _put(rolling, "maxUnavailable", section.strategy.max_unavailable)
        _put(rolling, "maxSurge", section.strategy.max_surge)
        _put(strategy, "rollingUpdate", rolling)
        spec["strategy"] = strategy
    _put(spec, "minReadySeconds", section.min_ready_seconds)
    _put(spec, "revisionHistoryLimit", section.revision_history_limit)
    _put(spec, "progressDeadlineSeconds", section.progress_deadline_seconds)
    _put(spec, "paused", section.paused)


def _canary_step(step: CanaryStep) -> dict[str, Any]:
    if step.raw:
        return dict(step.raw)
    if step.set_weight is not None:
        return {"setWeight": step.set_weight}
    pause: dict[str, Any] = {}
    if step.pause is not None:
        _put(pause, "duration", step.pause.duration)
    return {"pause": pause}


def _canary(canary: CanaryStrategy) -> dict[str, Any]:
    out: dict[str, Any] = {}
    _put(out, "canaryService", canary.canary_service)
    _put(out, "stableService", canary.stable_service)
    _put(out, "maxSurge", canary.max_surge)
    _put(out, "maxUnavailable", canary.max_unavailable)
    _put(out, "trafficRouting", canary.traffic_routing)
    _put(out, "steps", [_canary_step(s) for s in canary.steps])
    return out


def _blue_green(bg: BlueGreenStrategy) -> dict[str, Any]:
    out: dict[str, Any] = {"activeService": bg.active_service}
    _put(out, "previewService", bg.preview_service)
    _put(out, "autoPromotionEnabled", bg.auto_promotion_enabled)
    _put(out, "autoPromotionSeconds", bg.auto_promotion_seconds)
    _put(out, "scaleDownDelaySeconds", bg.scale_down_delay_seconds)
    _put(out, "scaleDownDelayRevisionLimit", bg.scale_down_delay_revision_limit)
    _put(out, "previewReplicaCount", bg.preview_replica_count)
    return out


def _rollout_fields(spec: dict[str, Any], model: ManifestModel) -> None:
    section = model.rollout
    if section.blue_green is not None:
        spec["strategy"] = {"blueGreen": _blue_green(section.blue_green)}
    elif section.canary is not None:
        spec["strategy"] = {"canary": _canary(section.canary)}
    _put(spec, "minReadySeconds", section.min_ready_seconds)
    _put(spec, "revisionHistoryLimit", section.revision_history_limit)
    _put(spec, "progressDeadlineSeconds", section.progress_deadline_seconds)


def _statefulset_fields(spec: dict[str, Any], model: ManifestModel) -> None:
    section = model.statefulset
    _put(spec, "serviceName", section.service_name)
    _put(spec, "podManagementPolicy", section.pod_management_policy)
    if section.update_strategy_type is not None:
        strategy: dict[str, Any] = {"type": section.update_strategy_type}
        if section.partition is not None:
            strategy["rollingUpdate"] = {"partition": section.partition}
        spec["updateStrategy"] = strategy
    _put(spec, "volumeClaimTemplates", [dict(t) for t in section.volume_claim_templates])


def _daemonset_fields(spec: dict[str, Any], model: ManifestModel) -> None:
    section = model.daemonset
    if section.update_strategy_type is not None:
        strategy: dict[str, Any] = {"type": section.update_strategy_type}
        if section.max_unavailable is not None:
            strategy["rollingUpdate"] = {"maxUnavailable": section.max_unavailable}
        spec["updateStrategy"] = strategy
    _put(spec, "minReadySeconds", section.min_ready_seconds)
    _put(spec, "revisionHistoryLimit", section.revision_history_limit)


def _job_spec(model: ManifestModel) -> dict[str, Any]:
    section = model.job
    spec: dict[str, Any] = {"template": _template(model)}
    _put(spec, "completions", section.completions)
    _put(spec, "parallelism", section.parallelism)
    _put(spec, "backoffLimit", section.backoff_limit)
    _put(spec, "activeDeadlineSeconds", section.active_deadline_seconds)
    _put(spec, "ttlSecondsAfterFinished", section.ttl_seconds_after_finished)
    return spec


def _cronjob_spec(model: ManifestModel) -> dict[str, Any]:
    section = model.cronjob
    spec: dict[str, Any] = {"schedule": section.schedule or DEFAULT_CRON_SCHEDULE}
    _put(spec, "timeZone", section.time_zone)
    _put(spec, "concurrencyPolicy", section.concurrency_policy)
    _put(spec, "suspend", section.suspend)
    _put(spec, "startingDeadlineSeconds", section.starting_deadline_seconds)
    _put(spec, "successfulJobsHistoryLimit", section.successful_jobs_history_limit)
    _put(spec, "failedJobsHistoryLimit", section.failed_jobs_history_limit)
    spec["jobTemplate"] = {"spec": _job_spec(model)}
    return spec


def _selector_spec(model: ManifestModel, trailing: Callable[[dict[str, Any], ManifestModel], None]) -> dict[str, Any]:
    spec: dict[str, Any] = {}
    if model.kind in SCALABLE_KINDS:
        spec["replicas"] = model.replicas
    spec["selector"] = {"matchLabels": dict(model.labels)}
    spec["template"] = _template(model)
    trailing(spec, model)
    return spec


_SPEC_BUILDERS: dict[WorkloadKind, Callable[[ManifestModel], dict[str, Any]]] = {
    WorkloadKind.DEPLOYMENT: lambda m: _selector_spec(m, _deployment_fields),
    WorkloadKind.ROLLOUT: lambda m: _selector_spec(m, _rollout_fields),
    WorkloadKind.STATEFULSET: lambda m: _selector_spec(m, _statefulset_fields),
    WorkloadKind.DAEMONSET: lambda m: _selector_spec(m, _daemonset_fields),
    WorkloadKind.JOB: _job_spec,
    WorkloadKind.CRONJOB: _cronjob_spec,
}


def build_document(kind: WorkloadKind | str, model: ManifestModel) -> dict[str, Any]:
    """Ordered manifest tree for ``model`` with defaults applied."""
    k = resolve_kind(kind)
    m = with_defaults(k, model)

    metadata: dict[str, Any] = {"name": m.name, "namespace": m.namespace, "labels": dict(m.labels)}
    _put(metadata, "annotations", dict(m.annotations))
    return {
        "apiVersion": API_VERSIONS[k],
        "kind": k.value,
        "metadata": metadata,
        "spec": _SPEC_BUILDERS[k](m),
    }


def synthesize(kind: WorkloadKind | str, model: ManifestModel, base: str | Mapping[str, Any] | None = None) -> str:
    """Render ``model`` as manifest text.

    Without ``base`` the output is a fresh manifest. With ``base`` (the text or
    decoded document of the workload being edited) only the fields the model
    changed are written over it, so everything the model does not understand
    survives and an untouched model reproduces ``base`` exactly. Text bases
    also keep their comments, quoting and flow style on untouched lines.
    """
    k = resolve_kind(kind)
    document = build_document(k, model)
    if base is None:
        return dump_manifest(document)

    # imported here: parser and merge both sit on top of this module
    from kubeforge.services.manifest.merge import overlay_document
    from kubeforge.services.manifest.parser import parse

    previous = parse(base)
    if previous.kind != k:
        raise ManifestShapeError(f"Cannot overlay a {k.value} onto a {previous.kind.value} manifest")
    previous_doc = build_document(k, previous.model)
    if isinstance(base, str):
        return rewrite_preserving(base, lambda tree: overlay_document(tree, document, previous_doc))
    return dump_manifest(overlay_document(copy.deepcopy(dict(base)), document, previous_doc))
