from __future__ import annotations

import json

import pytest

from kubeforge.exceptions import ManifestShapeError, ManifestSyntaxError, UnsupportedKindError
from kubeforge.schemas.workload import (
    ConfigMapKeyRef,
    EmptyDirVolume,
    FieldRef,
    OtherValueSource,
    RawVolume,
    ResourceFieldRef,
    SecretKeyRef,
    SecretVolume,
    WorkloadKind,
)
from kubeforge.services.manifest import parse

CRONJOB = """\
apiVersion: batch/v1
kind: CronJob
metadata:
  name: report
  namespace: jobs
spec:
  schedule: "*/5 * * * *"
  concurrencyPolicy: Forbid
  jobTemplate:
    spec:
      backoffLimit: 2
      template:
        metadata:
          labels:
            app: report
        spec:
          restartPolicy: OnFailure
          containers:
          - name: report
            image: busybox:1.36
            args: ["sh", "-c", "date"]
"""


def test_cronjob_reads_schedule_and_nested_template() -> None:
    parsed = parse(CRONJOB)

    assert parsed.kind == WorkloadKind.CRONJOB
    model = parsed.model
    assert model.cronjob is not None
    assert model.cronjob.schedule == "*/5 * * * *"
    assert model.cronjob.concurrency_policy == "Forbid"
    assert len(model.pod.containers) == 1
    assert model.pod.containers[0].args == ["sh", "-c", "date"]
    assert model.pod.restart_policy == "OnFailure"
    assert model.job is not None and model.job.backoff_limit == 2
    assert model.namespace == "jobs"


def test_labels_fall_back_to_template_labels() -> None:
    assert parse(CRONJOB).model.labels == {"app": "report"}


def test_minimal_manifest_is_accepted() -> None:
    parsed = parse("kind: Deployment\n")

    assert parsed.kind == WorkloadKind.DEPLOYMENT
    assert parsed.model.name == ""
    assert parsed.model.namespace == "default"
    assert parsed.model.pod.containers == []
    assert parsed.model.replicas is None


def test_json_input_is_accepted() -> None:
    text = json.dumps({"apiVersion": "apps/v1", "kind": "StatefulSet", "metadata": {"name": "db"}, "spec": {"replicas": 2, "serviceName": "db-headless"}})

    model = parse(text).model

    assert model.replicas == 2
    assert model.statefulset is not None
    assert model.statefulset.service_name == "db-headless"


def test_missing_kind_is_a_shape_error() -> None:
    with pytest.raises(ManifestShapeError):
        parse("metadata:\n  name: web\n")


@pytest.mark.parametrize("text", ["", "- a\n- b\n", "just a string\n"])
def test_non_mapping_documents_are_shape_errors(text: str) -> None:
    with pytest.raises(ManifestShapeError):
        parse(text)


def test_unknown_kind_is_unsupported() -> None:
    with pytest.raises(UnsupportedKindError):
        parse("kind: Service\nmetadata:\n  name: web\n")


def test_syntax_error_carries_position() -> None:
    with pytest.raises(ManifestSyntaxError) as exc_info:
        parse("kind: Deployment\nmetadata:\n  name: [web\n")

    error = exc_info.value
    assert error.code == "MANIFEST_SYNTAX"
    assert error.status_code == 422
    assert error.details["line"] >= 3
    assert "line" in error.message


def test_malformed_values_read_as_unset() -> None:
    text = """\
kind: Deployment
metadata:
  name: web
  labels: not-a-map
spec:
  replicas: many
  template:
    spec:
      containers:
      - name: web
        image: nginx
        ports:
        - containerPort: http
        - containerPort: 8080
      - just-a-string
"""
    model = parse(text).model

    assert model.replicas is None
    assert model.labels == {}
    assert len(model.pod.containers) == 1
    assert [p.container_port for p in model.pod.containers[0].ports] == [8080]


def test_negative_replicas_are_dropped() -> None:
    assert parse("kind: Deployment\nspec:\n  replicas: -2\n").model.replicas is None


def test_env_value_sources_are_tagged() -> None:
    text = """\
kind: Deployment
metadata:
  name: api
spec:
  template:
    spec:
      containers:
      - name: api
        image: api:1
        env:
        - name: PLAIN
          value: "1"
        - name: FROM_CM
          valueFrom:
            configMapKeyRef: {name: settings, key: mode}
        - name: FROM_SECRET
          valueFrom:
            secretKeyRef: {name: creds, key: password, optional: true}
        - name: NODE
          valueFrom:
            fieldRef: {fieldPath: spec.nodeName}
        - name: LIMIT
          valueFrom:
            resourceFieldRef: {resource: limits.memory, divisor: 1Mi}
        - name: VAULT
          valueFrom:
            vaultRef: {path: secret/api}
"""
    env = {e.name: e for e in parse(text).model.pod.containers[0].env}

    assert env["PLAIN"].value == "1"
    assert env["FROM_CM"].value_from == ConfigMapKeyRef(name="settings", key="mode")
    assert env["FROM_SECRET"].value_from == SecretKeyRef(name="creds", key="password", optional=True)
    assert env["NODE"].value_from == FieldRef(field_path="spec.nodeName")
    assert env["LIMIT"].value_from == ResourceFieldRef(resource="limits.memory", divisor="1Mi")
    assert env["VAULT"].value_from == OtherValueSource(raw={"vaultRef": {"path": "secret/api"}})


def test_volumes_fall_back_to_raw_when_not_fully_understood() -> None:
    text = """\
kind: Deployment
spec:
  template:
    spec:
      volumes:
      - name: cache
        emptyDir: {}
      - name: certs
        secret:
          secretName: tls
      - name: data
        nfs:
          server: 10.0.0.1
          path: /exports
      - name: projected-cm
        configMap:
          name: settings
          items:
          - key: a
            path: a.txt
"""
    volumes = parse(text).model.pod.volumes

    assert volumes[0] == EmptyDirVolume(name="cache")
    assert volumes[1] == SecretVolume(name="certs", secret_name="tls")
    assert volumes[2] == RawVolume(name="data", source={"nfs": {"server": "10.0.0.1", "path": "/exports"}})
    assert isinstance(volumes[3], RawVolume)
    assert volumes[3].source["configMap"]["items"] == [{"key": "a", "path": "a.txt"}]


def test_rollout_strategies() -> None:
    text = """\
kind: Rollout
metadata:
  name: web
spec:
  replicas: 4
  strategy:
    canary:
      canaryService: web-canary
      steps:
      - setWeight: 10
      - pause: {}
      - pause: {duration: 1h}
      - analysis:
          templates:
          - templateName: success-rate
"""
    rollout = parse(text).model.rollout

    assert rollout is not None and rollout.canary is not None
    steps = rollout.canary.steps
    assert steps[0].set_weight == 10
    assert steps[1].pause is not None and steps[1].pause.duration is None
    assert steps[2].pause is not None and steps[2].pause.duration == "1h"
    assert steps[3].raw == {"analysis": {"templates": [{"templateName": "success-rate"}]}}
    assert rollout.canary.canary_service == "web-canary"


def test_probes_and_lifecycle() -> None:
    text = """\
kind: DaemonSet
metadata:
  name: agent
spec:
  template:
    spec:
      containers:
      - name: agent
        image: agent:2
        livenessProbe:
          httpGet: {path: /healthz, port: http}
          initialDelaySeconds: 5
        lifecycle:
          preStop:
            exec:
              command: [sh, -c, sleep 5]
"""
    container = parse(text).model.pod.containers[0]

    assert container.liveness_probe is not None
    assert container.liveness_probe.type == "httpGet"
    assert container.liveness_probe.port == "http"
    assert container.liveness_probe.initial_delay_seconds == 5
    assert container.lifecycle is not None and container.lifecycle.pre_stop is not None
    assert container.lifecycle.pre_stop.command == ["sh", "-c", "sleep 5"]
