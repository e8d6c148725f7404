from __future__ import annotations

import re

from kubeforge.schemas.apply import ValidationIssue
from kubeforge.schemas.workload import ManifestModel, WorkloadKind
from kubeforge.services.manifest.parser import parse

# RFC 1123 label, the format of workload and namespace names
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS_LABEL_MAX = 63


def validate_model(kind: WorkloadKind, model: ManifestModel) -> list[ValidationIssue]:
    """Advisory checks run before anything is sent to the cluster.

    Not a schema validator: the server-side dry-run has the final word.
    """
    issues: list[ValidationIssue] = []
    if not model.name:
        issues.append(ValidationIssue(field="metadata.name", message="Name is required"))
    elif len(model.name) > _DNS_LABEL_MAX or not _DNS_LABEL.match(model.name):
        issues.append(
            ValidationIssue(
                field="metadata.name",
                message="Name must consist of lower case alphanumeric characters or '-' and be at most 63 characters",
            )
        )
    if model.namespace and not _DNS_LABEL.match(model.namespace):
        issues.append(ValidationIssue(field="metadata.namespace", message="Namespace is not a valid DNS label"))
    if model.replicas is not None and model.replicas < 0:
        issues.append(ValidationIssue(field="spec.replicas", message="Replicas cannot be negative"))

    if not model.pod.containers:
        issues.append(ValidationIssue(field="containers", message="At least one container is required"))
    for group, containers in (("initContainers", model.pod.init_containers), ("containers", model.pod.containers)):
        seen: set[str] = set()
        for index, container in enumerate(containers):
            where = f"{group}[{index}]"
            if not container.name:
                issues.append(ValidationIssue(field=f"{where}.name", message="Container name is required"))
            elif container.name in seen:
                issues.append(ValidationIssue(field=f"{where}.name", message=f"Duplicate container name {container.name}"))
            seen.add(container.name)
            if not container.image.strip():
                issues.append(ValidationIssue(field=f"{where}.image", message="Container image is required"))

    if kind == WorkloadKind.CRONJOB and (model.cronjob is None or not (model.cronjob.schedule or "").strip()):
        issues.append(ValidationIssue(field="spec.schedule", message="Schedule is required"))
    if kind == WorkloadKind.ROLLOUT and model.rollout is not None and model.rollout.blue_green is not None:
        if not model.rollout.blue_green.active_service:
            issues.append(ValidationIssue(field="spec.strategy.blueGreen.activeService", message="Active service is required"))
    return issues


def validate_text(text: str) -> list[ValidationIssue]:
    """Parse then validate; syntax and shape errors propagate."""
    parsed = parse(text)
    return validate_model(parsed.kind, parsed.model)
