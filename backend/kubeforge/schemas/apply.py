from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from kubeforge.schemas.workload import ManifestModel, WorkloadKind


class ApplyResult(BaseModel):
    success: bool
    created: bool = False
    message: str | None = None


class ValidationIssue(BaseModel):
    field: str
    message: str


class DiffRow(BaseModel):
    tag: Literal["equal", "replace", "delete", "insert"]
    left_number: int | None = None
    left: str | None = None
    right_number: int | None = None
    right: str | None = None


class ManifestDiff(BaseModel):
    unified: str
    rows: list[DiffRow] = Field(default_factory=list)
    added: int = 0
    removed: int = 0
    identical: bool = False


class EditorState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    DRY_RUNNING = "dry_running"
    CONFIRM_PENDING = "confirm_pending"
    SUBMITTING = "submitting"
    DONE = "done"


class EditorMode(str, Enum):
    FORM = "form"
    YAML = "yaml"


class Failure(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class DryRunReport(BaseModel):
    success: bool
    message: str | None = None
    checked_at: datetime


class PendingConfirmation(BaseModel):
    token: str
    candidate: str
    # None on create: a plain confirmation without diff
    diff: ManifestDiff | None = None


class EditorSnapshot(BaseModel):
    session_id: str | None = None
    kind: WorkloadKind
    namespace: str | None = None
    name: str | None = None
    is_edit: bool
    state: EditorState
    mode: EditorMode
    model: ManifestModel | None = None
    yaml: str
    original_yaml: str | None = None
    dry_run: DryRunReport | None = None
    pending: PendingConfirmation | None = None
    failure: Failure | None = None
    result: ApplyResult | None = None


# ============ HTTP request bodies ============

class YamlContent(BaseModel):
    yaml: str


class SynthesizeRequest(BaseModel):
    kind: str
    model: ManifestModel


class ParseResponse(BaseModel):
    kind: WorkloadKind
    model: ManifestModel


class ValidateResponse(BaseModel):
    valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)


class DiffRequest(BaseModel):
    original: str
    candidate: str


class OpenSessionRequest(BaseModel):
    kind: str
    namespace: str | None = None
    name: str | None = None
    cluster_id: str | None = None


class ModeRequest(BaseModel):
    mode: EditorMode


class ConfirmRequest(BaseModel):
    token: str
