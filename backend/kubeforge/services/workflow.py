"""Guarded apply workflow for one workload editor.

Loading -> Ready(form|yaml) -> DryRunning -> Ready -> ConfirmPending -> Submitting -> Done

Cluster-side failures (dry-run rejection, apply rejection, unreachable API)
land back in Ready with ``failure`` set and the edit buffer untouched.
Local syntax and shape errors are raised and block the transition.
The controller knows nothing about HTTP or rendering; observers subscribe.
"""
from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Protocol

import structlog

from kubeforge.config import Settings, get_settings
from kubeforge.exceptions import (
    AppException,
    ApplyRejected,
    DryRunRejected,
    ManifestError,
    ManifestShapeError,
    ManifestValidationError,
    StoreUnavailable,
    WorkflowStateError,
)
from kubeforge.schemas.apply import (
    ApplyResult,
    DryRunReport,
    EditorMode,
    EditorSnapshot,
    EditorState,
    Failure,
    PendingConfirmation,
    ValidationIssue,
)
from kubeforge.schemas.workload import ManifestModel, ParsedManifest, WorkloadKind
from kubeforge.services.manifest import build_diff, default_model, parse, resolve_kind, synthesize, validate_model
from kubeforge.services.manifest_store import ManifestStore

logger = structlog.get_logger(__name__)

Listener = Callable[[EditorSnapshot], None]

_EDITABLE_STATES = (EditorState.READY, EditorState.DRY_RUNNING)


class AuditSink(Protocol):
    async def record_apply(
        self,
        *,
        kind: str,
        namespace: str | None,
        name: str | None,
        created: bool,
        success: bool,
        manifest: str,
        message: str | None = None,
        edit: bool = False,
        cluster: str | None = None,
    ) -> None: ...


def _failure(exc: AppException) -> Failure:
    return Failure(code=exc.code, message=exc.message, details=dict(exc.details))


def _store_failure(exc: Exception, *, session: str) -> AppException:
    """Store errors pass through; anything else is reported as an unreachable cluster."""
    if isinstance(exc, AppException):
        return exc
    logger.error("workflow.store_crashed", session=session, error=str(exc), exc_info=exc)
    return StoreUnavailable(f"Cluster request failed: {exc}")


class ApplyWorkflowController:
    """State machine behind one create or edit session.

    ``namespace`` and ``name`` select the edit flow; without them a new
    workload is drafted from defaults.
    """

    def __init__(
        self,
        store: ManifestStore,
        kind: WorkloadKind | str,
        namespace: str | None = None,
        name: str | None = None,
        *,
        settings: Settings | None = None,
        audit: AuditSink | None = None,
        session_id: str | None = None,
        cluster_id: str | None = None,
    ) -> None:
        self.kind = resolve_kind(kind)
        self.settings = settings or get_settings()
        self.namespace = namespace
        self.name = name
        self.is_edit = bool(namespace and name)
        self.session_id = session_id
        self.cluster_id = cluster_id

        self._store = store
        self._audit = audit
        self._listeners: list[Listener] = []

        self.state = EditorState.LOADING
        self.mode = EditorMode.FORM
        self.model: ManifestModel | None = None
        self.failure: Failure | None = None
        self.dry_run_report: DryRunReport | None = None
        self.pending: PendingConfirmation | None = None
        self.result: ApplyResult | None = None

        self._original_text: str | None = None
        self._buffer = ""
        # model as parsed from ``_buffer``; an equal form model means "untouched"
        self._buffer_model: ManifestModel | None = None
        self._dry_run_in_flight = False
        self._closed = False

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def original_text(self) -> str | None:
        """Manifest as fetched for editing. Only load/reload change it."""
        return self._original_text

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def snapshot(self) -> EditorSnapshot:
        return EditorSnapshot(
            session_id=self.session_id,
            kind=self.kind,
            namespace=self.namespace,
            name=self.name,
            is_edit=self.is_edit,
            state=self.state,
            mode=self.mode,
            model=self.model,
            yaml=self._safe_candidate_text(),
            original_yaml=self._original_text,
            dry_run=self.dry_run_report,
            pending=self.pending,
            failure=self.failure,
            result=self.result,
        )

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception as exc:  # noqa: BLE001 - observers must not break the workflow
                logger.warning("workflow.listener_error", error=str(exc), session=self.session_id)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _require_open(self) -> None:
        if self._closed:
            raise WorkflowStateError("Editor session has been abandoned", state=self.state.value)

    def _require_state(self, *states: EditorState) -> None:
        self._require_open()
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise WorkflowStateError(f"Operation not allowed in state {self.state.value} (expected {allowed})", state=self.state.value)

    def _check_text(self, text: str) -> ParsedManifest:
        """Syntax, shape and identity checks that block any transition."""
        parsed = parse(text)
        if parsed.kind != self.kind:
            raise ManifestShapeError(f"Manifest kind {parsed.kind.value} does not match {self.kind.value}")
        return parsed

    def _identity_issues(self, model: ManifestModel) -> list[ValidationIssue]:
        if not self.is_edit:
            return []
        issues = []
        if model.name != self.name:
            issues.append(ValidationIssue(field="metadata.name", message=f"Name cannot change while editing (expected {self.name})"))
        if model.namespace != self.namespace:
            issues.append(ValidationIssue(field="metadata.namespace", message=f"Namespace cannot change while editing (expected {self.namespace})"))
        return issues

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> EditorSnapshot:
        self._require_state(EditorState.LOADING, EditorState.READY)
        self.state = EditorState.LOADING
        self.failure = None
        if self.is_edit:
            assert self.namespace is not None and self.name is not None
            try:
                text = await self._store.load(self.kind, self.namespace, self.name)
                parsed = self._check_text(text)
            except AppException as exc:
                self.failure = _failure(exc)
                logger.warning("workflow.load_failed", kind=self.kind.value, namespace=self.namespace, workload=self.name, error=exc.message)
                self._notify()
                raise
            self._original_text = text
            self._buffer = text
            self._buffer_model = parsed.model
            self.model = parsed.model.model_copy(deep=True)
        else:
            model = default_model(
                self.kind,
                namespace=self.namespace or self.settings.default_namespace,
                image=self.settings.placeholder_image,
                container_name=self.settings.placeholder_container_name,
            )
            self._original_text = None
            self._buffer = synthesize(self.kind, model)
            self._buffer_model = parse(self._buffer).model
            self.model = model

        self.dry_run_report = None
        self.pending = None
        self.result = None
        self.state = EditorState.READY
        logger.info("workflow.loaded", kind=self.kind.value, namespace=self.namespace, workload=self.name, edit=self.is_edit)
        self._notify()
        return self.snapshot()

    async def reload(self) -> EditorSnapshot:
        """Discard local edits and fetch the workload again."""
        return await self.load()

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def candidate_text(self) -> str:
        """Manifest text the user would submit right now."""
        if self.mode == EditorMode.YAML or self.model is None:
            return self._buffer
        if self.model == self._buffer_model:
            return self._buffer
        if self.is_edit and self._buffer:
            # keep whatever the form does not model from the text being edited
            return synthesize(self.kind, self.model, base=self._buffer)
        return synthesize(self.kind, self.model)

    def _safe_candidate_text(self) -> str:
        try:
            return self.candidate_text()
        except ManifestError:
            return self._buffer

    def update_model(self, model: ManifestModel) -> None:
        self._require_state(*_EDITABLE_STATES)
        if self.mode != EditorMode.FORM:
            raise WorkflowStateError("Switch to form mode before editing the form", state=self.state.value)
        self.model = model.model_copy(deep=True, update={"kind": self.kind})
        self.failure = None
        self._notify()

    def update_yaml(self, text: str) -> None:
        self._require_state(*_EDITABLE_STATES)
        if self.mode != EditorMode.YAML:
            raise WorkflowStateError("Switch to YAML mode before editing the text", state=self.state.value)
        self._buffer = text
        self.failure = None
        self._notify()

    def switch_mode(self, mode: EditorMode) -> None:
        self._require_state(*_EDITABLE_STATES)
        if mode == self.mode:
            return
        if mode == EditorMode.YAML:
            text = self.candidate_text()
            self._buffer = text
            self._buffer_model = parse(text).model
            self.mode = EditorMode.YAML
        else:
            try:
                parsed = self._check_text(self._buffer)
            except ManifestError as exc:
                self.failure = _failure(exc)
                self._notify()
                raise
            self._buffer_model = parsed.model
            self.model = parsed.model.model_copy(deep=True)
            self.mode = EditorMode.FORM
        self.failure = None
        self._notify()

    # ------------------------------------------------------------------
    # Dry-run
    # ------------------------------------------------------------------

    async def dry_run(self) -> DryRunReport:
        self._require_open()
        if self._dry_run_in_flight:
            raise WorkflowStateError("A dry-run is already in progress", state=self.state.value)
        self._require_state(EditorState.READY)

        text = self.candidate_text()
        try:
            parsed = self._check_text(text)
        except ManifestError as exc:
            self.failure = _failure(exc)
            self._notify()
            raise

        issues = validate_model(self.kind, parsed.model) + self._identity_issues(parsed.model)
        if issues:
            rejected = DryRunRejected(issues[0].message, details={"issues": [i.model_dump() for i in issues]})
            return self._finish_dry_run(False, rejected.message, rejected)

        self._dry_run_in_flight = True
        self.state = EditorState.DRY_RUNNING
        self._notify()
        try:
            result = await self._store.apply(text, dry_run=True)
        except Exception as exc:  # noqa: BLE001 - the session must leave DryRunning
            error = _store_failure(exc, session=self.session_id)
            if self._closed:
                return DryRunReport(success=False, message=error.message, checked_at=datetime.now(timezone.utc))
            return self._finish_dry_run(False, error.message, error)
        finally:
            self._dry_run_in_flight = False

        if self._closed:
            # abandoned while the request was in flight; nobody is listening
            return DryRunReport(success=result.success, message=result.message, checked_at=datetime.now(timezone.utc))
        if result.success:
            return self._finish_dry_run(True, result.message, None)
        return self._finish_dry_run(False, result.message, DryRunRejected(result.message or "Dry-run rejected by the cluster"))

    def _finish_dry_run(self, success: bool, message: str | None, error: AppException | None) -> DryRunReport:
        report = DryRunReport(success=success, message=message, checked_at=datetime.now(timezone.utc))
        self.dry_run_report = report
        self.failure = _failure(error) if error is not None else None
        if self.state == EditorState.DRY_RUNNING:
            self.state = EditorState.READY
        if success:
            logger.info("workflow.dry_run_passed", kind=self.kind.value, session=self.session_id)
        else:
            logger.info("workflow.dry_run_rejected", kind=self.kind.value, session=self.session_id, reason=message)
        self._notify()
        return report

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    def request_submit(self) -> PendingConfirmation:
        """Freeze the candidate and ask for confirmation.

        On edit the confirmation carries a diff against the text originally
        loaded; on create it is a plain confirmation.
        """
        self._require_state(EditorState.READY)
        text = self.candidate_text()
        try:
            parsed = self._check_text(text)
            issues = validate_model(self.kind, parsed.model) + self._identity_issues(parsed.model)
            if issues:
                raise ManifestValidationError([i.model_dump() for i in issues])
        except ManifestError as exc:
            self.failure = _failure(exc)
            self._notify()
            raise

        diff = None
        if self.is_edit and self._original_text is not None:
            diff = build_diff(self._original_text, text, label=f"{self.kind.value.lower()}/{self.name}")
        self.pending = PendingConfirmation(token=uuid.uuid4().hex, candidate=text, diff=diff)
        self.failure = None
        self.state = EditorState.CONFIRM_PENDING
        self._notify()
        return self.pending

    def cancel_submit(self) -> None:
        self._require_state(EditorState.CONFIRM_PENDING)
        self.pending = None
        self.state = EditorState.READY
        self._notify()

    async def submit(self, token: str) -> ApplyResult:
        self._require_open()
        if self.state != EditorState.CONFIRM_PENDING or self.pending is None:
            raise WorkflowStateError("Changes must be confirmed before they are applied", state=self.state.value)
        if token != self.pending.token:
            raise WorkflowStateError("Confirmation token does not match the pending change", state=self.state.value)

        text = self.pending.candidate
        self.state = EditorState.SUBMITTING
        self._notify()
        try:
            result = await self._store.apply(text, dry_run=False)
        except Exception as exc:  # noqa: BLE001 - the session must leave Submitting
            error = _store_failure(exc, session=self.session_id)
            result = ApplyResult(success=False, message=error.message)
            self._settle_failed_submit(error)
        else:
            if result.success:
                self.result = result
                self.pending = None
                self.failure = None
                self.state = EditorState.DONE
                logger.info("workflow.applied", kind=self.kind.value, created=result.created, session=self.session_id)
                self._notify()
            else:
                self._settle_failed_submit(ApplyRejected(result.message or "Apply rejected by the cluster"))

        await self._record_audit(text, result)
        return result

    def _settle_failed_submit(self, error: AppException) -> None:
        self.result = None
        self.pending = None
        self.failure = _failure(error)
        self.state = EditorState.READY
        logger.warning("workflow.submit_failed", kind=self.kind.value, session=self.session_id, code=error.code, error=error.message)
        self._notify()

    async def _record_audit(self, text: str, result: ApplyResult) -> None:
        if self._audit is None:
            return
        try:
            parsed = parse(text)
            namespace, name = parsed.model.namespace, parsed.model.name
        except ManifestError:
            namespace, name = self.namespace, self.name
        await self._audit.record_apply(
            kind=self.kind.value,
            namespace=namespace,
            name=name,
            # a failed apply never reports ``created``; fall back to the flow
            created=result.created if result.success else not self.is_edit,
            success=result.success,
            manifest=text,
            message=result.message,
            edit=self.is_edit,
            cluster=self.cluster_id,
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def abandon(self) -> None:
        if self.state == EditorState.SUBMITTING:
            raise WorkflowStateError("Cannot leave while changes are being applied", state=self.state.value)
        self._closed = True
        self._listeners.clear()
        logger.info("workflow.abandoned", kind=self.kind.value, session=self.session_id)
