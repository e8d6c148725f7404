from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable

import structlog
from cachetools import TTLCache

from kubeforge.config import Settings, get_settings
from kubeforge.exceptions import SessionNotFound, WorkflowStateError
from kubeforge.schemas.apply import EditorState
from kubeforge.schemas.workload import WorkloadKind
from kubeforge.services.manifest_store import ManifestStore
from kubeforge.services.workflow import ApplyWorkflowController, AuditSink

logger = structlog.get_logger(__name__)

StoreFactory = Callable[[str | None], ManifestStore]


class EditorSessionRegistry:
    """In-memory editor sessions, one workflow controller each.

    Idle sessions expire after ``session_ttl_seconds``; every access renews
    the lease.
    """

    def __init__(self, store_factory: StoreFactory, settings: Settings | None = None, audit: AuditSink | None = None) -> None:
        self.settings = settings or get_settings()
        self._store_factory = store_factory
        self._audit = audit
        self._sessions: TTLCache = TTLCache(maxsize=self.settings.max_sessions, ttl=self.settings.session_ttl_seconds)
        self._lock = asyncio.Lock()

    async def open(
        self,
        kind: WorkloadKind | str,
        namespace: str | None = None,
        name: str | None = None,
        cluster_id: str | None = None,
    ) -> ApplyWorkflowController:
        session_id = uuid.uuid4().hex
        controller = ApplyWorkflowController(
            self._store_factory(cluster_id),
            kind,
            namespace,
            name,
            settings=self.settings,
            audit=self._audit,
            session_id=session_id,
            cluster_id=cluster_id,
        )
        await controller.load()
        async with self._lock:
            self._sessions[session_id] = controller
        logger.info("sessions.opened", session=session_id, kind=controller.kind.value, edit=controller.is_edit)
        return controller

    async def get(self, session_id: str) -> ApplyWorkflowController:
        async with self._lock:
            controller = self._sessions.get(session_id)
            if controller is None or controller.closed:
                raise SessionNotFound(session_id)
            self._sessions[session_id] = controller
            return controller

    async def close(self, session_id: str) -> None:
        """Abandon and forget a session; refused while it is submitting."""
        async with self._lock:
            controller = self._sessions.get(session_id)
            if controller is None:
                raise SessionNotFound(session_id)
            if controller.state == EditorState.SUBMITTING:
                raise WorkflowStateError("Cannot leave while changes are being applied", state=controller.state.value)
            controller.abandon()
            del self._sessions[session_id]
        logger.info("sessions.closed", session=session_id)

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)
