from __future__ import annotations

import hashlib
from datetime import datetime, timezone

import structlog
from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kubeforge.models.audit_log import ApplyAuditLog

logger = structlog.get_logger(__name__)


def manifest_digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class AuditService:
    """Trail of real applies. Manifest bodies are not stored, only their digest."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], enabled: bool = True):
        self._session_factory = session_factory
        self._enabled = enabled

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
    ) -> None:
        """Best-effort: a failed write is logged and never fails the apply."""
        if not self._enabled:
            return
        try:
            async with self._session_factory() as session:
                session.add(
                    ApplyAuditLog(
                        ts=datetime.now(timezone.utc),
                        cluster=cluster,
                        kind=kind,
                        namespace=namespace,
                        name=name,
                        operation="create" if created else "update",
                        edit=edit,
                        success=success,
                        message=message,
                        manifest_sha256=manifest_digest(manifest),
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("audit.write_failed", kind=kind, namespace=namespace, workload=name, error=str(exc))

    async def list(  # noqa: A003
        self,
        limit: int = 200,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
        cluster: str | None = None,
        success: bool | None = None,
    ) -> list[ApplyAuditLog]:
        async with self._session_factory() as session:
            stmt: Select[tuple[ApplyAuditLog]] = select(ApplyAuditLog).order_by(ApplyAuditLog.ts.desc()).limit(limit)
            if kind:
                stmt = stmt.where(ApplyAuditLog.kind == kind)
            if namespace:
                stmt = stmt.where(ApplyAuditLog.namespace == namespace)
            if name:
                stmt = stmt.where(ApplyAuditLog.name == name)
            if cluster:
                stmt = stmt.where(ApplyAuditLog.cluster == cluster)
            if success is not None:
                stmt = stmt.where(ApplyAuditLog.success == success)
            result = await session.execute(stmt)
            return list(result.scalars().all())
