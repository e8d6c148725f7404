from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from kubeforge.dependencies import get_audit_service
from kubeforge.schemas.audit import ApplyAuditEntry
from kubeforge.services.audit import AuditService


router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/applies", response_model=list[ApplyAuditEntry], summary="Recent workload applies")
async def list_applies(
    limit: int = Query(default=200, ge=1, le=1000),
    kind: str | None = Query(default=None),
    namespace: str | None = Query(default=None),
    name: str | None = Query(default=None),
    cluster: str | None = Query(default=None),
    success: bool | None = Query(default=None),
    audit: AuditService = Depends(get_audit_service),
) -> list[ApplyAuditEntry]:
    rows = await audit.list(limit=limit, kind=kind, namespace=namespace, name=name, cluster=cluster, success=success)
    return [ApplyAuditEntry.model_validate(row) for row in rows]
