from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict


class ApplyAuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ts: datetime
    cluster: str | None = None
    kind: str
    namespace: str | None = None
    name: str | None = None
    operation: Literal["create", "update"]
    edit: bool
    success: bool
    message: str | None = None
    manifest_sha256: str
