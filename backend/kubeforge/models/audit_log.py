from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from kubeforge.db import Base


class ApplyAuditLog(Base):
    """One real (non dry-run) apply of a workload manifest."""

    __tablename__ = "apply_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    cluster: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    kind: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    namespace: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    # create | update
    operation: Mapped[str] = mapped_column(String(16), nullable=False)
    edit: Mapped[bool] = mapped_column(Boolean, default=False)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    manifest_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
