from kubeforge.models.audit_log import ApplyAuditLog

__all__ = [
    "ApplyAuditLog",
]
