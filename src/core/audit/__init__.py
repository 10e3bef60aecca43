from src.core.audit.models import SYSTEM_ACTOR, AuditLog
from src.core.audit.service import AuditAction, AuditService, create_audit_log

__all__ = ["SYSTEM_ACTOR", "AuditLog", "AuditAction", "AuditService", "create_audit_log"]
