from enum import StrEnum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.models import AuditLog


class AuditAction(StrEnum):
    """Standard audit actions."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CANCEL = "CANCEL"

    # Ledger actions
    APPLY_PAYMENT = "APPLY_PAYMENT"
    GRANT_SCHOLARSHIP = "GRANT_SCHOLARSHIP"
    REVOKE_SCHOLARSHIP = "REVOKE_SCHOLARSHIP"
    AUTO_SETTLE = "AUTO_SETTLE"
    APPLY_DISCOUNT = "APPLY_DISCOUNT"
    REMOVE_DISCOUNT = "REMOVE_DISCOUNT"
    GENERATE_TUITIONS = "GENERATE_TUITIONS"
    CREATE_PAYMENT_REQUEST = "CREATE_PAYMENT_REQUEST"
    VERIFY_PAYMENT_REQUEST = "VERIFY_PAYMENT_REQUEST"
    FAIL_PAYMENT_REQUEST = "FAIL_PAYMENT_REQUEST"
    EXPIRE_PAYMENT_REQUEST = "EXPIRE_PAYMENT_REQUEST"


class AuditService:
    """Service for creating audit logs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str | AuditAction,
        entity_type: str,
        entity_id: int,
        user_id: int | None = None,
        entity_identifier: str | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        comment: str | None = None,
    ) -> AuditLog:
        """Create an audit log entry. user_id None means the system actor."""
        return await create_audit_log(
            self.db,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            entity_identifier=entity_identifier,
            old_values=old_values,
            new_values=new_values,
            comment=comment,
        )

    async def history(self, entity_type: str, entity_id: int) -> list[AuditLog]:
        """Audit entries for one entity, oldest first."""
        result = await self.db.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.created_at, AuditLog.id)
        )
        return list(result.scalars().all())


async def create_audit_log(
    session: AsyncSession,
    action: str | AuditAction,
    entity_type: str,
    entity_id: int,
    user_id: int | None = None,
    entity_identifier: str | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    comment: str | None = None,
) -> AuditLog:
    """
    Create an audit log entry.

    Args:
        session: Database session
        action: Action performed (e.g., APPLY_PAYMENT, CANCEL)
        entity_type: Type of entity (e.g., Tuition, PaymentRequest)
        entity_id: ID of the entity
        user_id: ID of the operator, None for the system actor
        entity_identifier: Human-readable identifier (e.g., payment number)
        old_values: State before change
        new_values: State after change
        comment: Additional comment

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=str(action),
        entity_type=entity_type,
        entity_id=entity_id,
        entity_identifier=entity_identifier,
        old_values=old_values,
        new_values=new_values,
        comment=comment,
    )

    session.add(audit_log)
    await session.flush()

    return audit_log
