"""Ledger audit trail.

One row per mutation of a tuition or payment request. Rows are written in the
same transaction as the change they describe and are never updated.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, JSON, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base, BigIntPK

# Actor recorded for sweeps, auto-settlement and online settlement
SYSTEM_ACTOR = "system"


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    # NULL for the system actor
    user_id: Mapped[int | None] = mapped_column(BigIntPK, nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)
    # Payment number or request reference the change produced
    entity_identifier: Mapped[str | None] = mapped_column(String(200), nullable=True)

    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    __table_args__ = (Index("ix_audit_logs_entity", "entity_type", "entity_id"),)

    @property
    def actor(self) -> str:
        return str(self.user_id) if self.user_id is not None else SYSTEM_ACTOR

    def changes(self) -> dict[str, tuple[Any, Any]]:
        """Fields whose value moved, as (before, after)."""
        old = self.old_values or {}
        new = self.new_values or {}
        return {
            key: (old.get(key), new.get(key))
            for key in sorted(old.keys() | new.keys())
            if old.get(key) != new.get(key)
        }
