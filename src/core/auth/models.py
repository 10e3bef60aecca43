from datetime import datetime
from enum import StrEnum

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import BaseModel


class UserRole(StrEnum):
    """Operator roles."""

    SUPER_ADMIN = "SuperAdmin"
    ADMIN = "Admin"
    CASHIER = "Cashier"
    ACCOUNTANT = "Accountant"


class User(BaseModel):
    """
    Operator account (school employee).

    Every manual ledger entry is attributed to a User. Entries produced by the
    system itself (online settlement, scholarship auto-settlement) carry no
    user and are shown as the system actor.
    """

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)

    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    role: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def has_role(self, *roles: UserRole) -> bool:
        """Check if user has any of the specified roles."""
        return self.role in [r.value for r in roles]

    @property
    def can_login(self) -> bool:
        return self.password_hash is not None
