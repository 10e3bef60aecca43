"""Payment request (reconciliation envelope) models."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import Base, BigIntPK, MoneyType


class PaymentRequestStatus(StrEnum):
    """
    PENDING -> VERIFIED | EXPIRED | CANCELLED
    PENDING -> VERIFYING -> VERIFIED | FAILED
    """

    PENDING = "pending"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"


NON_TERMINAL_STATUSES = frozenset(
    {PaymentRequestStatus.PENDING.value, PaymentRequestStatus.VERIFYING.value}
)


class IdempotencyStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class BankAccount(Base):
    """Receiving account a payer may transfer to."""

    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    bank_name: Mapped[str] = mapped_column(String(100), nullable=False)
    bank_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    account_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    account_name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class PaymentRequest(Base):
    """
    Time-boxed transfer instruction covering one or more tuitions.

    total_amount = base_amount + unique_code. Among PENDING requests the total
    is unique (partial unique index), which is what lets an incoming transfer
    be attributed to exactly one request.
    """

    __tablename__ = "payment_requests"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    reference_number: Mapped[str] = mapped_column(
        String(50), nullable=False, unique=True, index=True
    )
    student_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("students.id"), nullable=False, index=True
    )

    base_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    unique_code: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentRequestStatus.PENDING.value, index=True
    )

    # Set when the transfer is confirmed, the payer picks the account
    bank_account_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("bank_accounts.id"), nullable=True
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index(
            "uq_payment_request_pending_total",
            "total_amount",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    # Relationships
    student: Mapped["Student"] = relationship("Student")
    bank_account: Mapped["BankAccount | None"] = relationship("BankAccount")
    allocations: Mapped[list["PaymentRequestTuition"]] = relationship(
        "PaymentRequestTuition",
        back_populates="payment_request",
        cascade="all, delete-orphan",
        order_by="PaymentRequestTuition.id",
    )

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentRequestStatus.PENDING.value

    @property
    def is_terminal(self) -> bool:
        return self.status not in NON_TERMINAL_STATUSES

    @property
    def tuition_ids(self) -> list[int]:
        return [a.tuition_id for a in self.allocations]


class PaymentRequestTuition(Base):
    """(request, tuition, allocated amount). Allocations sum to base_amount."""

    __tablename__ = "payment_request_tuitions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    payment_request_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("payment_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tuition_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tuitions.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    __table_args__ = (
        UniqueConstraint("payment_request_id", "tuition_id", name="uq_payment_request_tuition"),
    )

    payment_request: Mapped["PaymentRequest"] = relationship(
        "PaymentRequest", back_populates="allocations"
    )
    tuition: Mapped["Tuition"] = relationship("Tuition")


class IdempotencyRecord(Base):
    """
    Submission key for payment request creation.

    Inserted in the same transaction as the request it guards; while ACTIVE
    and not expired, replaying the key returns that request.
    """

    __tablename__ = "idempotency_records"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=IdempotencyStatus.ACTIVE.value, index=True
    )
    payment_request_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("payment_requests.id", ondelete="SET NULL"), nullable=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    payment_request: Mapped["PaymentRequest | None"] = relationship("PaymentRequest")


# Import at the end to avoid circular imports
from src.modules.students.models import Student
from src.modules.tuitions.models import Tuition
