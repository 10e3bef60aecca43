"""Tuition model: one billing period owed by one student in one class."""

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import Base, BigIntPK, MoneyType, money_column


class TuitionStatus(StrEnum):
    """Tuition status, always derived from the four amounts."""

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class Tuition(Base):
    """
    Tuition obligation.

    scholarship_amount and discount_amount are denormalized snapshots that the
    scholarship and discount engines reconcile explicitly; paid_amount only
    ever grows through the ledger. pending_payment_request_id is the soft lock
    held by a non-terminal payment request.

    The mapper carries a version counter: a write based on a stale read fails
    at flush time instead of silently overwriting a concurrent update.
    """

    __tablename__ = "tuitions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    student_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("students.id"), nullable=False, index=True
    )
    class_academic_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("class_academics.id"), nullable=False, index=True
    )

    period: Mapped[str] = mapped_column(String(20), nullable=False, index=True)  # JULY, Q1, SEM1
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    fee_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    scholarship_amount: Mapped[Decimal] = money_column()
    discount_amount: Mapped[Decimal] = money_column()
    discount_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("discounts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    paid_amount: Mapped[Decimal] = money_column()

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TuitionStatus.UNPAID.value, index=True
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    pending_payment_request_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("payment_requests.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "student_id", "class_academic_id", "period", "year", name="uq_tuition_period"
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    # Relationships
    student: Mapped["Student"] = relationship("Student")
    class_academic: Mapped["ClassAcademic"] = relationship("ClassAcademic")
    discount: Mapped["Discount | None"] = relationship("Discount")

    @property
    def is_paid(self) -> bool:
        return self.status == TuitionStatus.PAID.value


# Import at the end to avoid circular imports
from src.modules.students.models import ClassAcademic, Student
from src.modules.discounts.models import Discount
