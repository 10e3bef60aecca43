"""Discount campaign model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import Base, BigIntPK, MoneyType


class Discount(Base):
    """
    Campaign discount: a fixed amount off every tuition in scope whose period
    is targeted.

    Not a ledger entity itself. Applying it writes discount_id and
    discount_amount onto matching tuitions; editing it never touches tuitions
    already carrying it.
    """

    __tablename__ = "discounts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    discount_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    # Period labels: month names (JULY) or groups (Q1, SEM1)
    target_periods: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # NULL = school-wide
    class_academic_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("class_academics.id"), nullable=True, index=True
    )
    # NULL = any academic year
    academic_year: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_by_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    class_academic: Mapped["ClassAcademic | None"] = relationship("ClassAcademic")

    @property
    def is_school_wide(self) -> bool:
        return self.class_academic_id is None


# Import at the end to avoid circular imports
from src.modules.students.models import ClassAcademic
