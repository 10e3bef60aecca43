"""Scholarship model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import Base, BigIntPK, MoneyType

DEFAULT_SCHOLARSHIP_NAME = "Scholarship"


class Scholarship(Base):
    """
    Recurring per-period reduction for a student in one class.

    Several grants may exist for the same student and class; their nominal
    values add up to each tuition's scholarship_amount. is_full_scholarship is
    a snapshot taken when the grant was made (cumulative total >= class fee).
    """

    __tablename__ = "scholarships"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("students.id"), nullable=False, index=True
    )
    class_academic_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("class_academics.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(
        String(200), nullable=False, default=DEFAULT_SCHOLARSHIP_NAME
    )
    nominal: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    is_full_scholarship: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    granted_by_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "student_id", "class_academic_id", "name", name="uq_scholarship_student_class_name"
        ),
    )

    student: Mapped["Student"] = relationship("Student")
    class_academic: Mapped["ClassAcademic"] = relationship("ClassAcademic")


# Import at the end to avoid circular imports
from src.modules.students.models import ClassAcademic, Student
