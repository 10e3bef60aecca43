"""Student and ClassAcademic models.

CRUD for these lives outside the ledger; the ledger only reads them.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import Base, BigIntPK, MoneyType


class StudentStatus(StrEnum):
    """Student status enumeration."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class ClassAcademic(Base):
    """A class in a given academic year, e.g. "X-IPA-1" in "2024/2025".

    A student's enrollment in a class is the unit tuitions and scholarships
    are scoped to.
    """

    __tablename__ = "class_academics"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    class_name: Mapped[str] = mapped_column(String(100), nullable=False)
    academic_year: Mapped[str] = mapped_column(
        String(20), nullable=False, index=True
    )  # e.g. "2024/2025"
    grade: Mapped[int | None] = mapped_column(nullable=True)
    # Nominal per-period fee; tuitions snapshot their own fee_amount
    default_fee: Mapped[Decimal | None] = mapped_column(MoneyType, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("class_name", "academic_year", name="uq_class_academic_name_year"),
    )

    enrollments: Mapped[list["StudentClass"]] = relationship(
        "StudentClass", back_populates="class_academic"
    )


class Student(Base):
    """Student enrolled in the school."""

    __tablename__ = "students"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_number: Mapped[str] = mapped_column(
        String(50), nullable=False, unique=True, index=True
    )  # NIS
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    parent_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    parent_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    start_join_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StudentStatus.ACTIVE.value, index=True
    )
    # Touched whenever an online payment settles
    last_payment_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    enrollments: Mapped[list["StudentClass"]] = relationship(
        "StudentClass", back_populates="student"
    )

    @property
    def is_active(self) -> bool:
        return self.status == StudentStatus.ACTIVE.value


class StudentClass(Base):
    """Roster entry: student enrolled in a class."""

    __tablename__ = "student_classes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    class_academic_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("class_academics.id", ondelete="CASCADE"), nullable=False, index=True
    )
    enrolled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("student_id", "class_academic_id", name="uq_student_class"),
    )

    student: Mapped["Student"] = relationship("Student", back_populates="enrollments")
    class_academic: Mapped["ClassAcademic"] = relationship(
        "ClassAcademic", back_populates="enrollments"
    )
