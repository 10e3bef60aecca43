"""Pydantic schemas for Tuitions module."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import Field, model_validator

from src.modules.tuitions.fees import effective_fee, remaining
from src.modules.tuitions.models import TuitionStatus
from src.shared.schemas.base import BaseSchema


class TuitionResponse(BaseSchema):
    """Schema for tuition response, including the derived amounts."""

    id: int
    student_id: int
    class_academic_id: int
    period: str
    year: int
    fee_amount: Decimal
    scholarship_amount: Decimal
    discount_amount: Decimal
    discount_id: int | None
    paid_amount: Decimal
    effective_fee: Decimal = Decimal("0.00")
    remaining: Decimal = Decimal("0.00")
    status: str
    due_date: date
    pending_payment_request_id: int | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_tuition(cls, tuition) -> "TuitionResponse":
        return cls.model_validate(tuition).model_copy(
            update={"effective_fee": effective_fee(tuition), "remaining": remaining(tuition)}
        )


class TuitionFilters(BaseSchema):
    """Filters for listing tuitions."""

    student_id: int | None = None
    class_academic_id: int | None = None
    period: str | None = None
    year: int | None = None
    status: TuitionStatus | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=100)


class TuitionGenerate(BaseSchema):
    """Generate monthly tuitions for a class.

    Dates default to July 1 .. June 30 of the class's academic year.
    """

    class_academic_id: int
    fee_amount: Decimal | None = Field(None, gt=0)
    academic_start: date | None = None
    academic_end: date | None = None
    student_ids: list[int] | None = None

    @model_validator(mode="after")
    def check_range(self):
        if self.academic_start and self.academic_end and self.academic_start > self.academic_end:
            raise ValueError("academic_start must be before academic_end")
        return self


class TuitionGenerateResult(BaseSchema):
    generated: int
    skipped: int
    total_students: int
    students_with_full_year: int
    students_with_partial_year: int
    discounts_applied: list[int] = []
