"""Pydantic schemas for Scholarships module."""

from datetime import datetime
from decimal import Decimal

from pydantic import Field

from src.core.events import TuitionSettled
from src.shared.schemas.base import BaseSchema

IMPORTED_SCHOLARSHIP_NAME = "Imported Scholarship"


class ScholarshipCreate(BaseSchema):
    """Grant a scholarship to a student for one class.

    fallback_fee is used to judge full coverage when the class has no
    tuitions yet.
    """

    student_id: int
    class_academic_id: int
    nominal: Decimal = Field(gt=0)
    name: str = Field("Scholarship", min_length=1, max_length=200)
    fallback_fee: Decimal | None = Field(None, gt=0)


class ScholarshipResponse(BaseSchema):
    id: int
    student_id: int
    class_academic_id: int
    name: str
    nominal: Decimal
    is_full_scholarship: bool
    granted_by_id: int | None
    created_at: datetime


class ScholarshipGrantResult(BaseSchema):
    """Grant outcome, with the tuitions it auto-settled."""

    scholarship: ScholarshipResponse
    total_nominal: Decimal
    period_fee: Decimal | None
    coverage_percentage: Decimal
    tuitions_updated: int
    auto_settled: list[TuitionSettled] = []


class ScholarshipImportRow(BaseSchema):
    student_number: str = Field(min_length=1)
    class_academic_id: int
    nominal: Decimal = Field(gt=0)
    name: str | None = Field(None, max_length=200)


class ScholarshipImportRequest(BaseSchema):
    rows: list[ScholarshipImportRow] = Field(min_length=1)
    fallback_fee: Decimal | None = Field(None, gt=0)


class ScholarshipImportError(BaseSchema):
    row: int
    student_number: str
    message: str


class ScholarshipImportResult(BaseSchema):
    imported: int
    skipped: int
    auto_settled: int
    errors: list[ScholarshipImportError] = []


class ScholarshipRevokeResult(BaseSchema):
    scholarship_id: int
    total_nominal: Decimal
    tuitions_updated: int


class ScholarshipSyncResult(BaseSchema):
    total_tuitions: int
    updated: int
    status_changed: int


class ScholarshipFilters(BaseSchema):
    student_id: int | None = None
    class_academic_id: int | None = None
    is_full_scholarship: bool | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=100)
