"""Schemas for Discounts module."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from src.modules.discounts.periods import normalize_periods


def _periods(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    periods = normalize_periods(value)
    if not periods:
        raise ValueError("At least one target period is required")
    return periods


# --- Discount campaign ---


class DiscountCreate(BaseModel):
    """Schema for creating a discount campaign. No class means school-wide."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    discount_amount: Decimal = Field(..., gt=0)
    target_periods: list[str] = Field(..., min_length=1)
    class_academic_id: int | None = None
    academic_year: str | None = Field(None, max_length=20)
    is_active: bool = True

    @field_validator("target_periods")
    @classmethod
    def validate_periods(cls, v):
        return _periods(v)


class DiscountUpdate(BaseModel):
    """Schema for updating a discount. Tuitions already carrying it are not touched."""

    name: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = None
    discount_amount: Decimal | None = Field(None, gt=0)
    target_periods: list[str] | None = None
    is_active: bool | None = None

    @field_validator("target_periods")
    @classmethod
    def validate_periods(cls, v):
        return _periods(v)


class DiscountResponse(BaseModel):
    """Schema for discount response."""

    id: int
    name: str
    description: str | None
    discount_amount: Decimal
    target_periods: list[str]
    class_academic_id: int | None
    academic_year: str | None
    is_active: bool
    is_school_wide: bool
    created_by_id: int | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class DiscountFilters(BaseModel):
    class_academic_id: int | None = None
    academic_year: str | None = None
    is_active: bool | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=100)


# --- Apply / preview / remove ---


class DiscountPreviewItem(BaseModel):
    """What one tuition would receive."""

    tuition_id: int
    student_id: int
    class_academic_id: int
    period: str
    year: int
    current_discount_amount: Decimal
    new_discount_amount: Decimal
    current_status: str
    new_status: str


class DiscountPreview(BaseModel):
    discount_id: int
    affected: list[DiscountPreviewItem]
    total_discount_amount: Decimal
    skipped_count: int = 0


class DiscountApplyResult(BaseModel):
    discount_id: int
    updated_count: int
    total_applied: Decimal
    skipped_count: int = 0


class DiscountRemoveResult(BaseModel):
    discount_id: int
    reversed_count: int
    deleted: bool = False
