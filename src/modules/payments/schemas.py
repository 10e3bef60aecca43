"""Pydantic schemas for Payments module."""

from datetime import datetime
from decimal import Decimal

from pydantic import Field

from src.core.events import SettlementSource
from src.shared.schemas.base import BaseSchema


class PaymentCreate(BaseSchema):
    """Cash-counter payment against one tuition."""

    tuition_id: int
    amount: Decimal = Field(gt=0, description="Payment amount (must be positive)")
    notes: str | None = None


class PaymentResponse(BaseSchema):
    """Schema for payment response."""

    id: int
    payment_number: str
    tuition_id: int
    student_id: int
    amount: Decimal
    scholarship_amount: Decimal
    source: str
    payment_request_id: int | None
    recorded_by_id: int | None
    actor: str
    notes: str | None
    created_at: datetime


class PaymentFilters(BaseSchema):
    """Filters for listing payments."""

    tuition_id: int | None = None
    student_id: int | None = None
    source: SettlementSource | None = None
    payment_request_id: int | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=100)


class PaymentApplyResult(BaseSchema):
    """Before/after view of a tuition around one payment."""

    payment: PaymentResponse
    tuition_id: int
    previous_status: str
    new_status: str
    previous_paid_amount: Decimal
    new_paid_amount: Decimal
    effective_fee: Decimal
    remaining: Decimal
