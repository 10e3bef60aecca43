"""Pydantic schemas for Payment Requests module."""

from datetime import datetime, timedelta
from decimal import Decimal

from pydantic import Field, field_validator

from src.core.config import settings
from src.core.events import TuitionSettled
from src.modules.payment_requests.models import PaymentRequestStatus
from src.shared.schemas.base import BaseSchema


# --- Bank accounts ---


class BankAccountCreate(BaseSchema):
    bank_name: str = Field(..., min_length=1, max_length=100)
    bank_code: str | None = Field(None, max_length=20)
    account_number: str = Field(..., min_length=1, max_length=50)
    account_name: str = Field(..., min_length=1, max_length=200)
    is_active: bool = True
    display_order: int = 0


class BankAccountResponse(BaseSchema):
    id: int
    bank_name: str
    bank_code: str | None
    account_number: str
    account_name: str
    is_active: bool
    display_order: int


# --- Payment requests ---


class PaymentRequestCreate(BaseSchema):
    """Group outstanding tuitions of one student into a transfer instruction."""

    student_id: int
    tuition_ids: list[int] = Field(..., min_length=1)
    idempotency_key: str | None = Field(None, min_length=1, max_length=100)

    @field_validator("tuition_ids")
    @classmethod
    def dedupe(cls, v: list[int]) -> list[int]:
        return list(dict.fromkeys(v))


class PaymentRequestAllocationResponse(BaseSchema):
    tuition_id: int
    amount: Decimal


class PaymentRequestResponse(BaseSchema):
    """
    Payment request as seen now.

    `status` is the effective status: a PENDING request past its expiry is
    reported as EXPIRED even before the sweeper stores it.
    """

    id: int
    reference_number: str
    student_id: int
    base_amount: Decimal
    unique_code: int
    total_amount: Decimal
    status: str
    stored_status: str
    bank_account_id: int | None
    idempotency_key: str | None
    expires_at: datetime
    display_expires_at: datetime
    verified_at: datetime | None
    failure_reason: str | None
    created_at: datetime
    allocations: list[PaymentRequestAllocationResponse] = []

    @classmethod
    def from_request(cls, request, effective_status: str) -> "PaymentRequestResponse":
        buffer = timedelta(
            minutes=settings.payment_request_expiry_minutes
            - settings.payment_request_display_minutes
        )
        return cls(
            id=request.id,
            reference_number=request.reference_number,
            student_id=request.student_id,
            base_amount=request.base_amount,
            unique_code=request.unique_code,
            total_amount=request.total_amount,
            status=effective_status,
            stored_status=request.status,
            bank_account_id=request.bank_account_id,
            idempotency_key=request.idempotency_key,
            expires_at=request.expires_at,
            display_expires_at=request.expires_at - buffer,
            verified_at=request.verified_at,
            failure_reason=request.failure_reason,
            created_at=request.created_at,
            allocations=[
                PaymentRequestAllocationResponse.model_validate(a) for a in request.allocations
            ],
        )


class PaymentRequestFilters(BaseSchema):
    student_id: int | None = None
    status: PaymentRequestStatus | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


class SettleRequest(BaseSchema):
    """Mark a request as received on the given account."""

    bank_account_id: int


class FailVerificationRequest(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=500)


class TransferMatchRequest(BaseSchema):
    """An incoming transfer seen on a statement."""

    amount: Decimal = Field(gt=0)
    bank_account_id: int


class SettlementResponse(BaseSchema):
    request: PaymentRequestResponse
    settled: list[TuitionSettled]


class SweepResult(BaseSchema):
    expired: int = 0
    failed: int = 0
    idempotency_deactivated: int = 0
