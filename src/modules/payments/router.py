"""API endpoints for Payments module."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import require_roles
from src.core.auth.models import User, UserRole
from src.core.database.session import get_db
from src.core.events import SettlementSource
from src.modules.payments.schemas import (
    PaymentApplyResult,
    PaymentCreate,
    PaymentFilters,
    PaymentResponse,
)
from src.modules.payments.service import PaymentService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post(
    "",
    response_model=ApiResponse[PaymentApplyResult],
    status_code=status.HTTP_201_CREATED,
)
async def apply_payment(
    data: PaymentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(
        require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.CASHIER)
    ),
):
    """Record a cash payment against one tuition. Accountant is read-only."""
    service = PaymentService(db)
    result = await service.apply_payment(
        data.tuition_id, data.amount, current_user.id, notes=data.notes
    )
    return ApiResponse(data=result, message="Payment applied successfully")


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[PaymentResponse]],
)
async def list_payments(
    tuition_id: int | None = Query(None),
    student_id: int | None = Query(None),
    source: SettlementSource | None = Query(None),
    payment_request_id: int | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(
        require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.CASHIER, UserRole.ACCOUNTANT)
    ),
):
    """List payments with optional filters."""
    service = PaymentService(db)
    filters = PaymentFilters(
        tuition_id=tuition_id,
        student_id=student_id,
        source=source,
        payment_request_id=payment_request_id,
        page=page,
        limit=limit,
    )
    payments, total = await service.list_payments(filters)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[PaymentResponse.model_validate(p) for p in payments],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get(
    "/{payment_id}",
    response_model=ApiResponse[PaymentResponse],
)
async def get_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(
        require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.CASHIER, UserRole.ACCOUNTANT)
    ),
):
    """Get payment by ID."""
    service = PaymentService(db)
    payment = await service.get_payment(payment_id)
    return ApiResponse(data=PaymentResponse.model_validate(payment))
