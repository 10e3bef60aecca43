"""API endpoints for Tuitions module."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.schemas import AuditEntryResponse
from src.core.audit.service import AuditService
from src.core.auth.dependencies import require_roles
from src.core.auth.models import User, UserRole
from src.core.database.session import get_db
from src.modules.tuitions.models import TuitionStatus
from src.modules.tuitions.schemas import (
    TuitionFilters,
    TuitionGenerate,
    TuitionGenerateResult,
    TuitionResponse,
)
from src.modules.tuitions.service import TuitionService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/tuitions", tags=["Tuitions"])

_read_roles = (UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.CASHIER, UserRole.ACCOUNTANT)


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[TuitionResponse]],
)
async def list_tuitions(
    student_id: int | None = Query(None),
    class_academic_id: int | None = Query(None),
    period: str | None = Query(None),
    year: int | None = Query(None),
    status: TuitionStatus | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*_read_roles)),
):
    """List tuitions with optional filters."""
    service = TuitionService(db)
    filters = TuitionFilters(
        student_id=student_id,
        class_academic_id=class_academic_id,
        period=period,
        year=year,
        status=status,
        page=page,
        limit=limit,
    )
    tuitions, total = await service.list_tuitions(filters)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[TuitionResponse.from_tuition(t) for t in tuitions],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.post(
    "/generate",
    response_model=ApiResponse[TuitionGenerateResult],
    status_code=status.HTTP_201_CREATED,
)
async def generate_tuitions(
    data: TuitionGenerate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN)),
):
    """Generate monthly tuitions for every student of a class."""
    service = TuitionService(db)
    result = await service.generate_for_class(data, current_user.id)
    return ApiResponse(
        data=result,
        message=f"Generated {result.generated} tuitions ({result.skipped} skipped)",
    )


@router.get(
    "/locked-by/{payment_request_id}",
    response_model=ApiResponse[list[TuitionResponse]],
)
async def list_locked_by_request(
    payment_request_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*_read_roles)),
):
    """Tuitions soft-locked by a payment request."""
    service = TuitionService(db)
    tuitions = await service.list_locked_by_request(payment_request_id)
    return ApiResponse(data=[TuitionResponse.from_tuition(t) for t in tuitions])



@router.get(
    "/{tuition_id}/history",
    response_model=ApiResponse[list[AuditEntryResponse]],
)
async def get_tuition_history(
    tuition_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*_read_roles)),
):
    """Audit trail of a tuition, oldest first."""
    await TuitionService(db).get_tuition(tuition_id)
    entries = await AuditService(db).history("Tuition", tuition_id)
    return ApiResponse(data=[AuditEntryResponse.model_validate(e) for e in entries])


@router.get(
    "/{tuition_id}",
    response_model=ApiResponse[TuitionResponse],
)
async def get_tuition(
    tuition_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*_read_roles)),
):
    """Get tuition by ID."""
    service = TuitionService(db)
    tuition = await service.get_tuition(tuition_id)
    return ApiResponse(data=TuitionResponse.from_tuition(tuition))
