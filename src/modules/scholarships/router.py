"""API endpoints for Scholarships module."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import require_roles
from src.core.auth.models import User, UserRole
from src.core.database.session import get_db
from src.modules.scholarships.schemas import (
    ScholarshipCreate,
    ScholarshipFilters,
    ScholarshipGrantResult,
    ScholarshipImportRequest,
    ScholarshipImportResult,
    ScholarshipResponse,
    ScholarshipRevokeResult,
    ScholarshipSyncResult,
)
from src.modules.scholarships.service import ScholarshipService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/scholarships", tags=["Scholarships"])


@router.post(
    "",
    response_model=ApiResponse[ScholarshipGrantResult],
    status_code=status.HTTP_201_CREATED,
)
async def grant_scholarship(
    data: ScholarshipCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN)),
):
    """Grant a scholarship; may auto-settle outstanding tuitions."""
    service = ScholarshipService(db)
    result = await service.grant_scholarship(data, current_user.id)
    message = "Scholarship granted successfully"
    if result.auto_settled:
        message += f", {len(result.auto_settled)} tuition(s) auto-settled"
    return ApiResponse(data=result, message=message)


@router.post(
    "/import",
    response_model=ApiResponse[ScholarshipImportResult],
)
async def import_scholarships(
    data: ScholarshipImportRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN)),
):
    """Bulk grant. Duplicates are skipped, invalid rows reported."""
    service = ScholarshipService(db)
    result = await service.grant_bulk(data, current_user.id)
    return ApiResponse(data=result)


@router.post(
    "/sync",
    response_model=ApiResponse[ScholarshipSyncResult],
)
async def sync_scholarships(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN)),
):
    """Reconcile outstanding tuitions to current scholarship totals."""
    service = ScholarshipService(db)
    result = await service.sync_scholarships(current_user.id)
    return ApiResponse(data=result, message="Scholarship amounts synced successfully")


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[ScholarshipResponse]],
)
async def list_scholarships(
    student_id: int | None = Query(None),
    class_academic_id: int | None = Query(None),
    is_full_scholarship: bool | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(
        require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.CASHIER, UserRole.ACCOUNTANT)
    ),
):
    service = ScholarshipService(db)
    filters = ScholarshipFilters(
        student_id=student_id,
        class_academic_id=class_academic_id,
        is_full_scholarship=is_full_scholarship,
        page=page,
        limit=limit,
    )
    scholarships, total = await service.list_scholarships(filters)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[ScholarshipResponse.model_validate(s) for s in scholarships],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.delete(
    "/{scholarship_id}",
    response_model=ApiResponse[ScholarshipRevokeResult],
)
async def revoke_scholarship(
    scholarship_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN)),
):
    """Revoke a scholarship and reconcile the student's tuitions."""
    service = ScholarshipService(db)
    result = await service.revoke_scholarship(scholarship_id, current_user.id)
    return ApiResponse(data=result, message="Scholarship revoked")
