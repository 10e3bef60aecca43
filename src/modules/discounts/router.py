"""API endpoints for Discounts module."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import require_roles
from src.core.auth.models import User, UserRole
from src.core.database.session import get_db
from src.modules.discounts.schemas import (
    DiscountApplyResult,
    DiscountCreate,
    DiscountFilters,
    DiscountPreview,
    DiscountRemoveResult,
    DiscountResponse,
    DiscountUpdate,
)
from src.modules.discounts.service import DiscountService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/discounts", tags=["Discounts"])

_admin = require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN)


@router.post(
    "",
    response_model=ApiResponse[DiscountResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_discount(
    data: DiscountCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_admin),
):
    """Create a discount campaign. Applying it is a separate step."""
    service = DiscountService(db)
    discount = await service.create_discount(data, current_user.id)
    return ApiResponse(
        data=DiscountResponse.model_validate(discount),
        message="Discount created successfully",
    )


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[DiscountResponse]],
)
async def list_discounts(
    class_academic_id: int | None = Query(None),
    academic_year: str | None = Query(None),
    is_active: bool | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(
        require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.CASHIER, UserRole.ACCOUNTANT)
    ),
):
    service = DiscountService(db)
    filters = DiscountFilters(
        class_academic_id=class_academic_id,
        academic_year=academic_year,
        is_active=is_active,
        page=page,
        limit=limit,
    )
    discounts, total = await service.list_discounts(filters)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[DiscountResponse.model_validate(d) for d in discounts],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get(
    "/{discount_id}",
    response_model=ApiResponse[DiscountResponse],
)
async def get_discount(
    discount_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(
        require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.CASHIER, UserRole.ACCOUNTANT)
    ),
):
    service = DiscountService(db)
    discount = await service.get_discount(discount_id)
    return ApiResponse(data=DiscountResponse.model_validate(discount))


@router.patch(
    "/{discount_id}",
    response_model=ApiResponse[DiscountResponse],
)
async def update_discount(
    discount_id: int,
    data: DiscountUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_admin),
):
    """Update a discount. Tuitions it was already applied to keep their amount."""
    service = DiscountService(db)
    discount = await service.update_discount(discount_id, data, current_user.id)
    return ApiResponse(
        data=DiscountResponse.model_validate(discount),
        message="Discount updated successfully",
    )


@router.get(
    "/{discount_id}/preview",
    response_model=ApiResponse[DiscountPreview],
)
async def preview_discount(
    discount_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_admin),
):
    """Tuitions the discount would be applied to, without writing."""
    service = DiscountService(db)
    return ApiResponse(data=await service.preview_apply(discount_id))


@router.post(
    "/{discount_id}/apply",
    response_model=ApiResponse[DiscountApplyResult],
)
async def apply_discount(
    discount_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_admin),
):
    service = DiscountService(db)
    result = await service.commit_apply(discount_id, current_user.id)
    return ApiResponse(
        data=result,
        message=f"Discount applied to {result.updated_count} tuition(s)",
    )


@router.post(
    "/{discount_id}/remove",
    response_model=ApiResponse[DiscountRemoveResult],
)
async def remove_discount(
    discount_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_admin),
):
    """Withdraw the discount from every tuition carrying it."""
    service = DiscountService(db)
    result = await service.remove_discount(discount_id, current_user.id)
    return ApiResponse(data=result)


@router.delete(
    "/{discount_id}",
    response_model=ApiResponse[DiscountRemoveResult],
)
async def delete_discount(
    discount_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_admin),
):
    """Withdraw the discount from tuitions, then delete it."""
    service = DiscountService(db)
    result = await service.remove_discount(discount_id, current_user.id, delete=True)
    return ApiResponse(data=result, message="Discount deleted")
