"""API endpoints for Payment Requests and receiving bank accounts."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import require_roles
from src.core.auth.models import User, UserRole
from src.core.database.session import get_db
from src.modules.payment_requests.models import PaymentRequestStatus
from src.modules.payment_requests.schemas import (
    BankAccountCreate,
    BankAccountResponse,
    FailVerificationRequest,
    PaymentRequestCreate,
    PaymentRequestFilters,
    PaymentRequestResponse,
    SettlementResponse,
    SettleRequest,
    TransferMatchRequest,
)
from src.modules.payment_requests.service import PaymentRequestService
from src.modules.tuitions.schemas import TuitionResponse
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/payment-requests", tags=["Payment Requests"])
bank_accounts_router = APIRouter(prefix="/bank-accounts", tags=["Bank Accounts"])

_staff = require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.CASHIER, UserRole.ACCOUNTANT)
_admin = require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN)


def _to_response(service: PaymentRequestService, request) -> PaymentRequestResponse:
    return PaymentRequestResponse.from_request(request, service.effective_status(request))


@router.post(
    "",
    response_model=ApiResponse[PaymentRequestResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_payment_request(
    data: PaymentRequestCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(
        require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.CASHIER)
    ),
):
    """Group outstanding tuitions into one transfer instruction."""
    service = PaymentRequestService(db)
    request = await service.create(
        data.student_id,
        data.tuition_ids,
        idempotency_key=data.idempotency_key,
        created_by_id=current_user.id,
    )
    return ApiResponse(
        data=_to_response(service, request),
        message=f"Transfer exactly {request.total_amount}",
    )


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[PaymentRequestResponse]],
)
async def list_payment_requests(
    student_id: int | None = Query(None),
    status: PaymentRequestStatus | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_staff),
):
    service = PaymentRequestService(db)
    filters = PaymentRequestFilters(student_id=student_id, status=status, page=page, limit=limit)
    requests, total = await service.list_requests(filters)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[_to_response(service, r) for r in requests],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get(
    "/active",
    response_model=ApiResponse[PaymentRequestResponse | None],
)
async def get_active_payment_request(
    student_id: int = Query(...),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_staff),
):
    """The student's live PENDING request, if any."""
    service = PaymentRequestService(db)
    request = await service.get_active_request(student_id)
    return ApiResponse(data=_to_response(service, request) if request else None)


@router.get(
    "/unpaid-tuitions",
    response_model=ApiResponse[list[TuitionResponse]],
)
async def list_unpaid_tuitions(
    student_id: int = Query(...),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_staff),
):
    service = PaymentRequestService(db)
    tuitions = await service.list_unpaid_tuitions(student_id)
    return ApiResponse(data=[TuitionResponse.from_tuition(t) for t in tuitions])


@router.post(
    "/match-transfer",
    response_model=ApiResponse[SettlementResponse | None],
)
async def match_transfer(
    data: TransferMatchRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_admin),
):
    """Settle the pending request whose total equals an incoming transfer."""
    service = PaymentRequestService(db)
    matched = await service.match_transfer(data.amount, data.bank_account_id)
    if matched is None:
        return ApiResponse(data=None, message="No pending payment request matches this amount")
    request, events = matched
    return ApiResponse(
        data=SettlementResponse(request=_to_response(service, request), settled=events),
        message="Payment request settled",
    )


@router.get(
    "/{request_id}",
    response_model=ApiResponse[PaymentRequestResponse],
)
async def get_payment_request(
    request_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_staff),
):
    """Get a request; an overdue PENDING request reads as expired."""
    service = PaymentRequestService(db)
    request = await service.get_request(request_id)
    return ApiResponse(data=_to_response(service, request))


@router.post(
    "/{request_id}/cancel",
    response_model=ApiResponse[PaymentRequestResponse],
)
async def cancel_payment_request(
    request_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(
        require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.CASHIER)
    ),
):
    service = PaymentRequestService(db)
    request = await service.cancel(request_id, current_user.id)
    return ApiResponse(data=_to_response(service, request), message="Payment request cancelled")


@router.post(
    "/{request_id}/settle",
    response_model=ApiResponse[SettlementResponse],
)
async def settle_payment_request(
    request_id: int,
    data: SettleRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_admin),
):
    """Mark as received: post every allocation to the ledger."""
    service = PaymentRequestService(db)
    request, events = await service.settle(request_id, data.bank_account_id, current_user.id)
    return ApiResponse(
        data=SettlementResponse(request=_to_response(service, request), settled=events),
        message="Payment request settled",
    )


@router.post(
    "/{request_id}/verify",
    response_model=ApiResponse[PaymentRequestResponse],
)
async def begin_verification(
    request_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_admin),
):
    service = PaymentRequestService(db)
    request = await service.begin_verification(request_id, current_user.id)
    return ApiResponse(data=_to_response(service, request))


@router.post(
    "/{request_id}/fail",
    response_model=ApiResponse[PaymentRequestResponse],
)
async def fail_verification(
    request_id: int,
    data: FailVerificationRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_admin),
):
    service = PaymentRequestService(db)
    request = await service.fail_verification(request_id, data.reason, current_user.id)
    return ApiResponse(data=_to_response(service, request))


# --- Bank accounts ---


@bank_accounts_router.post(
    "",
    response_model=ApiResponse[BankAccountResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_bank_account(
    data: BankAccountCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_admin),
):
    service = PaymentRequestService(db)
    account = await service.create_bank_account(data, current_user.id)
    return ApiResponse(data=BankAccountResponse.model_validate(account))


@bank_accounts_router.get(
    "",
    response_model=ApiResponse[list[BankAccountResponse]],
)
async def list_bank_accounts(
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_staff),
):
    service = PaymentRequestService(db)
    accounts = await service.list_bank_accounts(active_only=not include_inactive)
    return ApiResponse(data=[BankAccountResponse.model_validate(a) for a in accounts])
