"""Service for Payments module.

Every increment of a tuition's paid_amount goes through
`PaymentService.post_to_ledger`: cash payments, online settlement and
scholarship auto-settlement alike.
"""

import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from src.core.audit.service import AuditAction, AuditService
from src.core.documents.number_generator import PAYMENT_PREFIX, DocumentNumberGenerator
from src.core.events import SettlementSource
from src.core.exceptions import (
    AlreadySettledError,
    ConcurrencyConflictError,
    NotFoundError,
    ValidationError,
)
from src.modules.payments.models import Payment
from src.modules.payments.schemas import PaymentApplyResult, PaymentFilters, PaymentResponse
from src.modules.tuitions.fees import effective_fee, refresh_status, remaining
from src.modules.tuitions.models import Tuition
from src.shared.utils.money import ZERO, round_money

logger = logging.getLogger(__name__)


async def lock_tuition(db: AsyncSession, tuition_id: int) -> Tuition:
    """Load a tuition FOR UPDATE, refreshing any copy already in the session."""
    result = await db.execute(
        select(Tuition)
        .where(Tuition.id == tuition_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    tuition = result.scalar_one_or_none()
    if not tuition:
        raise NotFoundError("Tuition", tuition_id)
    return tuition


class PaymentService:
    """Service for applying payments to tuitions."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def post_to_ledger(
        self,
        tuition: Tuition,
        amount: Decimal,
        source: SettlementSource,
        actor_id: int | None = None,
        notes: str | None = None,
        payment_request_id: int | None = None,
    ) -> Payment:
        """
        Increment paid_amount, re-derive status and write one Payment row.

        The tuition must already be locked by the caller. Does not commit.
        Zero amounts are only accepted from scholarship auto-settlement, where
        the record documents the settlement rather than money received.
        """
        amount = round_money(amount)
        if amount < ZERO or (amount == ZERO and source != SettlementSource.SCHOLARSHIP):
            raise ValidationError("Amount must be positive", field="amount")

        previous_status = tuition.status
        previous_paid = round_money(tuition.paid_amount)
        tuition.paid_amount = previous_paid + amount
        new_status = refresh_status(tuition)

        payment_number = await DocumentNumberGenerator(self.db).generate(PAYMENT_PREFIX)
        payment = Payment(
            payment_number=payment_number,
            tuition_id=tuition.id,
            student_id=tuition.student_id,
            amount=amount,
            scholarship_amount=round_money(tuition.scholarship_amount),
            source=source.value,
            payment_request_id=payment_request_id,
            recorded_by_id=actor_id,
            notes=notes,
        )
        self.db.add(payment)
        await self.db.flush()

        await self.audit.log(
            action=AuditAction.APPLY_PAYMENT,
            entity_type="Tuition",
            entity_id=tuition.id,
            entity_identifier=payment_number,
            user_id=actor_id,
            old_values={"paid_amount": str(previous_paid), "status": previous_status},
            new_values={
                "paid_amount": str(tuition.paid_amount),
                "status": new_status.value,
                "source": source.value,
            },
        )
        return payment

    async def apply_payment(
        self,
        tuition_id: int,
        amount: Decimal,
        actor_id: int | None,
        notes: str | None = None,
    ) -> PaymentApplyResult:
        """
        Apply a cash payment to one tuition.

        Rejects PAID tuitions (AlreadySettledError) and amounts above what is
        still owed (ValidationError); nothing is written in either case.
        """
        if amount is None or round_money(amount) <= ZERO:
            raise ValidationError("Amount must be positive", field="amount")
        amount = round_money(amount)

        tuition = await lock_tuition(self.db, tuition_id)
        if tuition.is_paid:
            raise AlreadySettledError("Tuition", tuition_id, tuition.status)

        owed = remaining(tuition)
        if amount > owed:
            raise ValidationError(
                f"Amount {amount} exceeds remaining balance {owed}", field="amount"
            )

        previous_status = tuition.status
        previous_paid = round_money(tuition.paid_amount)

        try:
            # Autoflush inside post_to_ledger can hit the version check too
            payment = await self.post_to_ledger(
                tuition,
                amount,
                SettlementSource.MANUAL,
                actor_id=actor_id,
                notes=notes,
            )
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise ConcurrencyConflictError("Tuition", tuition_id)

        await self.db.refresh(payment)
        await self.db.refresh(tuition)

        logger.info(
            "Payment %s applied to tuition %s: %s -> %s",
            payment.payment_number,
            tuition_id,
            previous_status,
            tuition.status,
        )

        return PaymentApplyResult(
            payment=PaymentResponse.model_validate(payment),
            tuition_id=tuition_id,
            previous_status=previous_status,
            new_status=tuition.status,
            previous_paid_amount=previous_paid,
            new_paid_amount=round_money(tuition.paid_amount),
            effective_fee=effective_fee(tuition),
            remaining=remaining(tuition),
        )

    async def get_payment(self, payment_id: int) -> Payment:
        result = await self.db.execute(select(Payment).where(Payment.id == payment_id))
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def list_payments(self, filters: PaymentFilters) -> tuple[list[Payment], int]:
        """List payments with filters, newest first."""
        query = select(Payment)

        if filters.tuition_id:
            query = query.where(Payment.tuition_id == filters.tuition_id)
        if filters.student_id:
            query = query.where(Payment.student_id == filters.student_id)
        if filters.source:
            query = query.where(Payment.source == filters.source.value)
        if filters.payment_request_id:
            query = query.where(Payment.payment_request_id == filters.payment_request_id)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(Payment.created_at.desc(), Payment.id.desc())
        query = query.offset((filters.page - 1) * filters.limit).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total
