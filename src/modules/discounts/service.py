"""Service for Discounts module.

Discounts are applied in two phases over one selection: `preview_apply` is
the read-only half and `commit_apply` the writing half. Only explicit
commit/remove calls change tuitions; editing a discount never does.
"""

import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.exceptions import NotFoundError, ValidationError
from src.modules.discounts.models import Discount
from src.modules.discounts.periods import is_period_match
from src.modules.discounts.schemas import (
    DiscountApplyResult,
    DiscountCreate,
    DiscountFilters,
    DiscountPreview,
    DiscountPreviewItem,
    DiscountRemoveResult,
    DiscountUpdate,
)
from src.modules.students.models import ClassAcademic
from src.modules.tuitions.fees import FeeSnapshot, derive_status, refresh_status
from src.modules.tuitions.models import Tuition, TuitionStatus
from src.shared.utils.money import ZERO, round_money

logger = logging.getLogger(__name__)


def keeps_existing(existing: Discount | None, candidate: Discount, existing_amount: Decimal) -> bool:
    """
    Precedence between the discount a tuition already carries and a new one.

    A class-specific discount is never displaced by a school-wide one, and a
    discount is never replaced by one that is not strictly larger.
    """
    if existing is None:
        return False
    if existing.class_academic_id is not None and candidate.class_academic_id is None:
        return True
    return round_money(existing_amount) >= round_money(candidate.discount_amount)


class DiscountService:
    """Service for discount campaigns and their application to tuitions."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    # --- CRUD ---

    async def create_discount(self, data: DiscountCreate, created_by_id: int | None = None) -> Discount:
        if data.class_academic_id is not None:
            if not await self.db.get(ClassAcademic, data.class_academic_id):
                raise NotFoundError("Class", data.class_academic_id)

        discount = Discount(
            name=data.name.strip(),
            description=data.description,
            discount_amount=round_money(data.discount_amount),
            target_periods=data.target_periods,
            class_academic_id=data.class_academic_id,
            academic_year=data.academic_year,
            is_active=data.is_active,
            created_by_id=created_by_id,
        )
        self.db.add(discount)
        await self.db.flush()

        await self.audit.log(
            action=AuditAction.CREATE,
            entity_type="Discount",
            entity_id=discount.id,
            entity_identifier=discount.name,
            user_id=created_by_id,
            new_values={
                "discount_amount": str(discount.discount_amount),
                "target_periods": discount.target_periods,
                "class_academic_id": discount.class_academic_id,
            },
        )
        await self.db.commit()
        return await self.get_discount(discount.id)

    async def get_discount(self, discount_id: int) -> Discount:
        result = await self.db.execute(
            select(Discount)
            .where(Discount.id == discount_id)
            .execution_options(populate_existing=True)
        )
        discount = result.scalar_one_or_none()
        if not discount:
            raise NotFoundError("Discount", discount_id)
        return discount

    async def list_discounts(self, filters: DiscountFilters) -> tuple[list[Discount], int]:
        query = select(Discount)

        if filters.class_academic_id:
            query = query.where(Discount.class_academic_id == filters.class_academic_id)
        if filters.academic_year:
            query = query.where(Discount.academic_year == filters.academic_year)
        if filters.is_active is not None:
            query = query.where(Discount.is_active.is_(filters.is_active))

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(Discount.created_at.desc(), Discount.id.desc())
        query = query.offset((filters.page - 1) * filters.limit).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def update_discount(
        self, discount_id: int, data: DiscountUpdate, updated_by_id: int | None = None
    ) -> Discount:
        """Update the definition only; applied tuitions keep their snapshot."""
        discount = await self.get_discount(discount_id)

        old_values = {}
        new_values = {}
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is None:
                continue
            if field == "discount_amount":
                value = round_money(value)
            current = getattr(discount, field)
            if current != value:
                old_values[field] = str(current) if isinstance(current, Decimal) else current
                new_values[field] = str(value) if isinstance(value, Decimal) else value
                setattr(discount, field, value)

        if new_values:
            await self.audit.log(
                action=AuditAction.UPDATE,
                entity_type="Discount",
                entity_id=discount.id,
                entity_identifier=discount.name,
                user_id=updated_by_id,
                old_values=old_values,
                new_values=new_values,
            )
        await self.db.commit()
        return await self.get_discount(discount_id)

    # --- Apply ---

    async def preview_apply(self, discount_id: int) -> DiscountPreview:
        """Dry run of commit_apply. Nothing is written."""
        discount = await self.get_discount(discount_id)
        targets, skipped = await self._select_targets(discount, lock=False)

        amount = round_money(discount.discount_amount)
        items = []
        for tuition in targets:
            projected = FeeSnapshot.of(tuition, discount_amount=amount)
            items.append(
                DiscountPreviewItem(
                    tuition_id=tuition.id,
                    student_id=tuition.student_id,
                    class_academic_id=tuition.class_academic_id,
                    period=tuition.period,
                    year=tuition.year,
                    current_discount_amount=round_money(tuition.discount_amount),
                    new_discount_amount=amount,
                    current_status=tuition.status,
                    new_status=derive_status(projected).value,
                )
            )

        return DiscountPreview(
            discount_id=discount.id,
            affected=items,
            total_discount_amount=round_money(amount * len(items)),
            skipped_count=skipped,
        )

    async def commit_apply(self, discount_id: int, applied_by_id: int | None = None) -> DiscountApplyResult:
        """
        Write the discount onto every matching tuition and re-derive status.

        Re-applying is idempotent: a tuition already carrying this discount
        gets its amount set again, never stacked.
        """
        discount = await self.get_discount(discount_id)
        if not discount.is_active:
            raise ValidationError("Discount is not active", field="is_active")

        targets, skipped = await self._select_targets(discount, lock=True)

        amount = round_money(discount.discount_amount)
        for tuition in targets:
            tuition.discount_id = discount.id
            tuition.discount_amount = amount
            refresh_status(tuition)

        total_applied = round_money(amount * len(targets))
        await self.audit.log(
            action=AuditAction.APPLY_DISCOUNT,
            entity_type="Discount",
            entity_id=discount.id,
            entity_identifier=discount.name,
            user_id=applied_by_id,
            new_values={
                "updated_count": len(targets),
                "total_applied": str(total_applied),
                "tuition_ids": [t.id for t in targets],
            },
        )
        await self.db.commit()

        logger.info(
            "Discount %s applied to %d tuitions (%d skipped by precedence)",
            discount.id,
            len(targets),
            skipped,
        )
        return DiscountApplyResult(
            discount_id=discount.id,
            updated_count=len(targets),
            total_applied=total_applied,
            skipped_count=skipped,
        )

    async def remove_discount(
        self, discount_id: int, removed_by_id: int | None = None, delete: bool = False
    ) -> DiscountRemoveResult:
        """
        Clear the discount from every tuition carrying it, whatever its status.

        A PAID tuition may move back to PARTIAL: what it owes genuinely grew.
        With delete=True the campaign itself is removed afterwards.
        """
        discount = await self.get_discount(discount_id)

        result = await self.db.execute(
            select(Tuition)
            .where(Tuition.discount_id == discount.id)
            .order_by(Tuition.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        tuitions = list(result.scalars().all())
        for tuition in tuitions:
            tuition.discount_id = None
            tuition.discount_amount = ZERO
            refresh_status(tuition)

        await self.audit.log(
            action=AuditAction.DELETE if delete else AuditAction.REMOVE_DISCOUNT,
            entity_type="Discount",
            entity_id=discount.id,
            entity_identifier=discount.name,
            user_id=removed_by_id,
            old_values={"tuition_ids": [t.id for t in tuitions]},
        )
        if delete:
            await self.db.flush()
            await self.db.delete(discount)
        await self.db.commit()

        logger.info("Discount %s removed from %d tuitions", discount_id, len(tuitions))
        return DiscountRemoveResult(
            discount_id=discount_id, reversed_count=len(tuitions), deleted=delete
        )

    async def _select_targets(self, discount: Discount, lock: bool) -> tuple[list[Tuition], int]:
        """
        Non-PAID tuitions in the discount's scope whose period it targets,
        minus those whose current discount takes precedence.

        Returns (targets, skipped_by_precedence).
        """
        query = select(Tuition).where(Tuition.status != TuitionStatus.PAID.value)
        if discount.class_academic_id is not None:
            query = query.where(Tuition.class_academic_id == discount.class_academic_id)
        if discount.academic_year:
            query = query.join(ClassAcademic, ClassAcademic.id == Tuition.class_academic_id).where(
                ClassAcademic.academic_year == discount.academic_year
            )
        query = query.order_by(Tuition.id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)

        result = await self.db.execute(query)
        candidates = [
            t for t in result.scalars().all() if is_period_match(t.period, discount.target_periods or [])
        ]

        other_ids = {
            t.discount_id for t in candidates if t.discount_id and t.discount_id != discount.id
        }
        others: dict[int, Discount] = {}
        if other_ids:
            rows = await self.db.execute(select(Discount).where(Discount.id.in_(other_ids)))
            others = {d.id: d for d in rows.scalars().all()}

        targets = []
        skipped = 0
        for tuition in candidates:
            if tuition.discount_id and tuition.discount_id != discount.id:
                if keeps_existing(others.get(tuition.discount_id), discount, tuition.discount_amount):
                    skipped += 1
                    continue
            targets.append(tuition)
        return targets, skipped
