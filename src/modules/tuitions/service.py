"""Service for Tuitions module: ledger queries and monthly generation."""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.config import settings
from src.core.exceptions import NotFoundError, ValidationError
from src.modules.discounts.models import Discount
from src.modules.discounts.periods import is_period_match, month_name
from src.modules.scholarships.models import Scholarship
from src.modules.students.models import ClassAcademic, Student, StudentClass, StudentStatus
from src.modules.tuitions.fees import refresh_status
from src.modules.tuitions.models import Tuition, TuitionStatus
from src.modules.tuitions.schemas import TuitionFilters, TuitionGenerate, TuitionGenerateResult
from src.shared.utils.money import ZERO, round_money, sum_money

logger = logging.getLogger(__name__)

OUTSTANDING_STATUSES = (TuitionStatus.UNPAID.value, TuitionStatus.PARTIAL.value)


def academic_year_bounds(academic_year: str) -> tuple[date, date]:
    """ "2024/2025" -> (2024-07-01, 2025-06-30)."""
    try:
        start_year = int(academic_year.split("/")[0])
    except (ValueError, IndexError):
        raise ValidationError(f"Invalid academic year: {academic_year}", field="academic_year")
    return date(start_year, 7, 1), date(start_year + 1, 6, 30)


def months_to_generate(join_date: date, academic_start: date, academic_end: date) -> list[tuple[int, int]]:
    """(month, year) pairs billed to a student who joined on join_date.

    Joining before the year starts bills every month; joining after it ends
    bills nothing; otherwise billing starts with the join month.
    """
    if join_date > academic_end:
        return []
    start = max(join_date, academic_start)

    months: list[tuple[int, int]] = []
    month, year = start.month, start.year
    while date(year, month, 1) <= academic_end:
        months.append((month, year))
        month += 1
        if month > 12:
            month, year = 1, year + 1
    return months


def pick_discount(period: str, discounts: list[Discount], class_academic_id: int) -> Discount | None:
    """Best matching discount: class-specific first, then the highest amount."""
    matching = [d for d in discounts if is_period_match(period, d.target_periods or [])]
    if not matching:
        return None
    class_specific = [d for d in matching if d.class_academic_id == class_academic_id]
    candidates = class_specific or matching
    return max(candidates, key=lambda d: d.discount_amount)


class TuitionService:
    """Service for querying and generating tuitions."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def get_tuition(self, tuition_id: int) -> Tuition:
        result = await self.db.execute(select(Tuition).where(Tuition.id == tuition_id))
        tuition = result.scalar_one_or_none()
        if not tuition:
            raise NotFoundError("Tuition", tuition_id)
        return tuition

    async def list_tuitions(self, filters: TuitionFilters) -> tuple[list[Tuition], int]:
        """List tuitions by student, class, period, year and status."""
        query = select(Tuition)

        if filters.student_id:
            query = query.where(Tuition.student_id == filters.student_id)
        if filters.class_academic_id:
            query = query.where(Tuition.class_academic_id == filters.class_academic_id)
        if filters.period:
            query = query.where(Tuition.period == filters.period.upper())
        if filters.year:
            query = query.where(Tuition.year == filters.year)
        if filters.status:
            query = query.where(Tuition.status == filters.status.value)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(Tuition.due_date, Tuition.id)
        query = query.offset((filters.page - 1) * filters.limit).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def list_locked_by_request(self, payment_request_id: int) -> list[Tuition]:
        """Tuitions currently soft-locked by the given payment request."""
        result = await self.db.execute(
            select(Tuition)
            .where(Tuition.pending_payment_request_id == payment_request_id)
            .order_by(Tuition.due_date, Tuition.id)
        )
        return list(result.scalars().all())

    async def list_unpaid_for_student(self, student_id: int) -> list[Tuition]:
        """Outstanding tuitions, oldest due first."""
        result = await self.db.execute(
            select(Tuition)
            .where(
                Tuition.student_id == student_id,
                Tuition.status.in_(OUTSTANDING_STATUSES),
            )
            .order_by(Tuition.due_date, Tuition.id)
        )
        return list(result.scalars().all())

    async def generate_for_class(
        self, data: TuitionGenerate, generated_by_id: int | None = None
    ) -> TuitionGenerateResult:
        """
        Create monthly tuitions for a class.

        Existing (student, class, period, year) rows are skipped. New rows get
        the best matching active discount and the student's current
        scholarship total for the class.
        """
        class_academic = await self.db.get(ClassAcademic, data.class_academic_id)
        if not class_academic:
            raise NotFoundError("Class", data.class_academic_id)

        fee_amount = data.fee_amount or class_academic.default_fee
        if not fee_amount or fee_amount <= ZERO:
            raise ValidationError("Fee amount is required and must be positive", field="fee_amount")
        fee_amount = round_money(fee_amount)

        default_start, default_end = academic_year_bounds(class_academic.academic_year)
        academic_start = data.academic_start or default_start
        academic_end = data.academic_end or default_end

        students = await self._students_for(data.class_academic_id, data.student_ids)
        if not students:
            raise ValidationError("No students found to generate tuitions for")

        student_ids = [s.id for s in students]
        existing = await self.db.execute(
            select(Tuition.student_id, Tuition.period, Tuition.year).where(
                Tuition.class_academic_id == data.class_academic_id,
                Tuition.student_id.in_(student_ids),
            )
        )
        existing_keys = {(row.student_id, row.period, row.year) for row in existing}

        discounts = await self._applicable_discounts(class_academic)
        scholarship_totals = await self._scholarship_totals(data.class_academic_id, student_ids)

        generated = 0
        skipped = 0
        used_discounts: set[int] = set()
        for student in students:
            for month, year in months_to_generate(student.start_join_date, academic_start, academic_end):
                period = month_name(month)
                if (student.id, period, year) in existing_keys:
                    skipped += 1
                    continue

                discount = pick_discount(period, discounts, data.class_academic_id)
                tuition = Tuition(
                    student_id=student.id,
                    class_academic_id=data.class_academic_id,
                    period=period,
                    year=year,
                    fee_amount=fee_amount,
                    scholarship_amount=scholarship_totals.get(student.id, ZERO),
                    discount_amount=round_money(discount.discount_amount) if discount else ZERO,
                    discount_id=discount.id if discount else None,
                    paid_amount=ZERO,
                    due_date=date(year, month, settings.tuition_due_day),
                )
                refresh_status(tuition)
                self.db.add(tuition)
                generated += 1
                if discount:
                    used_discounts.add(discount.id)

        await self.db.flush()

        full_year = sum(1 for s in students if s.start_join_date <= academic_start)

        await self.audit.log(
            action=AuditAction.GENERATE_TUITIONS,
            entity_type="ClassAcademic",
            entity_id=class_academic.id,
            entity_identifier=f"{class_academic.class_name} {class_academic.academic_year}",
            user_id=generated_by_id,
            new_values={
                "generated": generated,
                "skipped": skipped,
                "fee_amount": str(fee_amount),
            },
        )
        await self.db.commit()

        logger.info(
            "Generated %d tuitions for class %s (%d skipped)",
            generated,
            class_academic.id,
            skipped,
        )

        return TuitionGenerateResult(
            generated=generated,
            skipped=skipped,
            total_students=len(students),
            students_with_full_year=full_year,
            students_with_partial_year=len(students) - full_year,
            discounts_applied=sorted(used_discounts),
        )

    async def _students_for(self, class_academic_id: int, student_ids: list[int] | None) -> list[Student]:
        if student_ids:
            query = select(Student).where(Student.id.in_(student_ids))
        else:
            query = (
                select(Student)
                .join(StudentClass, StudentClass.student_id == Student.id)
                .where(
                    StudentClass.class_academic_id == class_academic_id,
                    Student.status == StudentStatus.ACTIVE.value,
                )
            )
        result = await self.db.execute(query.order_by(Student.id))
        return list(result.scalars().all())

    async def _applicable_discounts(self, class_academic: ClassAcademic) -> list[Discount]:
        result = await self.db.execute(
            select(Discount).where(
                Discount.is_active.is_(True),
                or_(
                    Discount.class_academic_id.is_(None),
                    Discount.class_academic_id == class_academic.id,
                ),
                or_(
                    Discount.academic_year.is_(None),
                    Discount.academic_year == class_academic.academic_year,
                ),
            )
        )
        return list(result.scalars().all())

    async def _scholarship_totals(self, class_academic_id: int, student_ids: list[int]) -> dict[int, Decimal]:
        result = await self.db.execute(
            select(Scholarship.student_id, Scholarship.nominal).where(
                Scholarship.class_academic_id == class_academic_id,
                Scholarship.student_id.in_(student_ids),
            )
        )
        grouped: dict[int, list[Decimal]] = {}
        for row in result:
            grouped.setdefault(row.student_id, []).append(row.nominal)
        return {student_id: sum_money(values) for student_id, values in grouped.items()}
