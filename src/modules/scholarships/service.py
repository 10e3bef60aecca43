"""Service for Scholarships module.

Tuitions carry the sum of a student's grants for the class as a denormalized
scholarship_amount. Every operation here reconciles that field to the grant
total; it never adds deltas, so repeated grants cannot double-count.
"""

import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.events import SettlementSource, TuitionSettled, publish
from src.core.exceptions import AppException, DuplicateGrantError, NotFoundError, ValidationError
from src.modules.payments.service import PaymentService
from src.modules.scholarships.models import Scholarship
from src.modules.scholarships.schemas import (
    IMPORTED_SCHOLARSHIP_NAME,
    ScholarshipCreate,
    ScholarshipFilters,
    ScholarshipGrantResult,
    ScholarshipImportError,
    ScholarshipImportRequest,
    ScholarshipImportResult,
    ScholarshipResponse,
    ScholarshipRevokeResult,
    ScholarshipSyncResult,
)
from src.modules.students.models import ClassAcademic, Student
from src.modules.tuitions.fees import refresh_status, remaining, scholarship_coverage
from src.modules.tuitions.models import Tuition, TuitionStatus
from src.shared.utils.money import ZERO, round_money, sum_money

logger = logging.getLogger(__name__)

AUTO_SETTLE_NOTE = "Auto-settled by full scholarship"
OUTSTANDING_STATUSES = (TuitionStatus.UNPAID.value, TuitionStatus.PARTIAL.value)


class ScholarshipService:
    """Service for granting, revoking and reconciling scholarships."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
        self.payments = PaymentService(db)

    # --- Queries ---

    async def get_scholarship(self, scholarship_id: int) -> Scholarship:
        result = await self.db.execute(
            select(Scholarship).where(Scholarship.id == scholarship_id)
        )
        scholarship = result.scalar_one_or_none()
        if not scholarship:
            raise NotFoundError("Scholarship", scholarship_id)
        return scholarship

    async def list_scholarships(
        self, filters: ScholarshipFilters
    ) -> tuple[list[Scholarship], int]:
        query = select(Scholarship)

        if filters.student_id:
            query = query.where(Scholarship.student_id == filters.student_id)
        if filters.class_academic_id:
            query = query.where(Scholarship.class_academic_id == filters.class_academic_id)
        if filters.is_full_scholarship is not None:
            query = query.where(Scholarship.is_full_scholarship.is_(filters.is_full_scholarship))

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(Scholarship.created_at.desc(), Scholarship.id.desc())
        query = query.offset((filters.page - 1) * filters.limit).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    # --- Grant ---

    async def grant_scholarship(
        self, data: ScholarshipCreate, granted_by_id: int | None = None
    ) -> ScholarshipGrantResult:
        """
        Grant a scholarship and reconcile the student's tuitions for the class.

        When this grant is the one that makes the cumulative total reach the
        class fee, every outstanding tuition is settled by the system actor.
        Later grants on an already covered student do not settle again.
        """
        result = await self._grant(
            student_id=data.student_id,
            class_academic_id=data.class_academic_id,
            nominal=data.nominal,
            name=data.name,
            fallback_fee=data.fallback_fee,
            granted_by_id=granted_by_id,
        )
        await self.db.commit()
        await publish(result.auto_settled)
        return result

    async def grant_bulk(
        self, data: ScholarshipImportRequest, granted_by_id: int | None = None
    ) -> ScholarshipImportResult:
        """
        Import many grants. Each row runs in its own savepoint: a duplicate
        (same student, class and name) is skipped, other failures are
        collected and do not undo the rows already imported.
        """
        imported = 0
        skipped = 0
        errors: list[ScholarshipImportError] = []
        events: list[TuitionSettled] = []

        for index, row in enumerate(data.rows, start=1):
            name = (row.name or "").strip() or IMPORTED_SCHOLARSHIP_NAME
            try:
                student = await self._get_student_by_number(row.student_number)
                async with self.db.begin_nested():
                    result = await self._grant(
                        student_id=student.id,
                        class_academic_id=row.class_academic_id,
                        nominal=row.nominal,
                        name=name,
                        fallback_fee=data.fallback_fee,
                        granted_by_id=granted_by_id,
                    )
            except DuplicateGrantError:
                skipped += 1
                continue
            except AppException as exc:
                errors.append(
                    ScholarshipImportError(
                        row=index, student_number=row.student_number, message=exc.message
                    )
                )
                continue

            imported += 1
            events.extend(result.auto_settled)

        await self.db.commit()
        await publish(events)

        logger.info(
            "Scholarship import: %d imported, %d skipped, %d errors",
            imported,
            skipped,
            len(errors),
        )
        return ScholarshipImportResult(
            imported=imported,
            skipped=skipped,
            auto_settled=len(events),
            errors=errors,
        )

    async def _grant(
        self,
        student_id: int,
        class_academic_id: int,
        nominal: Decimal,
        name: str,
        fallback_fee: Decimal | None,
        granted_by_id: int | None,
    ) -> ScholarshipGrantResult:
        nominal = round_money(nominal)
        if nominal <= ZERO:
            raise ValidationError("Nominal must be positive", field="nominal")

        if not await self.db.get(Student, student_id):
            raise NotFoundError("Student", student_id)
        class_academic = await self.db.get(ClassAcademic, class_academic_id)
        if not class_academic:
            raise NotFoundError("Class", class_academic_id)

        duplicate = await self.db.execute(
            select(Scholarship.id).where(
                Scholarship.student_id == student_id,
                Scholarship.class_academic_id == class_academic_id,
                Scholarship.name == name,
            )
        )
        if duplicate.scalar_one_or_none() is not None:
            raise DuplicateGrantError(student_id, class_academic_id, name)

        period_fee = await self._period_fee(class_academic, fallback_fee)

        # Lock first so the totals below cannot move under us
        tuitions = await self._lock_tuitions(student_id, class_academic_id)
        outstanding = [t for t in tuitions if t.status in OUTSTANDING_STATUSES]

        existing_total = await self._grant_total(student_id, class_academic_id)
        new_total = existing_total + nominal
        coverage = scholarship_coverage(new_total, period_fee)
        crosses = period_fee is not None and existing_total < period_fee <= new_total

        scholarship = Scholarship(
            student_id=student_id,
            class_academic_id=class_academic_id,
            name=name,
            nominal=nominal,
            is_full_scholarship=coverage["is_full"],
            granted_by_id=granted_by_id,
        )
        self.db.add(scholarship)
        try:
            await self.db.flush()
        except IntegrityError:
            raise DuplicateGrantError(student_id, class_academic_id, name)

        updated = self._apply_total(tuitions, new_total)

        await self.audit.log(
            action=AuditAction.GRANT_SCHOLARSHIP,
            entity_type="Scholarship",
            entity_id=scholarship.id,
            entity_identifier=name,
            user_id=granted_by_id,
            new_values={
                "student_id": student_id,
                "class_academic_id": class_academic_id,
                "nominal": str(nominal),
                "total_nominal": str(new_total),
                "is_full_scholarship": coverage["is_full"],
            },
        )

        events: list[TuitionSettled] = []
        if crosses:
            events = await self._auto_settle(outstanding, granted_by_id)

        await self.db.refresh(scholarship)
        logger.info(
            "Scholarship %s granted to student %s in class %s (total %s, full=%s, auto-settled %d)",
            scholarship.id,
            student_id,
            class_academic_id,
            new_total,
            coverage["is_full"],
            len(events),
        )

        return ScholarshipGrantResult(
            scholarship=ScholarshipResponse.model_validate(scholarship),
            total_nominal=new_total,
            period_fee=period_fee,
            coverage_percentage=coverage["percentage"],
            tuitions_updated=updated,
            auto_settled=events,
        )

    async def _auto_settle(
        self, tuitions: list[Tuition], granted_by_id: int | None
    ) -> list[TuitionSettled]:
        """Settle each tuition with a system SCHOLARSHIP entry for what it still owes."""
        events: list[TuitionSettled] = []
        for tuition in tuitions:
            amount = remaining(tuition)
            payment = await self.payments.post_to_ledger(
                tuition,
                amount,
                SettlementSource.SCHOLARSHIP,
                actor_id=None,
                notes=AUTO_SETTLE_NOTE,
            )
            events.append(
                TuitionSettled(
                    tuition_id=tuition.id,
                    student_id=tuition.student_id,
                    amount=amount,
                    new_status=tuition.status,
                    source=SettlementSource.SCHOLARSHIP,
                    payment_number=payment.payment_number,
                )
            )

        if events:
            await self.audit.log(
                action=AuditAction.AUTO_SETTLE,
                entity_type="Student",
                entity_id=tuitions[0].student_id,
                user_id=granted_by_id,
                new_values={"tuition_ids": [e.tuition_id for e in events]},
                comment=AUTO_SETTLE_NOTE,
            )
        return events

    # --- Revoke / sync ---

    async def revoke_scholarship(
        self, scholarship_id: int, revoked_by_id: int | None = None
    ) -> ScholarshipRevokeResult:
        """Delete a grant and reconcile; a PAID tuition may reopen."""
        scholarship = await self.get_scholarship(scholarship_id)
        student_id = scholarship.student_id
        class_academic_id = scholarship.class_academic_id

        tuitions = await self._lock_tuitions(student_id, class_academic_id)

        await self.audit.log(
            action=AuditAction.REVOKE_SCHOLARSHIP,
            entity_type="Scholarship",
            entity_id=scholarship.id,
            entity_identifier=scholarship.name,
            user_id=revoked_by_id,
            old_values={
                "student_id": student_id,
                "class_academic_id": class_academic_id,
                "nominal": str(scholarship.nominal),
            },
        )
        await self.db.delete(scholarship)
        await self.db.flush()

        total = await self._grant_total(student_id, class_academic_id)
        updated = self._apply_total(tuitions, total)
        await self.db.commit()

        logger.info(
            "Scholarship %s revoked; %d tuitions reconciled to %s",
            scholarship_id,
            updated,
            total,
        )
        return ScholarshipRevokeResult(
            scholarship_id=scholarship_id, total_nominal=total, tuitions_updated=updated
        )

    async def sync_scholarships(self, actor_id: int | None = None) -> ScholarshipSyncResult:
        """
        Reconcile every UNPAID/PARTIAL tuition to its current grant total.

        PAID tuitions are left alone: scholarships are not redeemed
        retroactively against settled periods.
        """
        result = await self.db.execute(
            select(Tuition)
            .where(Tuition.status.in_(OUTSTANDING_STATUSES))
            .order_by(Tuition.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        tuitions = list(result.scalars().all())

        totals: dict[tuple[int, int], list[Decimal]] = {}
        grants = await self.db.execute(
            select(Scholarship.student_id, Scholarship.class_academic_id, Scholarship.nominal)
        )
        for row in grants:
            totals.setdefault((row.student_id, row.class_academic_id), []).append(row.nominal)

        updated = 0
        status_changed = 0
        for tuition in tuitions:
            total = sum_money(totals.get((tuition.student_id, tuition.class_academic_id), []))
            if round_money(tuition.scholarship_amount) == total:
                continue
            previous_status = tuition.status
            tuition.scholarship_amount = total
            refresh_status(tuition)
            updated += 1
            if tuition.status != previous_status:
                status_changed += 1

        if updated:
            await self.audit.log(
                action=AuditAction.UPDATE,
                entity_type="Tuition",
                entity_id=0,
                entity_identifier="scholarship-sync",
                user_id=actor_id,
                new_values={"updated": updated, "status_changed": status_changed},
            )
        await self.db.commit()

        logger.info("Scholarship sync: %d of %d tuitions updated", updated, len(tuitions))
        return ScholarshipSyncResult(
            total_tuitions=len(tuitions), updated=updated, status_changed=status_changed
        )

    # --- Helpers ---

    async def _period_fee(
        self, class_academic: ClassAcademic, fallback_fee: Decimal | None
    ) -> Decimal | None:
        """Per-period fee of a class: any of its tuitions, else the fallback."""
        result = await self.db.execute(
            select(Tuition.fee_amount)
            .where(Tuition.class_academic_id == class_academic.id)
            .order_by(Tuition.id)
            .limit(1)
        )
        fee = result.scalar_one_or_none()
        if fee is None:
            fee = fallback_fee or class_academic.default_fee
        return round_money(fee) if fee is not None else None

    async def _lock_tuitions(self, student_id: int, class_academic_id: int) -> list[Tuition]:
        result = await self.db.execute(
            select(Tuition)
            .where(
                Tuition.student_id == student_id,
                Tuition.class_academic_id == class_academic_id,
            )
            .order_by(Tuition.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _grant_total(self, student_id: int, class_academic_id: int) -> Decimal:
        result = await self.db.execute(
            select(Scholarship.nominal).where(
                Scholarship.student_id == student_id,
                Scholarship.class_academic_id == class_academic_id,
            )
        )
        return sum_money(result.scalars().all())

    @staticmethod
    def _apply_total(tuitions: list[Tuition], total: Decimal) -> int:
        """Write the grant total onto each tuition and re-derive its status."""
        updated = 0
        for tuition in tuitions:
            if round_money(tuition.scholarship_amount) != total:
                tuition.scholarship_amount = total
                updated += 1
            refresh_status(tuition)
        return updated

    async def _get_student_by_number(self, student_number: str) -> Student:
        result = await self.db.execute(
            select(Student).where(Student.student_number == student_number.strip())
        )
        student = result.scalar_one_or_none()
        if not student:
            raise NotFoundError("Student", student_number)
        return student
