"""Service for Payment Requests module.

A payment request groups outstanding tuitions of one student into a single
transfer instruction carrying a disambiguating surcharge. While it is
PENDING (or VERIFYING) every tuition it covers is soft-locked through
`tuitions.pending_payment_request_id`.

    PENDING -> VERIFIED | EXPIRED | CANCELLED
    PENDING -> VERIFYING -> VERIFIED | FAILED

A PENDING request past `expires_at` is logically EXPIRED the moment it is
observed; reads report it that way and writes persist it before refusing.
"""

import logging
import random
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from src.core.audit.service import AuditAction, AuditService
from src.core.clock import Clock, ensure_aware, utcnow
from src.core.config import settings
from src.core.documents.number_generator import PAYMENT_REQUEST_PREFIX, DocumentNumberGenerator
from src.core.events import SettlementSource, TuitionSettled, publish
from src.core.exceptions import (
    AlreadySettledError,
    ConcurrencyConflictError,
    DisambiguationExhaustedError,
    InvalidTransitionError,
    NotFoundError,
    ObligationUnavailableError,
    StaleRequestError,
    ValidationError,
)
from src.modules.payment_requests.models import (
    BankAccount,
    IdempotencyRecord,
    IdempotencyStatus,
    PaymentRequest,
    PaymentRequestStatus,
    PaymentRequestTuition,
)
from src.modules.payment_requests.schemas import BankAccountCreate, PaymentRequestFilters
from src.modules.payment_requests.unique_code import UniqueCodeAllocator
from src.modules.payments.service import PaymentService
from src.modules.students.models import Student
from src.modules.tuitions.fees import remaining
from src.modules.tuitions.models import Tuition
from src.modules.tuitions.service import TuitionService
from src.shared.utils.money import ZERO, round_money, sum_money

logger = logging.getLogger(__name__)

ENTITY = "PaymentRequest"


class PaymentRequestService:
    """Service for the payment request lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
    ):
        self.db = db
        self.clock = clock
        self.audit = AuditService(db)
        self.payments = PaymentService(db)
        self.codes = UniqueCodeAllocator(db, rng=rng)

    # --- Reads ---

    def is_expired(self, request: PaymentRequest) -> bool:
        return request.is_pending and ensure_aware(request.expires_at) <= self.clock()

    def effective_status(self, request: PaymentRequest) -> str:
        """Stored status, except a PENDING request past expiry reads as EXPIRED."""
        if self.is_expired(request):
            return PaymentRequestStatus.EXPIRED.value
        return request.status

    async def get_request(self, request_id: int) -> PaymentRequest:
        """Load a request with its allocations. Never writes."""
        result = await self.db.execute(
            select(PaymentRequest)
            .where(PaymentRequest.id == request_id)
            .options(selectinload(PaymentRequest.allocations))
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if not request:
            raise NotFoundError(ENTITY, request_id)
        return request

    async def list_requests(
        self, filters: PaymentRequestFilters
    ) -> tuple[list[PaymentRequest], int]:
        query = select(PaymentRequest)

        if filters.student_id:
            query = query.where(PaymentRequest.student_id == filters.student_id)
        if filters.status:
            query = query.where(PaymentRequest.status == filters.status.value)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = (
            query.options(selectinload(PaymentRequest.allocations))
            .order_by(PaymentRequest.created_at.desc(), PaymentRequest.id.desc())
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def get_active_request(self, student_id: int) -> PaymentRequest | None:
        """The student's newest PENDING, unexpired request, if any."""
        result = await self.db.execute(
            select(PaymentRequest)
            .where(
                PaymentRequest.student_id == student_id,
                PaymentRequest.status == PaymentRequestStatus.PENDING.value,
                PaymentRequest.expires_at > self.clock(),
            )
            .options(selectinload(PaymentRequest.allocations))
            .order_by(PaymentRequest.created_at.desc(), PaymentRequest.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_unpaid_tuitions(self, student_id: int) -> list[Tuition]:
        return await TuitionService(self.db).list_unpaid_for_student(student_id)

    # --- Create ---

    async def create(
        self,
        student_id: int,
        tuition_ids: list[int],
        idempotency_key: str | None = None,
        created_by_id: int | None = None,
    ) -> PaymentRequest:
        """
        Create a PENDING request over the given tuitions and soft-lock them.

        Replaying an idempotency key that is still valid returns the request
        it created instead of a new one.
        """
        now = self.clock()
        tuition_ids = list(dict.fromkeys(tuition_ids))
        if not tuition_ids:
            raise ValidationError("Select at least one tuition", field="tuition_ids")

        record = None
        if idempotency_key:
            original, record = await self._replay(idempotency_key, now)
            if original is not None:
                logger.info("Idempotent replay of key %s -> request %s", idempotency_key, original.id)
                return original
            try:
                record = await self._claim_key(idempotency_key, record, now)
            except IntegrityError:
                # Another submission with the same key won the insert
                await self.db.rollback()
                original, _ = await self._replay(idempotency_key, now)
                if original is None:
                    raise ConcurrencyConflictError("IdempotencyRecord", idempotency_key)
                return original

        try:
            return await self._open(student_id, tuition_ids, idempotency_key, record, created_by_id, now)
        except Exception:
            await self.db.rollback()
            raise

    async def _open(
        self,
        student_id: int,
        tuition_ids: list[int],
        idempotency_key: str | None,
        record: IdempotencyRecord | None,
        created_by_id: int | None,
        now: datetime,
    ) -> PaymentRequest:
        if not await self.db.get(Student, student_id):
            raise NotFoundError("Student", student_id)

        if settings.payment_request_single_active:
            active = await self.get_active_request(student_id)
            if active is not None:
                raise ObligationUnavailableError(
                    active.tuition_ids,
                    "student already has an active payment request",
                    held_by_request_id=active.id,
                )

        # Lock order everywhere: payment requests by id, then tuitions by id
        holders = await self._lock_holders(tuition_ids)
        tuitions = await self._lock_tuitions(tuition_ids)
        found = {t.id for t in tuitions}
        missing = [tid for tid in tuition_ids if tid not in found]
        if missing:
            raise NotFoundError("Tuition", ", ".join(str(m) for m in missing))

        foreign = [t.id for t in tuitions if t.student_id != student_id]
        if foreign:
            raise ValidationError(
                f"Tuition(s) {foreign} do not belong to student {student_id}",
                field="tuition_ids",
            )

        paid = [t.id for t in tuitions if t.is_paid]
        if paid:
            raise ObligationUnavailableError(paid, "already paid")

        await self._check_locks(tuitions, holders)

        allocations = [(t, remaining(t)) for t in tuitions]
        settled = [t.id for t, amount in allocations if amount <= ZERO]
        if settled:
            raise ObligationUnavailableError(settled, "nothing left to pay")
        base_amount = sum_money(amount for _, amount in allocations)

        reference_number = await DocumentNumberGenerator(self.db).generate(PAYMENT_REQUEST_PREFIX)
        request = await self._insert_with_unique_code(
            PaymentRequest(
                reference_number=reference_number,
                student_id=student_id,
                base_amount=base_amount,
                status=PaymentRequestStatus.PENDING.value,
                idempotency_key=idempotency_key,
                expires_at=now + timedelta(minutes=settings.payment_request_expiry_minutes),
                created_by_id=created_by_id,
            )
        )

        for tuition, amount in allocations:
            self.db.add(
                PaymentRequestTuition(
                    payment_request_id=request.id, tuition_id=tuition.id, amount=amount
                )
            )

        # Compare-and-set: only rows nobody else locked in the meantime
        locked = await self.db.execute(
            update(Tuition)
            .where(
                Tuition.id.in_(tuition_ids),
                Tuition.pending_payment_request_id.is_(None),
            )
            .values(pending_payment_request_id=request.id)
            .execution_options(synchronize_session="evaluate")
        )
        if locked.rowcount != len(tuition_ids):
            raise ObligationUnavailableError(tuition_ids, "locked by another payment request")

        if record is not None:
            record.payment_request_id = request.id

        await self.audit.log(
            action=AuditAction.CREATE_PAYMENT_REQUEST,
            entity_type=ENTITY,
            entity_id=request.id,
            entity_identifier=reference_number,
            user_id=created_by_id,
            new_values={
                "student_id": student_id,
                "tuition_ids": tuition_ids,
                "base_amount": str(base_amount),
                "unique_code": request.unique_code,
                "total_amount": str(request.total_amount),
            },
        )
        await self.db.commit()

        logger.info(
            "Payment request %s created for student %s: %s + %s = %s",
            reference_number,
            student_id,
            base_amount,
            request.unique_code,
            request.total_amount,
        )
        return await self.get_request(request.id)

    async def _replay(
        self, key: str, now: datetime
    ) -> tuple[PaymentRequest | None, IdempotencyRecord | None]:
        """(original request, record) for a key; no original when the key lapsed."""
        result = await self.db.execute(
            select(IdempotencyRecord)
            .where(IdempotencyRecord.key == key)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None, None
        if (
            record.status == IdempotencyStatus.ACTIVE.value
            and ensure_aware(record.expires_at) > now
            and record.payment_request_id is not None
        ):
            return await self.get_request(record.payment_request_id), record
        return None, record

    async def _claim_key(
        self, key: str, record: IdempotencyRecord | None, now: datetime
    ) -> IdempotencyRecord:
        """Insert the key, or recycle a lapsed record, inside this transaction."""
        expires_at = now + timedelta(hours=settings.idempotency_ttl_hours)
        if record is None:
            record = IdempotencyRecord(
                key=key,
                status=IdempotencyStatus.ACTIVE.value,
                expires_at=expires_at,
            )
            self.db.add(record)
        else:
            record.status = IdempotencyStatus.ACTIVE.value
            record.payment_request_id = None
            record.expires_at = expires_at
        await self.db.flush()
        return record

    async def _insert_with_unique_code(self, request: PaymentRequest) -> PaymentRequest:
        """
        Pick a code whose total no PENDING request uses and insert the request.

        The partial unique index is the arbiter: a concurrent insert of the
        same total fails inside a savepoint and another code is drawn.
        """
        for _ in range(self.codes.max_attempts):
            code, total = self.codes.draw(request.base_amount)
            if await self.codes.is_taken(total):
                continue
            request.unique_code = code
            request.total_amount = total
            try:
                async with self.db.begin_nested():
                    self.db.add(request)
                    await self.db.flush()
            except IntegrityError:
                logger.debug("Total %s taken concurrently, drawing again", total)
                continue
            return request

        logger.warning(
            "Unique code exhausted for base amount %s after %d attempts",
            request.base_amount,
            self.codes.max_attempts,
        )
        raise DisambiguationExhaustedError(request.base_amount, self.codes.max_attempts)

    async def _lock_holders(self, tuition_ids: list[int]) -> dict[int, PaymentRequest]:
        """Lock the requests currently holding any of these tuitions, in id order."""
        result = await self.db.execute(
            select(Tuition.pending_payment_request_id)
            .where(
                Tuition.id.in_(tuition_ids),
                Tuition.pending_payment_request_id.is_not(None),
            )
            .distinct()
        )
        holder_ids = sorted(result.scalars().all())
        return {holder_id: await self._lock_request(holder_id) for holder_id in holder_ids}

    async def _check_locks(
        self, tuitions: list[Tuition], holders: dict[int, PaymentRequest]
    ) -> None:
        """
        Refuse tuitions held by a live request. A holder that is PENDING but
        past expiry is expired here, within this transaction.
        """
        holder_ids = {t.pending_payment_request_id for t in tuitions if t.pending_payment_request_id}
        for holder_id in sorted(holder_ids):
            held = [t.id for t in tuitions if t.pending_payment_request_id == holder_id]
            holder = holders.get(holder_id)
            if holder is None:
                # Claimed after the holders were locked; a fresh request is live
                raise ObligationUnavailableError(
                    held, "locked by another payment request", held_by_request_id=holder_id
                )
            if self.is_expired(holder):
                await self._expire(holder)
                continue
            if not holder.is_terminal:
                raise ObligationUnavailableError(
                    held, "locked by another payment request", held_by_request_id=holder_id
                )
            # Terminal holder left a lock behind
            await self._release_locks(holder)

    # --- Transitions ---

    async def cancel(self, request_id: int, cancelled_by_id: int | None = None) -> PaymentRequest:
        """PENDING and not expired -> CANCELLED; releases the locks."""
        request = await self._lock_request(request_id)
        await self._require_live_pending(request, "cancel")

        request.status = PaymentRequestStatus.CANCELLED.value
        await self._release_locks(request)
        await self.audit.log(
            action=AuditAction.CANCEL,
            entity_type=ENTITY,
            entity_id=request.id,
            entity_identifier=request.reference_number,
            user_id=cancelled_by_id,
            old_values={"status": PaymentRequestStatus.PENDING.value},
            new_values={"status": request.status},
        )
        await self.db.commit()

        logger.info("Payment request %s cancelled", request.reference_number)
        return await self.get_request(request_id)

    async def expire(self, request_id: int) -> PaymentRequest:
        """PENDING past expiry -> EXPIRED; releases the locks. Called by the sweeper."""
        request = await self._lock_request(request_id)
        if not self.is_expired(request):
            raise InvalidTransitionError(ENTITY, request_id, self.effective_status(request), "expire")

        await self._expire(request)
        await self.db.commit()
        return await self.get_request(request_id)

    async def begin_verification(self, request_id: int, actor_id: int | None = None) -> PaymentRequest:
        """PENDING -> VERIFYING, for settlement checks that complete later."""
        request = await self._lock_request(request_id)
        await self._require_live_pending(request, "verify")

        request.status = PaymentRequestStatus.VERIFYING.value
        await self.audit.log(
            action=AuditAction.UPDATE,
            entity_type=ENTITY,
            entity_id=request.id,
            entity_identifier=request.reference_number,
            user_id=actor_id,
            old_values={"status": PaymentRequestStatus.PENDING.value},
            new_values={"status": request.status},
        )
        await self.db.commit()
        return await self.get_request(request_id)

    async def fail_verification(
        self, request_id: int, reason: str, actor_id: int | None = None
    ) -> PaymentRequest:
        """VERIFYING -> FAILED; releases the locks."""
        request = await self._lock_request(request_id)
        if request.status != PaymentRequestStatus.VERIFYING.value:
            raise InvalidTransitionError(ENTITY, request_id, self.effective_status(request), "fail")

        request.status = PaymentRequestStatus.FAILED.value
        request.failure_reason = reason
        await self._release_locks(request)
        await self.audit.log(
            action=AuditAction.FAIL_PAYMENT_REQUEST,
            entity_type=ENTITY,
            entity_id=request.id,
            entity_identifier=request.reference_number,
            user_id=actor_id,
            new_values={"status": request.status, "reason": reason},
        )
        await self.db.commit()

        logger.info("Payment request %s failed verification: %s", request.reference_number, reason)
        return await self.get_request(request_id)

    async def settle(
        self,
        request_id: int,
        bank_account_id: int,
        actor_id: int | None = None,
    ) -> tuple[PaymentRequest, list[TuitionSettled]]:
        """
        Mark the request VERIFIED and post every allocation to the ledger.

        All or nothing: if any covered tuition is no longer locked by this
        request, already PAID, or owes less than its allocation, nothing is
        written and StaleRequestError is raised; the request stays as it was.
        """
        request = await self._lock_request(request_id)
        if request.status == PaymentRequestStatus.VERIFIED.value:
            raise AlreadySettledError(ENTITY, request_id, request.status)
        if request.is_pending:
            await self._require_live_pending(request, "settle")
        elif request.status != PaymentRequestStatus.VERIFYING.value:
            raise InvalidTransitionError(ENTITY, request_id, request.status, "settle")

        bank_account = await self.db.get(BankAccount, bank_account_id)
        if not bank_account:
            raise NotFoundError("BankAccount", bank_account_id)
        if not bank_account.is_active:
            raise ValidationError("Bank account is not active", field="bank_account_id")

        tuitions = {t.id: t for t in await self._lock_tuitions(request.tuition_ids)}
        self._check_allocations(request, tuitions)

        now = self.clock()
        note = f"Payment request #{request.id} ({request.reference_number})"
        events: list[TuitionSettled] = []
        try:
            for allocation in request.allocations:
                tuition = tuitions[allocation.tuition_id]
                payment = await self.payments.post_to_ledger(
                    tuition,
                    allocation.amount,
                    SettlementSource.ONLINE,
                    actor_id=None,
                    notes=note,
                    payment_request_id=request.id,
                )
                tuition.pending_payment_request_id = None
                events.append(
                    TuitionSettled(
                        tuition_id=tuition.id,
                        student_id=tuition.student_id,
                        amount=round_money(allocation.amount),
                        new_status=tuition.status,
                        source=SettlementSource.ONLINE,
                        payment_request_id=request.id,
                        payment_number=payment.payment_number,
                    )
                )

            previous_status = request.status
            request.status = PaymentRequestStatus.VERIFIED.value
            request.verified_at = now
            request.bank_account_id = bank_account.id

            student = await self.db.get(Student, request.student_id)
            if student:
                student.last_payment_at = now

            await self.audit.log(
                action=AuditAction.VERIFY_PAYMENT_REQUEST,
                entity_type=ENTITY,
                entity_id=request.id,
                entity_identifier=request.reference_number,
                user_id=actor_id,
                old_values={"status": previous_status},
                new_values={
                    "status": request.status,
                    "bank_account_id": bank_account.id,
                    "total_amount": str(request.total_amount),
                },
            )
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise ConcurrencyConflictError("Tuition")
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Payment request %s settled on account %s (%d tuitions)",
            request.reference_number,
            bank_account.id,
            len(events),
        )
        await publish(events)
        return await self.get_request(request_id), events

    async def match_transfer(
        self, amount: Decimal, bank_account_id: int
    ) -> tuple[PaymentRequest, list[TuitionSettled]] | None:
        """
        Settle the PENDING, unexpired request whose total equals an incoming
        transfer. Oldest first; None when nothing matches.
        """
        result = await self.db.execute(
            select(PaymentRequest.id)
            .where(
                PaymentRequest.total_amount == round_money(amount),
                PaymentRequest.status == PaymentRequestStatus.PENDING.value,
                PaymentRequest.expires_at > self.clock(),
            )
            .order_by(PaymentRequest.created_at, PaymentRequest.id)
            .limit(1)
        )
        request_id = result.scalar_one_or_none()
        if request_id is None:
            logger.info("No pending payment request matches transfer of %s", amount)
            return None
        return await self.settle(request_id, bank_account_id)

    # --- Sweeper support ---

    async def list_overdue_ids(self) -> list[int]:
        result = await self.db.execute(
            select(PaymentRequest.id)
            .where(
                PaymentRequest.status == PaymentRequestStatus.PENDING.value,
                PaymentRequest.expires_at <= self.clock(),
            )
            .order_by(PaymentRequest.expires_at, PaymentRequest.id)
        )
        return list(result.scalars().all())

    async def deactivate_expired_keys(self) -> int:
        result = await self.db.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.status == IdempotencyStatus.ACTIVE.value,
                IdempotencyRecord.expires_at <= self.clock(),
            )
            .values(status=IdempotencyStatus.INACTIVE.value)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0

    # --- Bank accounts ---

    async def create_bank_account(self, data: BankAccountCreate, created_by_id: int | None = None) -> BankAccount:
        account = BankAccount(**data.model_dump())
        self.db.add(account)
        await self.db.flush()
        await self.audit.log(
            action=AuditAction.CREATE,
            entity_type="BankAccount",
            entity_id=account.id,
            entity_identifier=f"{account.bank_name} {account.account_number}",
            user_id=created_by_id,
        )
        await self.db.commit()
        await self.db.refresh(account)
        return account

    async def list_bank_accounts(self, active_only: bool = True) -> list[BankAccount]:
        query = select(BankAccount)
        if active_only:
            query = query.where(BankAccount.is_active.is_(True))
        result = await self.db.execute(query.order_by(BankAccount.display_order, BankAccount.id))
        return list(result.scalars().all())

    # --- Helpers ---

    async def _lock_request(self, request_id: int) -> PaymentRequest:
        result = await self.db.execute(
            select(PaymentRequest)
            .where(PaymentRequest.id == request_id)
            .options(selectinload(PaymentRequest.allocations))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if not request:
            raise NotFoundError(ENTITY, request_id)
        return request

    async def _lock_tuitions(self, tuition_ids: list[int]) -> list[Tuition]:
        result = await self.db.execute(
            select(Tuition)
            .where(Tuition.id.in_(tuition_ids))
            .order_by(Tuition.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _require_live_pending(self, request: PaymentRequest, action: str) -> None:
        """
        Refuse anything but a PENDING request before its expiry. An overdue
        request is expired and committed first, so the refusal is durable.
        """
        if request.status != PaymentRequestStatus.PENDING.value:
            raise InvalidTransitionError(ENTITY, request.id, request.status, action)
        if self.is_expired(request):
            await self._expire(request)
            await self.db.commit()
            raise InvalidTransitionError(
                ENTITY, request.id, PaymentRequestStatus.EXPIRED.value, action
            )

    async def _expire(self, request: PaymentRequest) -> None:
        request.status = PaymentRequestStatus.EXPIRED.value
        await self._release_locks(request)
        await self.audit.log(
            action=AuditAction.EXPIRE_PAYMENT_REQUEST,
            entity_type=ENTITY,
            entity_id=request.id,
            entity_identifier=request.reference_number,
            old_values={"status": PaymentRequestStatus.PENDING.value},
            new_values={"status": request.status},
        )
        logger.info("Payment request %s expired", request.reference_number)

    async def _release_locks(self, request: PaymentRequest) -> None:
        await self.db.execute(
            update(Tuition)
            .where(Tuition.pending_payment_request_id == request.id)
            .values(pending_payment_request_id=None)
            .execution_options(synchronize_session="evaluate")
        )

    @staticmethod
    def _check_allocations(request: PaymentRequest, tuitions: dict[int, Tuition]) -> None:
        if not request.allocations:
            raise StaleRequestError(request.id, "request has no tuitions")
        for allocation in request.allocations:
            tuition = tuitions.get(allocation.tuition_id)
            if tuition is None:
                raise StaleRequestError(request.id, f"tuition {allocation.tuition_id} no longer exists")
            if tuition.pending_payment_request_id != request.id:
                raise StaleRequestError(request.id, f"tuition {tuition.id} is no longer locked by this request")
            if tuition.is_paid:
                raise StaleRequestError(request.id, f"tuition {tuition.id} is already paid")
            if round_money(allocation.amount) > remaining(tuition):
                raise StaleRequestError(
                    request.id,
                    f"tuition {tuition.id} owes {remaining(tuition)}, less than allocated {allocation.amount}",
                )
