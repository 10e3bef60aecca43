"""Tests for Payment Requests module."""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.clock import ensure_aware
from src.core.config import settings
from src.core.events import SettlementSource
from src.core.exceptions import (
    AlreadySettledError,
    DisambiguationExhaustedError,
    InvalidTransitionError,
    ObligationUnavailableError,
    StaleRequestError,
    ValidationError,
)
from src.modules.payment_requests.models import (
    IdempotencyRecord,
    IdempotencyStatus,
    PaymentRequest,
    PaymentRequestStatus,
)
from src.modules.payment_requests.service import PaymentRequestService
from src.modules.payment_requests.sweeper import sweep_expired_requests
from src.modules.payment_requests.unique_code import UniqueCodeAllocator
from src.modules.payments.models import Payment
from src.modules.payments.service import PaymentService
from src.modules.students.models import Student
from src.modules.tuitions.models import Tuition, TuitionStatus
from src.modules.tuitions.service import TuitionService
from tests.factories import (
    auth_headers,
    create_bank_account,
    create_class,
    create_operator,
    create_student,
    create_tuition,
)

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedRandom(random.Random):
    """randint returns the scripted codes in order, repeating the last one."""

    def __init__(self, *codes: int):
        super().__init__(0)
        self.codes = list(codes)

    def randint(self, a: int, b: int) -> int:
        if len(self.codes) > 1:
            return self.codes.pop(0)
        return self.codes[0]


class TestUniqueCodeAllocator:
    async def test_draw_within_range(self, db_session: AsyncSession):
        allocator = UniqueCodeAllocator(db_session, rng=random.Random(7))
        for _ in range(100):
            code, total = allocator.draw(Decimal("150000.00"))
            assert 1 <= code <= 999
            assert total == Decimal("150000.00") + code


class TestPaymentRequestService:
    """Tests for PaymentRequestService."""

    async def _setup_test_data(self, db_session: AsyncSession) -> dict:
        """Two students; the first owes 100,000 (JULY) and 50,000 (AUGUST)."""
        class_academic = await create_class(db_session)
        student = await create_student(db_session, class_academic)
        other = await create_student(db_session, class_academic, "NIS-0002")
        july = await create_tuition(
            db_session,
            student,
            class_academic,
            "JULY",
            discount_amount=Decimal("400000.00"),
        )
        august = await create_tuition(
            db_session,
            student,
            class_academic,
            "AUGUST",
            paid_amount=Decimal("450000.00"),
            status=TuitionStatus.PARTIAL,
        )
        other_july = await create_tuition(
            db_session,
            other,
            class_academic,
            "JULY",
            discount_amount=Decimal("350000.00"),
        )
        account = await create_bank_account(db_session)
        await db_session.commit()
        return {
            "student_id": student.id,
            "other_id": other.id,
            "july_id": july.id,
            "august_id": august.id,
            "other_july_id": other_july.id,
            "account_id": account.id,
        }

    async def _tuition(self, db_session: AsyncSession, tuition_id: int) -> Tuition:
        return await db_session.get(Tuition, tuition_id, populate_existing=True)

    async def _request(self, db_session: AsyncSession, request_id: int) -> PaymentRequest:
        return await db_session.get(PaymentRequest, request_id, populate_existing=True)

    async def test_create(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = PaymentRequestService(db_session, clock=FakeClock(), rng=random.Random(42))

        request = await service.create(data["student_id"], [data["july_id"], data["august_id"]])

        assert request.status == PaymentRequestStatus.PENDING.value
        assert request.reference_number.startswith("PRQ-")
        assert request.base_amount == Decimal("150000.00")
        assert 1 <= request.unique_code <= 999
        assert request.total_amount == Decimal("150000.00") + request.unique_code
        assert {a.tuition_id: a.amount for a in request.allocations} == {
            data["july_id"]: Decimal("100000.00"),
            data["august_id"]: Decimal("50000.00"),
        }
        assert ensure_aware(request.expires_at) == T0 + timedelta(minutes=10)

        for tuition_id in (data["july_id"], data["august_id"]):
            tuition = await self._tuition(db_session, tuition_id)
            assert tuition.pending_payment_request_id == request.id

    async def test_duplicate_tuition_ids_collapse(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = PaymentRequestService(db_session, clock=FakeClock())

        request = await service.create(data["student_id"], [data["july_id"], data["july_id"]])
        assert request.base_amount == Decimal("100000.00")
        assert len(request.allocations) == 1

    async def test_overlap_rejected(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = PaymentRequestService(db_session, clock=FakeClock())
        first = await service.create(data["student_id"], [data["july_id"], data["august_id"]])
        first_id = first.id

        with pytest.raises(ObligationUnavailableError) as exc_info:
            await service.create(data["student_id"], [data["august_id"]])
        assert exc_info.value.details["held_by_request_id"] == first_id
        assert exc_info.value.details["tuition_ids"] == [data["august_id"]]

        count = await db_session.execute(select(func.count(PaymentRequest.id)))
        assert count.scalar() == 1

    async def test_paid_tuition_rejected(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        tuition = await self._tuition(db_session, data["july_id"])
        tuition.paid_amount = Decimal("100000.00")
        tuition.status = TuitionStatus.PAID.value
        await db_session.commit()

        with pytest.raises(ObligationUnavailableError):
            await PaymentRequestService(db_session).create(data["student_id"], [data["july_id"]])

    async def test_foreign_tuition_rejected(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        with pytest.raises(ValidationError):
            await PaymentRequestService(db_session).create(
                data["student_id"], [data["other_july_id"]]
            )

    async def test_empty_selection_rejected(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        with pytest.raises(ValidationError):
            await PaymentRequestService(db_session).create(data["student_id"], [])

    async def test_totals_distinct_when_codes_collide(self, db_session: AsyncSession):
        """Same base amount, same first draw: the second request draws again."""
        data = await self._setup_test_data(db_session)
        clock = FakeClock()

        first = await PaymentRequestService(
            db_session, clock=clock, rng=ScriptedRandom(5)
        ).create(data["student_id"], [data["july_id"], data["august_id"]])
        second = await PaymentRequestService(
            db_session, clock=clock, rng=ScriptedRandom(5, 5, 9)
        ).create(data["other_id"], [data["other_july_id"]])

        assert first.total_amount == Decimal("150005.00")
        assert second.base_amount == Decimal("150000.00")
        assert second.unique_code == 9
        assert second.total_amount == Decimal("150009.00")

    async def test_unique_code_exhausted(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        clock = FakeClock()
        await PaymentRequestService(db_session, clock=clock, rng=ScriptedRandom(5)).create(
            data["student_id"], [data["july_id"], data["august_id"]]
        )

        with pytest.raises(DisambiguationExhaustedError) as exc_info:
            await PaymentRequestService(db_session, clock=clock, rng=ScriptedRandom(5)).create(
                data["other_id"], [data["other_july_id"]]
            )
        assert exc_info.value.retryable is True

        other_july = await self._tuition(db_session, data["other_july_id"])
        assert other_july.pending_payment_request_id is None

    async def test_settle(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = PaymentRequestService(db_session, clock=FakeClock())
        created = await service.create(data["student_id"], [data["july_id"], data["august_id"]])

        locked = await TuitionService(db_session).list_locked_by_request(created.id)
        assert [t.id for t in locked] == [data["july_id"], data["august_id"]]

        request, events = await service.settle(created.id, data["account_id"])

        assert await TuitionService(db_session).list_locked_by_request(created.id) == []

        assert request.status == PaymentRequestStatus.VERIFIED.value
        assert request.bank_account_id == data["account_id"]
        assert request.verified_at is not None
        assert len(events) == 2
        assert all(e.source == SettlementSource.ONLINE for e in events)
        assert all(e.new_status == TuitionStatus.PAID.value for e in events)

        for tuition_id in (data["july_id"], data["august_id"]):
            tuition = await self._tuition(db_session, tuition_id)
            assert tuition.status == TuitionStatus.PAID.value
            assert tuition.pending_payment_request_id is None

        result = await db_session.execute(
            select(Payment).where(Payment.payment_request_id == created.id)
        )
        payments = list(result.scalars().all())
        assert len(payments) == 2
        assert all(p.actor == "system" for p in payments)
        assert all(p.notes.startswith(f"Payment request #{created.id}") for p in payments)

        student = await db_session.get(Student, data["student_id"], populate_existing=True)
        assert student.last_payment_at is not None

        with pytest.raises(AlreadySettledError):
            await service.settle(created.id, data["account_id"])

    async def test_settle_stale_writes_nothing(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        operator = await create_operator(db_session)
        service = PaymentRequestService(db_session, clock=FakeClock())
        created = await service.create(data["student_id"], [data["july_id"], data["august_id"]])

        # Cash at the counter settles August while the request is pending
        await PaymentService(db_session).apply_payment(
            data["august_id"], Decimal("50000.00"), operator.id
        )

        with pytest.raises(StaleRequestError):
            await service.settle(created.id, data["account_id"])

        request = await self._request(db_session, created.id)
        assert request.status == PaymentRequestStatus.PENDING.value
        july = await self._tuition(db_session, data["july_id"])
        assert july.paid_amount == Decimal("0.00")
        assert july.pending_payment_request_id == created.id
        online = await db_session.execute(
            select(Payment).where(Payment.source == SettlementSource.ONLINE.value)
        )
        assert online.scalars().all() == []

    async def test_settle_inactive_account(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        inactive = await create_bank_account(db_session, "0987654321", is_active=False)
        await db_session.commit()
        service = PaymentRequestService(db_session, clock=FakeClock())
        created = await service.create(data["student_id"], [data["july_id"]])

        with pytest.raises(ValidationError):
            await service.settle(created.id, inactive.id)

        request = await self._request(db_session, created.id)
        assert request.status == PaymentRequestStatus.PENDING.value

    async def test_cancel_releases_locks(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = PaymentRequestService(db_session, clock=FakeClock())
        created = await service.create(data["student_id"], [data["july_id"]])

        cancelled = await service.cancel(created.id)
        assert cancelled.status == PaymentRequestStatus.CANCELLED.value

        july = await self._tuition(db_session, data["july_id"])
        assert july.pending_payment_request_id is None

        with pytest.raises(InvalidTransitionError):
            await service.cancel(created.id)

        # The tuition can be requested again
        again = await service.create(data["student_id"], [data["july_id"]])
        assert again.id != created.id

    async def test_lazy_expiry(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        clock = FakeClock()
        service = PaymentRequestService(db_session, clock=clock)
        created = await service.create(data["student_id"], [data["july_id"]])

        clock.advance(minutes=9, seconds=59)
        assert service.effective_status(await service.get_request(created.id)) == "pending"

        clock.advance(seconds=1)
        request = await service.get_request(created.id)
        assert service.effective_status(request) == PaymentRequestStatus.EXPIRED.value
        assert request.status == PaymentRequestStatus.PENDING.value
        assert await service.get_active_request(data["student_id"]) is None

        with pytest.raises(InvalidTransitionError) as exc_info:
            await service.settle(created.id, data["account_id"])
        assert exc_info.value.details["current_status"] == "expired"

        # The refusal persisted the expiry
        stored = await self._request(db_session, created.id)
        assert stored.status == PaymentRequestStatus.EXPIRED.value
        july = await self._tuition(db_session, data["july_id"])
        assert july.pending_payment_request_id is None

        with pytest.raises(InvalidTransitionError):
            await service.cancel(created.id)

    async def test_expired_holder_released_on_create(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        clock = FakeClock()
        service = PaymentRequestService(db_session, clock=clock)
        stale = await service.create(data["student_id"], [data["july_id"]])

        clock.advance(minutes=11)
        fresh = await service.create(data["student_id"], [data["july_id"], data["august_id"]])

        assert fresh.status == PaymentRequestStatus.PENDING.value
        previous = await self._request(db_session, stale.id)
        assert previous.status == PaymentRequestStatus.EXPIRED.value
        july = await self._tuition(db_session, data["july_id"])
        assert july.pending_payment_request_id == fresh.id

    async def test_concurrent_overlapping_creates(self, concurrent_session_factory):
        async with concurrent_session_factory() as session:
            data = await self._setup_test_data(session)

        async def submit(tuition_ids: list[int]) -> int | ObligationUnavailableError:
            async with concurrent_session_factory() as session:
                service = PaymentRequestService(session, clock=FakeClock())
                try:
                    request = await service.create(data["student_id"], tuition_ids)
                except ObligationUnavailableError as exc:
                    return exc
                return request.id

        results = await asyncio.gather(
            submit([data["july_id"], data["august_id"]]),
            submit([data["august_id"]]),
        )

        created = [r for r in results if isinstance(r, int)]
        refused = [r for r in results if isinstance(r, ObligationUnavailableError)]
        assert len(created) == 1
        assert len(refused) == 1
        assert refused[0].details["held_by_request_id"] == created[0]

        async with concurrent_session_factory() as session:
            august = await session.get(Tuition, data["august_id"])
            assert august.pending_payment_request_id == created[0]
            pending = await session.execute(
                select(func.count(PaymentRequest.id)).where(
                    PaymentRequest.status == PaymentRequestStatus.PENDING.value
                )
            )
            assert pending.scalar() == 1

    async def test_single_active_request_per_student(
        self, db_session: AsyncSession, monkeypatch
    ):
        monkeypatch.setattr(settings, "payment_request_single_active", True)
        data = await self._setup_test_data(db_session)
        clock = FakeClock()
        service = PaymentRequestService(db_session, clock=clock)
        first = await service.create(data["student_id"], [data["july_id"]])
        first_id = first.id

        with pytest.raises(ObligationUnavailableError) as exc_info:
            await service.create(data["student_id"], [data["august_id"]])
        assert exc_info.value.details["held_by_request_id"] == first_id
        assert exc_info.value.details["tuition_ids"] == [data["july_id"]]

        # Other students are unaffected
        await service.create(data["other_id"], [data["other_july_id"]])

        # Once the first request lapses a new one is accepted
        clock.advance(minutes=11)
        again = await service.create(data["student_id"], [data["august_id"]])
        assert again.status == PaymentRequestStatus.PENDING.value

    async def test_multiple_requests_allowed_by_default(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = PaymentRequestService(db_session, clock=FakeClock())

        first = await service.create(data["student_id"], [data["july_id"]])
        second = await service.create(data["student_id"], [data["august_id"]])

        assert first.id != second.id
        active = await service.get_active_request(data["student_id"])
        assert active.id == second.id

    async def test_idempotent_replay(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        clock = FakeClock()
        service = PaymentRequestService(db_session, clock=clock)

        first = await service.create(data["student_id"], [data["july_id"]], idempotency_key="k-1")
        replay = await service.create(
            data["student_id"], [data["july_id"], data["august_id"]], idempotency_key="k-1"
        )
        assert replay.id == first.id

        count = await db_session.execute(select(func.count(PaymentRequest.id)))
        assert count.scalar() == 1

        # After the key's window it no longer replays
        clock.advance(hours=25)
        fresh = await service.create(data["student_id"], [data["august_id"]], idempotency_key="k-1")
        assert fresh.id != first.id

    async def test_verification_flow(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        clock = FakeClock()
        service = PaymentRequestService(db_session, clock=clock)
        first = await service.create(data["student_id"], [data["july_id"]])

        verifying = await service.begin_verification(first.id)
        assert verifying.status == PaymentRequestStatus.VERIFYING.value

        # Verification is not subject to the payment window
        clock.advance(hours=1)
        assert service.effective_status(verifying) == PaymentRequestStatus.VERIFYING.value

        failed = await service.fail_verification(first.id, "Amount mismatch")
        assert failed.status == PaymentRequestStatus.FAILED.value
        assert failed.failure_reason == "Amount mismatch"
        july = await self._tuition(db_session, data["july_id"])
        assert july.pending_payment_request_id is None

        with pytest.raises(InvalidTransitionError):
            await service.settle(first.id, data["account_id"])

        second = await service.create(data["student_id"], [data["july_id"]])
        await service.begin_verification(second.id)
        settled, _ = await service.settle(second.id, data["account_id"])
        assert settled.status == PaymentRequestStatus.VERIFIED.value

    async def test_match_transfer(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = PaymentRequestService(db_session, clock=FakeClock(), rng=ScriptedRandom(123))
        created = await service.create(data["student_id"], [data["july_id"]])

        assert await service.match_transfer(Decimal("100000.00"), data["account_id"]) is None

        matched = await service.match_transfer(Decimal("100123.00"), data["account_id"])
        assert matched is not None
        request, events = matched
        assert request.id == created.id
        assert request.status == PaymentRequestStatus.VERIFIED.value
        assert events[0].amount == Decimal("100000.00")


class TestPaymentRequestSweeper:
    """Tests for the expiration sweeper."""

    async def test_sweep(self, db_session: AsyncSession, session_factory):
        class_academic = await create_class(db_session)
        student = await create_student(db_session, class_academic)
        july = await create_tuition(db_session, student, class_academic, "JULY")
        august = await create_tuition(db_session, student, class_academic, "AUGUST")
        await db_session.commit()
        student_id, july_id, august_id = student.id, july.id, august.id

        clock = FakeClock()
        service = PaymentRequestService(db_session, clock=clock)
        overdue = await service.create(student_id, [july_id], idempotency_key="sweep-1")
        clock.advance(minutes=8)
        live = await service.create(student_id, [august_id])

        clock.advance(minutes=3)
        result = await sweep_expired_requests(session_factory, clock=clock)
        assert result.expired == 1
        assert result.failed == 0
        assert result.idempotency_deactivated == 0

        swept = await db_session.get(PaymentRequest, overdue.id, populate_existing=True)
        kept = await db_session.get(PaymentRequest, live.id, populate_existing=True)
        assert swept.status == PaymentRequestStatus.EXPIRED.value
        assert kept.status == PaymentRequestStatus.PENDING.value
        july = await db_session.get(Tuition, july_id, populate_existing=True)
        assert july.pending_payment_request_id is None

        # Nothing left to do on a second pass within the window
        again = await sweep_expired_requests(session_factory, clock=clock)
        assert again.expired == 0

        clock.advance(hours=24)
        later = await sweep_expired_requests(session_factory, clock=clock)
        assert later.expired == 1
        assert later.idempotency_deactivated == 1
        record = await db_session.execute(
            select(IdempotencyRecord)
            .where(IdempotencyRecord.key == "sweep-1")
            .execution_options(populate_existing=True)
        )
        assert record.scalar_one().status == IdempotencyStatus.INACTIVE.value


class TestPaymentRequestEndpoints:
    """Tests for payment request API endpoints."""

    async def _setup_auth_and_data(self, db_session: AsyncSession) -> tuple[dict, dict]:
        user = await create_operator(db_session)
        class_academic = await create_class(db_session)
        student = await create_student(db_session, class_academic)
        tuition = await create_tuition(db_session, student, class_academic, "JULY")
        account = await create_bank_account(db_session)
        await db_session.commit()
        ids = {"student_id": student.id, "tuition_id": tuition.id, "account_id": account.id}
        return auth_headers(user), ids

    async def test_create_and_settle_api(self, client: AsyncClient, db_session: AsyncSession):
        headers, ids = await self._setup_auth_and_data(db_session)

        response = await client.post(
            "/api/v1/payment-requests",
            headers=headers,
            json={
                "student_id": ids["student_id"],
                "tuition_ids": [ids["tuition_id"]],
                "idempotency_key": "checkout-1",
            },
        )
        assert response.status_code == 201
        body = response.json()["data"]
        assert body["status"] == "pending"
        assert Decimal(body["total_amount"]) == Decimal("500000.00") + body["unique_code"]
        expires_at = datetime.fromisoformat(body["expires_at"])
        display_expires_at = datetime.fromisoformat(body["display_expires_at"])
        assert expires_at - display_expires_at == timedelta(minutes=5)

        replay = await client.post(
            "/api/v1/payment-requests",
            headers=headers,
            json={
                "student_id": ids["student_id"],
                "tuition_ids": [ids["tuition_id"]],
                "idempotency_key": "checkout-1",
            },
        )
        assert replay.json()["data"]["id"] == body["id"]

        active = await client.get(
            "/api/v1/payment-requests/active",
            headers=headers,
            params={"student_id": ids["student_id"]},
        )
        assert active.json()["data"]["id"] == body["id"]

        settled = await client.post(
            f"/api/v1/payment-requests/{body['id']}/settle",
            headers=headers,
            json={"bank_account_id": ids["account_id"]},
        )
        assert settled.status_code == 200
        settlement = settled.json()["data"]
        assert settlement["request"]["status"] == "verified"
        assert settlement["settled"][0]["tuition_id"] == ids["tuition_id"]

    async def test_overlap_api(self, client: AsyncClient, db_session: AsyncSession):
        headers, ids = await self._setup_auth_and_data(db_session)
        payload = {"student_id": ids["student_id"], "tuition_ids": [ids["tuition_id"]]}

        first = await client.post("/api/v1/payment-requests", headers=headers, json=payload)
        second = await client.post("/api/v1/payment-requests", headers=headers, json=payload)

        assert second.status_code == 409
        details = second.json()["details"]
        assert details["held_by_request_id"] == first.json()["data"]["id"]
