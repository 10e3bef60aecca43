"""Tests for Scholarships module."""

from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.events import SettlementSource, register_listener, unregister_listener
from src.core.exceptions import DuplicateGrantError, NotFoundError
from src.modules.payments.models import Payment
from src.modules.scholarships.schemas import (
    ScholarshipCreate,
    ScholarshipFilters,
    ScholarshipImportRequest,
    ScholarshipImportRow,
)
from src.modules.scholarships.service import AUTO_SETTLE_NOTE, ScholarshipService
from src.modules.tuitions.models import Tuition, TuitionStatus
from tests.factories import (
    auth_headers,
    create_class,
    create_operator,
    create_student,
    create_tuition,
)


class TestScholarshipService:
    """Tests for ScholarshipService."""

    async def _setup_test_data(self, db_session: AsyncSession) -> dict:
        """One student with JULY unpaid, AUGUST partial and SEPTEMBER paid."""
        class_academic = await create_class(db_session)
        student = await create_student(db_session, class_academic)
        july = await create_tuition(db_session, student, class_academic, "JULY")
        august = await create_tuition(
            db_session,
            student,
            class_academic,
            "AUGUST",
            paid_amount=Decimal("100000.00"),
            status=TuitionStatus.PARTIAL,
        )
        september = await create_tuition(
            db_session,
            student,
            class_academic,
            "SEPTEMBER",
            paid_amount=Decimal("500000.00"),
            status=TuitionStatus.PAID,
        )
        await db_session.commit()
        return {
            "class": class_academic,
            "student": student,
            "july": july,
            "august": august,
            "september": september,
        }

    def _grant(self, data: dict, nominal: str, name: str = "Scholarship") -> ScholarshipCreate:
        return ScholarshipCreate(
            student_id=data["student"].id,
            class_academic_id=data["class"].id,
            nominal=Decimal(nominal),
            name=name,
        )

    async def _scholarship_payments(self, db_session: AsyncSession) -> list[Payment]:
        result = await db_session.execute(
            select(Payment)
            .where(Payment.source == SettlementSource.SCHOLARSHIP.value)
            .order_by(Payment.tuition_id)
        )
        return list(result.scalars().all())

    async def test_partial_grant_reconciles_without_settling(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = ScholarshipService(db_session)

        result = await service.grant_scholarship(self._grant(data, "200000"))

        assert result.scholarship.is_full_scholarship is False
        assert result.total_nominal == Decimal("200000.00")
        assert result.coverage_percentage == Decimal("40.00")
        assert result.auto_settled == []

        july = await db_session.get(Tuition, data["july"].id, populate_existing=True)
        assert july.scholarship_amount == Decimal("200000.00")
        assert july.status == TuitionStatus.UNPAID.value
        assert await self._scholarship_payments(db_session) == []

    async def test_crossing_grant_auto_settles_once(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = ScholarshipService(db_session)
        received = []

        async def listener(event):
            received.append(event)

        register_listener(listener)
        try:
            await service.grant_scholarship(self._grant(data, "300000", "Merit"))
            crossing = await service.grant_scholarship(self._grant(data, "200000", "Need"))
            after = await service.grant_scholarship(self._grant(data, "50000", "Sports"))
        finally:
            unregister_listener(listener)

        assert crossing.scholarship.is_full_scholarship is True
        assert {e.tuition_id for e in crossing.auto_settled} == {
            data["july"].id,
            data["august"].id,
        }
        assert after.auto_settled == []
        assert len(received) == 2

        payments = await self._scholarship_payments(db_session)
        assert len(payments) == 2
        assert all(p.recorded_by_id is None for p in payments)
        assert all(p.notes == AUTO_SETTLE_NOTE for p in payments)
        assert all(p.amount == Decimal("0.00") for p in payments)

        july = await db_session.get(Tuition, data["july"].id, populate_existing=True)
        august = await db_session.get(Tuition, data["august"].id, populate_existing=True)
        assert july.status == TuitionStatus.PAID.value
        assert august.status == TuitionStatus.PAID.value
        assert july.scholarship_amount == Decimal("550000.00")

        # Already settled tuitions keep their paid amount
        september = await db_session.get(Tuition, data["september"].id, populate_existing=True)
        assert september.paid_amount == Decimal("500000.00")

    async def test_duplicate_grant(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = ScholarshipService(db_session)
        await service.grant_scholarship(self._grant(data, "100000"))

        with pytest.raises(DuplicateGrantError):
            await service.grant_scholarship(self._grant(data, "100000"))

    async def test_fee_unknown_is_never_full(self, db_session: AsyncSession):
        class_academic = await create_class(db_session, default_fee=None)
        student = await create_student(db_session, class_academic)
        await db_session.commit()

        result = await ScholarshipService(db_session).grant_scholarship(
            ScholarshipCreate(
                student_id=student.id,
                class_academic_id=class_academic.id,
                nominal=Decimal("9000000"),
            )
        )
        assert result.period_fee is None
        assert result.scholarship.is_full_scholarship is False

    async def test_revoke_reopens(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = ScholarshipService(db_session)
        granted = await service.grant_scholarship(self._grant(data, "400000"))

        august = await db_session.get(Tuition, data["august"].id, populate_existing=True)
        assert august.status == TuitionStatus.PAID.value

        result = await service.revoke_scholarship(granted.scholarship.id)
        assert result.total_nominal == Decimal("0.00")

        august = await db_session.get(Tuition, data["august"].id, populate_existing=True)
        assert august.scholarship_amount == Decimal("0.00")
        assert august.status == TuitionStatus.PARTIAL.value

        with pytest.raises(NotFoundError):
            await service.get_scholarship(granted.scholarship.id)

    async def test_sync_skips_paid(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = ScholarshipService(db_session)
        await service.grant_scholarship(self._grant(data, "100000"))

        # Drift the denormalized amounts by hand
        for key in ("july", "september"):
            tuition = await db_session.get(Tuition, data[key].id, populate_existing=True)
            tuition.scholarship_amount = Decimal("0.00")
        await db_session.commit()

        result = await service.sync_scholarships()
        assert result.updated == 1
        assert result.status_changed == 0

        july = await db_session.get(Tuition, data["july"].id, populate_existing=True)
        september = await db_session.get(Tuition, data["september"].id, populate_existing=True)
        assert july.scholarship_amount == Decimal("100000.00")
        assert september.scholarship_amount == Decimal("0.00")

    async def test_bulk_import(self, db_session: AsyncSession):
        data = await self._setup_test_data(db_session)
        service = ScholarshipService(db_session)
        student_number = data["student"].student_number

        result = await service.grant_bulk(
            ScholarshipImportRequest(
                rows=[
                    ScholarshipImportRow(
                        student_number=student_number,
                        class_academic_id=data["class"].id,
                        nominal=Decimal("100000"),
                    ),
                    ScholarshipImportRow(
                        student_number=student_number,
                        class_academic_id=data["class"].id,
                        nominal=Decimal("100000"),
                    ),
                    ScholarshipImportRow(
                        student_number="NIS-9999",
                        class_academic_id=data["class"].id,
                        nominal=Decimal("100000"),
                    ),
                ]
            )
        )

        assert result.imported == 1
        assert result.skipped == 1
        assert len(result.errors) == 1
        assert result.errors[0].row == 3

        scholarships, total = await service.list_scholarships(
            ScholarshipFilters(student_id=data["student"].id)
        )
        assert total == 1
        assert scholarships[0].name == "Imported Scholarship"


class TestScholarshipEndpoints:
    """Tests for scholarship API endpoints."""

    async def test_grant_api(self, client: AsyncClient, db_session: AsyncSession):
        user = await create_operator(db_session)
        class_academic = await create_class(db_session)
        student = await create_student(db_session, class_academic)
        await create_tuition(db_session, student, class_academic, "JULY")
        await db_session.commit()

        response = await client.post(
            "/api/v1/scholarships",
            headers=auth_headers(user),
            json={
                "student_id": student.id,
                "class_academic_id": class_academic.id,
                "nominal": "500000.00",
            },
        )
        assert response.status_code == 201
        body = response.json()["data"]
        assert body["scholarship"]["is_full_scholarship"] is True
        assert len(body["auto_settled"]) == 1
        assert body["auto_settled"][0]["source"] == "scholarship"

        duplicate = await client.post(
            "/api/v1/scholarships",
            headers=auth_headers(user),
            json={
                "student_id": student.id,
                "class_academic_id": class_academic.id,
                "nominal": "1000.00",
            },
        )
        assert duplicate.status_code == 409
