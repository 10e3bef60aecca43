"""Tests for the fee calculator."""

from decimal import Decimal

from src.modules.tuitions.fees import (
    FeeSnapshot,
    derive_status,
    effective_fee,
    remaining,
    scholarship_coverage,
)
from src.modules.tuitions.models import TuitionStatus


def _snapshot(fee="500000", scholarship="0", discount="0", paid="0") -> FeeSnapshot:
    return FeeSnapshot(
        fee_amount=Decimal(fee),
        scholarship_amount=Decimal(scholarship),
        discount_amount=Decimal(discount),
        paid_amount=Decimal(paid),
    )


class TestEffectiveFee:
    def test_reductions_subtract(self):
        t = _snapshot(scholarship="100000", discount="50000")
        assert effective_fee(t) == Decimal("350000.00")

    def test_never_negative(self):
        t = _snapshot(scholarship="400000", discount="200000")
        assert effective_fee(t) == Decimal("0.00")

    def test_remaining_never_negative(self):
        t = _snapshot(scholarship="400000", paid="300000")
        assert remaining(t) == Decimal("0.00")


class TestDeriveStatus:
    def test_unpaid(self):
        assert derive_status(_snapshot()) == TuitionStatus.UNPAID

    def test_partial(self):
        assert derive_status(_snapshot(paid="300000")) == TuitionStatus.PARTIAL

    def test_paid_exact(self):
        assert derive_status(_snapshot(paid="500000")) == TuitionStatus.PAID

    def test_fully_covered_is_paid_without_money(self):
        """A tuition reduced to zero is settled with nothing paid."""
        assert derive_status(_snapshot(scholarship="500000")) == TuitionStatus.PAID

    def test_discount_can_flip_partial_to_paid(self):
        assert derive_status(_snapshot(discount="200000", paid="300000")) == TuitionStatus.PAID


class TestScholarshipCoverage:
    def test_partial_coverage(self):
        coverage = scholarship_coverage(Decimal("250000"), Decimal("500000"))
        assert coverage["percentage"] == Decimal("50.00")
        assert coverage["is_full"] is False
        assert coverage["remaining"] == Decimal("250000.00")

    def test_full_coverage_capped(self):
        coverage = scholarship_coverage(Decimal("600000"), Decimal("500000"))
        assert coverage["percentage"] == Decimal("100.00")
        assert coverage["is_full"] is True
        assert coverage["remaining"] == Decimal("0.00")

    def test_unknown_fee_is_never_full(self):
        coverage = scholarship_coverage(Decimal("600000"), None)
        assert coverage["is_full"] is False
        assert coverage["percentage"] == Decimal("0")


class TestFeeSnapshot:
    def test_changes_override_and_round(self):
        original = _snapshot(paid="100000")
        preview = FeeSnapshot.of(original, discount_amount=Decimal("50000.004"))
        assert preview.discount_amount == Decimal("50000.00")
        assert preview.paid_amount == Decimal("100000.00")
        assert original.discount_amount == Decimal("0")
