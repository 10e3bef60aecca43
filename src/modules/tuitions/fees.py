"""Fee calculator.

The only place that turns a tuition's amounts into what is owed and into a
status. Every engine (payments, scholarships, discounts, payment requests)
goes through these functions.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from src.modules.tuitions.models import TuitionStatus
from src.shared.utils.money import ZERO, clamp_non_negative, round_money


class FeeAmounts(Protocol):
    fee_amount: Decimal
    scholarship_amount: Decimal
    discount_amount: Decimal
    paid_amount: Decimal


def _amount(value: Decimal | None) -> Decimal:
    return round_money(value) if value is not None else ZERO


def effective_fee(tuition: FeeAmounts) -> Decimal:
    """max(fee - scholarship - discount, 0)."""
    return clamp_non_negative(
        _amount(tuition.fee_amount)
        - _amount(tuition.scholarship_amount)
        - _amount(tuition.discount_amount)
    )


def remaining(tuition: FeeAmounts) -> Decimal:
    """What is still owed; never negative."""
    return clamp_non_negative(effective_fee(tuition) - _amount(tuition.paid_amount))


def derive_status(tuition: FeeAmounts) -> TuitionStatus:
    paid = _amount(tuition.paid_amount)
    if paid >= effective_fee(tuition):
        return TuitionStatus.PAID
    if paid > ZERO:
        return TuitionStatus.PARTIAL
    return TuitionStatus.UNPAID


def refresh_status(tuition) -> TuitionStatus:
    """Write the derived status back onto a tuition row and return it."""
    status = derive_status(tuition)
    tuition.status = status.value
    return status


def scholarship_coverage(scholarship_total: Decimal, period_fee: Decimal | None) -> dict:
    """Coverage of a period fee by a scholarship total.

    Unknown or zero fee means coverage cannot be judged: never "full".
    """
    total = _amount(scholarship_total)
    if not period_fee or period_fee <= ZERO:
        return {"percentage": Decimal("0"), "is_full": False, "remaining": ZERO}
    percentage = min(total / period_fee * 100, Decimal("100"))
    return {
        "percentage": round_money(percentage),
        "is_full": total >= period_fee,
        "remaining": clamp_non_negative(period_fee - total),
    }


@dataclass
class FeeSnapshot:
    """Detached copy of a tuition's amounts, for previewing a change."""

    fee_amount: Decimal
    scholarship_amount: Decimal
    discount_amount: Decimal
    paid_amount: Decimal

    @classmethod
    def of(cls, tuition: FeeAmounts, **changes) -> "FeeSnapshot":
        snapshot = cls(
            fee_amount=_amount(tuition.fee_amount),
            scholarship_amount=_amount(tuition.scholarship_amount),
            discount_amount=_amount(tuition.discount_amount),
            paid_amount=_amount(tuition.paid_amount),
        )
        for key, value in changes.items():
            setattr(snapshot, key, _amount(value))
        return snapshot
