"""Disambiguating surcharge ("unique code") for transfer amounts.

Payers often owe identical round amounts. Adding a small random code makes
the transfer total unique among PENDING requests, so an incoming transfer
can be attributed to exactly one request. Uniqueness is global rather than
per receiving account: the payer picks the account at transfer time.
"""

import random
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.modules.payment_requests.models import PaymentRequest, PaymentRequestStatus
from src.shared.utils.money import round_money


class UniqueCodeAllocator:
    """Draws candidate codes and checks them against pending totals."""

    def __init__(
        self,
        db: AsyncSession,
        rng: random.Random | None = None,
        low: int | None = None,
        high: int | None = None,
        max_attempts: int | None = None,
    ):
        self.db = db
        self.rng = rng or random.SystemRandom()
        self.low = low if low is not None else settings.unique_code_min
        self.high = high if high is not None else settings.unique_code_max
        self.max_attempts = max_attempts or settings.unique_code_max_attempts

    def draw(self, base_amount: Decimal) -> tuple[int, Decimal]:
        code = self.rng.randint(self.low, self.high)
        return code, round_money(base_amount + code)

    async def is_taken(self, total_amount: Decimal) -> bool:
        """
        True when a PENDING request already uses this total.

        Expired-but-not-yet-swept requests count too: the partial unique
        index does not know about expiry.
        """
        result = await self.db.execute(
            select(PaymentRequest.id)
            .where(
                PaymentRequest.total_amount == total_amount,
                PaymentRequest.status == PaymentRequestStatus.PENDING.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None
