"""Expiration sweeper.

Expires PENDING payment requests whose window has passed, one transaction per
request, and retires lapsed idempotency keys. A failure on one request is
logged and the sweep moves on.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.clock import Clock, utcnow
from src.core.config import settings
from src.core.exceptions import InvalidTransitionError
from src.modules.payment_requests.schemas import SweepResult
from src.modules.payment_requests.service import PaymentRequestService

logger = logging.getLogger(__name__)


async def sweep_expired_requests(
    session_factory: async_sessionmaker[AsyncSession],
    clock: Clock = utcnow,
) -> SweepResult:
    """Run one sweep pass."""
    result = SweepResult()

    async with session_factory() as session:
        overdue = await PaymentRequestService(session, clock=clock).list_overdue_ids()

    for request_id in overdue:
        async with session_factory() as session:
            service = PaymentRequestService(session, clock=clock)
            try:
                await service.expire(request_id)
            except InvalidTransitionError:
                # Settled, cancelled or expired by someone else since the scan
                await session.rollback()
                logger.info("Payment request %s no longer pending, skipped", request_id)
            except Exception:
                await session.rollback()
                result.failed += 1
                logger.exception("Failed to expire payment request %s", request_id)
            else:
                result.expired += 1

    async with session_factory() as session:
        try:
            result.idempotency_deactivated = await PaymentRequestService(
                session, clock=clock
            ).deactivate_expired_keys()
        except Exception:
            await session.rollback()
            logger.exception("Failed to deactivate expired idempotency keys")

    if result.expired or result.failed or result.idempotency_deactivated:
        logger.info(
            "Sweep: %d expired, %d failed, %d idempotency keys deactivated",
            result.expired,
            result.failed,
            result.idempotency_deactivated,
        )
    return result


async def run_sweeper(
    session_factory: async_sessionmaker[AsyncSession],
    interval_seconds: int | None = None,
) -> None:
    """Sweep forever on a fixed interval; cancel the task to stop."""
    interval = interval_seconds or settings.sweeper_interval_seconds
    logger.info("Payment request sweeper started (every %ss)", interval)
    while True:
        try:
            await sweep_expired_requests(session_factory)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Sweep pass failed")
        await asyncio.sleep(interval)
