"""Settlement events.

The ledger does not deliver notifications itself. Operations that settle
tuitions return `TuitionSettled` events and, once their transaction has
committed, publish them to whatever listeners were registered (messaging,
receipts, ...). A failing listener is logged and never affects the ledger.
"""

import logging
from collections.abc import Awaitable, Callable
from decimal import Decimal
from enum import StrEnum

from src.shared.schemas.base import BaseSchema

logger = logging.getLogger(__name__)


class SettlementSource(StrEnum):
    """What caused a ledger increment."""

    MANUAL = "manual"
    ONLINE = "online"
    SCHOLARSHIP = "scholarship"


class TuitionSettled(BaseSchema):
    """A tuition received a ledger increment from an automated flow."""

    tuition_id: int
    student_id: int
    amount: Decimal
    new_status: str
    source: SettlementSource
    payment_request_id: int | None = None
    payment_number: str | None = None


Listener = Callable[[TuitionSettled], Awaitable[None]]

_listeners: list[Listener] = []


def register_listener(listener: Listener) -> None:
    if listener not in _listeners:
        _listeners.append(listener)


def unregister_listener(listener: Listener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


async def publish(events: list[TuitionSettled]) -> None:
    """Fan events out to listeners; call only after commit."""
    for event in events:
        for listener in list(_listeners):
            try:
                await listener(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Settlement listener %r failed for tuition %s",
                    listener,
                    event.tuition_id,
                )
