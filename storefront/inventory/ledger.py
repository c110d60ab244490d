"""
Idempotency ledger for the Inventory service.

Maps a message's request id to the result it produced when it was applied.
Entries are written in the same transaction as the stock changes they
describe, so "stock changed" and "message recorded" commit together.

Also holds the per-order reservation claim that keeps a reservation and the
cancellation tombstone for the same order mutually exclusive.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.messages import MessageKind, ResultMessage
from . import models


async def lookup(db: AsyncSession, request_id: str) -> Optional[ResultMessage]:
    """
    Return the recorded outcome for ``request_id``.

    Args:
        db: Database session
        request_id: Idempotency key of the message

    Returns:
        The ResultMessage produced when the message was applied, or None
    """
    record = await db.get(models.ProcessedMessage, request_id)
    if record is None:
        return None
    return ResultMessage.model_validate_json(record.outcome)


async def applied_for_order(db: AsyncSession, order_id: int, kind: MessageKind) -> Optional[ResultMessage]:
    """Return the first applied outcome of the given kind for an order."""
    result = await db.execute(
        select(models.ProcessedMessage)
        .where(
            models.ProcessedMessage.order_id == order_id,
            models.ProcessedMessage.kind == kind.value,
        )
        .order_by(models.ProcessedMessage.processed_at)
        .limit(1)
    )
    record = result.scalar_one_or_none()
    if record is None:
        return None
    return ResultMessage.model_validate_json(record.outcome)


def record(db: AsyncSession, outcome: ResultMessage) -> models.ProcessedMessage:
    """Stage a ledger entry for an applied message. Does not commit."""
    entry = models.ProcessedMessage(
        request_id=outcome.request_id,
        order_id=outcome.order_id,
        kind=outcome.kind.value,
        success=outcome.success,
        outcome=outcome.model_dump_json(),
    )
    db.add(entry)
    return entry


RESERVED = "reserved"
RELEASED = "released"
BLOCKED = "blocked"


async def reservation_state(db: AsyncSession, order_id: int) -> Optional[str]:
    """Return the claim state of an order, or None if nothing claimed it yet."""
    result = await db.execute(
        select(models.OrderReservation.state).where(models.OrderReservation.order_id == order_id)
    )
    return result.scalar_one_or_none()


def claim(db: AsyncSession, order_id: int, state: str) -> models.OrderReservation:
    """
    Stage the claim row for an order. Does not commit.

    Committing fails with an IntegrityError if the order was claimed
    concurrently.
    """
    entry = models.OrderReservation(order_id=order_id, state=state)
    db.add(entry)
    return entry


async def release(db: AsyncSession, order_id: int) -> bool:
    """
    Move a ``reserved`` claim to ``released``. Does not commit.

    Returns:
        True if this call released the reservation
    """
    result = await db.execute(
        update(models.OrderReservation)
        .where(
            models.OrderReservation.order_id == order_id,
            models.OrderReservation.state == RESERVED,
        )
        .values(state=RELEASED, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
