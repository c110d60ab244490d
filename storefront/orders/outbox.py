"""
Transactional outbox for the Orders service.

Order changes and the messages they must emit are committed together: the
saga stages an ``OutboxMessage`` row in the same transaction as the order
change, then publishes it once the transaction has committed. ``OutboxRelay``
retries every row the immediate publish did not get through, dead-letters
rows that keep failing, and re-queues the ``created`` message of orders that
have stayed Pending for too long.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..shared import config
from ..shared.messages import ORDER_CREATED_TOPIC, OrderMessage
from . import models
from .notifications import ADMIN_GROUP, OUTBOX_DEAD_LETTERED
from .statuses import OrderStatusRank

logger = logging.getLogger(__name__)


def stage(db: AsyncSession, message: OrderMessage) -> models.OutboxMessage:
    """
    Stage an envelope for publishing. Does not commit.

    Args:
        db: Session holding the order change the message belongs to
        message: Envelope to publish after commit

    Returns:
        The pending outbox row
    """
    row = models.OutboxMessage(
        request_id=message.request_id,
        topic=message.topic,
        message_key=str(message.order_id),
        order_id=message.order_id,
        payload=message.model_dump_json(),
    )
    db.add(row)
    return row


class OutboxRelay:
    """
    Publishes outbox rows to the broker.

    Args:
        session_factory: AsyncSession factory for the orders store
        broker: Broker adapter with an async ``publish(topic, key, message)``
        notifier: Notifier told about dead-lettered rows (optional)
        max_attempts: Failed publishes before a row is dead-lettered
        stale_after: Seconds an order may stay Pending before its
            ``created`` message is published again
        poll_seconds: Pause between relay iterations
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        broker,
        notifier=None,
        max_attempts: int = config.OUTBOX_MAX_ATTEMPTS,
        stale_after: float = config.PENDING_RECONCILE_SECONDS,
        poll_seconds: float = config.OUTBOX_POLL_SECONDS,
    ):
        self.session_factory = session_factory
        self.broker = broker
        self.notifier = notifier
        self.max_attempts = max_attempts
        self.stale_after = stale_after
        self.poll_seconds = poll_seconds

    async def publish_one(self, outbox_id: int) -> bool:
        """
        Publish a single row right after the transaction that staged it.

        Store errors are logged and reported as not published; the row stays
        pending for ``flush``.

        Returns:
            True if the row is published
        """
        try:
            async with self.session_factory() as db:
                row = await db.get(models.OutboxMessage, outbox_id)
                if row is None:
                    logger.warning(f"Outbox row {outbox_id} not found")
                    return False
                if row.published or row.dead_lettered:
                    return row.published
                published = await self._publish_row(row)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not publish outbox row {outbox_id}, leaving it to the relay: {e}")
            return False

        if row.dead_lettered:
            self._report_dead_letter(row)
        return published

    async def flush(self, limit: int = 100) -> int:
        """
        Publish unpublished rows in the order they were staged.

        Returns:
            Number of rows published
        """
        published = 0
        dead: List[models.OutboxMessage] = []
        async with self.session_factory() as db:
            result = await db.execute(
                select(models.OutboxMessage)
                .where(
                    models.OutboxMessage.published.is_(False),
                    models.OutboxMessage.dead_lettered.is_(False),
                )
                .order_by(models.OutboxMessage.outbox_id)
                .limit(limit)
            )
            for row in result.scalars().all():
                if await self._publish_row(row):
                    published += 1
                elif row.dead_lettered:
                    dead.append(row)
                await db.commit()

        for row in dead:
            self._report_dead_letter(row)
        if published:
            logger.info(f"Outbox relay published {published} message(s)")
        return published

    async def reconcile_stale_pending(self, now: Optional[datetime] = None) -> int:
        """
        Re-queue the ``created`` message of orders still Pending after
        ``stale_after`` seconds. The request id is kept, so an inventory
        service that already applied it replays its recorded result.

        Returns:
            Number of messages re-queued
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.stale_after)
        async with self.session_factory() as db:
            result = await db.execute(
                select(models.OutboxMessage)
                .join(models.Order, models.Order.order_id == models.OutboxMessage.order_id)
                .where(
                    models.Order.order_status_id == int(OrderStatusRank.PENDING),
                    models.Order.is_deleted.is_(False),
                    models.OutboxMessage.topic == ORDER_CREATED_TOPIC,
                    models.OutboxMessage.published.is_(True),
                    models.OutboxMessage.dead_lettered.is_(False),
                    models.OutboxMessage.published_at < cutoff,
                )
            )
            rows = list(result.scalars().all())
            for row in rows:
                logger.warning(f"Order {row.order_id} still Pending, re-queueing message {row.request_id}")
                row.published = False
            await db.commit()
        return len(rows)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Flush and reconcile every ``poll_seconds`` until shutdown."""
        logger.info("Outbox relay started")
        while not shutdown_event.is_set():
            try:
                await self.flush()
                await self.reconcile_stale_pending()
            except Exception:
                logger.exception("Outbox relay iteration failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Outbox relay stopped")

    async def _publish_row(self, row: models.OutboxMessage) -> bool:
        message = OrderMessage.model_validate_json(row.payload)
        try:
            await self.broker.publish(row.topic, row.message_key, message)
        except Exception as e:
            row.attempts += 1
            row.last_error = str(e)
            if row.attempts >= self.max_attempts:
                row.dead_lettered = True
                logger.error(f"Giving up on message {row.request_id} for order {row.order_id} after {row.attempts} attempts: {e}")
            else:
                logger.warning(f"Publish of message {row.request_id} failed (attempt {row.attempts}): {e}")
            return False

        row.published = True
        row.published_at = datetime.now(timezone.utc)
        row.last_error = None
        return True

    def _report_dead_letter(self, row: models.OutboxMessage) -> None:
        if self.notifier is None:
            return
        self.notifier.notify(
            OUTBOX_DEAD_LETTERED,
            {
                "order_id": row.order_id,
                "request_id": row.request_id,
                "topic": row.topic,
                "error": row.last_error,
            },
            group=ADMIN_GROUP,
        )
