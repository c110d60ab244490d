"""
Inventory reservation consumer.

Applies order lifecycle messages to product stock:

* ``created`` messages reserve stock (decrement), all-or-nothing per message;
* ``cancelled`` messages release it again (increment).

Every applied message is recorded in the idempotency ledger in the same
transaction as its stock changes, so a redelivered message returns the
recorded result without touching stock. Messages that fail validation are not
recorded and may be retried against the then-current stock.

Broker delivery order is not assumed. Each order has a single reservation
claim row: a reservation commits it as ``reserved``, and a cancellation that
finds nothing to release commits it as ``blocked``. Only one of the two can
commit, so a reservation racing its own cancellation either gets released or
is refused, never both skipped.
"""
import asyncio
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..shared.cache import ALL_PRODUCTS_NS, CacheStore, product_ns
from ..shared.messages import (
    ORDER_CANCELLED_TOPIC,
    ORDER_CREATED_TOPIC,
    MessageKind,
    OrderLine,
    OrderMessage,
    ProductOutcome,
    ResultMessage,
)
from . import crud, ledger

logger = logging.getLogger(__name__)

CONSUMER_GROUP = "inventory-service"


class InventoryReservationConsumer:
    """
    Applies reservations and compensations against the inventory store.

    Args:
        session_factory: AsyncSession factory for the inventory store
        cache: Cache whose product namespaces are invalidated after commits
        broker: Broker used to publish result envelopes (optional)
    """

    def __init__(self, session_factory: sessionmaker, cache: CacheStore, broker=None):
        self.session_factory = session_factory
        self.cache = cache
        self.broker = broker

    async def apply_reservation(self, message: OrderMessage) -> ResultMessage:
        """
        Reserve stock for every line of a created-order message.

        Args:
            message: Envelope of kind ``created``

        Returns:
            The result envelope; the recorded one if the request id was
            already applied
        """
        async with self.session_factory() as db:
            previous = await ledger.lookup(db, message.request_id)
            if previous is not None:
                logger.info(f"Duplicate reservation {message.request_id} for order {message.order_id}, replaying result")
                return previous
            state = await ledger.reservation_state(db, message.order_id)

        if state is not None:
            return await self._refuse_reservation(message, state)

        async with self.session_factory() as db:
            outcomes: List[ProductOutcome] = []
            for line in message.items:
                remaining = await crud.try_decrement_stock(db, line.product_id, line.quantity)
                if remaining is None:
                    error = await self._describe_shortage(db, line)
                    await db.rollback()
                    # The same message may have been applied concurrently
                    applied = await ledger.lookup(db, message.request_id)
                    if applied is not None:
                        return applied
                    logger.warning(f"Reservation {message.request_id} for order {message.order_id} failed: {error}")
                    return ResultMessage.failed(message, error)
                outcomes.append(
                    ProductOutcome(
                        product_id=line.product_id,
                        updated_quantity=line.quantity,
                        remaining_stock=remaining,
                    )
                )

            ledger.claim(db, message.order_id, ledger.RESERVED)
            result = ResultMessage(
                kind=message.kind,
                request_id=message.request_id,
                order_id=message.order_id,
                success=True,
                updated_products=outcomes,
            )
            committed = await self._commit(db, result)

        if committed is None:
            async with self.session_factory() as db:
                state = await ledger.reservation_state(db, message.order_id)
            if state is None:
                raise RuntimeError(f"Reservation claim for order {message.order_id} vanished")
            return await self._refuse_reservation(message, state)

        logger.info(f"Reserved stock for order {message.order_id} ({len(outcomes)} lines)")
        return committed

    async def apply_compensation(self, message: OrderMessage) -> ResultMessage:
        """
        Release the stock reserved for a cancelled order.

        Adds quantities back without an availability check. The order's
        reservation claim is released with a compare-and-set update, so only
        one cancellation per order ever credits stock.

        Args:
            message: Envelope of kind ``cancelled``

        Returns:
            The result envelope
        """
        async with self.session_factory() as db:
            previous = await ledger.lookup(db, message.request_id)
            if previous is not None:
                logger.info(f"Duplicate compensation {message.request_id} for order {message.order_id}, replaying result")
                return previous

        async with self.session_factory() as db:
            outcomes: List[ProductOutcome] = []
            if await ledger.release(db, message.order_id):
                for line in message.items:
                    remaining = await crud.increment_stock(db, line.product_id, line.quantity)
                    if remaining is None:
                        await db.rollback()
                        error = f"Product {line.product_id} not found"
                        logger.warning(f"Compensation {message.request_id} for order {message.order_id} failed: {error}")
                        return ResultMessage.failed(message, error)
                    outcomes.append(
                        ProductOutcome(
                            product_id=line.product_id,
                            updated_quantity=line.quantity,
                            remaining_stock=remaining,
                        )
                    )
            else:
                state = await ledger.reservation_state(db, message.order_id)
                if state == ledger.RESERVED:
                    # Reserved after the release attempt
                    await db.rollback()
                    return await self.apply_compensation(message)
                if state is not None:
                    await db.rollback()
                    earlier = await ledger.applied_for_order(db, message.order_id, MessageKind.CANCELLED)
                    if earlier is None:
                        raise RuntimeError(f"Order {message.order_id} released without a ledger entry")
                    logger.warning(f"Order {message.order_id} already compensated by {earlier.request_id}")
                    return earlier.model_copy(update={"request_id": message.request_id})
                # Nothing was reserved yet: block a late reservation
                logger.info(f"No reservation to release for order {message.order_id}")
                ledger.claim(db, message.order_id, ledger.BLOCKED)

            result = ResultMessage(
                kind=message.kind,
                request_id=message.request_id,
                order_id=message.order_id,
                success=True,
                updated_products=outcomes,
            )
            committed = await self._commit(db, result)

        if committed is None:
            # A reservation claimed the order first; release it instead
            logger.info(f"Order {message.order_id} was reserved concurrently, retrying compensation")
            return await self.apply_compensation(message)

        logger.info(f"Released stock for order {message.order_id} ({len(outcomes)} lines)")
        return committed

    async def handle_message(self, payload: str) -> ResultMessage:
        """
        Broker entry point: decode, apply and publish the result.

        Publish errors propagate so the entry is not acknowledged; the
        redelivered message replays the recorded result.
        """
        message = OrderMessage.model_validate_json(payload)
        if message.kind == MessageKind.CREATED:
            result = await self.apply_reservation(message)
        else:
            result = await self.apply_compensation(message)

        if self.broker is not None:
            await self.broker.publish(result.topic, str(result.order_id), result)
        return result

    async def run(self, shutdown_event: asyncio.Event, consumer_name: str = "inventory-1") -> None:
        """Consume both order lifecycle topics until shutdown."""
        await asyncio.gather(
            self.broker.consume(ORDER_CREATED_TOPIC, CONSUMER_GROUP, consumer_name, self.handle_message, shutdown_event),
            self.broker.consume(ORDER_CANCELLED_TOPIC, CONSUMER_GROUP, consumer_name, self.handle_message, shutdown_event),
        )

    async def _commit(self, db: AsyncSession, result: ResultMessage) -> Optional[ResultMessage]:
        """
        Record ``result`` and commit.

        Returns the recorded result if the same message committed first, or
        None if another message claimed the order first.
        """
        ledger.record(db, result)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            async with self.session_factory() as fresh:
                previous = await ledger.lookup(fresh, result.request_id)
            if previous is None:
                return None
            logger.info(f"Message {result.request_id} applied concurrently, replaying result")
            return previous

        await self.cache.invalidate(
            ALL_PRODUCTS_NS,
            *(product_ns(outcome.product_id) for outcome in result.updated_products),
        )
        return result

    async def _refuse_reservation(self, message: OrderMessage, state: str) -> ResultMessage:
        if state == ledger.RESERVED:
            async with self.session_factory() as db:
                earlier = await ledger.applied_for_order(db, message.order_id, MessageKind.CREATED)
            if earlier is not None:
                logger.warning(f"Order {message.order_id} already reserved by {earlier.request_id}")
                return earlier.model_copy(update={"request_id": message.request_id})
        logger.warning(f"Refusing reservation for order {message.order_id}: already cancelled")
        return ResultMessage.failed(message, f"Order {message.order_id} was already cancelled")

    @staticmethod
    async def _describe_shortage(db: AsyncSession, line: OrderLine) -> str:
        available: Optional[int] = await crud.get_stock_level(db, line.product_id)
        if available is None:
            return f"Product {line.product_id} not found"
        return (
            f"Insufficient stock for product {line.product_id}. "
            f"Available: {available}, Required: {line.quantity}"
        )
