"""
Order side of the order-fulfillment saga.

``OrderSagaProducer`` owns the order lifecycle. Every change is committed
locally together with its timeline event and, when inventory must react, an
outbox row; the message is published only after the commit. A publish
failure never rolls an order back: the outbox relay retries it.

The producer also consumes the inventory service's result envelopes:

* reservation succeeded: the order advances to Processing;
* reservation failed: the order is cancelled (nothing was reserved, so no
  compensation is sent);
* compensation failed: the failure is put on the timeline and reported to
  administrators; the order stays Cancelled.
"""
import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..shared.cache import ALL_ORDERS_NS, CacheStore, order_ns, orders_by_status_ns, orders_by_user_ns
from ..shared.messages import (
    ORDER_CANCELLED_RESULT_TOPIC,
    PRODUCT_UPDATE_RESULT_TOPIC,
    MessageKind,
    OrderLine,
    OrderMessage,
    ResultMessage,
)
from ..shared.responses import ServiceResponse
from . import crud, models, outbox, schemas, validators
from .notifications import (
    ADMIN_GROUP,
    COMPENSATION_FAILED,
    ORDER_CREATED,
    ORDER_STATUS_CHANGED,
    YOUR_ORDER_STATUS_CHANGED,
    user_group,
)
from .statuses import OrderStatusRank, is_cancellable

logger = logging.getLogger(__name__)

CONSUMER_GROUP = "orders-service"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_label(rank: int) -> str:
    try:
        return OrderStatusRank(rank).label
    except ValueError:
        return str(rank)


class OrderSagaProducer:
    """
    Creates, cancels and advances orders, and reacts to inventory results.

    Args:
        session_factory: AsyncSession factory for the orders store
        broker: Broker adapter used to publish and consume envelopes
        cache: Cache whose order namespaces are invalidated after commits
        notifier: Notification fan-out (optional)
        relay: Outbox relay used for immediate publishes (defaults to one
            sharing this producer's store and broker)
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        broker,
        cache: CacheStore,
        notifier=None,
        relay: Optional[outbox.OutboxRelay] = None,
    ):
        self.session_factory = session_factory
        self.broker = broker
        self.cache = cache
        self.notifier = notifier
        self.relay = relay or outbox.OutboxRelay(session_factory, broker, notifier)

    # Order creation

    async def create_order(
        self, order: schemas.OrderCreate, actor_id: Optional[int] = None
    ) -> ServiceResponse[schemas.OrderHandle]:
        """
        Create a Pending order from a pre-computed total or from line items.

        Args:
            order: Order data; when items are given the total is derived
                from them
            actor_id: User performing the call, for the timeline (optional)

        Returns:
            ServiceResponse whose data is the new order's handle
        """
        return await self._create(order, actor_id)

    async def create_order_with_items(
        self, order: schemas.OrderCreate, actor_id: Optional[int] = None
    ) -> ServiceResponse[schemas.OrderHandle]:
        """Create a Pending order that must carry at least one line item."""
        if not order.items:
            return ServiceResponse.fail("INVALID_ORDER_ITEMS", "Order must contain at least one item", 400)
        return await self._create(order, actor_id)

    async def _create(
        self, order: schemas.OrderCreate, actor_id: Optional[int]
    ) -> ServiceResponse[schemas.OrderHandle]:
        async with self.session_factory() as db:
            user = await crud.get_user(db, order.user_id)
            if user is None:
                return ServiceResponse.fail("USER_NOT_FOUND", f"User {order.user_id} not found", 404)

            pending = await crud.get_status(db, int(OrderStatusRank.PENDING))
            if pending is None:
                return ServiceResponse.fail("PENDING_STATUS_NOT_FOUND", "Pending order status not found", 404)

            items = order.items or []
            if order.items is not None:
                valid, error = validators.validate_order_items(items)
                if not valid:
                    return ServiceResponse.fail("INVALID_ORDER_ITEMS", error, 400)
                total = validators.order_total(items)
                if order.total_amount is not None:
                    valid, error = validators.validate_order_total(items, order.total_amount)
                    if not valid:
                        return ServiceResponse.fail("INVALID_ORDER_TOTAL", error, 400)
            elif order.total_amount is None:
                return ServiceResponse.fail(
                    "INVALID_ORDER_TOTAL", "Either a total amount or order items are required", 400
                )
            else:
                total = order.total_amount

            try:
                db_order = models.Order(
                    user_id=order.user_id,
                    order_status_id=pending.status_id,
                    total_amount=total,
                    shipping_address_id=order.shipping_address_id,
                    coupon_id=order.coupon_id,
                )
                db.add(db_order)
                await db.flush()

                for item in items:
                    db.add(
                        models.OrderItem(
                            order_id=db_order.order_id,
                            product_id=item.product_id,
                            quantity=item.quantity,
                            unit_price=item.unit_price,
                            total_price=Decimal(str(item.unit_price)) * item.quantity,
                        )
                    )
                crud.log_order_event(
                    db,
                    order_id=db_order.order_id,
                    event_type="created",
                    description=f"Order created with status '{pending.status_name}'",
                    new_value=pending.status_name,
                    user_id=actor_id or order.user_id,
                )
                message = OrderMessage(
                    kind=MessageKind.CREATED,
                    order_id=db_order.order_id,
                    user_id=order.user_id,
                    items=[
                        OrderLine(product_id=i.product_id, quantity=i.quantity, unit_price=i.unit_price)
                        for i in items
                    ],
                )
                row = outbox.stage(db, message)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Failed to create order for user {order.user_id}: {e}")
                return ServiceResponse.fail("ORDER_CREATION_FAILED", f"Failed to create order: {e}", 500)

        order_id = db_order.order_id
        logger.info(f"Created order {order_id} for user {order.user_id} (total {total})")

        published = await self.relay.publish_one(row.outbox_id)
        await self.cache.invalidate(
            ALL_ORDERS_NS,
            orders_by_user_ns(order.user_id),
            orders_by_status_ns(int(OrderStatusRank.PENDING)),
            order_ns(order_id),
        )
        self._notify(
            ORDER_CREATED,
            {
                "order_id": order_id,
                "user_id": order.user_id,
                "status": pending.status_name,
                "total_amount": str(total),
            },
        )

        handle = schemas.OrderHandle(
            order_id=order_id,
            request_id=message.request_id,
            status=pending.status_name,
            total_amount=total,
            published=published,
        )
        return ServiceResponse.ok("ORDER_CREATED", "Order created successfully", handle, status_code=201)

    # Cancellation and status changes

    async def cancel_order(self, order_id: int, actor_id: Optional[int] = None) -> ServiceResponse[bool]:
        """
        Cancel an order that has not shipped yet and release its stock.

        The Cancelled status, its timeline event and the ``cancelled``
        message (built from the stored line items) commit together; the
        message is published afterwards.

        Args:
            order_id: Order to cancel
            actor_id: User performing the call (optional)

        Returns:
            ServiceResponse with data True on success
        """
        async with self.session_factory() as db:
            order = await crud.get_order(db, order_id)
            if order is None:
                return ServiceResponse.fail("ORDER_NOT_FOUND", f"Order {order_id} not found", 404, data=False)

            old_rank = order.order_status_id
            if not is_cancellable(old_rank):
                return ServiceResponse.fail(
                    "ORDER_NOT_CANCELLABLE",
                    f"Order {order_id} in status '{_status_label(old_rank)}' cannot be cancelled",
                    400,
                    data=False,
                )

            try:
                if not await self._compare_and_set(db, order_id, old_rank, OrderStatusRank.CANCELLED):
                    await db.rollback()
                    return ServiceResponse.fail(
                        "ORDER_NOT_CANCELLABLE", f"Order {order_id} changed status concurrently", 409, data=False
                    )
                crud.log_order_event(
                    db,
                    order_id=order_id,
                    event_type="cancelled",
                    description=f"Order cancelled from status '{_status_label(old_rank)}'",
                    old_value=_status_label(old_rank),
                    new_value=OrderStatusRank.CANCELLED.label,
                    user_id=actor_id,
                )
                row = outbox.stage(db, self._compensation_message(order))
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Failed to cancel order {order_id}: {e}")
                return ServiceResponse.fail("ORDER_CANCELLATION_FAILED", f"Failed to cancel order: {e}", 500, data=False)

        logger.info(f"Cancelled order {order_id}")
        await self.relay.publish_one(row.outbox_id)
        await self._after_status_change(order, old_rank, OrderStatusRank.CANCELLED)
        return ServiceResponse.ok("ORDER_CANCELLED", "Order cancelled successfully", True)

    async def update_order_status(
        self, order_id: int, status_id: int, actor_id: Optional[int] = None
    ) -> ServiceResponse[str]:
        """
        Move an order to another status.

        A move to Cancelled goes through :meth:`cancel_order` so the stock
        is always released.

        Returns:
            ServiceResponse whose data is the new status name
        """
        if status_id == OrderStatusRank.CANCELLED:
            cancelled = await self.cancel_order(order_id, actor_id)
            return ServiceResponse(
                success=cancelled.success,
                status_code=cancelled.status_code,
                code=cancelled.code,
                message=cancelled.message,
                data=OrderStatusRank.CANCELLED.label if cancelled.success else None,
            )
        return await self._change_status(order_id, status_id, actor_id)

    async def update_order_status_by_name(
        self, order_id: int, status_name: str, actor_id: Optional[int] = None
    ) -> ServiceResponse[str]:
        """Like :meth:`update_order_status`, with the status given by name."""
        async with self.session_factory() as db:
            status_row = await crud.get_status_by_name(db, status_name)
        if status_row is None:
            return ServiceResponse.fail("STATUS_NOT_FOUND", f"Order status '{status_name}' not found", 404)
        return await self.update_order_status(order_id, status_row.status_id, actor_id)

    async def _change_status(
        self,
        order_id: int,
        status_id: int,
        actor_id: Optional[int] = None,
        event_type: str = "status_changed",
        description: Optional[str] = None,
    ) -> ServiceResponse[str]:
        async with self.session_factory() as db:
            order = await crud.get_order(db, order_id)
            if order is None:
                return ServiceResponse.fail("ORDER_NOT_FOUND", f"Order {order_id} not found", 404)

            target = await crud.get_status(db, status_id)
            if target is None:
                return ServiceResponse.fail("STATUS_NOT_FOUND", f"Order status {status_id} not found", 404)

            old_rank = order.order_status_id
            valid, error = validators.validate_order_status_transition(old_rank, status_id)
            if not valid:
                return ServiceResponse.fail("INVALID_STATUS_TRANSITION", error, 400)
            if old_rank == status_id:
                return ServiceResponse.ok("ORDER_STATUS_UNCHANGED", "Order already has this status", target.status_name)

            try:
                if not await self._compare_and_set(db, order_id, old_rank, status_id):
                    await db.rollback()
                    return ServiceResponse.fail(
                        "ORDER_STATUS_CONFLICT", f"Order {order_id} changed status concurrently", 409
                    )
                crud.log_order_event(
                    db,
                    order_id=order_id,
                    event_type=event_type,
                    description=description
                    or f"Status changed from '{_status_label(old_rank)}' to '{target.status_name}'",
                    old_value=_status_label(old_rank),
                    new_value=target.status_name,
                    user_id=actor_id,
                )
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Failed to update status of order {order_id}: {e}")
                return ServiceResponse.fail("ORDER_STATUS_UPDATE_FAILED", f"Failed to update order status: {e}", 500)

        logger.info(f"Order {order_id}: {_status_label(old_rank)} -> {target.status_name}")
        await self._after_status_change(order, old_rank, status_id)
        return ServiceResponse.ok("ORDER_STATUS_UPDATED", "Order status updated successfully", target.status_name)

    # Inventory results

    async def handle_reservation_result(self, result: ResultMessage) -> None:
        """
        Apply the inventory service's answer to a ``created`` message.

        Results for orders that already moved on are ignored. A successful
        reservation for an order that has meanwhile been cancelled is
        released again.
        """
        async with self.session_factory() as db:
            order = await crud.get_order(db, result.order_id)
        if order is None:
            logger.warning(f"Reservation result {result.request_id} for unknown order {result.order_id}")
            return

        rank = order.order_status_id
        if result.success:
            if rank in (OrderStatusRank.PENDING, OrderStatusRank.PAID):
                response = await self._change_status(
                    order.order_id,
                    OrderStatusRank.PROCESSING,
                    description=f"Stock reserved ({len(result.updated_products)} products)",
                )
                if not response.success:
                    logger.warning(f"Could not advance order {order.order_id}: {response.message}")
            elif rank == OrderStatusRank.CANCELLED:
                await self._release_late_reservation(order)
            else:
                logger.debug(f"Ignoring reservation result for order {order.order_id} in status {rank}")
            return

        if rank not in (OrderStatusRank.PENDING, OrderStatusRank.PAID):
            logger.debug(f"Ignoring failed reservation for order {order.order_id} in status {rank}")
            return
        logger.warning(f"Stock reservation for order {order.order_id} failed: {result.error_message}")
        response = await self._change_status(
            order.order_id,
            OrderStatusRank.CANCELLED,
            event_type="reservation_failed",
            description=f"Stock reservation failed: {result.error_message}",
        )
        if not response.success:
            logger.warning(f"Could not cancel order {order.order_id}: {response.message}")

    async def handle_compensation_result(self, result: ResultMessage) -> None:
        """Record the inventory service's answer to a ``cancelled`` message."""
        if result.success:
            logger.info(f"Stock released for order {result.order_id} ({len(result.updated_products)} products)")
            return

        logger.error(f"Stock release for order {result.order_id} failed: {result.error_message}")
        async with self.session_factory() as db:
            order = await crud.get_order(db, result.order_id)
            if order is not None:
                crud.log_order_event(
                    db,
                    order_id=result.order_id,
                    event_type="compensation_failed",
                    description=f"Stock release failed: {result.error_message}",
                )
                await db.commit()

        self._notify(
            COMPENSATION_FAILED,
            {
                "order_id": result.order_id,
                "request_id": result.request_id,
                "error": result.error_message,
            },
            group=ADMIN_GROUP,
        )

    async def handle_message(self, payload: str) -> None:
        """Broker entry point for result envelopes."""
        result = ResultMessage.model_validate_json(payload)
        if result.kind == MessageKind.CREATED:
            await self.handle_reservation_result(result)
        else:
            await self.handle_compensation_result(result)

    async def run(self, shutdown_event: asyncio.Event, consumer_name: str = "orders-1") -> None:
        """Consume both result topics until shutdown."""
        await asyncio.gather(
            self.broker.consume(PRODUCT_UPDATE_RESULT_TOPIC, CONSUMER_GROUP, consumer_name, self.handle_message, shutdown_event),
            self.broker.consume(ORDER_CANCELLED_RESULT_TOPIC, CONSUMER_GROUP, consumer_name, self.handle_message, shutdown_event),
        )

    # Helpers

    async def _release_late_reservation(self, order: models.Order) -> None:
        logger.warning(f"Reservation for cancelled order {order.order_id} succeeded late, releasing stock")
        async with self.session_factory() as db:
            row = outbox.stage(db, self._compensation_message(order))
            await db.commit()
        await self.relay.publish_one(row.outbox_id)

    @staticmethod
    async def _compare_and_set(db: AsyncSession, order_id: int, old_rank: int, new_rank: int) -> bool:
        result = await db.execute(
            update(models.Order)
            .where(
                models.Order.order_id == order_id,
                models.Order.order_status_id == old_rank,
            )
            .values(order_status_id=int(new_rank), updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _compensation_message(order: models.Order) -> OrderMessage:
        return OrderMessage(
            kind=MessageKind.CANCELLED,
            order_id=order.order_id,
            user_id=order.user_id,
            items=[
                OrderLine(product_id=item.product_id, quantity=item.quantity, unit_price=item.unit_price)
                for item in order.items
                if not item.is_deleted
            ],
        )

    async def _after_status_change(self, order: models.Order, old_rank: int, new_rank: int) -> None:
        await self.cache.invalidate(
            ALL_ORDERS_NS,
            orders_by_user_ns(order.user_id),
            orders_by_status_ns(int(old_rank)),
            orders_by_status_ns(int(new_rank)),
            order_ns(order.order_id),
        )
        payload = {
            "order_id": order.order_id,
            "user_id": order.user_id,
            "old_status": _status_label(old_rank),
            "new_status": _status_label(new_rank),
        }
        self._notify(ORDER_STATUS_CHANGED, payload)
        self._notify(YOUR_ORDER_STATUS_CHANGED, payload, group=user_group(order.user_id))

    def _notify(self, event: str, payload: dict, group: Optional[str] = None) -> None:
        if self.notifier is not None:
            self.notifier.notify(event, payload, group=group)
