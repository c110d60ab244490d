import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from storefront.orders import models
from storefront.orders.notifications import ADMIN_GROUP, OUTBOX_DEAD_LETTERED
from storefront.orders.outbox import OutboxRelay
from storefront.orders.saga import OrderSagaProducer
from storefront.orders.schemas import OrderCreate, OrderItemCreate
from storefront.shared.messages import ORDER_CREATED_TOPIC

from .conftest import CUSTOMER_ID


def order_request():
    return OrderCreate(
        user_id=CUSTOMER_ID,
        shipping_address_id=1,
        items=[OrderItemCreate(product_id=1, quantity=1, unit_price=Decimal("3.00"))],
    )


@pytest.fixture
def relay(orders_sessions, broker, notifier):
    return OutboxRelay(orders_sessions, broker, notifier, max_attempts=2, stale_after=0, poll_seconds=0.01)


@pytest.fixture
def relayed_saga(orders_sessions, broker, cache, notifier, relay):
    return OrderSagaProducer(orders_sessions, broker, cache, notifier, relay)


async def only_row(sessions):
    async with sessions() as db:
        result = await db.execute(select(models.OutboxMessage))
        return result.scalar_one()


class TestFlush:
    async def test_retries_unpublished_rows(self, relayed_saga, relay, broker, orders_sessions):
        broker.fail_publishes = 1
        response = await relayed_saga.create_order_with_items(order_request())
        assert broker.published == []

        assert await relay.flush() == 1

        [message] = broker.messages(ORDER_CREATED_TOPIC)
        assert message.request_id == response.data.request_id
        row = await only_row(orders_sessions)
        assert row.published is True
        assert row.last_error is None

    async def test_nothing_to_flush(self, relay):
        assert await relay.flush() == 0

    async def test_dead_letters_after_max_attempts(self, relayed_saga, relay, broker, orders_sessions, notifier):
        broker.fail_publishes = 3
        await relayed_saga.create_order_with_items(order_request())

        assert await relay.flush() == 0

        row = await only_row(orders_sessions)
        assert (row.attempts, row.dead_lettered, row.published) == (2, True, False)
        [(payload, group)] = notifier.named(OUTBOX_DEAD_LETTERED)
        assert group == ADMIN_GROUP
        assert payload["request_id"] == row.request_id

        broker.fail_publishes = 0
        assert await relay.flush() == 0
        assert broker.published == []


class UnavailableStore:
    """Session factory whose sessions fail on first use."""

    def __call__(self):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def get(self, *args, **kwargs):
        raise OperationalError("SELECT", {}, ConnectionError("orders store unavailable"))


class TestPublishOne:
    async def test_store_error_after_commit_leaves_the_order_to_the_relay(
        self, orders_sessions, broker, cache, notifier, relay
    ):
        saga = OrderSagaProducer(
            orders_sessions, broker, cache, notifier, OutboxRelay(UnavailableStore(), broker)
        )

        response = await saga.create_order_with_items(order_request())

        assert response.success is True
        assert response.data.published is False
        assert broker.published == []
        row = await only_row(orders_sessions)
        assert row.published is False

        assert await relay.flush() == 1
        [message] = broker.messages(ORDER_CREATED_TOPIC)
        assert message.request_id == response.data.request_id


class TestReconcile:
    async def test_requeues_created_message_of_stale_pending_order(self, relayed_saga, relay, broker):
        response = await relayed_saga.create_order_with_items(order_request())

        assert await relay.reconcile_stale_pending() == 1
        assert await relay.flush() == 1

        first, second = broker.messages(ORDER_CREATED_TOPIC)
        assert first.request_id == second.request_id == response.data.request_id

    async def test_orders_that_moved_on_are_left_alone(self, relayed_saga, relay):
        response = await relayed_saga.create_order_with_items(order_request())
        await relayed_saga.update_order_status(response.data.order_id, 3)

        assert await relay.reconcile_stale_pending() == 0

    async def test_recent_orders_are_left_alone(self, relayed_saga, orders_sessions, broker):
        patient = OutboxRelay(orders_sessions, broker, stale_after=3600)
        await relayed_saga.create_order_with_items(order_request())

        assert await patient.reconcile_stale_pending() == 0


class TestRun:
    async def test_run_flushes_until_shutdown(self, relayed_saga, relay, broker):
        broker.fail_publishes = 1
        await relayed_saga.create_order_with_items(order_request())
        shutdown = asyncio.Event()

        task = asyncio.create_task(relay.run(shutdown))
        for _ in range(100):
            if broker.published:
                break
            await asyncio.sleep(0.01)
        shutdown.set()
        await asyncio.wait_for(task, timeout=5)

        assert broker.messages(ORDER_CREATED_TOPIC)
