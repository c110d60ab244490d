import asyncio
from decimal import Decimal

import pytest

from storefront.inventory import crud, ledger, models
from storefront.shared.cache import ALL_PRODUCTS_NS, product_ns
from storefront.shared.messages import (
    ORDER_CANCELLED_RESULT_TOPIC,
    PRODUCT_UPDATE_RESULT_TOPIC,
    MessageKind,
    OrderLine,
    OrderMessage,
)


def order_message(order_id, lines, kind=MessageKind.CREATED, request_id=None):
    fields = dict(
        kind=kind,
        order_id=order_id,
        user_id=1,
        items=[OrderLine(product_id=p, quantity=q, unit_price=Decimal("10.00")) for p, q in lines],
    )
    if request_id:
        fields["request_id"] = request_id
    return OrderMessage(**fields)


def cancellation_for(message, request_id=None):
    return order_message(
        message.order_id,
        [(line.product_id, line.quantity) for line in message.items],
        kind=MessageKind.CANCELLED,
        request_id=request_id,
    )


class TestReservation:
    async def test_reserve_then_release_restores_stock(self, consumer, add_product, stock_of):
        await add_product(1, quantity=5)
        created = order_message(10, [(1, 3)])

        reserved = await consumer.apply_reservation(created)
        assert reserved.success is True
        assert reserved.request_id == created.request_id
        assert [(p.product_id, p.updated_quantity, p.remaining_stock) for p in reserved.updated_products] == [(1, 3, 2)]
        assert await stock_of(1) == 2

        released = await consumer.apply_compensation(cancellation_for(created))
        assert released.success is True
        assert released.updated_products[0].remaining_stock == 5
        assert await stock_of(1) == 5

    async def test_insufficient_stock_fails_without_recording(self, consumer, add_product, stock_of, inventory_sessions):
        await add_product(1, quantity=2)
        created = order_message(11, [(1, 3)])

        result = await consumer.apply_reservation(created)

        assert result.success is False
        assert result.error_message == "Insufficient stock for product 1. Available: 2, Required: 3"
        assert result.updated_products == []
        assert await stock_of(1) == 2
        async with inventory_sessions() as db:
            assert await ledger.lookup(db, created.request_id) is None

    async def test_failed_message_can_be_retried_after_restock(self, consumer, add_product, stock_of, inventory_sessions):
        await add_product(1, quantity=2)
        created = order_message(12, [(1, 3)])
        assert (await consumer.apply_reservation(created)).success is False

        async with inventory_sessions() as db:
            product = await db.get(models.Product, 1)
            product.quantity = 10
            await db.commit()

        assert (await consumer.apply_reservation(created)).success is True
        assert await stock_of(1) == 7

    async def test_unknown_product_fails_the_batch(self, consumer, add_product, stock_of):
        await add_product(1, quantity=5)

        result = await consumer.apply_reservation(order_message(13, [(1, 1), (99, 1)]))

        assert result.success is False
        assert result.error_message == "Product 99 not found"
        assert await stock_of(1) == 5

    async def test_batch_is_all_or_nothing(self, consumer, add_product, stock_of):
        await add_product(1, quantity=10)
        await add_product(2, quantity=1)

        result = await consumer.apply_reservation(order_message(14, [(1, 2), (2, 5)]))

        assert result.success is False
        assert "product 2" in result.error_message
        assert await stock_of(1) == 10
        assert await stock_of(2) == 1

    async def test_duplicate_delivery_applies_once(self, consumer, add_product, stock_of):
        await add_product(1, quantity=5)
        created = order_message(15, [(1, 3)])

        first = await consumer.apply_reservation(created)
        second = await consumer.apply_reservation(created)

        assert first == second
        assert await stock_of(1) == 2

    async def test_successful_reservation_invalidates_product_caches(self, consumer, add_product, cache):
        await add_product(1, quantity=5)
        await add_product(2, quantity=5)

        await consumer.apply_reservation(order_message(16, [(1, 1), (2, 1)]))

        assert await cache.version(ALL_PRODUCTS_NS) == 1
        assert await cache.version(product_ns(1)) == 1
        assert await cache.version(product_ns(2)) == 1

    async def test_failed_reservation_leaves_caches_alone(self, consumer, add_product, cache):
        await add_product(1, quantity=0)

        await consumer.apply_reservation(order_message(17, [(1, 1)]))

        assert await cache.version(ALL_PRODUCTS_NS) == 0


class TestConcurrentReservations:
    async def test_competing_orders_never_oversell(self, consumer, add_product, stock_of):
        await add_product(1, quantity=5)

        results = await asyncio.gather(
            consumer.apply_reservation(order_message(20, [(1, 3)])),
            consumer.apply_reservation(order_message(21, [(1, 3)])),
        )

        assert sorted(r.success for r in results) == [False, True]
        assert await stock_of(1) == 2

    async def test_concurrent_duplicates_apply_once(self, consumer, add_product, stock_of):
        await add_product(1, quantity=10)
        created = order_message(22, [(1, 3)])

        first, second = await asyncio.gather(
            consumer.apply_reservation(created),
            consumer.apply_reservation(created),
        )

        assert first.success and second.success
        assert first == second
        assert await stock_of(1) == 7

    async def test_concurrent_duplicates_near_the_limit_agree(self, consumer, add_product, stock_of):
        await add_product(1, quantity=5)
        created = order_message(23, [(1, 3)])

        first, second = await asyncio.gather(
            consumer.apply_reservation(created),
            consumer.apply_reservation(created),
        )

        assert first == second
        assert first.success is True
        assert await stock_of(1) == 2


class TestCompensation:
    async def test_replayed_cancellation_credits_once(self, consumer, add_product, stock_of):
        await add_product(1, quantity=5)
        created = order_message(30, [(1, 3)])
        await consumer.apply_reservation(created)
        cancelled = cancellation_for(created)

        first = await consumer.apply_compensation(cancelled)
        second = await consumer.apply_compensation(cancelled)

        assert first == second
        assert await stock_of(1) == 5

    async def test_second_cancellation_of_same_order_credits_nothing(self, consumer, add_product, stock_of):
        await add_product(1, quantity=5)
        created = order_message(31, [(1, 3)])
        await consumer.apply_reservation(created)

        first = await consumer.apply_compensation(cancellation_for(created))
        again = cancellation_for(created)
        second = await consumer.apply_compensation(again)

        assert second.success is True
        assert second.request_id == again.request_id
        assert second.updated_products == first.updated_products
        assert await stock_of(1) == 5

    async def test_cancellation_overtaking_creation_blocks_the_reservation(self, consumer, add_product, stock_of):
        await add_product(1, quantity=5)
        created = order_message(32, [(1, 3)])

        released = await consumer.apply_compensation(cancellation_for(created))
        assert released.success is True
        assert released.updated_products == []
        assert await stock_of(1) == 5

        reserved = await consumer.apply_reservation(created)
        assert reserved.success is False
        assert "already cancelled" in reserved.error_message
        assert await stock_of(1) == 5

    async def test_compensation_for_missing_product_records_nothing(self, consumer, add_product, stock_of, inventory_sessions):
        await add_product(1, quantity=5)
        created = order_message(33, [(1, 1)])
        await consumer.apply_reservation(created)

        cancelled = order_message(33, [(1, 1), (99, 1)], kind=MessageKind.CANCELLED)
        result = await consumer.apply_compensation(cancelled)

        assert result.success is False
        assert result.error_message == "Product 99 not found"
        assert await stock_of(1) == 4
        async with inventory_sessions() as db:
            assert await ledger.lookup(db, cancelled.request_id) is None


class TestReservationRacingCancellation:
    async def test_cancellation_between_check_and_decrement_refuses_the_reservation(
        self, consumer, add_product, stock_of, monkeypatch
    ):
        await add_product(1, quantity=5)
        created = order_message(35, [(1, 3)])
        decrement = crud.try_decrement_stock
        tombstones = []

        async def cancel_first(db, product_id, quantity):
            if not tombstones:
                tombstones.append(await consumer.apply_compensation(cancellation_for(created)))
            return await decrement(db, product_id, quantity)

        monkeypatch.setattr(crud, "try_decrement_stock", cancel_first)

        reserved = await consumer.apply_reservation(created)

        assert tombstones[0].updated_products == []
        assert reserved.success is False
        assert "already cancelled" in reserved.error_message
        assert await stock_of(1) == 5

        late_release = await consumer.apply_compensation(cancellation_for(created))
        assert late_release.success is True
        assert await stock_of(1) == 5

    async def test_concurrent_reservation_and_cancellation_restore_stock(self, consumer, add_product, stock_of):
        await add_product(1, quantity=5)
        created = order_message(36, [(1, 3)])

        reserved, released = await asyncio.gather(
            consumer.apply_reservation(created),
            consumer.apply_compensation(cancellation_for(created)),
        )
        assert released.success is True
        if reserved.success:
            # The order side answers a reservation on a cancelled order with a release
            await consumer.apply_compensation(cancellation_for(created))

        assert await stock_of(1) == 5

    async def test_reservation_committed_after_release_attempt_is_still_released(
        self, consumer, add_product, stock_of, monkeypatch
    ):
        await add_product(1, quantity=5)
        created = order_message(37, [(1, 3)])
        reservation_state = ledger.reservation_state
        calls = []
        reservations = []

        async def reserve_after_release_attempt(db, order_id):
            calls.append(order_id)
            if len(calls) == 1:
                await db.rollback()
                reservations.append(await consumer.apply_reservation(created))
            return await reservation_state(db, order_id)

        monkeypatch.setattr(ledger, "reservation_state", reserve_after_release_attempt)

        released = await consumer.apply_compensation(cancellation_for(created))

        assert reservations[0].success is True
        assert released.success is True
        assert [(p.product_id, p.remaining_stock) for p in released.updated_products] == [(1, 5)]
        assert await stock_of(1) == 5


class TestHandleMessage:
    async def test_results_are_published_to_result_topics(self, consumer, add_product, broker):
        await add_product(1, quantity=5)
        created = order_message(40, [(1, 2)])

        await consumer.handle_message(created.model_dump_json())
        await consumer.handle_message(cancellation_for(created).model_dump_json())

        [(topic, key, reserved)] = [p for p in broker.published if p[0] == PRODUCT_UPDATE_RESULT_TOPIC]
        assert key == "40"
        assert reserved.request_id == created.request_id
        [released] = broker.messages(ORDER_CANCELLED_RESULT_TOPIC)
        assert released.kind == MessageKind.CANCELLED
        assert released.success is True

    async def test_publish_failure_propagates_and_replay_is_idempotent(self, consumer, add_product, broker, stock_of):
        await add_product(1, quantity=5)
        payload = order_message(41, [(1, 2)]).model_dump_json()
        broker.fail_publishes = 1

        with pytest.raises(ConnectionError):
            await consumer.handle_message(payload)

        await consumer.handle_message(payload)
        assert await stock_of(1) == 3
        assert len(broker.messages(PRODUCT_UPDATE_RESULT_TOPIC)) == 1
