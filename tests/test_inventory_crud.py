import pytest
from pydantic import ValidationError

from storefront.inventory import crud
from storefront.inventory.schemas import ProductUpdate

from .test_inventory_consumer import order_message


@pytest.fixture
def reserve_after_read(consumer, monkeypatch):
    """Commit a reservation of 3 units between the admin read and write."""
    read = crud.get_product
    reservations = []

    async def read_then_reserve(db, product_id):
        product = await read(db, product_id)
        reservations.append(await consumer.apply_reservation(order_message(50, [(product_id, 3)])))
        return product

    monkeypatch.setattr(crud, "get_product", read_then_reserve)
    return reservations


class TestUpdateProduct:
    async def test_restock_keeps_a_reservation_committed_meanwhile(
        self, add_product, stock_of, inventory_sessions, reserve_after_read
    ):
        await add_product(1, quantity=10)

        async with inventory_sessions() as db:
            updated = await crud.update_product(db, 1, ProductUpdate(restock=5))

        assert reserve_after_read[0].success is True
        assert updated.quantity == 12
        assert await stock_of(1) == 12

    async def test_absolute_quantity_is_refused_after_a_concurrent_reservation(
        self, add_product, stock_of, inventory_sessions, reserve_after_read
    ):
        await add_product(1, quantity=10)

        async with inventory_sessions() as db:
            with pytest.raises(crud.StockConflictError):
                await crud.update_product(db, 1, ProductUpdate(quantity=15))

        assert reserve_after_read[0].success is True
        assert await stock_of(1) == 7

    async def test_absolute_quantity_without_interference(self, add_product, stock_of, inventory_sessions):
        await add_product(1, quantity=10)

        async with inventory_sessions() as db:
            updated = await crud.update_product(db, 1, ProductUpdate(quantity=15, product_name="Desk"))

        assert updated.quantity == 15
        assert updated.product_name == "Desk"
        assert await stock_of(1) == 15

    async def test_negative_restock_cannot_go_below_zero(self, add_product, stock_of, inventory_sessions):
        await add_product(1, quantity=10)

        async with inventory_sessions() as db:
            with pytest.raises(crud.StockConflictError):
                await crud.update_product(db, 1, ProductUpdate(restock=-11))
        async with inventory_sessions() as db:
            updated = await crud.update_product(db, 1, ProductUpdate(restock=-4))

        assert updated.quantity == 6
        assert await stock_of(1) == 6

    async def test_unknown_product(self, inventory_sessions):
        async with inventory_sessions() as db:
            assert await crud.update_product(db, 42, ProductUpdate(restock=1)) is None

    def test_quantity_and_restock_are_exclusive(self):
        with pytest.raises(ValidationError):
            ProductUpdate(quantity=3, restock=1)


class TestStockLevel:
    async def test_reports_current_quantity(self, add_product, inventory_sessions):
        await add_product(1, quantity=4)

        async with inventory_sessions() as db:
            assert await crud.get_stock_level(db, 1) == 4
            assert await crud.get_stock_level(db, 2) is None
