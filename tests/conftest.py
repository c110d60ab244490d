"""
Shared fixtures: file-backed SQLite stores per service, an in-process Redis,
and recording doubles for the broker and the notifier.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import fakeredis
import pytest
from jose import jwt

from storefront.inventory import database as inventory_database
from storefront.inventory import models as inventory_models
from storefront.orders import database as orders_database
from storefront.orders import models as orders_models
from storefront.orders.saga import OrderSagaProducer
from storefront.inventory.consumer import InventoryReservationConsumer
from storefront.shared import config
from storefront.shared.cache import CacheStore

CUSTOMER_ID = 1
OTHER_CUSTOMER_ID = 2
ADMIN_ID = 99


class RecordingBroker:
    """Keeps published envelopes in memory; can be told to fail publishes."""

    def __init__(self):
        self.published = []
        self.fail_publishes = 0
        self._cursor = 0

    async def publish(self, topic, key, message):
        if self.fail_publishes:
            self.fail_publishes -= 1
            raise ConnectionError("broker unavailable")
        self.published.append((topic, key, message))
        return f"{len(self.published)}-0"

    def messages(self, topic):
        return [message for t, _key, message in self.published if t == topic]

    async def deliver(self, handlers):
        """Hand every not yet delivered envelope to the handler of its topic."""
        delivered = 0
        while self._cursor < len(self.published):
            topic, _key, message = self.published[self._cursor]
            self._cursor += 1
            handler = handlers.get(topic)
            if handler is not None:
                await handler(message.model_dump_json())
                delivered += 1
        return delivered


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event, payload, group=None):
        self.events.append((event, payload, group))

    def named(self, event):
        return [(payload, group) for name, payload, group in self.events if name == event]


def make_token(user_id, role="customer", email=None, expires_in=timedelta(minutes=30)):
    payload = {
        "sub": str(user_id),
        "email": email or f"user{user_id}@example.com",
        "role": role,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, config.SECRET_KEY, algorithm=config.ALGORITHM)


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def cache(redis):
    return CacheStore(redis)


@pytest.fixture
def broker():
    return RecordingBroker()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def inventory_sessions(tmp_path):
    engine = inventory_database.make_engine(f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}")
    await inventory_database.init_models(engine)
    yield inventory_database.make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
async def orders_sessions(tmp_path):
    engine = orders_database.make_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await orders_database.init_models(engine)
    session_factory = orders_database.make_session_factory(engine)
    await orders_database.seed_order_statuses(session_factory)
    async with session_factory() as db:
        db.add_all([
            orders_models.User(user_id=CUSTOMER_ID, email="customer@example.com"),
            orders_models.User(user_id=OTHER_CUSTOMER_ID, email="other@example.com"),
            orders_models.User(user_id=ADMIN_ID, email="admin@example.com"),
            orders_models.User(user_id=3, email="gone@example.com", is_deleted=True),
        ])
        await db.commit()
    yield session_factory
    await engine.dispose()


@pytest.fixture
def add_product(inventory_sessions):
    async def _add(product_id, quantity, price=Decimal("10.00"), name=None):
        async with inventory_sessions() as db:
            db.add(
                inventory_models.Product(
                    product_id=product_id,
                    product_name=name or f"Product {product_id}",
                    price=price,
                    quantity=quantity,
                )
            )
            await db.commit()
    return _add


@pytest.fixture
def stock_of(inventory_sessions):
    async def _stock(product_id):
        async with inventory_sessions() as db:
            product = await db.get(inventory_models.Product, product_id)
            return product.quantity
    return _stock


@pytest.fixture
def consumer(inventory_sessions, cache, broker):
    return InventoryReservationConsumer(inventory_sessions, cache, broker)


@pytest.fixture
def saga(orders_sessions, broker, cache, notifier):
    return OrderSagaProducer(orders_sessions, broker, cache, notifier)
