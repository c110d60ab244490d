import httpx
import pytest

from storefront.orders.notifications import ADMIN_GROUP, ConnectionRegistry, Notifier, user_group


class FakeConnection:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(message)


@pytest.fixture
def registry():
    return ConnectionRegistry()


class TestConnectionRegistry:
    def test_groups(self, registry):
        customer, admin = FakeConnection(), FakeConnection()
        registry.add(customer, user_id=1)
        registry.add(admin, user_id=99, is_admin=True)

        assert registry.connections() == [customer, admin]
        assert registry.connections(user_group(1)) == [customer]
        assert registry.connections(ADMIN_GROUP) == [admin]

    def test_remove(self, registry):
        connection = FakeConnection()
        registry.add(connection, user_id=1)
        registry.remove(connection)
        registry.remove(connection)

        assert len(registry) == 0


class TestNotifier:
    async def test_group_delivery(self, registry):
        customer, other = FakeConnection(), FakeConnection()
        registry.add(customer, user_id=1)
        registry.add(other, user_id=2)
        notifier = Notifier(registry, webhook_urls=[])

        notifier.notify("YourOrderStatusChanged", {"order_id": 5}, group=user_group(1))
        notifier.notify("OrderStatusChanged", {"order_id": 5})
        await notifier.drain()

        assert [m["event"] for m in customer.sent] == ["YourOrderStatusChanged", "OrderStatusChanged"]
        assert [m["event"] for m in other.sent] == ["OrderStatusChanged"]
        assert customer.sent[0]["data"] == {"order_id": 5}

    async def test_broken_connection_is_dropped(self, registry):
        registry.add(FakeConnection(fail=True), user_id=1)
        notifier = Notifier(registry, webhook_urls=[])

        notifier.notify("OrderCreated", {"order_id": 1})
        await notifier.drain()

        assert len(registry) == 0

    async def test_webhooks_receive_every_event(self, registry):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(500 if "broken" in str(request.url) else 200)

        notifier = Notifier(
            registry,
            webhook_urls=["http://hooks.test/orders", "http://broken.test/orders"],
            transport=httpx.MockTransport(handler),
        )

        notifier.notify("OrderCreated", {"order_id": 1})
        await notifier.drain()

        assert sorted(str(r.url) for r in requests) == ["http://broken.test/orders", "http://hooks.test/orders"]
        assert b'"OrderCreated"' in requests[0].content
