"""
Notification fan-out for order events.

Events are pushed to connected websocket clients (everyone, or one group such
as ``User_{id}`` or ``AdminGroup``) and posted to the configured webhook URLs.
Delivery is fire-and-forget: ``notify`` schedules a task and returns at once,
and delivery errors are logged, never raised to the caller.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import httpx

from ..shared import config

logger = logging.getLogger(__name__)

ADMIN_GROUP = "AdminGroup"

# Event names
ORDER_CREATED = "OrderCreated"
ORDER_STATUS_CHANGED = "OrderStatusChanged"
YOUR_ORDER_STATUS_CHANGED = "YourOrderStatusChanged"
COMPENSATION_FAILED = "CompensationFailed"
OUTBOX_DEAD_LETTERED = "OutboxMessageDeadLettered"


def user_group(user_id: int) -> str:
    return f"User_{user_id}"


class ConnectionRegistry:
    """
    Live push connections and their group memberships.

    A connection is anything with an async ``send_json`` method (a
    Starlette ``WebSocket`` in production).
    """

    def __init__(self):
        self._groups: Dict[Any, Set[str]] = {}

    def add(self, connection, user_id: int, is_admin: bool = False) -> None:
        groups = {user_group(user_id)}
        if is_admin:
            groups.add(ADMIN_GROUP)
        self._groups[connection] = groups
        logger.info(f"Push connection added for user {user_id} ({len(self._groups)} connected)")

    def remove(self, connection) -> None:
        self._groups.pop(connection, None)

    def connections(self, group: Optional[str] = None) -> List[Any]:
        if group is None:
            return list(self._groups)
        return [conn for conn, groups in self._groups.items() if group in groups]

    def __len__(self) -> int:
        return len(self._groups)


class Notifier:
    """
    Fans an event out to push connections and webhooks.

    Args:
        registry: Connection registry owned by the application
        webhook_urls: URLs to POST every event to (defaults to config)
        transport: Optional httpx transport, used by tests
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        webhook_urls: Optional[List[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.registry = registry
        self.webhook_urls = config.WEBHOOK_URLS if webhook_urls is None else webhook_urls
        self.transport = transport
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, event: str, payload: Dict[str, Any], group: Optional[str] = None) -> None:
        """
        Schedule delivery of an event.

        Args:
            event: Event name, e.g. "OrderCreated"
            payload: JSON-serializable event data
            group: Restrict push delivery to this group (optional)
        """
        message = {
            "event": event,
            "data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        task = asyncio.create_task(self._deliver(message, group))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, message: Dict[str, Any], group: Optional[str]) -> None:
        await asyncio.gather(
            self._push(message, group),
            self._send_webhooks(message),
        )

    async def _push(self, message: Dict[str, Any], group: Optional[str]) -> None:
        for connection in self.registry.connections(group):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning(f"Dropping push connection after send error: {e}")
                self.registry.remove(connection)

    async def _send_webhooks(self, message: Dict[str, Any]) -> None:
        if not self.webhook_urls:
            return

        async with httpx.AsyncClient(timeout=5.0, transport=self.transport) as client:
            # Send all webhooks concurrently
            await asyncio.gather(
                *(self._send_single_webhook(client, url, message) for url in self.webhook_urls)
            )

    async def _send_single_webhook(self, client: httpx.AsyncClient, url: str, message: Dict[str, Any]) -> None:
        try:
            response = await client.post(url, json=message)
            if response.status_code >= 400:
                logger.warning(f"Webhook failed for {url}: HTTP {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Webhook error for {url}: {e}")
