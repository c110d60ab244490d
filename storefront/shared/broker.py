"""
Redis Streams message broker.

Streams with consumer groups give at-least-once delivery: an entry stays in
the group's pending list until the handler succeeds and the entry is
acknowledged. Entries whose handler keeps failing are reclaimed after an idle
period and, once delivered ``max_deliveries`` times, moved to a dead-letter
stream (``<topic>.dead-letter``) so they stop blocking the group.

Consumers must therefore be idempotent; the inventory consumer uses the
message's request id for that.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Tuple

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import ResponseError

from . import config

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]


def dead_letter_topic(topic: str) -> str:
    return f"{topic}.dead-letter"


class RedisStreamBroker:
    """
    Publishes envelopes to streams and runs consumer-group loops over them.

    Args:
        redis: ``redis.asyncio`` client created with ``decode_responses=True``
        maxlen: Approximate cap on stream length
        max_deliveries: Deliveries before an entry is dead-lettered
        block_ms: How long XREADGROUP blocks waiting for new entries
        claim_idle_ms: Idle time after which pending entries are reclaimed
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        maxlen: int = config.STREAM_MAXLEN,
        max_deliveries: int = config.BROKER_MAX_DELIVERIES,
        block_ms: int = config.BROKER_BLOCK_MS,
        claim_idle_ms: int = config.BROKER_CLAIM_IDLE_MS,
    ):
        self.redis = redis
        self.maxlen = maxlen
        self.max_deliveries = max_deliveries
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms

    async def publish(self, topic: str, key: str, message: BaseModel) -> str:
        """
        Append an envelope to a stream.

        Args:
            topic: Stream name
            key: Ordering/partition key (the order id)
            message: Envelope to serialize as JSON

        Returns:
            The stream entry id
        """
        fields = {
            "key": key,
            "type": type(message).__name__,
            "payload": message.model_dump_json(),
        }
        entry_id = await self.redis.xadd(topic, fields, maxlen=self.maxlen, approximate=True)
        logger.info(f"Published {fields['type']} to '{topic}' (key={key}, id={entry_id})")
        return entry_id

    async def ensure_topics(self, topics: Iterable[str], group: str) -> None:
        """Create the consumer group (and stream) for each topic if missing."""
        for topic in topics:
            try:
                await self.redis.xgroup_create(topic, group, id="0", mkstream=True)
                logger.info(f"Created consumer group '{group}' on '{topic}'")
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def read_batch(self, topic: str, group: str, consumer: str, count: int = 10) -> List[Tuple[str, dict]]:
        """Read entries never delivered to this group."""
        response = await self.redis.xreadgroup(
            group, consumer, {topic: ">"}, count=count, block=self.block_ms
        )
        entries = []
        for _stream, messages in response or []:
            entries.extend(messages)
        return entries

    async def reclaim(self, topic: str, group: str, consumer: str, count: int = 10) -> List[Tuple[str, dict]]:
        """Take over entries left pending by failed or crashed consumers."""
        result = await self.redis.xautoclaim(
            topic, group, consumer, min_idle_time=self.claim_idle_ms, start_id="0-0", count=count
        )
        return list(result[1]) if result else []

    async def process_entry(
        self, topic: str, group: str, entry_id: str, fields: dict, handler: MessageHandler
    ) -> bool:
        """
        Run the handler for one entry and acknowledge it on success.

        Returns:
            True if the entry was handled and acknowledged
        """
        if not fields:
            # Trimmed from the stream while pending
            await self.redis.xack(topic, group, entry_id)
            return False

        try:
            await handler(fields["payload"])
        except Exception as e:
            logger.exception(f"Handler failed for '{topic}' entry {entry_id}")
            await self._dead_letter_if_exhausted(topic, group, entry_id, fields, e)
            return False

        await self.redis.xack(topic, group, entry_id)
        return True

    async def _dead_letter_if_exhausted(
        self, topic: str, group: str, entry_id: str, fields: dict, error: Exception
    ) -> None:
        try:
            pending = await self.redis.xpending_range(topic, group, min=entry_id, max=entry_id, count=1)
            deliveries = pending[0]["times_delivered"] if pending else 0
            if deliveries < self.max_deliveries:
                return

            await self.redis.xadd(
                dead_letter_topic(topic),
                {**fields, "source_id": entry_id, "error": str(error)},
                maxlen=self.maxlen,
                approximate=True,
            )
            await self.redis.xack(topic, group, entry_id)
            logger.error(f"Dead-lettered '{topic}' entry {entry_id} after {deliveries} deliveries: {error}")
        except Exception as e:
            logger.error(f"Dead-letter handling failed for '{topic}' entry {entry_id}: {e}")

    async def consume(
        self,
        topic: str,
        group: str,
        consumer: str,
        handler: MessageHandler,
        shutdown_event: asyncio.Event,
    ) -> None:
        """
        Consume a topic until ``shutdown_event`` is set.

        Each iteration first reclaims stale pending entries, then reads new
        ones. Broker errors are logged and retried after a short pause.
        """
        await self.ensure_topics([topic], group)
        logger.info(f"Consumer '{consumer}' of group '{group}' subscribed to '{topic}'")

        while not shutdown_event.is_set():
            try:
                entries = await self.reclaim(topic, group, consumer)
                entries += await self.read_batch(topic, group, consumer)
            except Exception:
                logger.exception(f"Failed to read from '{topic}'")
                await asyncio.sleep(1.0)
                continue

            for entry_id, fields in entries:
                await self.process_entry(topic, group, entry_id, fields, handler)

        logger.info(f"Consumer '{consumer}' stopped consuming '{topic}'")
