import json
import logging
import asyncio
from typing import Awaitable, Callable, Optional
from aiokafka import AIOKafkaConsumer, TopicPartition

logger = logging.getLogger(__name__)


def _deserialize(value: bytes) -> Optional[dict]:
    try:
        data = json.loads(value.decode())
    except (UnicodeDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


class KafkaConsumerClient:
    """At-least-once consumer: an offset is committed only after its handler returns.

    A handler failure rewinds the partition to the failed message, so it is
    delivered again after ``retry_delay`` seconds. Messages that are not JSON
    objects can never succeed and are committed past with an error log.
    """

    def __init__(self, bootstrap_servers: str, topic: str, group_id: str = "storefront-checkout-group",
                 retry_delay: float = 1.0):
        self._bootstrap_servers = bootstrap_servers
        self._group_id = group_id
        self._topic = topic
        self._retry_delay = retry_delay
        self._consumer: AIOKafkaConsumer | None = None

    async def start(self):
        self._consumer = AIOKafkaConsumer(
            self._topic,
            bootstrap_servers=self._bootstrap_servers,
            group_id=self._group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            value_deserializer=_deserialize
        )
        await self._consumer.start()
        logger.info(f"Kafka consumer started on {self._topic}")

    async def stop(self):
        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
            logger.info("Kafka consumer stopped")

    async def consume(self, callback: Callable[[dict], Awaitable[object]]):
        async for msg in self._consumer:
            event_data = msg.value
            if event_data is None:
                logger.error(f"Skipping malformed message at {msg.topic}[{msg.partition}]@{msg.offset}")
                await self._consumer.commit()
                continue

            logger.info(f"Received event: {event_data.get('event_type')}")
            try:
                await callback(event_data)
            except Exception as e:
                logger.error(f"Error processing message at offset {msg.offset}, will retry: {e}")
                self._consumer.seek(TopicPartition(msg.topic, msg.partition), msg.offset)
                await asyncio.sleep(self._retry_delay)
                continue
            await self._consumer.commit()
