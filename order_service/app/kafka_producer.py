import json
import logging
from typing import Optional

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

logger = logging.getLogger(__name__)

ORDER_CREATED = "order_created"
ORDER_UPDATED = "order_updated"
ORDER_DELETED = "order_deleted"


class OrderEventProducer:
    """Publishes order lifecycle events after the write has committed.

    Publication is best-effort: a broker failure is logged and never turns a
    committed write into an error. With no bootstrap servers configured every
    publish is a no-op.
    """

    def __init__(self, bootstrap_servers: Optional[str]):
        self.bootstrap_servers = bootstrap_servers
        self._producer: Optional[AIOKafkaProducer] = None

    @property
    def enabled(self) -> bool:
        return bool(self.bootstrap_servers)

    async def start(self):
        if not self.enabled or self._producer is not None:
            return
        producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
        try:
            await producer.start()
        except KafkaError as e:
            logger.error(f"Kafka producer failed to start: {e}. Order events are disabled")
            return
        self._producer = producer
        logger.info(f"Kafka producer started on {self.bootstrap_servers}")

    async def stop(self):
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def publish(self, topic: str, event: dict):
        if self._producer is None:
            return
        event_bytes = json.dumps(event).encode('utf-8')
        try:
            await self._producer.send_and_wait(topic, event_bytes)
        except KafkaError as e:
            logger.error(f"Failed to produce event to topic {topic}: {e}")
            return
        logger.info(f"Produced event to topic {topic}: {event}")
