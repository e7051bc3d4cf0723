import json
import logging
from aiokafka import AIOKafkaProducer

logger = logging.getLogger(__name__)


class KafkaProducerClient:
    """Publishes queue messages onto `<prefix>.<queue>` topics"""

    def __init__(self, bootstrap_servers: str, topic_prefix: str = "fulfillment"):
        self._bootstrap_servers = bootstrap_servers
        self._topic_prefix = topic_prefix
        self._producer: AIOKafkaProducer | None = None

    def topic_for(self, queue: str) -> str:
        return f"{self._topic_prefix}.{queue}"

    async def start(self):
        if not self._producer:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self._bootstrap_servers,
                acks="all"
            )
            await self._producer.start()
            logger.info("Kafka producer started")

    async def stop(self):
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Kafka producer stopped")

    async def publish(self, queue: str, body: dict) -> None:
        if not self._producer:
            raise RuntimeError("Kafka producer not started")

        key = body.get("delivery_id") or body.get("payload", {}).get("delivery_id")
        await self._producer.send_and_wait(
            topic=self.topic_for(queue),
            key=key.encode() if key else None,
            value=json.dumps(body).encode()
        )
        logger.info(f"Published message to {self.topic_for(queue)}")
