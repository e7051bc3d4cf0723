import asyncio
import logging

from fulfillment.config import settings
from fulfillment.database import AsyncSessionLocal
from fulfillment.domain.models import DELIVERIES_QUEUE, NOTIFICATIONS_QUEUE, DEAD_LETTER_QUEUE
from fulfillment.infrastructure.queues import QueueRelay, SQLQueueConsumer
from fulfillment.presentation import wiring

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

QUEUES = (DELIVERIES_QUEUE, NOTIFICATIONS_QUEUE, DEAD_LETTER_QUEUE)


async def queue_relay_worker():
    """Moves queue messages from the database onto Kafka topics"""
    if settings.QUEUE_BACKEND != "kafka":
        logger.info("Queue backend is the database, nothing to relay")
        return

    logger.info("Queue relay worker started")
    await wiring.start_broker()

    try:
        relay = QueueRelay(SQLQueueConsumer(AsyncSessionLocal, settings.QUEUE_VISIBILITY_TIMEOUT), wiring.broker)
        while True:
            try:
                relayed = await relay(QUEUES, limit=settings.OUTBOX_BATCH_SIZE)
                if relayed:
                    logger.info(f"Relayed {relayed} queue messages to Kafka")
                await asyncio.sleep(settings.OUTBOX_POLL_INTERVAL)

            except Exception as e:
                logger.error(f"Error in queue relay worker: {e}", exc_info=True)
                await asyncio.sleep(10)
    finally:
        await wiring.stop_broker()


async def main():
    await queue_relay_worker()


if __name__ == "__main__":
    asyncio.run(main())
