import asyncio
import logging

from fulfillment.application.notifications import SendNotificationUseCase, ProcessDeadLetterUseCase
from fulfillment.config import settings
from fulfillment.domain.models import NOTIFICATIONS_QUEUE, DEAD_LETTER_QUEUE
from fulfillment.infrastructure.http_clients import HTTPWebhookClient
from fulfillment.presentation import wiring

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

webhook_client = HTTPWebhookClient(timeout=settings.WEBHOOK_TIMEOUT)


async def handle_notification(body: dict):
    await SendNotificationUseCase(wiring.make_unit_of_work(), webhook_client)(body)


async def handle_dead_letter(body: dict):
    await ProcessDeadLetterUseCase(wiring.make_unit_of_work(), settings.NOTIFICATION_MAX_RETRIES)(body)


async def notification_worker():
    """Delivers status webhooks and recycles the dead-letter queue"""
    logger.info("Notification worker started")
    await asyncio.gather(
        wiring.run_queue_worker(NOTIFICATIONS_QUEUE, handle_notification),
        wiring.run_queue_worker(DEAD_LETTER_QUEUE, handle_dead_letter, idle_sleep=5.0),
    )


async def main():
    await notification_worker()


if __name__ == "__main__":
    asyncio.run(main())
