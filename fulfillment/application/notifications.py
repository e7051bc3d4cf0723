import logging

from fulfillment.domain.models import NotificationMessage, NOTIFICATIONS_QUEUE, DEAD_LETTER_QUEUE
from fulfillment.application.interfaces import WebhookSender

logger = logging.getLogger(__name__)


class SendNotificationUseCase:
    """One webhook attempt; any failure parks the message on the dead-letter queue"""

    def __init__(self, unit_of_work, webhook_sender: WebhookSender):
        self._uow = unit_of_work
        self._webhook = webhook_sender

    async def __call__(self, body: dict) -> bool:
        message = NotificationMessage(**body)
        try:
            await self._webhook.post(message.url, message.payload)
            logger.info(f"Webhook delivered to {message.url}: {message.payload.get('status')}")
            return True
        except Exception as e:
            logger.warning(f"Webhook to {message.url} failed (retry {message.retry_count}): {e}")

        async with self._uow() as uow:
            await uow.queue.publish(DEAD_LETTER_QUEUE, message.model_dump())
            await uow.commit()
        return False


class ProcessDeadLetterUseCase:
    """Sends a failed notification back to the notifications queue until the retry ceiling"""

    def __init__(self, unit_of_work, max_retries: int = 5):
        self._uow = unit_of_work
        self._max_retries = max_retries

    async def __call__(self, body: dict) -> bool:
        message = NotificationMessage(**body)
        if message.retry_count >= self._max_retries:
            logger.error(
                f"Dropping notification to {message.url} after {message.retry_count} retries: {message.payload}"
            )
            return False

        retried = message.model_copy(update={"retry_count": message.retry_count + 1})
        async with self._uow() as uow:
            await uow.queue.publish(NOTIFICATIONS_QUEUE, retried.model_dump())
            await uow.commit()
        logger.info(f"Re-queued notification to {message.url} (retry {retried.retry_count})")
        return True
