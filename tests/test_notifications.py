from unittest.mock import AsyncMock

import httpx
import pytest

from fulfillment.application.notifications import SendNotificationUseCase, ProcessDeadLetterUseCase
from fulfillment.domain.models import NotificationMessage, NOTIFICATIONS_QUEUE, DEAD_LETTER_QUEUE
from fulfillment.infrastructure.queues import SQLQueueConsumer

from conftest import queued

URL = "http://shop.local/api/delivery-webhook"


def message(retry_count=0):
    return NotificationMessage(
        url=URL,
        payload={"delivery_id": "d-1", "order_id": "o-1", "status": "PICKED_UP"},
        retry_count=retry_count
    ).model_dump()


@pytest.mark.asyncio
async def test_delivered_webhook_is_not_parked(uow, session_factory):
    sender = AsyncMock()

    assert await SendNotificationUseCase(uow, sender)(message()) is True

    sender.post.assert_awaited_once_with(URL, message()["payload"])
    assert await queued(session_factory, DEAD_LETTER_QUEUE) == []


@pytest.mark.asyncio
async def test_failed_webhook_goes_to_dead_letter_queue(uow, session_factory):
    sender = AsyncMock()
    sender.post.side_effect = httpx.ConnectError("connection refused")

    assert await SendNotificationUseCase(uow, sender)(message(retry_count=2)) is False

    sender.post.assert_awaited_once()
    assert await queued(session_factory, DEAD_LETTER_QUEUE) == [message(retry_count=2)]


@pytest.mark.asyncio
async def test_dead_letter_requeues_with_incremented_retry_count(uow, session_factory):
    requeued = await ProcessDeadLetterUseCase(uow, max_retries=5)(message(retry_count=4))

    assert requeued is True
    assert await queued(session_factory, NOTIFICATIONS_QUEUE) == [message(retry_count=5)]


@pytest.mark.asyncio
async def test_dead_letter_drops_message_at_retry_ceiling(uow, session_factory):
    requeued = await ProcessDeadLetterUseCase(uow, max_retries=5)(message(retry_count=5))

    assert requeued is False
    assert await queued(session_factory, NOTIFICATIONS_QUEUE) == []
    assert await queued(session_factory, DEAD_LETTER_QUEUE) == []


@pytest.mark.asyncio
async def test_always_failing_webhook_is_attempted_six_times(uow, session_factory):
    sender = AsyncMock()
    sender.post.side_effect = httpx.HTTPStatusError(
        "503", request=httpx.Request("POST", URL), response=httpx.Response(503)
    )
    send = SendNotificationUseCase(uow, sender)
    recycle = ProcessDeadLetterUseCase(uow, max_retries=5)
    consumer = SQLQueueConsumer(session_factory)

    async with uow() as tx:
        await tx.queue.publish(NOTIFICATIONS_QUEUE, message())
        await tx.commit()

    for _ in range(10):
        await consumer.consume(NOTIFICATIONS_QUEUE, send)
        await consumer.consume(DEAD_LETTER_QUEUE, recycle)

    # the first attempt plus five retries
    assert sender.post.await_count == 6
    assert await queued(session_factory, NOTIFICATIONS_QUEUE) == []
    assert await queued(session_factory, DEAD_LETTER_QUEUE) == []
