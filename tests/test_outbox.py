from unittest.mock import AsyncMock

import pytest

from fulfillment.application.process_outbox import ProcessOutboxEventsUseCase
from fulfillment.domain.exceptions import EventNotReady
from fulfillment.domain.models import OutboxEventType, OutboxStatus


async def add_event(uow, order_id="order-1", event_type=OutboxEventType.PAYMENT_PENDING):
    async with uow() as tx:
        event_id = await tx.outbox.create(order_id, event_type, {"order_id": order_id})
        await tx.commit()
    return event_id


async def get_event(uow, event_id):
    async with uow() as tx:
        return await tx.outbox.get_by_id(event_id)


@pytest.mark.asyncio
async def test_handled_events_are_marked_processed(uow):
    first = await add_event(uow, "order-1")
    second = await add_event(uow, "order-2")
    handlers = AsyncMock()
    handlers.handle.return_value = True

    processed = await ProcessOutboxEventsUseCase(uow, handlers)()

    assert processed == 2
    assert handlers.handle.await_count == 2
    for event_id in (first, second):
        event = await get_event(uow, event_id)
        assert event.status == OutboxStatus.PROCESSED
        assert event.processed_at is not None

    # nothing left to relay
    assert await ProcessOutboxEventsUseCase(uow, handlers)() == 0
    assert handlers.handle.await_count == 2


@pytest.mark.asyncio
async def test_events_are_handled_in_creation_order(uow):
    ids = [await add_event(uow, f"order-{n}") for n in range(3)]
    handlers = AsyncMock()
    handlers.handle.return_value = True

    await ProcessOutboxEventsUseCase(uow, handlers)()

    assert [call.args[0].id for call in handlers.handle.await_args_list] == ids


@pytest.mark.asyncio
async def test_failed_event_is_retried_until_ceiling(uow):
    event_id = await add_event(uow)
    handlers = AsyncMock()
    handlers.handle.return_value = False
    relay = ProcessOutboxEventsUseCase(uow, handlers, max_retries=3)

    await relay()
    event = await get_event(uow, event_id)
    assert event.status == OutboxStatus.PENDING
    assert event.retry_count == 1

    await relay()
    await relay()
    event = await get_event(uow, event_id)
    assert event.status == OutboxStatus.FAILED
    assert event.retry_count == 3

    await relay()
    assert handlers.handle.await_count == 3


@pytest.mark.asyncio
async def test_handler_exception_is_recorded(uow):
    event_id = await add_event(uow)
    handlers = AsyncMock()
    handlers.handle.side_effect = RuntimeError("ledger exploded")

    assert await ProcessOutboxEventsUseCase(uow, handlers)() == 0

    event = await get_event(uow, event_id)
    assert event.retry_count == 1
    assert event.last_error == "ledger exploded"


@pytest.mark.asyncio
async def test_not_ready_event_is_left_untouched(uow):
    event_id = await add_event(uow, event_type=OutboxEventType.DELIVERY_FAILED)
    handlers = AsyncMock()
    handlers.handle.side_effect = EventNotReady("grace period")

    for _ in range(5):
        await ProcessOutboxEventsUseCase(uow, handlers, max_retries=3)()

    event = await get_event(uow, event_id)
    assert event.status == OutboxStatus.PENDING
    assert event.retry_count == 0
    assert handlers.handle.await_count == 5
