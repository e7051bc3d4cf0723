import pytest

from fulfillment.application.deliveries import (
    AdvanceDeliveryUseCase, CancelDeliveryUseCase, CreateDeliveryUseCase, GetDeliveryUseCase,
)
from fulfillment.domain.exceptions import DeliveryCancellationError, DeliveryNotFoundError
from fulfillment.domain.models import (
    DeliveryRequest, DeliveryStatus, DELIVERIES_QUEUE, NOTIFICATIONS_QUEUE,
)
from fulfillment.infrastructure.queues import SQLQueueConsumer

from conftest import queued

HOOK_URL = "http://shop.local/api/delivery-webhook"


def delivery_request(order_id="order-1", **overrides):
    data = dict(
        order_id=order_id,
        email="ann@example.com",
        user_name="Ann",
        to_address="1 Main St",
        from_address=["Warehouse A, Dock 1"],
        product_name="Widget",
        quantity=2,
        notification_url=HOOK_URL,
    )
    data.update(overrides)
    return DeliveryRequest(**data)


async def no_sleep(delay):
    return None


def never_lost():
    return 0.99


def notified_statuses(bodies):
    return [body["payload"]["status"] for body in bodies]


@pytest.mark.asyncio
async def test_create_is_idempotent_per_order(uow, session_factory):
    create = CreateDeliveryUseCase(uow)

    first = await create(delivery_request())
    second = await create(delivery_request())

    assert first.success and second.success
    assert second.delivery_id == first.delivery_id
    assert await queued(session_factory, DELIVERIES_QUEUE) == [{"delivery_id": first.delivery_id}]

    delivery = await GetDeliveryUseCase(uow)(first.delivery_id)
    assert delivery.status == DeliveryStatus.CREATED
    assert delivery.version == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"quantity": 0},
    {"to_address": "   "},
    {"from_address": []},
])
async def test_create_rejects_invalid_requests(uow, session_factory, overrides):
    result = await CreateDeliveryUseCase(uow)(delivery_request(**overrides))

    assert not result.success
    assert result.delivery_id is None
    assert await queued(session_factory, DELIVERIES_QUEUE) == []


@pytest.mark.asyncio
async def test_delivery_progresses_to_received(uow, session_factory):
    created = await CreateDeliveryUseCase(uow)(delivery_request())
    advance = AdvanceDeliveryUseCase(uow, transit_delay=0, sleep=no_sleep, rng=never_lost)

    handled = await SQLQueueConsumer(session_factory).consume(DELIVERIES_QUEUE, advance, limit=10)

    assert handled == 3
    delivery = await GetDeliveryUseCase(uow)(created.delivery_id)
    assert delivery.status == DeliveryStatus.RECEIVED
    assert delivery.version == 3
    assert await queued(session_factory, DELIVERIES_QUEUE) == []

    notifications = await queued(session_factory, NOTIFICATIONS_QUEUE)
    assert notified_statuses(notifications) == ["PICKED_UP", "DELIVERING", "RECEIVED"]
    assert all(body["url"] == HOOK_URL for body in notifications)
    assert all(body["payload"]["order_id"] == "order-1" for body in notifications)


@pytest.mark.asyncio
async def test_delivery_can_be_lost_in_transit(uow, session_factory):
    created = await CreateDeliveryUseCase(uow)(delivery_request())
    advance = AdvanceDeliveryUseCase(uow, sleep=no_sleep, rng=lambda: 0.01, loss_rate=0.05)

    await SQLQueueConsumer(session_factory).consume(DELIVERIES_QUEUE, advance, limit=10)

    delivery = await GetDeliveryUseCase(uow)(created.delivery_id)
    assert delivery.status == DeliveryStatus.LOST
    assert notified_statuses(await queued(session_factory, NOTIFICATIONS_QUEUE)) == ["LOST"]


@pytest.mark.asyncio
async def test_no_notifications_without_callback_url(uow, session_factory):
    await CreateDeliveryUseCase(uow)(delivery_request(notification_url=None))
    advance = AdvanceDeliveryUseCase(uow, sleep=no_sleep, rng=never_lost)

    await SQLQueueConsumer(session_factory).consume(DELIVERIES_QUEUE, advance, limit=10)

    assert await queued(session_factory, NOTIFICATIONS_QUEUE) == []


@pytest.mark.asyncio
async def test_cancellation_during_transit_wins(uow, session_factory):
    created = await CreateDeliveryUseCase(uow)(delivery_request())
    cancel = CancelDeliveryUseCase(uow)

    async def cancel_while_sleeping(delay):
        await cancel(created.delivery_id)

    advance = AdvanceDeliveryUseCase(uow, sleep=cancel_while_sleeping, rng=never_lost)
    await advance({"delivery_id": created.delivery_id})

    delivery = await GetDeliveryUseCase(uow)(created.delivery_id)
    assert delivery.status == DeliveryStatus.CANCELLED
    assert delivery.retry_count == 0
    assert notified_statuses(await queued(session_factory, NOTIFICATIONS_QUEUE)) == ["CANCELLED"]
    # only the original scheduling message, the dropped transition enqueued nothing
    assert len(await queued(session_factory, DELIVERIES_QUEUE)) == 1


@pytest.mark.asyncio
async def test_cancel_is_idempotent(uow):
    created = await CreateDeliveryUseCase(uow)(delivery_request())
    cancel = CancelDeliveryUseCase(uow)

    first = await cancel(created.delivery_id)
    second = await cancel(created.delivery_id)

    assert first.status == second.status == DeliveryStatus.CANCELLED
    assert (await GetDeliveryUseCase(uow)(created.delivery_id)).version == 1


@pytest.mark.asyncio
async def test_cancel_rejected_once_delivering(uow):
    created = await CreateDeliveryUseCase(uow)(delivery_request())
    advance = AdvanceDeliveryUseCase(uow, sleep=no_sleep, rng=never_lost)
    body = {"delivery_id": created.delivery_id}
    await advance(body)
    await advance(body)

    assert (await GetDeliveryUseCase(uow)(created.delivery_id)).status == DeliveryStatus.DELIVERING
    with pytest.raises(DeliveryCancellationError):
        await CancelDeliveryUseCase(uow)(created.delivery_id)


@pytest.mark.asyncio
async def test_cancel_unknown_delivery(uow):
    with pytest.raises(DeliveryNotFoundError):
        await CancelDeliveryUseCase(uow)("missing")


@pytest.mark.asyncio
async def test_terminal_delivery_is_not_advanced(uow, session_factory):
    created = await CreateDeliveryUseCase(uow)(delivery_request())
    await CancelDeliveryUseCase(uow)(created.delivery_id)

    await AdvanceDeliveryUseCase(uow, sleep=no_sleep, rng=never_lost)({"delivery_id": created.delivery_id})
    await AdvanceDeliveryUseCase(uow, sleep=no_sleep, rng=never_lost)({"delivery_id": "missing"})

    assert (await GetDeliveryUseCase(uow)(created.delivery_id)).status == DeliveryStatus.CANCELLED


@pytest.mark.asyncio
async def test_failed_transition_is_retried_then_abandoned(uow, session_factory):
    created = await CreateDeliveryUseCase(uow)(delivery_request())

    async def broken_sleep(delay):
        raise RuntimeError("carrier unreachable")

    advance = AdvanceDeliveryUseCase(uow, sleep=broken_sleep, rng=never_lost, max_retries=2)
    body = {"delivery_id": created.delivery_id}

    await advance(body)
    assert len(await queued(session_factory, DELIVERIES_QUEUE)) == 2

    await advance(body)
    assert len(await queued(session_factory, DELIVERIES_QUEUE)) == 2

    delivery = await GetDeliveryUseCase(uow)(created.delivery_id)
    assert delivery.retry_count == 2
    assert delivery.status == DeliveryStatus.CREATED
