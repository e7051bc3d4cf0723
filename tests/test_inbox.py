from decimal import Decimal

import pytest
from sqlalchemy import select

from fulfillment.application.process_inbox import ProcessInboxEventsUseCase, ReceiveDeliveryUpdateUseCase
from fulfillment.domain.models import DeliveryStatus, OrderStatus, PaymentStatus
from fulfillment.infrastructure.db_schema import inbox_events_tbl

from conftest import CUSTOMER, balance, order_request, payment_of, stock_levels


async def shipped_order(saga):
    order = await saga.create_order(order_request(quantity=2))
    await saga.relay()
    await saga.relay()
    return await saga.get_order(order.id)


async def inbox_statuses(session_factory):
    async with session_factory() as session:
        result = await session.execute(
            select(inbox_events_tbl.c.idempotency_key, inbox_events_tbl.c.status)
        )
        return {row.idempotency_key: row.status for row in result.fetchall()}


async def deliver_update(saga, order, status):
    receive = ReceiveDeliveryUpdateUseCase(saga.uow)
    process = ProcessInboxEventsUseCase(saga.uow, saga.cancel_order)
    stored = await receive(order.delivery_id, order.id, status)
    await process()
    return stored


@pytest.mark.asyncio
async def test_carrier_progress_moves_order_forward(saga, session_factory):
    order = await shipped_order(saga)

    await deliver_update(saga, order, DeliveryStatus.PICKED_UP)
    assert (await saga.get_order(order.id)).status == OrderStatus.SHIPPED

    await deliver_update(saga, order, DeliveryStatus.DELIVERING)
    assert (await saga.get_order(order.id)).status == OrderStatus.IN_TRANSIT

    await deliver_update(saga, order, DeliveryStatus.RECEIVED)
    assert (await saga.get_order(order.id)).status == OrderStatus.DELIVERED

    assert set((await inbox_statuses(session_factory)).values()) == {"processed"}


@pytest.mark.asyncio
async def test_duplicate_webhook_is_stored_once(saga, session_factory):
    order = await shipped_order(saga)
    receive = ReceiveDeliveryUpdateUseCase(saga.uow)

    assert await receive(order.delivery_id, order.id, DeliveryStatus.DELIVERING) is True
    assert await receive(order.delivery_id, order.id, DeliveryStatus.DELIVERING) is False

    assert list(await inbox_statuses(session_factory)) == [f"{order.delivery_id}:DELIVERING"]


@pytest.mark.asyncio
async def test_late_update_for_finished_order_is_ignored(saga):
    order = await shipped_order(saga)

    await deliver_update(saga, order, DeliveryStatus.RECEIVED)
    await deliver_update(saga, order, DeliveryStatus.DELIVERING)

    assert (await saga.get_order(order.id)).status == OrderStatus.DELIVERED


@pytest.mark.asyncio
async def test_lost_parcel_is_refunded(saga):
    order = await shipped_order(saga)
    await deliver_update(saga, order, DeliveryStatus.DELIVERING)

    await deliver_update(saga, order, DeliveryStatus.LOST)

    refunded = await saga.get_order(order.id)
    assert refunded.status == OrderStatus.REFUNDED
    assert refunded.cancel_reason == "Parcel lost"
    assert (await payment_of(saga.uow, order.id)).status == PaymentStatus.REFUNDED
    assert await balance(saga.uow, CUSTOMER) == Decimal("1000.00")
    # lost goods do not return to the shelf
    assert await stock_levels(saga.uow) == {"A": 3, "B": 8}


@pytest.mark.asyncio
async def test_carrier_cancellation_compensates_order(saga):
    order = await shipped_order(saga)

    await deliver_update(saga, order, DeliveryStatus.CANCELLED)

    cancelled = await saga.get_order(order.id)
    assert cancelled.status == OrderStatus.CANCELLED
    assert await balance(saga.uow, CUSTOMER) == Decimal("1000.00")
    assert await stock_levels(saga.uow) == {"A": 3, "B": 10}


@pytest.mark.asyncio
async def test_update_for_unknown_order_is_marked_failed(saga, session_factory):
    receive = ReceiveDeliveryUpdateUseCase(saga.uow)
    await receive("d-unknown", "o-unknown", DeliveryStatus.DELIVERING)

    assert await ProcessInboxEventsUseCase(saga.uow, saga.cancel_order)() == 0
    assert await inbox_statuses(session_factory) == {"d-unknown:DELIVERING": "failed"}


@pytest.mark.asyncio
async def test_update_found_by_delivery_id(saga):
    order = await shipped_order(saga)
    receive = ReceiveDeliveryUpdateUseCase(saga.uow)
    await receive(order.delivery_id, "", DeliveryStatus.DELIVERING)

    assert await ProcessInboxEventsUseCase(saga.uow, saga.cancel_order)() == 1
    assert (await saga.get_order(order.id)).status == OrderStatus.IN_TRANSIT
