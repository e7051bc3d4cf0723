from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from fulfillment.application.process_payment import ProcessPaymentUseCase
from fulfillment.application.saga_handlers import SagaHandlers
from fulfillment.application.transfer_funds import OpenAccountUseCase
from fulfillment.domain.exceptions import (
    DeliveryServiceError, InsufficientStockError, ItemNotFoundError, LedgerServiceError, OrderCancellationError,
)
from fulfillment.domain.models import (
    DeliveryResult, DeliveryStatus, InventoryTransactionType, OrderStatus, OutboxEventType, OutboxStatus,
    PaymentStatus,
)
from fulfillment.infrastructure.local_clients import LocalDeliveryClient, LocalLedgerClient

from conftest import CUSTOMER, STORE, balance, build_saga, order_request, payment_of, stock_levels


async def outbox_types(uow, order_id):
    async with uow() as tx:
        return [(e.event_type, e.status) for e in await tx.outbox.list_for_order(order_id)]


@pytest.mark.asyncio
async def test_order_is_paid_and_shipped(saga):
    order = await saga.create_order(order_request(quantity=2))

    assert order.status == OrderStatus.PENDING_PAYMENT
    assert order.total_amount == Decimal("50.00")
    assert await stock_levels(saga.uow) == {"A": 3, "B": 8}

    assert await saga.relay() == 1
    assert (await saga.get_order(order.id)).status == OrderStatus.PENDING_PAYMENT
    assert (await payment_of(saga.uow, order.id)).status == PaymentStatus.SUCCESS

    assert await saga.relay() == 1
    shipped = await saga.get_order(order.id)
    assert shipped.status == OrderStatus.SHIPPED
    assert shipped.delivery_id is not None

    assert await balance(saga.uow, CUSTOMER) == Decimal("950.00")
    assert await balance(saga.uow, STORE) == Decimal("50.00")

    async with saga.uow() as tx:
        audit = await tx.stock.get_audit_for_order(order.id)
        delivery = await tx.deliveries.get_by_order_id(order.id)
    assert [row.type for row in audit] == [InventoryTransactionType.HOLD, InventoryTransactionType.OUT]
    assert delivery.id == shipped.delivery_id
    assert delivery.status == DeliveryStatus.CREATED
    assert delivery.from_address == ["Warehouse B, Dock 2"]

    assert await outbox_types(saga.uow, order.id) == [
        (OutboxEventType.PAYMENT_PENDING, OutboxStatus.PROCESSED),
        (OutboxEventType.PAYMENT_SUCCESS, OutboxStatus.PROCESSED),
    ]
    saga.notifications.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_replayed_payment_success_does_not_ship_twice(saga):
    order = await saga.create_order(order_request())
    await saga.relay()
    await saga.relay()

    async with saga.uow() as tx:
        event = next(e for e in await tx.outbox.list_for_order(order.id)
                     if e.event_type == OutboxEventType.PAYMENT_SUCCESS)
    delivery_before = (await saga.get_order(order.id)).delivery_id

    # a second delivery of the same event
    handlers = SagaHandlers(
        saga.uow, ProcessPaymentUseCase(saga.uow, saga.ledger, STORE), saga.cancel_order,
        saga.delivery, None, ["Warehouse B, Dock 2"], None
    )
    assert await handlers.handle(event) is True
    assert (await saga.get_order(order.id)).delivery_id == delivery_before
    assert await balance(saga.uow, CUSTOMER) == Decimal("950.00")


@pytest.mark.asyncio
async def test_order_creation_is_idempotent(saga):
    first = await saga.create_order(order_request(quantity=3, key="same"))
    second = await saga.create_order(order_request(quantity=3, key="same"))

    assert second.id == first.id
    assert await stock_levels(saga.uow) == {"A": 3, "B": 7}


@pytest.mark.asyncio
async def test_order_creation_failures_leave_nothing(saga):
    with pytest.raises(InsufficientStockError):
        await saga.create_order(order_request(quantity=50))
    with pytest.raises(ItemNotFoundError):
        await saga.create_order(order_request().model_copy(update={"product_id": "P-404"}))

    assert await stock_levels(saga.uow) == {"A": 3, "B": 10}
    async with saga.uow() as tx:
        assert await tx.orders.get_by_idempotency_key("key-1") is None


@pytest.mark.asyncio
async def test_failed_payment_cancels_and_releases_stock(saga):
    await OpenAccountUseCase(saga.uow)("poor", Decimal("10.00"), account_number="CUST-POOR")
    order = await saga.create_order(order_request(quantity=12, account="CUST-POOR"))
    assert await stock_levels(saga.uow) == {"A": 1, "B": 0}

    await saga.relay()
    await saga.relay()

    cancelled = await saga.get_order(order.id)
    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.cancel_reason == "Insufficient balance"
    assert (await payment_of(saga.uow, order.id)).status == PaymentStatus.FAILED
    assert await stock_levels(saga.uow) == {"A": 3, "B": 10}
    assert await balance(saga.uow, "CUST-POOR") == Decimal("10.00")
    assert await outbox_types(saga.uow, order.id) == [
        (OutboxEventType.PAYMENT_PENDING, OutboxStatus.PROCESSED),
        (OutboxEventType.PAYMENT_FAILED, OutboxStatus.PROCESSED),
    ]


@pytest.mark.asyncio
async def test_cancel_before_payment_releases_stock(saga):
    order = await saga.create_order(order_request(quantity=4))

    cancelled = await saga.cancel_order(order.id, "Changed my mind")
    assert cancelled.status == OrderStatus.CANCELLED

    # the queued charge is never made
    await saga.relay()
    assert await balance(saga.uow, CUSTOMER) == Decimal("1000.00")
    assert (await payment_of(saga.uow, order.id)).status == PaymentStatus.FAILED
    assert await stock_levels(saga.uow) == {"A": 3, "B": 10}


@pytest.mark.asyncio
async def test_cancel_after_shipping_refunds_and_stops_delivery(saga):
    order = await saga.create_order(order_request(quantity=2))
    await saga.relay()
    await saga.relay()
    shipped = await saga.get_order(order.id)

    cancelled = await saga.cancel_order(order.id, "Changed my mind")

    assert cancelled.status == OrderStatus.CANCELLED
    assert await balance(saga.uow, CUSTOMER) == Decimal("1000.00")
    assert await balance(saga.uow, STORE) == Decimal("0.00")
    assert await stock_levels(saga.uow) == {"A": 3, "B": 10}
    payment = await payment_of(saga.uow, order.id)
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refund_txn_id is not None
    async with saga.uow() as tx:
        assert (await tx.deliveries.get_by_id(shipped.delivery_id)).status == DeliveryStatus.CANCELLED

    saga.notifications.send.reset_mock()
    await saga.relay()
    saga.notifications.send.assert_awaited_once()
    assert saga.notifications.send.await_args.kwargs["idempotency_key"] == f"refund_{payment.refund_txn_id}"

    with pytest.raises(OrderCancellationError):
        await saga.cancel_order(order.id, "again")


@pytest.mark.asyncio
async def test_cancel_refused_when_carrier_is_delivering(saga):
    order = await saga.create_order(order_request())
    await saga.relay()
    await saga.relay()
    shipped = await saga.get_order(order.id)
    async with saga.uow() as tx:
        delivery = await tx.deliveries.get_by_id(shipped.delivery_id)
        await tx.deliveries.compare_and_set_status(delivery.id, delivery.version, DeliveryStatus.PICKED_UP)
        await tx.deliveries.compare_and_set_status(delivery.id, delivery.version + 1, DeliveryStatus.DELIVERING)
        await tx.commit()

    with pytest.raises(OrderCancellationError):
        await saga.cancel_order(order.id, "too late")

    assert (await saga.get_order(order.id)).status == OrderStatus.SHIPPED
    assert await balance(saga.uow, CUSTOMER) == Decimal("950.00")


@pytest.mark.asyncio
async def test_rejected_delivery_is_compensated_after_grace_period(uow, accounts, stock):
    carrier = AsyncMock()
    carrier.create_delivery.return_value = DeliveryResult(success=False, message="Address not served")
    saga = build_saga(uow, delivery=carrier)

    order = await saga.create_order(order_request(quantity=2))
    await saga.relay()
    await saga.relay()

    assert (await saga.get_order(order.id)).status == OrderStatus.PROCESSING
    assert (OutboxEventType.DELIVERY_FAILED, OutboxStatus.PENDING) in await outbox_types(uow, order.id)

    # still inside the grace period
    await saga.relay()
    assert (await saga.get_order(order.id)).status == OrderStatus.PROCESSING

    saga.clock.now += timedelta(seconds=60)
    await saga.relay()

    compensated = await saga.get_order(order.id)
    assert compensated.status == OrderStatus.CANCELLED_SYSTEM
    assert compensated.cancel_reason == "Delivery failed: Address not served"
    assert await balance(uow, CUSTOMER) == Decimal("1000.00")
    assert await stock_levels(uow) == {"A": 3, "B": 10}
    carrier.cancel_delivery.assert_not_awaited()


@pytest.mark.asyncio
async def test_carrier_outage_retries_payment_success(uow, accounts, stock):
    carrier = AsyncMock()
    carrier.create_delivery.side_effect = DeliveryServiceError("carrier down")
    saga = build_saga(uow, delivery=carrier)

    order = await saga.create_order(order_request())
    await saga.relay()
    await saga.relay()

    async with uow() as tx:
        event = next(e for e in await tx.outbox.list_for_order(order.id)
                     if e.event_type == OutboxEventType.PAYMENT_SUCCESS)
    assert event.status == OutboxStatus.PENDING
    assert event.retry_count == 1

    carrier.create_delivery.side_effect = None
    carrier.create_delivery.return_value = DeliveryResult(success=True, delivery_id="d-1")
    await saga.relay()

    shipped = await saga.get_order(order.id)
    assert shipped.status == OrderStatus.SHIPPED
    assert shipped.delivery_id == "d-1"


@pytest.mark.asyncio
async def test_cancellation_racing_the_charge_is_refunded(uow, accounts, stock):
    placed = {}

    class RacingLedger(LocalLedgerClient):
        async def transfer(self, from_account, to_account, amount, transaction_ref):
            result = await super().transfer(from_account, to_account, amount, transaction_ref)
            # the customer cancels while the ledger answer is in flight
            await saga.cancel_order(placed["order"].id, "Changed my mind")
            return result

    saga = build_saga(uow, ledger=RacingLedger(uow))
    placed["order"] = await saga.create_order(order_request(quantity=2))

    await saga.relay()
    assert await balance(uow, CUSTOMER) == Decimal("950.00")
    assert (await payment_of(uow, placed["order"].id)).status == PaymentStatus.SUCCESS

    await saga.relay()

    order = await saga.get_order(placed["order"].id)
    assert order.status == OrderStatus.CANCELLED
    assert order.delivery_id is None
    assert await balance(uow, CUSTOMER) == Decimal("1000.00")
    assert (await payment_of(uow, order.id)).status == PaymentStatus.REFUNDED
    assert await stock_levels(uow) == {"A": 3, "B": 10}


@pytest.mark.asyncio
async def test_cancellation_racing_the_delivery_request_stops_the_parcel(uow, accounts, stock):
    placed = {}

    class RacingCarrier(LocalDeliveryClient):
        async def create_delivery(self, request):
            result = await super().create_delivery(request)
            # the customer cancels while the carrier answer is in flight
            await saga.cancel_order(placed["order"].id, "Changed my mind")
            return result

    saga = build_saga(uow, delivery=RacingCarrier(uow))
    placed["order"] = await saga.create_order(order_request(quantity=2))

    await saga.relay()
    await saga.relay()

    order = await saga.get_order(placed["order"].id)
    async with uow() as tx:
        delivery = await tx.deliveries.get_by_order_id(order.id)
    assert order.status == OrderStatus.CANCELLED
    assert order.delivery_id == delivery.id
    assert delivery.status == DeliveryStatus.CANCELLED
    assert (await payment_of(uow, order.id)).status == PaymentStatus.REFUNDED
    assert await balance(uow, CUSTOMER) == Decimal("1000.00")
    assert await stock_levels(uow) == {"A": 3, "B": 10}


@pytest.mark.asyncio
async def test_relay_running_during_a_cancellation_refund_does_not_ship(uow, accounts, stock):
    class RelayingLedger(LocalLedgerClient):
        relayed = False

        async def refund(self, transaction_id, reason):
            if not self.relayed:
                self.relayed = True
                # PAYMENT_SUCCESS is picked up while the refund is in flight
                await saga.relay()
            return await super().refund(transaction_id, reason)

    saga = build_saga(uow, ledger=RelayingLedger(uow))
    order = await saga.create_order(order_request(quantity=2))
    await saga.relay()
    assert (await payment_of(uow, order.id)).status == PaymentStatus.SUCCESS

    cancelled = await saga.cancel_order(order.id, "Changed my mind")

    assert cancelled.status == OrderStatus.CANCELLED
    final = await saga.get_order(order.id)
    assert final.status == OrderStatus.CANCELLED
    assert final.delivery_id is None
    async with uow() as tx:
        assert await tx.deliveries.get_by_order_id(order.id) is None
    assert (await payment_of(uow, order.id)).status == PaymentStatus.REFUNDED
    assert await balance(uow, CUSTOMER) == Decimal("1000.00")
    assert await balance(uow, STORE) == Decimal("0.00")
    assert await stock_levels(uow) == {"A": 3, "B": 10}


@pytest.mark.asyncio
async def test_refund_postponed_by_ledger_outage_is_completed_by_the_relay(uow, accounts, stock):
    class FlakyLedger(LocalLedgerClient):
        down = False

        async def refund(self, transaction_id, reason):
            if self.down:
                raise LedgerServiceError("ledger unavailable")
            return await super().refund(transaction_id, reason)

    ledger = FlakyLedger(uow)
    saga = build_saga(uow, ledger=ledger)
    order = await saga.create_order(order_request(quantity=2))
    await saga.relay()
    await saga.relay()

    ledger.down = True
    cancelled = await saga.cancel_order(order.id, "Changed my mind")

    assert cancelled.status == OrderStatus.CANCELLED
    assert (await payment_of(uow, order.id)).status == PaymentStatus.SUCCESS
    assert await balance(uow, CUSTOMER) == Decimal("950.00")
    assert (OutboxEventType.REFUND_PENDING, OutboxStatus.PENDING) in await outbox_types(uow, order.id)

    ledger.down = False
    await saga.relay()

    assert (await payment_of(uow, order.id)).status == PaymentStatus.REFUNDED
    assert await balance(uow, CUSTOMER) == Decimal("1000.00")
    events = await outbox_types(uow, order.id)
    assert (OutboxEventType.REFUND_PENDING, OutboxStatus.PROCESSED) in events
    assert (OutboxEventType.REFUND_SUCCESS, OutboxStatus.PENDING) in events
