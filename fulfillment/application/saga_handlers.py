import logging
from datetime import datetime, timezone
from typing import List, Optional

from fulfillment.domain.models import (
    DeliveryRequest, Order, OrderStatus, OutboxEvent, OutboxEventType,
)
from fulfillment.domain.exceptions import (
    DeliveryServiceError, EventNotReady, OrderNotFoundError, OrderCancellationError, StaleVersionError,
)
from fulfillment.application.interfaces import DeliveryService, NotificationsService
from fulfillment.application.cancel_order import CancelOrderUseCase
from fulfillment.application.process_payment import ProcessPaymentUseCase
from fulfillment.application.reservations import confirm_stock, unhold_stock

logger = logging.getLogger(__name__)

CANCELLED_STATUSES = (OrderStatus.CANCELLED, OrderStatus.CANCELLED_SYSTEM)


class SagaHandlers:
    """One handler per outbox event type.

    A handler returns True when its step is done and False (or raises) when the
    relay should try again later. Every handler can run more than once for the
    same event.
    """

    def __init__(
        self,
        unit_of_work,
        process_payment: ProcessPaymentUseCase,
        cancel_order: CancelOrderUseCase,
        delivery_service: DeliveryService,
        notifications_service: Optional[NotificationsService],
        warehouse_address: List[str],
        notification_url: Optional[str],
        delivery_failed_grace: float = 30,
        clock=None
    ):
        self._uow = unit_of_work
        self._process_payment = process_payment
        self._cancel_order = cancel_order
        self._delivery = delivery_service
        self._notifications = notifications_service
        self._warehouse_address = warehouse_address
        self._notification_url = notification_url
        self._delivery_failed_grace = delivery_failed_grace
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def handle(self, event: OutboxEvent) -> bool:
        handler = {
            OutboxEventType.PAYMENT_PENDING: self._process_payment,
            OutboxEventType.PAYMENT_SUCCESS: self.on_payment_success,
            OutboxEventType.PAYMENT_FAILED: self.on_payment_failed,
            OutboxEventType.REFUND_PENDING: self.on_refund_pending,
            OutboxEventType.REFUND_SUCCESS: self.on_refund_success,
            OutboxEventType.DELIVERY_FAILED: self.on_delivery_failed,
        }[event.event_type]
        return await handler(event)

    async def _get_order(self, order_id: str) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def on_payment_success(self, event: OutboxEvent) -> bool:
        order = await self._get_order(event.order_id)

        if order.status in CANCELLED_STATUSES:
            return await self._compensate_cancelled(order)
        if order.status not in (OrderStatus.PENDING_PAYMENT, OrderStatus.PAID, OrderStatus.PROCESSING):
            logger.info(f"Order {order.id} is already {order.status.value} with delivery {order.delivery_id}")
            return True

        try:
            return await self._ship(order)
        except StaleVersionError:
            order = await self._get_order(order.id)
            if order.status not in CANCELLED_STATUSES:
                raise
            logger.info(f"Order {order.id} was cancelled while shipping")
            return await self._compensate_cancelled(order)

    async def _ship(self, order: Order) -> bool:
        if order.status in (OrderStatus.PENDING_PAYMENT, OrderStatus.PAID):
            async with self._uow() as uow:
                if order.status == OrderStatus.PENDING_PAYMENT:
                    await uow.orders.update_status(order.id, OrderStatus.PAID, expected=OrderStatus.PENDING_PAYMENT)
                await uow.orders.update_status(order.id, OrderStatus.PROCESSING, expected=OrderStatus.PAID)
                await confirm_stock(uow, order.reservation_ids)
                await uow.commit()
            logger.info(f"Order {order.id} paid, preparing shipment")

        delivery_id = order.delivery_id
        if not delivery_id:
            try:
                result = await self._delivery.create_delivery(DeliveryRequest(
                    order_id=order.id,
                    email=order.email,
                    user_name=order.user_name,
                    to_address=order.to_address,
                    from_address=self._warehouse_address,
                    product_name=order.product_name,
                    quantity=order.quantity,
                    notification_url=self._notification_url
                ))
            except DeliveryServiceError as e:
                logger.warning(f"Carrier unavailable for order {order.id}: {e}")
                return False

            if not result.success:
                async with self._uow() as uow:
                    await uow.outbox.create(order.id, OutboxEventType.DELIVERY_FAILED, {
                        "order_id": order.id,
                        "reason": result.message
                    })
                    await uow.commit()
                logger.warning(f"Carrier rejected order {order.id}: {result.message}")
                return True

            # stored whatever the order status, so a cancellation can always find the parcel
            delivery_id = result.delivery_id
            async with self._uow() as uow:
                await uow.orders.set_delivery_id(order.id, delivery_id)
                await uow.commit()

        async with self._uow() as uow:
            await uow.orders.update_status(order.id, OrderStatus.SHIPPED, expected=OrderStatus.PROCESSING)
            await uow.commit()
        logger.info(f"Order {order.id} shipped with delivery {delivery_id}")
        return True

    async def _compensate_cancelled(self, order: Order) -> bool:
        """The order was cancelled while its payment or its shipment was in flight"""
        if order.delivery_id and not await self._delivery.cancel_delivery(order.delivery_id):
            logger.error(f"Carrier refused to cancel delivery {order.delivery_id} of cancelled order {order.id}")
        return await self._cancel_order.refund_payment(order.id, f"Order {order.status.value} during payment")

    async def on_payment_failed(self, event: OutboxEvent) -> bool:
        order = await self._get_order(event.order_id)
        if order.is_terminal():
            return True

        reason = event.payload.get("reason") or "Payment failed"
        async with self._uow() as uow:
            await unhold_stock(uow, order.reservation_ids)
            await uow.orders.update_status(order.id, OrderStatus.CANCELLED, expected=order.status, cancel_reason=reason)
            await uow.commit()
        logger.info(f"Order {order.id} cancelled: {reason}")

        await self._notify(order, f"Your order was cancelled: {reason}", f"payment_failed_{order.id}")
        return True

    async def on_refund_pending(self, event: OutboxEvent) -> bool:
        return await self._cancel_order.refund_payment(event.order_id, event.payload.get("reason") or "Order cancelled")

    async def on_refund_success(self, event: OutboxEvent) -> bool:
        order = await self._get_order(event.order_id)
        return await self._notify(
            order,
            f"Your payment of {order.total_amount} has been refunded",
            f"refund_{event.payload.get('refund_transaction_id')}"
        )

    async def on_delivery_failed(self, event: OutboxEvent) -> bool:
        waited = (self._clock() - event.created_at).total_seconds()
        if waited < self._delivery_failed_grace:
            raise EventNotReady(f"Delivery failure for {event.order_id} is compensated in {self._delivery_failed_grace - waited:.0f}s")

        reason = f"Delivery failed: {event.payload.get('reason', 'unknown')}"
        try:
            await self._cancel_order(event.order_id, reason, status=OrderStatus.CANCELLED_SYSTEM, cancel_delivery=False)
        except OrderCancellationError as e:
            logger.info(f"Nothing to compensate for order {event.order_id}: {e}")
        return True

    async def _notify(self, order: Order, message: str, idempotency_key: str) -> bool:
        if not self._notifications:
            return True
        return await self._notifications.send(
            message=message,
            reference_id=order.id,
            idempotency_key=idempotency_key,
            user_id=order.user_id
        )
