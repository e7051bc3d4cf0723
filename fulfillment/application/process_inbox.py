import logging
from sqlalchemy.exc import IntegrityError

from fulfillment.domain.models import DeliveryStatus, Order, OrderStatus
from fulfillment.domain.exceptions import LedgerServiceError
from fulfillment.application.cancel_order import schedule_refund

logger = logging.getLogger(__name__)

# carrier status -> order status; PICKED_UP keeps the order SHIPPED
DELIVERY_TO_ORDER_STATUS = {
    DeliveryStatus.DELIVERING: OrderStatus.IN_TRANSIT,
    DeliveryStatus.RECEIVED: OrderStatus.DELIVERED,
}


class ReceiveDeliveryUpdateUseCase:
    """Stores a carrier webhook in the inbox. Returns False for a duplicate."""

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, delivery_id: str, order_id: str, status: DeliveryStatus) -> bool:
        idempotency_key = f"{delivery_id}:{status.value}"
        async with self._uow() as uow:
            if await uow.inbox.exists(idempotency_key):
                logger.info(f"Delivery update {idempotency_key} already received")
                return False
            try:
                await uow.inbox.create(
                    event_type="delivery.status",
                    event_data={"delivery_id": delivery_id, "order_id": order_id, "status": status.value},
                    order_id=order_id,
                    idempotency_key=idempotency_key
                )
                await uow.commit()
            except IntegrityError:
                return False
        logger.info(f"Stored delivery update {status.value} for order {order_id}")
        return True


class ProcessInboxEventsUseCase:
    """Applies stored delivery updates to their orders"""

    def __init__(self, unit_of_work, cancel_order):
        self._uow = unit_of_work
        self._cancel_order = cancel_order

    async def __call__(self, limit: int = 10) -> int:
        async with self._uow() as uow:
            pending = await uow.inbox.get_pending(limit=limit)
            if not pending:
                return 0

            logger.info(f"Processing {len(pending)} inbox events")

            processed, failed = [], []
            for event in pending:
                event_id = event["id"]
                data = event["event_data"]
                try:
                    order = await self._find_order(data)
                    if not order:
                        logger.error(f"No order for inbox event {event_id}: {data}")
                        failed.append(event_id)
                        continue

                    await self._apply(order, DeliveryStatus(data["status"]))
                    processed.append(event_id)
                except ValueError as e:
                    logger.error(f"Malformed inbox event {event_id}: {e}")
                    failed.append(event_id)
                except Exception as e:
                    # left pending, picked up again on the next poll
                    logger.error(f"Error processing inbox event {event_id}: {e}", exc_info=True)

            for event_id in processed:
                await uow.inbox.mark_as_processed(event_id)
            for event_id in failed:
                await uow.inbox.mark_as_failed(event_id)
            await uow.commit()

        return len(processed)

    async def _find_order(self, data: dict):
        async with self._uow() as uow:
            order = None
            if data.get("order_id"):
                order = await uow.orders.get_by_id(data["order_id"])
            if order is None and data.get("delivery_id"):
                order = await uow.orders.get_by_delivery_id(data["delivery_id"])
            return order

    async def _apply(self, order: Order, status: DeliveryStatus) -> None:
        if order.is_terminal():
            logger.info(f"Order {order.id} is {order.status.value}, ignoring delivery {status.value}")
            return

        if status == DeliveryStatus.LOST:
            await self._refund_lost(order)
        elif status == DeliveryStatus.CANCELLED:
            await self._cancel_order(order.id, "Delivery cancelled by carrier", cancel_delivery=False)
        elif status in DELIVERY_TO_ORDER_STATUS:
            target = DELIVERY_TO_ORDER_STATUS[status]
            if not order.can_transition_to(target):
                logger.info(f"Order {order.id} cannot go {order.status.value} -> {target.value}, ignoring")
                return
            async with self._uow() as uow:
                await uow.orders.update_status(order.id, target, expected=order.status)
                await uow.commit()
            logger.info(f"Order {order.id} -> {target.value}")

    async def _refund_lost(self, order: Order) -> None:
        async with self._uow() as uow:
            payment = await uow.payments.get_by_order_id(order.id)
            await schedule_refund(uow, payment, "Parcel lost")
            await uow.orders.update_status(order.id, OrderStatus.REFUNDED, expected=order.status,
                                           cancel_reason="Parcel lost")
            await uow.commit()
        logger.info(f"Order {order.id} refunded after the parcel was lost")

        try:
            await self._cancel_order.refund_payment(order.id, "Parcel lost")
        except LedgerServiceError as e:
            logger.warning(f"Ledger unavailable, refund for lost order {order.id} stays queued: {e}")
