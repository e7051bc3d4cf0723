import logging
from typing import Optional

from fulfillment.domain.models import Order, OrderStatus, OutboxEventType, Payment, PaymentStatus
from fulfillment.domain.exceptions import (
    LedgerServiceError, OrderNotFoundError, OrderCancellationError, StaleVersionError,
)
from fulfillment.application.interfaces import LedgerService, DeliveryService
from fulfillment.application.reservations import unhold_stock, retry_on_conflict

logger = logging.getLogger(__name__)


async def schedule_refund(uow, payment: Optional[Payment], reason: str) -> None:
    """Queues the refund of a captured payment inside the caller's transaction"""
    if payment and payment.status == PaymentStatus.SUCCESS:
        await uow.outbox.create(payment.order_id, OutboxEventType.REFUND_PENDING, {
            "order_id": payment.order_id,
            "reason": reason
        })


class CancelOrderUseCase:
    """Cancels an order and compensates every step already taken.

    The delivery is stopped first, so a carrier refusal leaves the order
    untouched. The order is then claimed with a status compare-and-set in the
    same transaction that releases the stock and queues the refund of a
    captured payment. If anything moved the order in between, the whole
    sequence starts again from a fresh read. The refund runs once the claim is
    committed; when it cannot complete here, the queued REFUND_PENDING event
    completes it later.
    """

    def __init__(self, unit_of_work, ledger_service: LedgerService, delivery_service: DeliveryService,
                 stock_attempts: int = 3, stock_retry_delay: float = 0.1, claim_attempts: int = 3):
        self._uow = unit_of_work
        self._ledger = ledger_service
        self._delivery = delivery_service
        self._stock_attempts = stock_attempts
        self._stock_retry_delay = stock_retry_delay
        self._claim_attempts = claim_attempts

    async def __call__(self, order_id: str, reason: str, status: OrderStatus = OrderStatus.CANCELLED,
                       cancel_delivery: bool = True) -> Order:
        for attempt in range(1, self._claim_attempts + 1):
            order = await self._load(order_id)

            if order.delivery_id and cancel_delivery:
                if not await self._delivery.cancel_delivery(order.delivery_id):
                    raise OrderCancellationError(f"Carrier refused to cancel delivery {order.delivery_id}")

            try:
                await retry_on_conflict(
                    lambda: self._claim(order, reason, status), self._stock_attempts, self._stock_retry_delay
                )
            except StaleVersionError:
                logger.info(f"Order {order_id} changed while cancelling (attempt {attempt}), re-reading")
                continue

            logger.info(f"Order {order_id} -> {status.value} ({reason})")
            try:
                await self.refund_payment(order_id, reason)
            except LedgerServiceError as e:
                logger.warning(f"Ledger unavailable, refund for order {order_id} stays queued: {e}")
            return order.model_copy(update={"status": status, "cancel_reason": reason})

        raise OrderCancellationError(f"Order {order_id} kept changing, cancellation not applied")

    async def _load(self, order_id: str) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)

        if not order:
            raise OrderNotFoundError(f"Order {order_id} not found")
        if order.is_terminal():
            raise OrderCancellationError(f"Order {order_id} is already {order.status.value}")
        if not order.can_be_cancelled():
            raise OrderCancellationError(f"Order {order_id} is already on its way and cannot be cancelled")
        return order

    async def _claim(self, order: Order, reason: str, status: OrderStatus) -> None:
        async with self._uow() as uow:
            payment = await uow.payments.get_by_order_id(order.id)
            await unhold_stock(uow, order.reservation_ids)
            if payment and payment.status == PaymentStatus.PENDING:
                # a transfer still in flight is refunded once its success is recorded
                await uow.payments.mark_failed(payment.id, f"Order cancelled: {reason}")
            await schedule_refund(uow, payment, reason)
            await uow.orders.update_status(order.id, status, expected=order.status, cancel_reason=reason)
            await uow.commit()

    async def refund_payment(self, order_id: str, reason: str) -> bool:
        """Refunds a captured payment. Safe to repeat: the ledger refund is idempotent."""
        async with self._uow() as uow:
            payment = await uow.payments.get_by_order_id(order_id)
        if payment is None or payment.status != PaymentStatus.SUCCESS:
            return True

        result = await self._ledger.refund(payment.ledger_txn_id, reason)
        if not result.success:
            logger.warning(f"Refund for order {order_id} failed: {result.message}")
            return False

        try:
            async with self._uow() as uow:
                await uow.payments.mark_refunded(payment.id, result.refund_transaction_id, reason)
                await uow.outbox.create(order_id, OutboxEventType.REFUND_SUCCESS, {
                    "order_id": order_id,
                    "refund_transaction_id": result.refund_transaction_id,
                    "reason": reason
                })
                await uow.commit()
        except StaleVersionError:
            logger.info(f"Payment {payment.id} of order {order_id} is already marked refunded")
            return True

        logger.info(f"Payment {payment.id} of order {order_id} refunded")
        return True
