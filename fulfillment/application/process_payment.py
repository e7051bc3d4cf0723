import logging

from fulfillment.domain.models import OrderStatus, OutboxEvent, OutboxEventType, PaymentStatus
from fulfillment.domain.exceptions import LedgerServiceError, OrderNotFoundError
from fulfillment.application.interfaces import LedgerService

logger = logging.getLogger(__name__)


def payment_reference(payment_id: str) -> str:
    """Ledger reference of the charge; a replay returns the first outcome"""
    return f"PAY-{payment_id}"


class ProcessPaymentUseCase:
    """Charges the customer for a PAYMENT_PENDING event.

    Returns False when the ledger is unreachable so the outbox retries later.
    """

    def __init__(self, unit_of_work, ledger_service: LedgerService, store_account: str):
        self._uow = unit_of_work
        self._ledger = ledger_service
        self._store_account = store_account

    async def __call__(self, event: OutboxEvent) -> bool:
        order_id = event.payload["order_id"]

        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            payment = await uow.payments.get_by_order_id(order_id)

        if order is None or payment is None:
            raise OrderNotFoundError(f"Order or payment for {order_id} not found")

        if payment.status != PaymentStatus.PENDING:
            logger.info(f"Payment {payment.id} already {payment.status.value}, skipping")
            return True

        if order.status != OrderStatus.PENDING_PAYMENT:
            logger.info(f"Order {order_id} is {order.status.value}, payment {payment.id} will not be charged")
            async with self._uow() as uow:
                await uow.payments.mark_failed(payment.id, f"Order {order.status.value} before payment")
                await uow.commit()
            return True

        try:
            result = await self._ledger.transfer(
                from_account=order.customer_account,
                to_account=self._store_account,
                amount=payment.amount,
                transaction_ref=payment_reference(payment.id)
            )
        except LedgerServiceError as e:
            logger.warning(f"Ledger unavailable for payment {payment.id}: {e}")
            return False

        async with self._uow() as uow:
            if result.success:
                await uow.payments.mark_success(payment.id, result.transaction_id)
                await uow.outbox.create(order_id, OutboxEventType.PAYMENT_SUCCESS, {
                    "order_id": order_id,
                    "payment_id": payment.id,
                    "transaction_id": result.transaction_id
                })
            else:
                await uow.payments.mark_failed(payment.id, result.message)
                await uow.outbox.create(order_id, OutboxEventType.PAYMENT_FAILED, {
                    "order_id": order_id,
                    "payment_id": payment.id,
                    "reason": result.message
                })
            await uow.commit()

        logger.info(f"Payment {payment.id} for order {order_id}: {'SUCCESS' if result.success else 'FAILED'}")
        return True
