import logging
import uuid
from datetime import datetime, timezone
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from fulfillment.domain.models import Order, OrderStatus, OutboxEventType, Payment, PaymentStatus
from fulfillment.domain.exceptions import ItemNotFoundError, InvalidAmountError
from fulfillment.application.interfaces import CatalogService, NotificationsService
from fulfillment.application.reservations import hold_stock, retry_on_conflict

logger = logging.getLogger(__name__)


class CreateOrderDTO(BaseModel):
    user_id: str
    customer_account: str
    product_id: str
    quantity: int
    idempotency_key: str
    email: str
    user_name: str
    to_address: str


class CreateOrderUseCase:
    """Places an order and holds its stock.

    The order, its reservation, the pending payment and the PAYMENT_PENDING
    outbox event are written in one transaction, so a stock shortage or a lost
    version race leaves nothing behind.
    """

    def __init__(
        self,
        unit_of_work,
        catalog_service: CatalogService,
        notifications_service: NotificationsService = None,
        stock_attempts: int = 3,
        stock_retry_delay: float = 0.1
    ):
        self._uow = unit_of_work
        self._catalog = catalog_service
        self._notifications = notifications_service
        self._stock_attempts = stock_attempts
        self._stock_retry_delay = stock_retry_delay

    async def __call__(self, order_data: CreateOrderDTO) -> Order:
        logger.info(f"Creating order for user {order_data.user_id}, product {order_data.product_id}")

        async with self._uow() as uow:
            existing = await uow.orders.get_by_idempotency_key(order_data.idempotency_key)
            if existing:
                logger.info(f"Order already exists: {existing.id}")
                return existing

        if order_data.quantity <= 0:
            raise InvalidAmountError("Quantity must be positive")

        item = await self._catalog.get_item(order_data.product_id)
        if not item:
            raise ItemNotFoundError(f"Item {order_data.product_id} not found")

        try:
            order = await retry_on_conflict(
                lambda: self._place(order_data, item),
                self._stock_attempts,
                self._stock_retry_delay
            )
        except IntegrityError:
            # same idempotency key placed concurrently
            async with self._uow() as uow:
                existing = await uow.orders.get_by_idempotency_key(order_data.idempotency_key)
            if existing is None:
                raise
            return existing

        logger.info(f"Order created: {order.id}")
        if self._notifications:
            await self._notifications.send(
                message=f"Your order for {order.quantity} x {order.product_name} is awaiting payment",
                reference_id=order.id,
                idempotency_key=f"notification_created_{order.idempotency_key}",
                user_id=order.user_id
            )
        return order

    async def _place(self, order_data: CreateOrderDTO, item) -> Order:
        now = datetime.now(timezone.utc)
        order = Order(
            id=str(uuid.uuid4()),
            user_id=order_data.user_id,
            customer_account=order_data.customer_account,
            product_id=item.id,
            product_name=item.name,
            quantity=order_data.quantity,
            unit_price=item.price,
            total_amount=item.price * order_data.quantity,
            status=OrderStatus.PLACED,
            idempotency_key=order_data.idempotency_key,
            email=order_data.email,
            user_name=order_data.user_name,
            to_address=order_data.to_address,
            created_at=now,
            updated_at=now
        )
        payment = Payment(
            id=str(uuid.uuid4()),
            order_id=order.id,
            amount=order.total_amount,
            status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now
        )

        async with self._uow() as uow:
            await uow.orders.create(order)
            hold = await hold_stock(uow, order.product_id, order.quantity, order.id)
            await uow.orders.set_reservations(order.id, hold.reservation_ids)
            await uow.orders.update_status(order.id, OrderStatus.PENDING_PAYMENT, expected=OrderStatus.PLACED)
            await uow.payments.create(payment)
            await uow.outbox.create(
                order.id,
                OutboxEventType.PAYMENT_PENDING,
                {"order_id": order.id, "payment_id": payment.id}
            )
            await uow.commit()

        return order.model_copy(update={
            "status": OrderStatus.PENDING_PAYMENT,
            "reservation_ids": hold.reservation_ids,
        })
