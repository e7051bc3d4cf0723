import asyncio
import logging
import random
import uuid
from datetime import datetime, timezone
from sqlalchemy.exc import IntegrityError

from fulfillment.domain.models import (
    Delivery, DeliveryRequest, DeliveryResult, DeliveryStatus, NotificationMessage,
    DELIVERIES_QUEUE, NOTIFICATIONS_QUEUE,
)
from fulfillment.domain.exceptions import (
    DeliveryNotFoundError, DeliveryCancellationError, StaleVersionError,
)

logger = logging.getLogger(__name__)


async def publish_status(uow, delivery: Delivery, status: DeliveryStatus) -> None:
    if not delivery.notification_url:
        return
    message = NotificationMessage(
        url=delivery.notification_url,
        payload={"delivery_id": delivery.id, "order_id": delivery.order_id, "status": status.value}
    )
    await uow.queue.publish(NOTIFICATIONS_QUEUE, message.model_dump())


class CreateDeliveryUseCase:
    """Registers a delivery and schedules its first transition. One delivery per order."""

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, request: DeliveryRequest) -> DeliveryResult:
        if request.quantity <= 0:
            return DeliveryResult(success=False, message="Quantity must be positive")
        if not request.to_address.strip() or not request.from_address:
            return DeliveryResult(success=False, message="Pickup and destination addresses are required")

        async with self._uow() as uow:
            existing = await uow.deliveries.get_by_order_id(request.order_id)
            if existing:
                return DeliveryResult(success=True, delivery_id=existing.id, message="Delivery already exists")

            now = datetime.now(timezone.utc)
            delivery = Delivery(
                id=str(uuid.uuid4()),
                status=DeliveryStatus.CREATED,
                version=0,
                created_at=now,
                updated_at=now,
                **request.model_dump()
            )
            try:
                await uow.deliveries.create(delivery)
                await uow.queue.publish(DELIVERIES_QUEUE, {"delivery_id": delivery.id})
                await uow.commit()
            except IntegrityError:
                await uow.rollback()
                existing = await uow.deliveries.get_by_order_id(request.order_id)
                if existing is None:
                    raise
                return DeliveryResult(success=True, delivery_id=existing.id, message="Delivery already exists")

        logger.info(f"Delivery {delivery.id} created for order {request.order_id}")
        return DeliveryResult(success=True, delivery_id=delivery.id, message="Delivery created")


class GetDeliveryUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, delivery_id: str) -> Delivery:
        async with self._uow() as uow:
            delivery = await uow.deliveries.get_by_id(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
        return delivery


class AdvanceDeliveryUseCase:
    """Handles one message from the deliveries queue.

    The transition is a compare-and-set on the version read before the transit
    delay, so a cancellation committed during the delay always wins.
    """

    def __init__(self, unit_of_work, transit_delay: float = 10, loss_rate: float = 0.05,
                 max_retries: int = 5, sleep=asyncio.sleep, rng=random.random):
        self._uow = unit_of_work
        self._transit_delay = transit_delay
        self._loss_rate = loss_rate
        self._max_retries = max_retries
        self._sleep = sleep
        self._rng = rng

    async def __call__(self, body: dict) -> None:
        delivery_id = body["delivery_id"]
        try:
            await self._advance(delivery_id)
        except Exception as e:
            logger.error(f"Failed to advance delivery {delivery_id}: {e}", exc_info=True)
            await self._retry(delivery_id)

    async def _advance(self, delivery_id: str) -> None:
        async with self._uow() as uow:
            delivery = await uow.deliveries.get_by_id(delivery_id)

        if delivery is None:
            logger.warning(f"Delivery {delivery_id} not found, dropping message")
            return
        if delivery.is_terminal():
            logger.info(f"Delivery {delivery_id} is {delivery.status.value}, nothing to do")
            return

        await self._sleep(self._transit_delay)

        if self._rng() < self._loss_rate:
            new_status = DeliveryStatus.LOST
        else:
            new_status = delivery.next_status()

        async with self._uow() as uow:
            if not await uow.deliveries.compare_and_set_status(delivery.id, delivery.version, new_status):
                logger.info(f"Delivery {delivery_id} changed during transit, dropping {new_status.value}")
                return
            await publish_status(uow, delivery, new_status)
            if new_status in (DeliveryStatus.PICKED_UP, DeliveryStatus.DELIVERING):
                await uow.queue.publish(DELIVERIES_QUEUE, {"delivery_id": delivery.id})
            await uow.commit()

        logger.info(f"Delivery {delivery_id}: {delivery.status.value} -> {new_status.value}")

    async def _retry(self, delivery_id: str) -> None:
        async with self._uow() as uow:
            retries = await uow.deliveries.increment_retry(delivery_id)
            if retries >= self._max_retries:
                await uow.commit()
                logger.error(f"Delivery {delivery_id} gave up after {retries} failed attempts")
                return
            await uow.queue.publish(DELIVERIES_QUEUE, {"delivery_id": delivery_id})
            await uow.commit()


class CancelDeliveryUseCase:
    """Cancels a delivery that has not started delivering yet"""

    def __init__(self, unit_of_work, max_attempts: int = 5):
        self._uow = unit_of_work
        self._max_attempts = max_attempts

    async def __call__(self, delivery_id: str) -> Delivery:
        for attempt in range(1, self._max_attempts + 1):
            async with self._uow() as uow:
                delivery = await uow.deliveries.get_by_id(delivery_id)
                if delivery is None:
                    raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
                if delivery.status == DeliveryStatus.CANCELLED:
                    return delivery
                if not delivery.can_be_cancelled():
                    raise DeliveryCancellationError(
                        f"Delivery {delivery_id} is {delivery.status.value} and can no longer be cancelled"
                    )

                if await uow.deliveries.compare_and_set_status(delivery.id, delivery.version, DeliveryStatus.CANCELLED):
                    await publish_status(uow, delivery, DeliveryStatus.CANCELLED)
                    await uow.commit()
                    logger.info(f"Delivery {delivery_id} cancelled")
                    return delivery.model_copy(update={
                        "status": DeliveryStatus.CANCELLED,
                        "version": delivery.version + 1,
                    })

            logger.info(f"Delivery {delivery_id} changed while cancelling (attempt {attempt}), re-reading")

        raise StaleVersionError(f"Could not cancel delivery {delivery_id} after {self._max_attempts} attempts")
