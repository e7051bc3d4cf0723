import logging
from datetime import datetime, timedelta, timezone

from fulfillment.domain.models import OrderStatus
from fulfillment.domain.exceptions import DomainException

logger = logging.getLogger(__name__)


class ReapUnpaidOrdersUseCase:
    """Cancels orders that stayed in PENDING_PAYMENT longer than the payment timeout"""

    def __init__(self, unit_of_work, cancel_order, timeout_minutes: int = 15, clock=None):
        self._uow = unit_of_work
        self._cancel_order = cancel_order
        self._timeout = timedelta(minutes=timeout_minutes)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def __call__(self, limit: int = 100) -> int:
        cutoff = self._clock() - self._timeout
        async with self._uow() as uow:
            stale = await uow.orders.list_stale(OrderStatus.PENDING_PAYMENT, cutoff, limit=limit)

        cancelled = 0
        for order in stale:
            try:
                await self._cancel_order(order.id, "Payment timeout", status=OrderStatus.CANCELLED_SYSTEM)
                cancelled += 1
            except DomainException as e:
                # paid or cancelled since the query
                logger.info(f"Skipping unpaid order {order.id}: {e}")

        if cancelled:
            logger.info(f"Cancelled {cancelled} unpaid orders older than {cutoff.isoformat()}")
        return cancelled
