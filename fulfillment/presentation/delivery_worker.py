import asyncio
import logging

from fulfillment.application.deliveries import AdvanceDeliveryUseCase
from fulfillment.config import settings
from fulfillment.domain.models import DELIVERIES_QUEUE
from fulfillment.presentation import wiring

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def handle_delivery(body: dict):
    use_case = AdvanceDeliveryUseCase(
        wiring.make_unit_of_work(),
        transit_delay=settings.DELIVERY_TRANSIT_DELAY,
        loss_rate=settings.DELIVERY_LOSS_RATE,
        max_retries=settings.DELIVERY_MAX_RETRIES
    )
    await use_case(body)


async def delivery_worker():
    """Moves deliveries through their states; each consumer sleeps through one transit at a time"""
    logger.info(f"Delivery worker started with {settings.DELIVERY_WORKER_CONCURRENCY} consumers")
    await asyncio.gather(*(
        wiring.run_queue_worker(DELIVERIES_QUEUE, handle_delivery, batch=1)
        for _ in range(settings.DELIVERY_WORKER_CONCURRENCY)
    ))


async def main():
    await delivery_worker()


if __name__ == "__main__":
    asyncio.run(main())
