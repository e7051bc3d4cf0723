import asyncio
import logging

from fulfillment.application.process_outbox import ProcessOutboxEventsUseCase
from fulfillment.config import settings
from fulfillment.presentation import wiring

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def outbox_worker():
    """Drives the order saga from the outbox table"""
    logger.info("Outbox worker started")
    while True:
        try:
            uow = wiring.make_unit_of_work()
            use_case = ProcessOutboxEventsUseCase(
                unit_of_work=uow,
                saga_handlers=wiring.saga_handlers(uow),
                max_retries=settings.OUTBOX_MAX_RETRIES
            )

            processed = await use_case(limit=settings.OUTBOX_BATCH_SIZE)
            if processed:
                logger.info(f"Processed {processed} outbox events")

            await asyncio.sleep(settings.OUTBOX_POLL_INTERVAL)

        except Exception as e:
            logger.error(f"Error in outbox worker: {e}", exc_info=True)
            await asyncio.sleep(10)


async def main():
    await outbox_worker()


if __name__ == "__main__":
    asyncio.run(main())
