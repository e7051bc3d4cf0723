import asyncio
import logging

from fulfillment.application.process_inbox import ProcessInboxEventsUseCase
from fulfillment.presentation import wiring

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def inbox_worker():
    """Applies delivery status webhooks to orders"""
    logger.info("Inbox worker started")
    while True:
        try:
            uow = wiring.make_unit_of_work()
            use_case = ProcessInboxEventsUseCase(
                unit_of_work=uow,
                cancel_order=wiring.cancel_order_use_case(uow)
            )

            processed = await use_case(limit=10)
            if processed:
                logger.info(f"Processed {processed} inbox events")

            await asyncio.sleep(3)

        except Exception as e:
            logger.error(f"Error in inbox worker: {e}", exc_info=True)
            await asyncio.sleep(10)


async def main():
    await inbox_worker()


if __name__ == "__main__":
    asyncio.run(main())
