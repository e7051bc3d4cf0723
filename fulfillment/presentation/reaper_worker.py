import asyncio
import logging

from fulfillment.application.reap_unpaid_orders import ReapUnpaidOrdersUseCase
from fulfillment.config import settings
from fulfillment.presentation import wiring

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def reaper_worker():
    """Cancels orders whose payment never arrived"""
    logger.info(f"Unpaid order reaper started (timeout {settings.PAYMENT_TIMEOUT_MINUTES} min)")
    while True:
        try:
            uow = wiring.make_unit_of_work()
            use_case = ReapUnpaidOrdersUseCase(
                unit_of_work=uow,
                cancel_order=wiring.cancel_order_use_case(uow),
                timeout_minutes=settings.PAYMENT_TIMEOUT_MINUTES
            )
            await use_case()
            await asyncio.sleep(settings.REAPER_INTERVAL)

        except Exception as e:
            logger.error(f"Error in reaper worker: {e}", exc_info=True)
            await asyncio.sleep(settings.REAPER_INTERVAL)


async def main():
    await reaper_worker()


if __name__ == "__main__":
    asyncio.run(main())
