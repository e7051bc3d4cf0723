import logging

from fulfillment.domain.exceptions import EventNotReady

logger = logging.getLogger(__name__)


class ProcessOutboxEventsUseCase:
    def __init__(self, unit_of_work, saga_handlers, max_retries: int = 3):
        self._uow = unit_of_work
        self._handlers = saga_handlers
        self._max_retries = max_retries

    async def __call__(self, limit: int = 20) -> int:
        """Runs pending outbox events through the saga. Returns the number processed."""
        processed = 0

        async with self._uow() as uow:
            pending = await uow.outbox.get_pending(max_retries=self._max_retries, limit=limit)

            # handlers commit in their own transactions; bookkeeping is written once the batch is done
            outcomes = []
            for event in pending:
                try:
                    done = await self._handlers.handle(event)
                    error = None if done else "Handler asked for a retry"
                except EventNotReady as e:
                    logger.debug(f"Outbox event {event.id} deferred: {e}")
                    continue
                except Exception as e:
                    logger.warning(f"Outbox event {event.id} ({event.event_type.value}) failed: {e}", exc_info=True)
                    done, error = False, str(e)
                outcomes.append((event, done, error))

            for event, done, error in outcomes:
                if done:
                    await uow.outbox.mark_as_processed(event.id)
                    processed += 1
                    logger.info(f"Outbox event {event.id} ({event.event_type.value}) processed")
                    continue

                retry_count = event.retry_count + 1
                terminal = retry_count >= self._max_retries
                await uow.outbox.record_failure(event.id, retry_count, terminal, error)
                if terminal:
                    logger.error(
                        f"Outbox event {event.id} ({event.event_type.value}) for order {event.order_id} "
                        f"failed after {retry_count} attempts: {error}"
                    )

            await uow.commit()

        return processed
