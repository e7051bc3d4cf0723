import logging
from datetime import datetime, timedelta, timezone
from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.application.interfaces import QueueConsumer, MessageHandler
from fulfillment.infrastructure.db_schema import queue_messages_tbl

logger = logging.getLogger(__name__)


class SQLQueueConsumer(QueueConsumer):
    """Consumes queue_messages rows with at-least-once semantics.

    A claimed message becomes invisible for `visibility_timeout` seconds. It is
    deleted after the handler returns, so a crash or a handler error makes it
    visible again once the timeout expires.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], visibility_timeout: float = 60):
        self._session_factory = session_factory
        self._visibility_timeout = visibility_timeout

    async def consume(self, queue: str, handler: MessageHandler, limit: int = 10) -> int:
        handled = 0
        for _ in range(limit):
            message = await self._claim(queue)
            if message is None:
                break
            message_id, body = message
            try:
                await handler(body)
            except Exception as e:
                logger.error(f"Handler failed for message {message_id} on {queue}: {e}", exc_info=True)
                continue
            await self._ack(message_id)
            handled += 1
        return handled

    async def _claim(self, queue: str):
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            result = await session.execute(
                select(queue_messages_tbl)
                .where(queue_messages_tbl.c.queue == queue, queue_messages_tbl.c.available_at <= now)
                .order_by(queue_messages_tbl.c.available_at.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            row = result.fetchone()
            if row is None:
                return None
            claimed = await session.execute(
                update(queue_messages_tbl)
                .where(
                    queue_messages_tbl.c.id == row.id,
                    queue_messages_tbl.c.available_at == row.available_at
                )
                .values(
                    status="in_flight",
                    claimed_at=now,
                    available_at=now + timedelta(seconds=self._visibility_timeout)
                )
            )
            await session.commit()
            if claimed.rowcount == 0:
                # another consumer took it first
                return None
            return row.id, row.body

    async def _ack(self, message_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(queue_messages_tbl).where(queue_messages_tbl.c.id == message_id))
            await session.commit()


class QueueRelay:
    """Forwards committed queue_messages rows to the broker.

    A row is deleted only after the broker acknowledged the publish, so a
    broker failure or a crash leaves it in the table for the next pass.
    """

    def __init__(self, consumer: SQLQueueConsumer, broker):
        self._consumer = consumer
        self._broker = broker

    async def __call__(self, queues, limit: int = 100) -> int:
        relayed = 0
        for queue in queues:
            async def forward(body: dict, queue: str = queue) -> None:
                await self._broker.publish(queue, body)

            relayed += await self._consumer.consume(queue, forward, limit=limit)
        return relayed
