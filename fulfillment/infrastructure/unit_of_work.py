from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.infrastructure.repositories import (
    SQLAlchemyOrderRepository,
    SQLAlchemyPaymentRepository,
    SQLAlchemyOutboxRepository,
    SQLAlchemyInboxRepository,
    SQLAlchemyLedgerRepository,
    SQLAlchemyStockRepository,
    SQLAlchemyDeliveryRepository,
    SQLAlchemyQueueRepository,
)


class UnitOfWork:
    """Opens one session per `async with uow() as tx:` block.

    Queue messages are rows of the same database, so they commit or roll back
    together with the state change that produced them.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self):
        async with self._session_factory() as session:
            try:
                uow_impl = _UnitOfWorkImpl(session)
                yield uow_impl
                # no commit called: nothing is kept
                await session.rollback()
            except Exception:
                await session.rollback()
                raise


class _UnitOfWorkImpl:
    def __init__(self, session: AsyncSession):
        self._session = session
        self.orders = SQLAlchemyOrderRepository(session)
        self.payments = SQLAlchemyPaymentRepository(session)
        self.outbox = SQLAlchemyOutboxRepository(session)
        self.inbox = SQLAlchemyInboxRepository(session)
        self.ledger = SQLAlchemyLedgerRepository(session)
        self.stock = SQLAlchemyStockRepository(session)
        self.deliveries = SQLAlchemyDeliveryRepository(session)
        self.queue = SQLAlchemyQueueRepository(session)

    async def commit(self):
        await self._session.commit()

    async def rollback(self):
        await self._session.rollback()
