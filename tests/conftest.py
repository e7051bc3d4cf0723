from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fulfillment.application.cancel_order import CancelOrderUseCase
from fulfillment.application.create_order import CreateOrderUseCase, CreateOrderDTO
from fulfillment.application.get_order import GetOrderUseCase
from fulfillment.application.process_outbox import ProcessOutboxEventsUseCase
from fulfillment.application.process_payment import ProcessPaymentUseCase
from fulfillment.application.reservations import RestockUseCase
from fulfillment.application.saga_handlers import SagaHandlers
from fulfillment.application.transfer_funds import OpenAccountUseCase
from fulfillment.domain.models import Item
from fulfillment.infrastructure.db_schema import metadata, queue_messages_tbl
from fulfillment.infrastructure.local_clients import LocalDeliveryClient, LocalLedgerClient
from fulfillment.infrastructure.unit_of_work import UnitOfWork

CUSTOMER = "CUST-001"
STORE = "STORE_ACCOUNT_001"
PRODUCT = "P-1"
PRICE = Decimal("25.00")


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def uow(session_factory):
    return UnitOfWork(session_factory)


@pytest_asyncio.fixture
async def accounts(uow):
    open_account = OpenAccountUseCase(uow)
    await open_account("customer", Decimal("1000.00"), account_number=CUSTOMER)
    await open_account("store", Decimal("0.00"), account_number=STORE)


@pytest_asyncio.fixture
async def stock(uow):
    """Warehouse A holds 3 units of the product, warehouse B holds 10"""
    async with uow() as tx:
        await tx.stock.create_warehouse("A", "Warehouse A")
        await tx.stock.create_warehouse("B", "Warehouse B")
        await tx.commit()
    restock = RestockUseCase(uow)
    await restock("A", PRODUCT, 3)
    await restock("B", PRODUCT, 10)


@pytest_asyncio.fixture
async def saga(uow, accounts, stock):
    return build_saga(uow)


def build_saga(uow, ledger=None, delivery=None, now=None):
    """Wires the saga against the in-process ledger and carrier.

    The catalog and notifications are mocks; `clock.now` drives the
    DELIVERY_FAILED grace period.
    """
    ledger = ledger or LocalLedgerClient(uow)
    delivery = delivery or LocalDeliveryClient(uow)
    catalog = AsyncMock()
    catalog.get_item.side_effect = lambda product_id: (
        Item(id=product_id, name="Widget", price=PRICE) if product_id == PRODUCT else None
    )
    notifications = AsyncMock()
    notifications.send.return_value = True
    clock = SimpleNamespace(now=now or datetime.now(timezone.utc))

    cancel_order = CancelOrderUseCase(uow, ledger, delivery, stock_retry_delay=0)
    handlers = SagaHandlers(
        uow,
        process_payment=ProcessPaymentUseCase(uow, ledger, STORE),
        cancel_order=cancel_order,
        delivery_service=delivery,
        notifications_service=notifications,
        warehouse_address=["Warehouse B, Dock 2"],
        notification_url=None,
        delivery_failed_grace=30,
        clock=lambda: clock.now
    )
    return SimpleNamespace(
        uow=uow,
        ledger=ledger,
        delivery=delivery,
        catalog=catalog,
        notifications=notifications,
        clock=clock,
        create_order=CreateOrderUseCase(uow, catalog, notifications, stock_retry_delay=0),
        cancel_order=cancel_order,
        get_order=GetOrderUseCase(uow),
        relay=ProcessOutboxEventsUseCase(uow, handlers),
    )


def order_request(quantity=2, key="key-1", account=CUSTOMER):
    return CreateOrderDTO(
        user_id="user-1",
        customer_account=account,
        product_id=PRODUCT,
        quantity=quantity,
        idempotency_key=key,
        email="ann@example.com",
        user_name="Ann",
        to_address="1 Main St"
    )


async def stock_levels(uow, product_id=PRODUCT):
    async with uow() as tx:
        return {
            warehouse: (await tx.stock.get_stock(warehouse, product_id)).quantity
            for warehouse in ("A", "B")
        }


async def balance(uow, account_number):
    async with uow() as tx:
        return (await tx.ledger.get_account(account_number)).balance


async def payment_of(uow, order_id):
    async with uow() as tx:
        return await tx.payments.get_by_order_id(order_id)


async def queued(session_factory, queue):
    async with session_factory() as session:
        result = await session.execute(
            select(queue_messages_tbl.c.body)
            .where(queue_messages_tbl.c.queue == queue)
            .order_by(queue_messages_tbl.c.created_at.asc())
        )
        return [row.body for row in result.fetchall()]
