import uuid
from decimal import Decimal
from typing import Optional, List, Set
from datetime import datetime, timezone
from sqlalchemy import select, insert, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.domain.exceptions import StaleVersionError
from fulfillment.domain.models import (
    Order, OrderStatus, Payment, PaymentStatus, OutboxEvent, OutboxEventType, OutboxStatus,
    LedgerAccount, LedgerTransaction, LedgerTransactionType, LedgerTransactionStatus,
    WarehouseStock, InventoryTransaction, InventoryTransactionType, Delivery, DeliveryStatus,
)
from fulfillment.infrastructure.db_schema import (
    orders_tbl, payments_tbl, outbox_events_tbl, inbox_events_tbl, ledger_accounts_tbl,
    ledger_transactions_tbl, warehouses_tbl, warehouse_stock_tbl, inventory_transactions_tbl,
    deliveries_tbl, queue_messages_tbl,
)
from fulfillment.application.interfaces import (
    OrderRepository, PaymentRepository, OutboxRepository, InboxRepository, LedgerRepository,
    StockRepository, DeliveryRepository, QueueRepository,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive timestamps; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SQLAlchemyOrderRepository(OrderRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl).where(orders_tbl.c.id == order_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl).where(orders_tbl.c.idempotency_key == key)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_by_delivery_id(self, delivery_id: str) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl).where(orders_tbl.c.delivery_id == delivery_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def create(self, order: Order) -> None:
        stmt = insert(orders_tbl).values(
            id=order.id,
            user_id=order.user_id,
            customer_account=order.customer_account,
            product_id=order.product_id,
            product_name=order.product_name,
            quantity=order.quantity,
            unit_price=order.unit_price,
            total_amount=order.total_amount,
            status=order.status,
            idempotency_key=order.idempotency_key,
            reservation_ids=list(order.reservation_ids),
            delivery_id=order.delivery_id,
            email=order.email,
            user_name=order.user_name,
            to_address=order.to_address,
            created_at=order.created_at,
            updated_at=order.updated_at
        )
        await self._session.execute(stmt)

    async def update_status(self, order_id: str, status: OrderStatus, expected: OrderStatus,
                            cancel_reason: Optional[str] = None) -> None:
        values = {"status": status, "updated_at": _utcnow()}
        if cancel_reason is not None:
            values["cancel_reason"] = cancel_reason
        result = await self._session.execute(
            update(orders_tbl)
            .where(orders_tbl.c.id == order_id, orders_tbl.c.status == expected)
            .values(**values)
        )
        if result.rowcount == 0:
            raise StaleVersionError(f"Order {order_id} is no longer {expected.value}")

    async def set_reservations(self, order_id: str, reservation_ids: List[str]) -> None:
        await self._session.execute(
            update(orders_tbl)
            .where(orders_tbl.c.id == order_id)
            .values(reservation_ids=list(reservation_ids), updated_at=_utcnow())
        )

    async def set_delivery_id(self, order_id: str, delivery_id: str) -> None:
        await self._session.execute(
            update(orders_tbl)
            .where(orders_tbl.c.id == order_id)
            .values(delivery_id=delivery_id, updated_at=_utcnow())
        )

    async def list_stale(self, status: OrderStatus, created_before: datetime, limit: int = 100) -> List[Order]:
        result = await self._session.execute(
            select(orders_tbl)
            .where(orders_tbl.c.status == status, orders_tbl.c.created_at < created_before)
            .order_by(orders_tbl.c.created_at.asc())
            .limit(limit)
        )
        return [self._to_domain(row) for row in result.fetchall()]

    def _to_domain(self, row) -> Order:
        return Order(
            id=row.id,
            user_id=row.user_id,
            customer_account=row.customer_account,
            product_id=row.product_id,
            product_name=row.product_name,
            quantity=row.quantity,
            unit_price=row.unit_price,
            total_amount=row.total_amount,
            status=OrderStatus(row.status),
            idempotency_key=row.idempotency_key,
            reservation_ids=row.reservation_ids or [],
            delivery_id=row.delivery_id,
            email=row.email,
            user_name=row.user_name,
            to_address=row.to_address,
            cancel_reason=row.cancel_reason,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at)
        )


class SQLAlchemyPaymentRepository(PaymentRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_order_id(self, order_id: str) -> Optional[Payment]:
        result = await self._session.execute(
            select(payments_tbl).where(payments_tbl.c.order_id == order_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def create(self, payment: Payment) -> None:
        await self._session.execute(
            insert(payments_tbl).values(
                id=payment.id,
                order_id=payment.order_id,
                amount=payment.amount,
                status=payment.status,
                created_at=payment.created_at,
                updated_at=payment.updated_at
            )
        )

    async def mark_success(self, payment_id: str, ledger_txn_id: str) -> None:
        # the ledger outcome wins over a cancellation that raced the transfer
        await self._transition(
            payment_id, (PaymentStatus.PENDING, PaymentStatus.FAILED), PaymentStatus.SUCCESS,
            ledger_txn_id=ledger_txn_id
        )

    async def mark_failed(self, payment_id: str, error_message: str) -> None:
        await self._transition(
            payment_id, (PaymentStatus.PENDING, PaymentStatus.FAILED), PaymentStatus.FAILED,
            error_message=error_message
        )

    async def mark_refunded(self, payment_id: str, refund_txn_id: str, reason: str) -> None:
        await self._transition(
            payment_id, (PaymentStatus.SUCCESS,), PaymentStatus.REFUNDED,
            refund_txn_id=refund_txn_id, error_message=reason
        )

    async def _transition(self, payment_id: str, expected: tuple, status: PaymentStatus, **values) -> None:
        result = await self._session.execute(
            update(payments_tbl)
            .where(payments_tbl.c.id == payment_id, payments_tbl.c.status.in_(expected))
            .values(status=status, updated_at=_utcnow(), **values)
        )
        if result.rowcount == 0:
            raise StaleVersionError(f"Payment {payment_id} changed concurrently, expected {[s.value for s in expected]}")

    def _to_domain(self, row) -> Payment:
        return Payment(
            id=row.id,
            order_id=row.order_id,
            amount=row.amount,
            status=PaymentStatus(row.status),
            ledger_txn_id=row.ledger_txn_id,
            refund_txn_id=row.refund_txn_id,
            error_message=row.error_message,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at)
        )


class SQLAlchemyOutboxRepository(OutboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, order_id: str, event_type: OutboxEventType, payload: dict) -> str:
        event_id = str(uuid.uuid4())
        await self._session.execute(
            insert(outbox_events_tbl).values(
                id=event_id,
                order_id=order_id,
                event_type=event_type,
                payload=payload,
                status=OutboxStatus.PENDING,
                retry_count=0,
                created_at=_utcnow()
            )
        )
        return event_id

    async def get_pending(self, max_retries: int, limit: int = 10) -> List[OutboxEvent]:
        result = await self._session.execute(
            select(outbox_events_tbl)
            .where(
                outbox_events_tbl.c.status == OutboxStatus.PENDING,
                outbox_events_tbl.c.retry_count < max_retries
            )
            .order_by(outbox_events_tbl.c.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return [self._to_domain(row) for row in result.fetchall()]

    async def get_by_id(self, event_id: str) -> Optional[OutboxEvent]:
        result = await self._session.execute(
            select(outbox_events_tbl).where(outbox_events_tbl.c.id == event_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def list_for_order(self, order_id: str) -> List[OutboxEvent]:
        result = await self._session.execute(
            select(outbox_events_tbl)
            .where(outbox_events_tbl.c.order_id == order_id)
            .order_by(outbox_events_tbl.c.created_at.asc())
        )
        return [self._to_domain(row) for row in result.fetchall()]

    async def mark_as_processed(self, event_id: str) -> None:
        await self._session.execute(
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(status=OutboxStatus.PROCESSED, processed_at=_utcnow())
        )

    async def record_failure(self, event_id: str, retry_count: int, terminal: bool, error: str) -> None:
        await self._session.execute(
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(
                retry_count=retry_count,
                last_error=error,
                status=OutboxStatus.FAILED if terminal else OutboxStatus.PENDING
            )
        )

    def _to_domain(self, row) -> OutboxEvent:
        return OutboxEvent(
            id=row.id,
            order_id=row.order_id,
            event_type=OutboxEventType(row.event_type),
            payload=row.payload or {},
            status=OutboxStatus(row.status),
            retry_count=row.retry_count,
            last_error=row.last_error,
            created_at=_aware(row.created_at),
            processed_at=_aware(row.processed_at)
        )


class SQLAlchemyInboxRepository(InboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, order_id: Optional[str], idempotency_key: str) -> str:
        event_id = str(uuid.uuid4())
        await self._session.execute(
            insert(inbox_events_tbl).values(
                id=event_id,
                event_type=event_type,
                event_data=event_data,
                order_id=order_id,
                idempotency_key=idempotency_key,
                status="pending",
                created_at=_utcnow()
            )
        )
        return event_id

    async def get_pending(self, limit: int = 10) -> List[dict]:
        result = await self._session.execute(
            select(inbox_events_tbl)
            .where(inbox_events_tbl.c.status == "pending")
            .order_by(inbox_events_tbl.c.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return [
            {
                "id": row.id,
                "event_type": row.event_type,
                "event_data": row.event_data,
                "order_id": row.order_id,
                "idempotency_key": row.idempotency_key
            }
            for row in result.fetchall()
        ]

    async def mark_as_processed(self, event_id: str) -> None:
        await self._session.execute(
            update(inbox_events_tbl)
            .where(inbox_events_tbl.c.id == event_id)
            .values(status="processed", processed_at=_utcnow())
        )

    async def mark_as_failed(self, event_id: str) -> None:
        await self._session.execute(
            update(inbox_events_tbl)
            .where(inbox_events_tbl.c.id == event_id)
            .values(status="failed", processed_at=_utcnow())
        )

    async def exists(self, idempotency_key: str) -> bool:
        result = await self._session.execute(
            select(inbox_events_tbl.c.id).where(inbox_events_tbl.c.idempotency_key == idempotency_key)
        )
        return result.fetchone() is not None


class SQLAlchemyLedgerRepository(LedgerRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_account(self, account_number: str) -> Optional[LedgerAccount]:
        result = await self._session.execute(
            select(ledger_accounts_tbl).where(ledger_accounts_tbl.c.account_number == account_number)
        )
        row = result.fetchone()
        if not row:
            return None
        return LedgerAccount(account_number=row.account_number, owner=row.owner, balance=row.balance)

    async def create_account(self, account: LedgerAccount) -> None:
        await self._session.execute(
            insert(ledger_accounts_tbl).values(
                account_number=account.account_number,
                owner=account.owner,
                balance=account.balance,
                created_at=_utcnow()
            )
        )

    async def debit(self, account_number: str, amount: Decimal) -> bool:
        """Conditional debit: returns False when the balance would go negative"""
        result = await self._session.execute(
            update(ledger_accounts_tbl)
            .where(
                ledger_accounts_tbl.c.account_number == account_number,
                ledger_accounts_tbl.c.balance >= amount
            )
            .values(balance=ledger_accounts_tbl.c.balance - amount)
        )
        return result.rowcount == 1

    async def credit(self, account_number: str, amount: Decimal) -> None:
        await self._session.execute(
            update(ledger_accounts_tbl)
            .where(ledger_accounts_tbl.c.account_number == account_number)
            .values(balance=ledger_accounts_tbl.c.balance + amount)
        )

    async def get_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        result = await self._session.execute(
            select(ledger_transactions_tbl).where(ledger_transactions_tbl.c.id == transaction_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_transaction_by_ref(self, transaction_ref: str) -> Optional[LedgerTransaction]:
        result = await self._session.execute(
            select(ledger_transactions_tbl).where(ledger_transactions_tbl.c.transaction_ref == transaction_ref)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def add_transaction(self, transaction: LedgerTransaction) -> None:
        await self._session.execute(
            insert(ledger_transactions_tbl).values(
                id=transaction.id,
                from_account=transaction.from_account,
                to_account=transaction.to_account,
                amount=transaction.amount,
                type=transaction.type,
                status=transaction.status,
                transaction_ref=transaction.transaction_ref,
                original_transaction_id=transaction.original_transaction_id,
                error_message=transaction.error_message,
                reason=transaction.reason,
                created_at=transaction.created_at,
                completed_at=transaction.completed_at
            )
        )

    async def total_balance(self) -> Decimal:
        result = await self._session.execute(select(func.coalesce(func.sum(ledger_accounts_tbl.c.balance), 0)))
        return Decimal(str(result.scalar_one()))

    def _to_domain(self, row) -> LedgerTransaction:
        return LedgerTransaction(
            id=row.id,
            from_account=row.from_account,
            to_account=row.to_account,
            amount=row.amount,
            type=LedgerTransactionType(row.type),
            status=LedgerTransactionStatus(row.status),
            transaction_ref=row.transaction_ref,
            original_transaction_id=row.original_transaction_id,
            error_message=row.error_message,
            reason=row.reason,
            created_at=_aware(row.created_at),
            completed_at=_aware(row.completed_at)
        )


class SQLAlchemyStockRepository(StockRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create_warehouse(self, warehouse_id: str, name: str, location: Optional[str] = None) -> None:
        await self._session.execute(
            insert(warehouses_tbl).values(id=warehouse_id, name=name, location=location)
        )

    async def get_candidates(self, product_id: str) -> List[WarehouseStock]:
        """Warehouses holding the product, largest quantity first"""
        result = await self._session.execute(
            select(warehouse_stock_tbl)
            .where(warehouse_stock_tbl.c.product_id == product_id, warehouse_stock_tbl.c.quantity > 0)
            .order_by(warehouse_stock_tbl.c.quantity.desc(), warehouse_stock_tbl.c.warehouse_id.asc())
        )
        return [self._stock_to_domain(row) for row in result.fetchall()]

    async def get_stock(self, warehouse_id: str, product_id: str) -> Optional[WarehouseStock]:
        result = await self._session.execute(
            select(warehouse_stock_tbl).where(
                warehouse_stock_tbl.c.warehouse_id == warehouse_id,
                warehouse_stock_tbl.c.product_id == product_id
            )
        )
        row = result.fetchone()
        return self._stock_to_domain(row) if row else None

    async def create_stock(self, stock: WarehouseStock) -> None:
        await self._session.execute(
            insert(warehouse_stock_tbl).values(
                id=stock.id,
                warehouse_id=stock.warehouse_id,
                product_id=stock.product_id,
                quantity=stock.quantity,
                version=stock.version,
                updated_at=_utcnow()
            )
        )

    async def compare_and_set_quantity(self, stock_id: str, expected_version: int, quantity: int) -> bool:
        result = await self._session.execute(
            update(warehouse_stock_tbl)
            .where(warehouse_stock_tbl.c.id == stock_id, warehouse_stock_tbl.c.version == expected_version)
            .values(quantity=quantity, version=expected_version + 1, updated_at=_utcnow())
        )
        return result.rowcount == 1

    async def add_audit(self, transaction: InventoryTransaction) -> None:
        await self._session.execute(
            insert(inventory_transactions_tbl).values(
                id=transaction.id,
                product_id=transaction.product_id,
                warehouse_id=transaction.warehouse_id,
                quantity=transaction.quantity,
                type=transaction.type,
                order_id=transaction.order_id,
                reservation_id=transaction.reservation_id,
                created_at=transaction.created_at
            )
        )

    async def get_audit(self, transaction_ids: List[str]) -> List[InventoryTransaction]:
        if not transaction_ids:
            return []
        result = await self._session.execute(
            select(inventory_transactions_tbl).where(inventory_transactions_tbl.c.id.in_(transaction_ids))
        )
        return [self._audit_to_domain(row) for row in result.fetchall()]

    async def get_answered(self, reservation_ids: List[str], type: InventoryTransactionType) -> Set[str]:
        """Reservation ids that already have a row of the given type"""
        if not reservation_ids:
            return set()
        result = await self._session.execute(
            select(inventory_transactions_tbl.c.reservation_id).where(
                inventory_transactions_tbl.c.reservation_id.in_(reservation_ids),
                inventory_transactions_tbl.c.type == type
            )
        )
        return {row.reservation_id for row in result.fetchall()}

    async def get_audit_for_order(self, order_id: str) -> List[InventoryTransaction]:
        result = await self._session.execute(
            select(inventory_transactions_tbl)
            .where(inventory_transactions_tbl.c.order_id == order_id)
            .order_by(inventory_transactions_tbl.c.created_at.asc())
        )
        return [self._audit_to_domain(row) for row in result.fetchall()]

    def _stock_to_domain(self, row) -> WarehouseStock:
        return WarehouseStock(
            id=row.id,
            warehouse_id=row.warehouse_id,
            product_id=row.product_id,
            quantity=row.quantity,
            version=row.version
        )

    def _audit_to_domain(self, row) -> InventoryTransaction:
        return InventoryTransaction(
            id=row.id,
            product_id=row.product_id,
            warehouse_id=row.warehouse_id,
            quantity=row.quantity,
            type=InventoryTransactionType(row.type),
            order_id=row.order_id,
            reservation_id=row.reservation_id,
            created_at=_aware(row.created_at)
        )


class SQLAlchemyDeliveryRepository(DeliveryRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, delivery_id: str) -> Optional[Delivery]:
        result = await self._session.execute(
            select(deliveries_tbl).where(deliveries_tbl.c.id == delivery_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_by_order_id(self, order_id: str) -> Optional[Delivery]:
        result = await self._session.execute(
            select(deliveries_tbl).where(deliveries_tbl.c.order_id == order_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def create(self, delivery: Delivery) -> None:
        await self._session.execute(
            insert(deliveries_tbl).values(
                id=delivery.id,
                order_id=delivery.order_id,
                status=delivery.status,
                version=delivery.version,
                email=delivery.email,
                user_name=delivery.user_name,
                to_address=delivery.to_address,
                from_address=list(delivery.from_address),
                product_name=delivery.product_name,
                quantity=delivery.quantity,
                notification_url=delivery.notification_url,
                retry_count=delivery.retry_count,
                created_at=delivery.created_at,
                updated_at=delivery.updated_at
            )
        )

    async def compare_and_set_status(self, delivery_id: str, expected_version: int, status: DeliveryStatus) -> bool:
        result = await self._session.execute(
            update(deliveries_tbl)
            .where(deliveries_tbl.c.id == delivery_id, deliveries_tbl.c.version == expected_version)
            .values(status=status, version=expected_version + 1, updated_at=_utcnow())
        )
        return result.rowcount == 1

    async def increment_retry(self, delivery_id: str) -> int:
        await self._session.execute(
            update(deliveries_tbl)
            .where(deliveries_tbl.c.id == delivery_id)
            .values(retry_count=deliveries_tbl.c.retry_count + 1)
        )
        result = await self._session.execute(
            select(deliveries_tbl.c.retry_count).where(deliveries_tbl.c.id == delivery_id)
        )
        return result.scalar_one()

    def _to_domain(self, row) -> Delivery:
        return Delivery(
            id=row.id,
            order_id=row.order_id,
            status=DeliveryStatus(row.status),
            version=row.version,
            email=row.email,
            user_name=row.user_name,
            to_address=row.to_address,
            from_address=row.from_address or [],
            product_name=row.product_name,
            quantity=row.quantity,
            notification_url=row.notification_url,
            retry_count=row.retry_count,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at)
        )


class SQLAlchemyQueueRepository(QueueRepository):
    """Publishes into queue_messages inside the caller's transaction"""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def publish(self, queue: str, body: dict) -> None:
        now = _utcnow()
        await self._session.execute(
            insert(queue_messages_tbl).values(
                id=str(uuid.uuid4()),
                queue=queue,
                body=body,
                status="pending",
                available_at=now,
                created_at=now
            )
        )
