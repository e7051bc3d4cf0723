from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Set

from fulfillment.domain.models import (
    Order, OrderStatus, Payment, OutboxEvent, OutboxEventType, LedgerAccount, LedgerTransaction,
    WarehouseStock, InventoryTransaction, InventoryTransactionType, Delivery, DeliveryStatus,
    DeliveryRequest, DeliveryResult, TransferResult, RefundResult, BalanceResult, Item,
)


class OrderRepository(ABC):
    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def create(self, order: Order) -> None:
        pass

    @abstractmethod
    async def update_status(self, order_id: str, status: OrderStatus, expected: OrderStatus,
                            cancel_reason: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def set_reservations(self, order_id: str, reservation_ids: List[str]) -> None:
        pass

    @abstractmethod
    async def set_delivery_id(self, order_id: str, delivery_id: str) -> None:
        pass

    @abstractmethod
    async def get_by_delivery_id(self, delivery_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_stale(self, status: OrderStatus, created_before: datetime, limit: int = 100) -> List[Order]:
        pass


class PaymentRepository(ABC):
    @abstractmethod
    async def get_by_order_id(self, order_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def create(self, payment: Payment) -> None:
        pass

    @abstractmethod
    async def mark_success(self, payment_id: str, ledger_txn_id: str) -> None:
        pass

    @abstractmethod
    async def mark_failed(self, payment_id: str, error_message: str) -> None:
        pass

    @abstractmethod
    async def mark_refunded(self, payment_id: str, refund_txn_id: str, reason: str) -> None:
        pass


class OutboxRepository(ABC):
    @abstractmethod
    async def create(self, order_id: str, event_type: OutboxEventType, payload: dict) -> str:
        pass

    @abstractmethod
    async def get_pending(self, max_retries: int, limit: int = 10) -> List[OutboxEvent]:
        pass

    @abstractmethod
    async def get_by_id(self, event_id: str) -> Optional[OutboxEvent]:
        pass

    @abstractmethod
    async def mark_as_processed(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def record_failure(self, event_id: str, retry_count: int, terminal: bool, error: str) -> None:
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> List[OutboxEvent]:
        pass


class InboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, order_id: Optional[str], idempotency_key: str) -> str:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 10) -> List[dict]:
        pass

    @abstractmethod
    async def mark_as_processed(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def mark_as_failed(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def exists(self, idempotency_key: str) -> bool:
        pass


class LedgerRepository(ABC):
    @abstractmethod
    async def get_account(self, account_number: str) -> Optional[LedgerAccount]:
        pass

    @abstractmethod
    async def create_account(self, account: LedgerAccount) -> None:
        pass

    @abstractmethod
    async def debit(self, account_number: str, amount: Decimal) -> bool:
        pass

    @abstractmethod
    async def credit(self, account_number: str, amount: Decimal) -> None:
        pass

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        pass

    @abstractmethod
    async def get_transaction_by_ref(self, transaction_ref: str) -> Optional[LedgerTransaction]:
        pass

    @abstractmethod
    async def add_transaction(self, transaction: LedgerTransaction) -> None:
        pass

    @abstractmethod
    async def total_balance(self) -> Decimal:
        pass


class StockRepository(ABC):
    @abstractmethod
    async def create_warehouse(self, warehouse_id: str, name: str, location: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def get_candidates(self, product_id: str) -> List[WarehouseStock]:
        pass

    @abstractmethod
    async def get_stock(self, warehouse_id: str, product_id: str) -> Optional[WarehouseStock]:
        pass

    @abstractmethod
    async def create_stock(self, stock: WarehouseStock) -> None:
        pass

    @abstractmethod
    async def compare_and_set_quantity(self, stock_id: str, expected_version: int, quantity: int) -> bool:
        pass

    @abstractmethod
    async def add_audit(self, transaction: InventoryTransaction) -> None:
        pass

    @abstractmethod
    async def get_audit(self, transaction_ids: List[str]) -> List[InventoryTransaction]:
        pass

    @abstractmethod
    async def get_answered(self, reservation_ids: List[str], type: InventoryTransactionType) -> Set[str]:
        pass

    @abstractmethod
    async def get_audit_for_order(self, order_id: str) -> List[InventoryTransaction]:
        pass


class DeliveryRepository(ABC):
    @abstractmethod
    async def get_by_id(self, delivery_id: str) -> Optional[Delivery]:
        pass

    @abstractmethod
    async def get_by_order_id(self, order_id: str) -> Optional[Delivery]:
        pass

    @abstractmethod
    async def create(self, delivery: Delivery) -> None:
        pass

    @abstractmethod
    async def compare_and_set_status(self, delivery_id: str, expected_version: int, status: DeliveryStatus) -> bool:
        pass

    @abstractmethod
    async def increment_retry(self, delivery_id: str) -> int:
        pass


class QueueRepository(ABC):
    @abstractmethod
    async def publish(self, queue: str, body: dict) -> None:
        pass


class UnitOfWork(ABC):
    @property
    @abstractmethod
    def orders(self) -> OrderRepository:
        pass

    @property
    @abstractmethod
    def payments(self) -> PaymentRepository:
        pass

    @property
    @abstractmethod
    def outbox(self) -> OutboxRepository:
        pass

    @property
    @abstractmethod
    def inbox(self) -> InboxRepository:
        pass

    @property
    @abstractmethod
    def ledger(self) -> LedgerRepository:
        pass

    @property
    @abstractmethod
    def stock(self) -> StockRepository:
        pass

    @property
    @abstractmethod
    def deliveries(self) -> DeliveryRepository:
        pass

    @property
    @abstractmethod
    def queue(self) -> QueueRepository:
        pass

    @abstractmethod
    async def __call__(self):
        pass

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


class CatalogService(ABC):
    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[Item]:
        pass


class LedgerService(ABC):
    @abstractmethod
    async def transfer(self, from_account: str, to_account: str, amount: Decimal, transaction_ref: str) -> TransferResult:
        pass

    @abstractmethod
    async def refund(self, transaction_id: str, reason: str) -> RefundResult:
        pass

    @abstractmethod
    async def get_balance(self, account_number: str) -> BalanceResult:
        pass


class DeliveryService(ABC):
    @abstractmethod
    async def create_delivery(self, request: DeliveryRequest) -> DeliveryResult:
        pass

    @abstractmethod
    async def cancel_delivery(self, delivery_id: str) -> bool:
        pass


class NotificationsService(ABC):
    @abstractmethod
    async def send(self, message: str, reference_id: str, idempotency_key: str, user_id: str) -> bool:
        pass


class WebhookSender(ABC):
    @abstractmethod
    async def post(self, url: str, payload: dict) -> None:
        pass


MessageHandler = Callable[[dict], Awaitable[None]]


class QueueConsumer(ABC):
    @abstractmethod
    async def consume(self, queue: str, handler: MessageHandler, limit: int = 10) -> int:
        pass
