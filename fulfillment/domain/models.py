from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PLACED = "PLACED"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    CANCELLED_SYSTEM = "CANCELLED_SYSTEM"
    REFUNDED = "REFUNDED"


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.CANCELLED_SYSTEM,
    OrderStatus.REFUNDED,
})

ORDER_TRANSITIONS = {
    OrderStatus.PLACED: {OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED, OrderStatus.CANCELLED_SYSTEM},
    OrderStatus.PENDING_PAYMENT: {OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.CANCELLED_SYSTEM},
    OrderStatus.PAID: {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.CANCELLED_SYSTEM},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.CANCELLED_SYSTEM},
    OrderStatus.SHIPPED: {
        OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED, OrderStatus.REFUNDED,
        OrderStatus.CANCELLED, OrderStatus.CANCELLED_SYSTEM,
    },
    OrderStatus.IN_TRANSIT: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
}


class Order(BaseModel):
    """Domain Entity: order driven through the fulfillment saga"""
    id: str
    user_id: str
    customer_account: str
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    status: OrderStatus
    idempotency_key: str
    reservation_ids: List[str] = Field(default_factory=list)
    delivery_id: Optional[str] = None
    email: str
    user_name: str
    to_address: str
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    def can_transition_to(self, status: OrderStatus) -> bool:
        return status in ORDER_TRANSITIONS.get(self.status, ())

    def can_be_paid(self) -> bool:
        """Business rule: only an order awaiting payment can be paid"""
        return self.status == OrderStatus.PENDING_PAYMENT

    def can_be_cancelled(self) -> bool:
        """Business rule: the carrier cannot recall a parcel once it is delivering"""
        return not self.is_terminal() and self.status != OrderStatus.IN_TRANSIT


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Payment(BaseModel):
    id: str
    order_id: str
    amount: Decimal
    status: PaymentStatus
    ledger_txn_id: Optional[str] = None
    refund_txn_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OutboxEventType(str, Enum):
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REFUND_PENDING = "REFUND_PENDING"
    REFUND_SUCCESS = "REFUND_SUCCESS"
    DELIVERY_FAILED = "DELIVERY_FAILED"


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class OutboxEvent(BaseModel):
    id: str
    order_id: str
    event_type: OutboxEventType
    payload: dict
    status: OutboxStatus
    retry_count: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class LedgerAccount(BaseModel):
    account_number: str
    owner: str
    balance: Decimal


class LedgerTransactionType(str, Enum):
    TRANSFER = "TRANSFER"
    REFUND = "REFUND"


class LedgerTransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class LedgerTransaction(BaseModel):
    id: str
    from_account: str
    to_account: str
    amount: Decimal
    type: LedgerTransactionType
    status: LedgerTransactionStatus
    transaction_ref: Optional[str] = None
    original_transaction_id: Optional[str] = None
    error_message: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class TransferResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    message: str


class RefundResult(BaseModel):
    success: bool
    refund_transaction_id: Optional[str] = None
    message: str


class BalanceResult(BaseModel):
    success: bool
    account_number: str
    balance: Optional[Decimal] = None
    message: str


class WarehouseStock(BaseModel):
    """Value Object: quantity of one product in one warehouse"""
    id: str
    warehouse_id: str
    product_id: str
    quantity: int
    version: int


class InventoryTransactionType(str, Enum):
    HOLD = "HOLD"
    UNHOLD = "UNHOLD"
    OUT = "OUT"
    IN = "IN"


class InventoryTransaction(BaseModel):
    id: str
    product_id: str
    warehouse_id: str
    quantity: int
    type: InventoryTransactionType
    order_id: Optional[str] = None
    reservation_id: Optional[str] = None
    created_at: datetime


class WarehouseAllocation(BaseModel):
    warehouse_id: str
    quantity: int


class HoldResult(BaseModel):
    allocations: List[WarehouseAllocation]
    reservation_ids: List[str]


class DeliveryStatus(str, Enum):
    CREATED = "CREATED"
    PICKED_UP = "PICKED_UP"
    DELIVERING = "DELIVERING"
    RECEIVED = "RECEIVED"
    LOST = "LOST"
    CANCELLED = "CANCELLED"


DELIVERY_PROGRESSION = {
    DeliveryStatus.CREATED: DeliveryStatus.PICKED_UP,
    DeliveryStatus.PICKED_UP: DeliveryStatus.DELIVERING,
    DeliveryStatus.DELIVERING: DeliveryStatus.RECEIVED,
}

CANCELLABLE_DELIVERY_STATUSES = frozenset({DeliveryStatus.CREATED, DeliveryStatus.PICKED_UP})


class Delivery(BaseModel):
    id: str
    order_id: str
    status: DeliveryStatus
    version: int
    email: str
    user_name: str
    to_address: str
    from_address: List[str]
    product_name: str
    quantity: int
    notification_url: Optional[str] = None
    retry_count: int = 0
    created_at: datetime
    updated_at: datetime

    def is_terminal(self) -> bool:
        return self.status not in DELIVERY_PROGRESSION

    def next_status(self) -> Optional[DeliveryStatus]:
        return DELIVERY_PROGRESSION.get(self.status)

    def can_be_cancelled(self) -> bool:
        return self.status in CANCELLABLE_DELIVERY_STATUSES


class DeliveryRequest(BaseModel):
    order_id: str
    email: str
    user_name: str
    to_address: str
    from_address: List[str]
    product_name: str
    quantity: int
    notification_url: Optional[str] = None


class DeliveryResult(BaseModel):
    success: bool
    delivery_id: Optional[str] = None
    message: str = ""


class NotificationMessage(BaseModel):
    """Webhook call carried through the notification and dead-letter queues"""
    url: str
    payload: dict
    retry_count: int = 0


class Item(BaseModel):
    """Value Object: item from the catalog"""
    id: str
    name: str
    price: Decimal


DELIVERIES_QUEUE = "deliveries"
NOTIFICATIONS_QUEUE = "notifications"
DEAD_LETTER_QUEUE = "notifications.dead_letter"
