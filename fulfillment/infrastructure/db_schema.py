from sqlalchemy import (
    Table, Column, String, Integer, Numeric, Enum, DateTime, JSON, Text, MetaData, UniqueConstraint, Index,
)
from sqlalchemy.sql import func

from fulfillment.domain.models import (
    OrderStatus, PaymentStatus, OutboxEventType, OutboxStatus, LedgerTransactionType,
    LedgerTransactionStatus, InventoryTransactionType, DeliveryStatus,
)

metadata = MetaData()

Money = Numeric(18, 2, asdecimal=True)


orders_tbl = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False, index=True),
    Column("customer_account", String, nullable=False),
    Column("product_id", String, nullable=False),
    Column("product_name", String, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Money, nullable=False),
    Column("total_amount", Money, nullable=False),
    Column("status", Enum(OrderStatus, native_enum=False, length=32), nullable=False, index=True),
    Column("idempotency_key", String, unique=True, index=True, nullable=False),
    Column("reservation_ids", JSON, nullable=False, default=list),
    Column("delivery_id", String, nullable=True),
    Column("email", String, nullable=False),
    Column("user_name", String, nullable=False),
    Column("to_address", String, nullable=False),
    Column("cancel_reason", String, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


payments_tbl = Table(
    "payments",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, unique=True, nullable=False),
    Column("amount", Money, nullable=False),
    Column("status", Enum(PaymentStatus, native_enum=False, length=16), nullable=False),
    Column("ledger_txn_id", String, nullable=True),
    Column("refund_txn_id", String, nullable=True),
    Column("error_message", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


outbox_events_tbl = Table(
    "outbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, nullable=False, index=True),
    Column("event_type", Enum(OutboxEventType, native_enum=False, length=32), nullable=False),
    Column("payload", JSON, nullable=False),
    Column("status", Enum(OutboxStatus, native_enum=False, length=16), nullable=False),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("last_error", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    Index("ix_outbox_events_status_created", "status", "created_at"),
)


inbox_events_tbl = Table(
    "inbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("order_id", String, nullable=True),
    Column("idempotency_key", String, unique=True, nullable=False),
    Column("status", String, default="pending"),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("processed_at", DateTime(timezone=True), nullable=True)
)


ledger_accounts_tbl = Table(
    "ledger_accounts",
    metadata,
    Column("account_number", String, primary_key=True),
    Column("owner", String, nullable=False),
    Column("balance", Money, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)


ledger_transactions_tbl = Table(
    "ledger_transactions",
    metadata,
    Column("id", String, primary_key=True),
    Column("from_account", String, nullable=False),
    Column("to_account", String, nullable=False),
    Column("amount", Money, nullable=False),
    Column("type", Enum(LedgerTransactionType, native_enum=False, length=16), nullable=False),
    Column("status", Enum(LedgerTransactionStatus, native_enum=False, length=16), nullable=False),
    # NULL for failed refunds, so the derived refund reference can be retried
    Column("transaction_ref", String, unique=True, nullable=True),
    Column("original_transaction_id", String, nullable=True, index=True),
    Column("error_message", Text, nullable=True),
    Column("reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("completed_at", DateTime(timezone=True), nullable=True),
)


warehouses_tbl = Table(
    "warehouses",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("location", String, nullable=True),
)


warehouse_stock_tbl = Table(
    "warehouse_stock",
    metadata,
    Column("id", String, primary_key=True),
    Column("warehouse_id", String, nullable=False),
    Column("product_id", String, nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("version", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    UniqueConstraint("warehouse_id", "product_id", name="uq_warehouse_stock_product"),
)


inventory_transactions_tbl = Table(
    "inventory_transactions",
    metadata,
    Column("id", String, primary_key=True),
    Column("product_id", String, nullable=False),
    Column("warehouse_id", String, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("type", Enum(InventoryTransactionType, native_enum=False, length=16), nullable=False),
    Column("order_id", String, nullable=True, index=True),
    Column("reservation_id", String, nullable=True, index=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)


deliveries_tbl = Table(
    "deliveries",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, unique=True, nullable=False),
    Column("status", Enum(DeliveryStatus, native_enum=False, length=16), nullable=False),
    Column("version", Integer, nullable=False, default=0),
    Column("email", String, nullable=False),
    Column("user_name", String, nullable=False),
    Column("to_address", String, nullable=False),
    Column("from_address", JSON, nullable=False),
    Column("product_name", String, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("notification_url", String, nullable=True),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


queue_messages_tbl = Table(
    "queue_messages",
    metadata,
    Column("id", String, primary_key=True),
    Column("queue", String, nullable=False),
    Column("body", JSON, nullable=False),
    Column("status", String, nullable=False, default="pending"),
    Column("available_at", DateTime(timezone=True), nullable=False),
    Column("claimed_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Index("ix_queue_messages_queue_available", "queue", "available_at"),
)
