from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fulfillment.domain.models import OrderStatus, DeliveryStatus


class CreateOrderRequest(BaseModel):
    user_id: str
    customer_account: str
    product_id: str
    quantity: int = Field(gt=0)
    idempotency_key: str
    email: str
    user_name: str
    to_address: str


class CancelOrderRequest(BaseModel):
    reason: str = "Cancelled by customer"


class OrderResponse(BaseModel):
    id: str
    user_id: str
    product_id: str
    product_name: str
    quantity: int
    total_amount: Decimal
    status: OrderStatus
    delivery_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, order):
        return cls(
            id=order.id,
            user_id=order.user_id,
            product_id=order.product_id,
            product_name=order.product_name,
            quantity=order.quantity,
            total_amount=order.total_amount,
            status=order.status,
            delivery_id=order.delivery_id,
            cancel_reason=order.cancel_reason,
            created_at=order.created_at,
            updated_at=order.updated_at
        )


class TransferRequest(BaseModel):
    from_account: str
    to_account: str
    amount: Decimal
    transaction_ref: str


class RefundRequest(BaseModel):
    transaction_id: str
    reason: str


class OpenAccountRequest(BaseModel):
    owner: str
    initial_balance: Decimal = Decimal("0")
    account_number: Optional[str] = None


class AccountResponse(BaseModel):
    account_number: str
    owner: str
    balance: Decimal


class HoldRequest(BaseModel):
    product_id: str
    quantity: int
    order_id: str


class UnholdRequest(BaseModel):
    reservation_ids: List[str]


class UnholdResponse(BaseModel):
    released: int


class RestockRequest(BaseModel):
    warehouse_id: str
    product_id: str
    quantity: int


class DeliveryResponse(BaseModel):
    id: str
    order_id: str
    status: DeliveryStatus
    version: int
    to_address: str
    product_name: str
    quantity: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, delivery):
        return cls(
            id=delivery.id,
            order_id=delivery.order_id,
            status=delivery.status,
            version=delivery.version,
            to_address=delivery.to_address,
            product_name=delivery.product_name,
            quantity=delivery.quantity,
            created_at=delivery.created_at,
            updated_at=delivery.updated_at
        )


class DeliveryWebhookRequest(BaseModel):
    delivery_id: str
    order_id: str
    status: DeliveryStatus


class ErrorResponse(BaseModel):
    detail: str
