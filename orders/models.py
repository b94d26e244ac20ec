from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import ZERO, quantize_money


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


class OrderItem(BaseModel):
    product_id: str
    name: Optional[str] = None
    actual_price: Decimal = Field(..., ge=0)
    discounted_price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., gt=0)

    @property
    def discount(self) -> Decimal:
        return max(self.actual_price - self.discounted_price, ZERO)


def wallet_credit_for(items: list[OrderItem]) -> Decimal:
    """Discount owed back to the buyer: the order is charged at full price."""
    return quantize_money(sum((item.discount * item.quantity for item in items), ZERO))


class WalletCredit(BaseModel):
    amount: Decimal = ZERO
    credited: bool = False
    credited_at: Optional[datetime] = None


class Order(BaseModel):
    id: UUID
    order_number: str
    account_id: UUID
    items: list[OrderItem]
    status: OrderStatus = OrderStatus.PENDING
    shipping_address: str
    subtotal: Decimal
    shipping: Decimal = ZERO
    total: Decimal
    wallet_credit: WalletCredit = Field(default_factory=WalletCredit)
    created_at: datetime
    updated_at: datetime
    delivered_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CreateOrderRequest(BaseModel):
    account_id: UUID
    items: list[OrderItem] = Field(..., min_length=1)
    shipping_address: str = Field(..., min_length=1)
    shipping: Decimal = Field(default=ZERO, ge=0)


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus


class WalletCreditResult(BaseModel):
    order_id: UUID
    amount: Decimal
    credited: bool
    already_credited: bool = False
    credited_at: Optional[datetime] = None
    message: str


class OrderStatusResponse(BaseModel):
    order: Order
    wallet_credit: Optional[WalletCreditResult] = None
