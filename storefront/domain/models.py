from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    REFUNDED = "refunded"


# Every status write goes through this table. Terminal states map to an empty set.
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.PROCESSING, OrderStatus.REFUNDED, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)


class StockMovementReason(str, Enum):
    ORDER_RESERVATION = "order_reservation"
    RESERVATION_RELEASE = "reservation_release"
    MANUAL_ADJUSTMENT = "manual_adjustment"


class StockLevel(str, Enum):
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    CRITICAL_STOCK = "critical_stock"
    OUT_OF_STOCK = "out_of_stock"


class OrderItem(BaseModel):
    """Line item. Price and product details are snapshots taken at checkout."""
    id: str
    order_id: str
    product_id: str
    quantity: int = Field(gt=0)
    unit_price: int = Field(ge=0)
    product_name: str
    product_description: Optional[str] = None

    @property
    def subtotal(self) -> int:
        return self.quantity * self.unit_price


class Order(BaseModel):
    """Domain Entity: order"""
    id: str
    user_id: str
    total_amount: int = Field(ge=0)
    currency: str
    status: OrderStatus
    gateway_name: str
    correlation_ids: dict[str, str] = Field(default_factory=dict)
    shipping_address: dict[str, Any]
    merchant_transaction_id: str
    receipt: str
    items: list[OrderItem] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING


class Product(BaseModel):
    """Value Object: product row as seen by checkout. Money in minor units."""
    id: str
    name: str
    description: Optional[str] = None
    stock: int = Field(ge=0)
    price: int = Field(ge=0)
    sale_price: Optional[int] = Field(default=None, ge=0)

    @property
    def unit_price(self) -> int:
        if self.sale_price:
            return self.sale_price
        return self.price


class StockMovement(BaseModel):
    id: str
    product_id: str
    delta: int
    resulting_stock: int
    reason: StockMovementReason
    order_id: Optional[str] = None
    created_at: datetime


class CartItem(BaseModel):
    product_id: str
    quantity: int
