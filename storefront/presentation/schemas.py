from pydantic import BaseModel, StrictInt
from datetime import datetime
from typing import Any, Optional

from storefront.domain.models import OrderStatus


class CheckoutRequestBody(BaseModel):
    # Cart lines are checked by OrderValidator so malformed lines get per-line messages
    items: Optional[list[Any]] = None
    address: Any = None
    gateway: Optional[str] = None


class OrderItemResponse(BaseModel):
    product_id: str
    product_name: str
    product_description: Optional[str] = None
    quantity: int
    unit_price: int
    subtotal: int


class OrderResponse(BaseModel):
    id: str
    user_id: str
    status: OrderStatus
    total_amount: int
    currency: str
    gateway_name: str
    merchant_transaction_id: str
    receipt: str
    shipping_address: dict[str, Any]
    items: list[OrderItemResponse]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, order):
        return cls(
            id=order.id,
            user_id=order.user_id,
            status=order.status,
            total_amount=order.total_amount,
            currency=order.currency,
            gateway_name=order.gateway_name,
            merchant_transaction_id=order.merchant_transaction_id,
            receipt=order.receipt,
            shipping_address=order.shipping_address,
            items=[
                OrderItemResponse(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    product_description=item.product_description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    subtotal=item.subtotal
                )
                for item in order.items
            ],
            created_at=order.created_at,
            updated_at=order.updated_at
        )


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def from_page(cls, page):
        return cls(
            orders=[OrderResponse.from_domain(order) for order in page.orders],
            page=page.page,
            limit=page.limit,
            total=page.total,
            pages=page.pages
        )


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[StrictInt] = None
    reason: Optional[str] = None


class WebhookResponse(BaseModel):
    status: str
    order_id: str
    order_status: OrderStatus
    changed: bool


class ErrorResponse(BaseModel):
    detail: dict[str, Any]
