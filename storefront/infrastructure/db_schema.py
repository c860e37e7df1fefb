from sqlalchemy import (
    Table, Column, String, Integer, BigInteger, Enum, DateTime, JSON, MetaData,
    ForeignKey, CheckConstraint, UniqueConstraint,
)
from sqlalchemy.sql import func

from storefront.domain.models import OrderStatus, StockMovementReason

metadata = MetaData()


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


products_tbl = Table(
    "products",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("description", String, nullable=True),
    Column("stock", Integer, nullable=False, default=0),
    Column("price", BigInteger, nullable=False),
    Column("sale_price", BigInteger, nullable=True),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)


orders_tbl = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False, index=True),
    Column("total_amount", BigInteger, nullable=False),
    Column("currency", String(3), nullable=False),
    Column(
        "status",
        Enum(OrderStatus, name="order_status", values_callable=_enum_values),
        nullable=False,
        default=OrderStatus.PENDING,
    ),
    Column("gateway_name", String, nullable=False),
    Column("correlation_ids", JSON, nullable=False, default=dict),
    Column("shipping_address", JSON, nullable=False),
    Column("merchant_transaction_id", String, unique=True, nullable=False, index=True),
    Column("receipt", String, unique=True, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
)


order_items_tbl = Table(
    "order_items",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("line_no", Integer, nullable=False, default=0),
    Column("product_id", String, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", BigInteger, nullable=False),
    Column("product_name", String, nullable=False),
    Column("product_description", String, nullable=True),
    CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
)


# Lookup index over Order.correlation_ids so webhooks can find an order by any provider identifier
order_correlations_tbl = Table(
    "order_correlations",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("gateway_name", String, nullable=False),
    Column("key", String, nullable=False),
    Column("value", String, nullable=False, index=True),
    UniqueConstraint("gateway_name", "key", "value", name="uq_order_correlations_gateway_key_value"),
)


stock_movements_tbl = Table(
    "stock_movements",
    metadata,
    Column("id", String, primary_key=True),
    Column("product_id", String, nullable=False, index=True),
    Column("delta", Integer, nullable=False),
    Column("resulting_stock", Integer, nullable=False),
    Column(
        "reason",
        Enum(StockMovementReason, name="stock_movement_reason", values_callable=_enum_values),
        nullable=False,
    ),
    Column("order_id", String, nullable=True, index=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)


outbox_events_tbl = Table(
    "outbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("order_id", String, nullable=True),
    Column("status", String, default="pending"),
    Column("attempts", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), server_default=func.now())
)


inbox_events_tbl = Table(
    "inbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("order_id", String, nullable=False),
    Column("idempotency_key", String, unique=True, nullable=False),
    Column("status", String, default="pending"),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("processed_at", DateTime(timezone=True), nullable=True)
)
