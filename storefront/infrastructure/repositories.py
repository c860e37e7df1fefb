import uuid
from typing import Optional, List
from datetime import datetime, timezone
from sqlalchemy import select, insert, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.domain.models import Order, OrderItem, OrderStatus, Product, StockMovement, StockMovementReason
from storefront.infrastructure.db_schema import (
    orders_tbl, order_items_tbl, order_correlations_tbl, products_tbl,
    stock_movements_tbl, outbox_events_tbl, inbox_events_tbl,
)
from storefront.application.interfaces import (
    OrderRepository, ProductRepository, StockMovementRepository, OutboxRepository, InboxRepository
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SQLAlchemyOrderRepository(OrderRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl).where(orders_tbl.c.id == order_id)
        )
        row = result.fetchone()
        if not row:
            return None
        return self._to_domain(row, await self._load_items(row.id))

    async def find_by_correlation_id(self, value: str, gateway_name: Optional[str] = None) -> Optional[Order]:
        query = select(orders_tbl).where(orders_tbl.c.merchant_transaction_id == value)
        if gateway_name:
            query = query.where(orders_tbl.c.gateway_name == gateway_name)
        row = (await self._session.execute(query)).fetchone()
        if row:
            return self._to_domain(row, await self._load_items(row.id))

        query = select(order_correlations_tbl.c.order_id).where(order_correlations_tbl.c.value == value)
        if gateway_name:
            query = query.where(order_correlations_tbl.c.gateway_name == gateway_name)
        order_id = (await self._session.execute(query.limit(1))).scalar_one_or_none()
        if order_id is None:
            return None
        return await self.get_by_id(order_id)

    async def create(self, order: Order) -> None:
        await self._session.execute(
            insert(orders_tbl).values(
                id=order.id,
                user_id=order.user_id,
                total_amount=order.total_amount,
                currency=order.currency,
                status=order.status,
                gateway_name=order.gateway_name,
                correlation_ids=dict(order.correlation_ids),
                shipping_address=dict(order.shipping_address),
                merchant_transaction_id=order.merchant_transaction_id,
                receipt=order.receipt,
                created_at=order.created_at,
                updated_at=order.updated_at
            )
        )
        for line_no, item in enumerate(order.items):
            await self._session.execute(
                insert(order_items_tbl).values(
                    id=item.id,
                    order_id=order.id,
                    line_no=line_no,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    product_name=item.product_name,
                    product_description=item.product_description
                )
            )
        if order.correlation_ids:
            await self._insert_correlations(order.id, order.gateway_name, order.correlation_ids)

    async def update_status(self, order_id: str, status: OrderStatus,
                            expected_status: Optional[OrderStatus] = None) -> bool:
        """Conditional status write. False means the row was not in ``expected_status``."""
        stmt = update(orders_tbl).where(orders_tbl.c.id == order_id)
        if expected_status is not None:
            stmt = stmt.where(orders_tbl.c.status == expected_status)
        result = await self._session.execute(
            stmt.values(status=status, updated_at=_now())
        )
        return result.rowcount > 0

    async def add_correlation_ids(self, order_id: str, gateway_name: str, correlation_ids: dict) -> None:
        new_ids = {key: str(value) for key, value in correlation_ids.items() if value}
        if not new_ids:
            return
        current = (await self._session.execute(
            select(orders_tbl.c.correlation_ids).where(orders_tbl.c.id == order_id)
        )).scalar_one_or_none() or {}
        merged = {**current, **new_ids}
        await self._session.execute(
            update(orders_tbl)
            .where(orders_tbl.c.id == order_id)
            .values(correlation_ids=merged, updated_at=_now())
        )
        await self._insert_correlations(order_id, gateway_name, new_ids)

    async def list_by_user(self, user_id: str, limit: int = 10, offset: int = 0) -> List[Order]:
        result = await self._session.execute(
            select(orders_tbl)
            .where(orders_tbl.c.user_id == user_id)
            .order_by(orders_tbl.c.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return [self._to_domain(row, await self._load_items(row.id)) for row in result.fetchall()]

    async def count_by_user(self, user_id: str) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(orders_tbl).where(orders_tbl.c.user_id == user_id)
        )
        return result.scalar_one()

    async def _insert_correlations(self, order_id: str, gateway_name: str, correlation_ids: dict) -> None:
        for key, value in correlation_ids.items():
            existing = await self._session.execute(
                select(order_correlations_tbl.c.id).where(
                    order_correlations_tbl.c.gateway_name == gateway_name,
                    order_correlations_tbl.c.key == key,
                    order_correlations_tbl.c.value == value
                )
            )
            if existing.fetchone():
                continue
            await self._session.execute(
                insert(order_correlations_tbl).values(
                    id=str(uuid.uuid4()),
                    order_id=order_id,
                    gateway_name=gateway_name,
                    key=key,
                    value=value
                )
            )

    async def _load_items(self, order_id: str) -> List[OrderItem]:
        result = await self._session.execute(
            select(order_items_tbl)
            .where(order_items_tbl.c.order_id == order_id)
            .order_by(order_items_tbl.c.line_no)
        )
        return [
            OrderItem(
                id=row.id,
                order_id=row.order_id,
                product_id=row.product_id,
                quantity=row.quantity,
                unit_price=row.unit_price,
                product_name=row.product_name,
                product_description=row.product_description
            )
            for row in result.fetchall()
        ]

    def _to_domain(self, row, items: List[OrderItem]) -> Order:
        """DB row -> Domain"""
        return Order(
            id=row.id,
            user_id=row.user_id,
            total_amount=row.total_amount,
            currency=row.currency,
            status=OrderStatus(row.status),
            gateway_name=row.gateway_name,
            correlation_ids=row.correlation_ids or {},
            shipping_address=row.shipping_address,
            merchant_transaction_id=row.merchant_transaction_id,
            receipt=row.receipt,
            items=items,
            created_at=row.created_at,
            updated_at=row.updated_at
        )


class SQLAlchemyProductRepository(ProductRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, product_id: str) -> Optional[Product]:
        result = await self._session.execute(
            select(products_tbl).where(products_tbl.c.id == product_id)
        )
        row = result.fetchone()
        if not row:
            return None
        return Product(
            id=row.id,
            name=row.name,
            description=row.description,
            stock=row.stock,
            price=row.price,
            sale_price=row.sale_price
        )

    async def get_stock(self, product_id: str) -> Optional[int]:
        result = await self._session.execute(
            select(products_tbl.c.stock).where(products_tbl.c.id == product_id)
        )
        return result.scalar_one_or_none()

    async def decrement_stock_if_available(self, product_id: str, quantity: int) -> Optional[int]:
        result = await self._session.execute(
            update(products_tbl)
            .where(products_tbl.c.id == product_id, products_tbl.c.stock >= quantity)
            .values(stock=products_tbl.c.stock - quantity, updated_at=_now())
        )
        if result.rowcount == 0:
            return None
        return await self.get_stock(product_id)

    async def increment_stock(self, product_id: str, quantity: int) -> Optional[int]:
        result = await self._session.execute(
            update(products_tbl)
            .where(products_tbl.c.id == product_id)
            .values(stock=products_tbl.c.stock + quantity, updated_at=_now())
        )
        if result.rowcount == 0:
            return None
        return await self.get_stock(product_id)

    async def create(self, product: Product) -> None:
        await self._session.execute(
            insert(products_tbl).values(
                id=product.id,
                name=product.name,
                description=product.description,
                stock=product.stock,
                price=product.price,
                sale_price=product.sale_price,
                updated_at=_now()
            )
        )


class SQLAlchemyStockMovementRepository(StockMovementRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def append(self, movement: StockMovement) -> None:
        await self._session.execute(
            insert(stock_movements_tbl).values(
                id=movement.id,
                product_id=movement.product_id,
                delta=movement.delta,
                resulting_stock=movement.resulting_stock,
                reason=movement.reason,
                order_id=movement.order_id,
                created_at=movement.created_at
            )
        )

    async def list_for_product(self, product_id: str, limit: int = 50) -> List[StockMovement]:
        result = await self._session.execute(
            select(stock_movements_tbl)
            .where(stock_movements_tbl.c.product_id == product_id)
            .order_by(stock_movements_tbl.c.created_at.desc())
            .limit(limit)
        )
        return [self._to_domain(row) for row in result.fetchall()]

    async def list_for_order(self, order_id: str) -> List[StockMovement]:
        result = await self._session.execute(
            select(stock_movements_tbl)
            .where(stock_movements_tbl.c.order_id == order_id)
            .order_by(stock_movements_tbl.c.created_at.asc())
        )
        return [self._to_domain(row) for row in result.fetchall()]

    def _to_domain(self, row) -> StockMovement:
        return StockMovement(
            id=row.id,
            product_id=row.product_id,
            delta=row.delta,
            resulting_stock=row.resulting_stock,
            reason=StockMovementReason(row.reason),
            order_id=row.order_id,
            created_at=row.created_at
        )


class SQLAlchemyOutboxRepository(OutboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, order_id: Optional[str] = None) -> str:
        event_id = str(uuid.uuid4())
        stmt = insert(outbox_events_tbl).values(
            id=event_id,
            event_type=event_type,
            event_data=event_data,  # JSON column serialises the dict
            order_id=order_id,
            status="pending",
            attempts=0,
            created_at=_now()
        )
        await self._session.execute(stmt)
        return event_id

    async def get_pending(self, limit: int = 10) -> List[dict]:
        result = await self._session.execute(
            select(outbox_events_tbl)
            .where(outbox_events_tbl.c.status == "pending")
            .order_by(outbox_events_tbl.c.created_at.asc())
            .limit(limit)
        )
        rows = result.fetchall()

        return [
            {
                "id": row.id,
                "event_type": row.event_type,
                "event_data": row.event_data,
                "order_id": row.order_id,
                "attempts": row.attempts
            }
            for row in rows
        ]

    async def mark_as_published(self, event_id: str) -> None:
        stmt = (
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(status="published")
        )
        await self._session.execute(stmt)

    async def record_failed_attempt(self, event_id: str, max_attempts: int) -> None:
        attempts = (await self._session.execute(
            select(outbox_events_tbl.c.attempts).where(outbox_events_tbl.c.id == event_id)
        )).scalar_one() + 1
        await self._session.execute(
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(attempts=attempts, status="failed" if attempts >= max_attempts else "pending")
        )


class SQLAlchemyInboxRepository(InboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, order_id: str, idempotency_key: str) -> str:
        event_id = str(uuid.uuid4())
        stmt = insert(inbox_events_tbl).values(
            id=event_id,
            event_type=event_type,
            event_data=event_data,
            order_id=order_id,
            idempotency_key=idempotency_key,
            status="pending",
            created_at=_now()
        )
        await self._session.execute(stmt)
        return event_id

    async def get_pending(self, limit: int = 10) -> List[dict]:
        result = await self._session.execute(
            select(inbox_events_tbl)
            .where(inbox_events_tbl.c.status == "pending")
            .order_by(inbox_events_tbl.c.created_at.asc())
            .limit(limit)
        )
        rows = result.fetchall()

        return [
            {
                "id": row.id,
                "event_type": row.event_type,
                "event_data": row.event_data,
                "order_id": row.order_id,
                "idempotency_key": row.idempotency_key
            }
            for row in rows
        ]

    async def mark_as_processed(self, event_id: str) -> None:
        stmt = (
            update(inbox_events_tbl)
            .where(inbox_events_tbl.c.id == event_id)
            .values(
                status="processed",
                processed_at=_now()
            )
        )
        await self._session.execute(stmt)

    async def mark_as_failed(self, event_id: str) -> None:
        stmt = (
            update(inbox_events_tbl)
            .where(inbox_events_tbl.c.id == event_id)
            .values(status="failed", processed_at=_now())
        )
        await self._session.execute(stmt)

    async def exists(self, idempotency_key: str) -> bool:
        result = await self._session.execute(
            select(inbox_events_tbl.c.id)
            .where(inbox_events_tbl.c.idempotency_key == idempotency_key)
        )
        return result.fetchone() is not None
