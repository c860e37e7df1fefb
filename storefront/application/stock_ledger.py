import logging
import uuid
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel

from storefront.domain.models import StockMovement, StockMovementReason, StockLevel
from storefront.domain.exceptions import ProductNotFoundError, StockConflictError

logger = logging.getLogger(__name__)


class ReservationResult(BaseModel):
    product_id: str
    requested: int
    ok: bool
    available_stock: Optional[int] = None


class StockLedger:
    """Atomic reads and writes of Product.stock.

    All methods run inside the caller's unit of work so a reservation commits or
    rolls back together with the order that needs it. Every change appends a
    StockMovement; alert events are queued in the outbox of the same transaction.
    """

    def __init__(self, low_stock_threshold: int = 10, critical_stock_threshold: int = 5):
        self.low_stock_threshold = low_stock_threshold
        self.critical_stock_threshold = critical_stock_threshold

    async def try_reserve(self, uow, product_id: str, quantity: int,
                          order_id: Optional[str] = None) -> ReservationResult:
        _check_quantity(quantity)

        current = await uow.products.get_stock(product_id)
        if current is None:
            raise ProductNotFoundError(f"Product {product_id} not found")
        if current < quantity:
            return ReservationResult(product_id=product_id, requested=quantity, ok=False, available_stock=current)

        # Conditional write: a concurrent reservation between the read and here leaves zero rows updated
        resulting = await uow.products.decrement_stock_if_available(product_id, quantity)
        if resulting is None:
            available = await uow.products.get_stock(product_id)
            logger.warning(
                f"Reservation of {quantity} x {product_id} lost a race (read {current}, now {available})"
            )
            return ReservationResult(product_id=product_id, requested=quantity, ok=False, available_stock=available)

        await self._record(uow, product_id, -quantity, resulting, StockMovementReason.ORDER_RESERVATION, order_id)
        await self._queue_alert(uow, product_id, resulting)
        logger.info(f"Reserved {quantity} x {product_id} for order {order_id}, stock now {resulting}")
        return ReservationResult(product_id=product_id, requested=quantity, ok=True, available_stock=resulting)

    async def reserve(self, uow, product_id: str, quantity: int, order_id: Optional[str] = None) -> int:
        result = await self.try_reserve(uow, product_id, quantity, order_id)
        if not result.ok:
            raise StockConflictError(product_id, quantity, result.available_stock)
        return result.available_stock

    async def restore(self, uow, product_id: str, quantity: int, order_id: Optional[str] = None,
                      reason: StockMovementReason = StockMovementReason.RESERVATION_RELEASE) -> int:
        _check_quantity(quantity)

        resulting = await uow.products.increment_stock(product_id, quantity)
        if resulting is None:
            raise ProductNotFoundError(f"Product {product_id} not found")

        await self._record(uow, product_id, quantity, resulting, reason, order_id)
        logger.info(f"Restored {quantity} x {product_id} for order {order_id}, stock now {resulting}")
        return resulting

    async def adjust(self, uow, product_id: str, delta: int) -> int:
        """Manual correction. Negative deltas never take stock below zero."""
        if delta == 0:
            raise ValueError("delta must be non-zero")
        if delta > 0:
            return await self.restore(uow, product_id, delta, reason=StockMovementReason.MANUAL_ADJUSTMENT)

        resulting = await uow.products.decrement_stock_if_available(product_id, -delta)
        if resulting is None:
            available = await uow.products.get_stock(product_id)
            if available is None:
                raise ProductNotFoundError(f"Product {product_id} not found")
            raise StockConflictError(product_id, -delta, available)

        await self._record(uow, product_id, delta, resulting, StockMovementReason.MANUAL_ADJUSTMENT, None)
        await self._queue_alert(uow, product_id, resulting)
        return resulting

    def stock_level(self, stock: int) -> StockLevel:
        if stock <= 0:
            return StockLevel.OUT_OF_STOCK
        if stock <= self.critical_stock_threshold:
            return StockLevel.CRITICAL_STOCK
        if stock <= self.low_stock_threshold:
            return StockLevel.LOW_STOCK
        return StockLevel.IN_STOCK

    async def _record(self, uow, product_id: str, delta: int, resulting: int,
                      reason: StockMovementReason, order_id: Optional[str]) -> None:
        await uow.stock_movements.append(
            StockMovement(
                id=str(uuid.uuid4()),
                product_id=product_id,
                delta=delta,
                resulting_stock=resulting,
                reason=reason,
                order_id=order_id,
                created_at=datetime.now(timezone.utc)
            )
        )

    async def _queue_alert(self, uow, product_id: str, stock: int) -> None:
        level = self.stock_level(stock)
        if level == StockLevel.IN_STOCK:
            return
        logger.warning(f"{level.value.upper()} ALERT for product {product_id}: stock {stock}")
        await uow.outbox.create(
            event_type="stock.alert",
            event_data={"product_id": product_id, "stock": stock, "level": level.value}
        )


def _check_quantity(quantity: int) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValueError(f"quantity must be a positive integer, got {quantity!r}")
