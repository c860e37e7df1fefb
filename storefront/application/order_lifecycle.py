import logging
import math
from typing import Optional
from pydantic import BaseModel

from storefront.domain.models import Order, OrderStatus, ALLOWED_TRANSITIONS
from storefront.domain.exceptions import InvalidTransitionError, NotAuthorizedError, OrderNotFoundError
from storefront.application.stock_ledger import StockLedger

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    OrderStatus.PAID: "Your order has been paid and is being prepared",
    OrderStatus.FAILED: "Payment for your order did not go through",
    OrderStatus.CANCELLED: "Your order has been cancelled",
    OrderStatus.PROCESSING: "Your order is being processed",
    OrderStatus.SHIPPED: "Your order has been shipped",
    OrderStatus.DELIVERED: "Your order has been delivered",
    OrderStatus.REFUNDED: "Your payment has been refunded",
}

NON_CANCELLABLE = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED})


class TransitionResult(BaseModel):
    order_id: str
    previous_status: OrderStatus
    status: OrderStatus
    changed: bool


class OrderPage(BaseModel):
    orders: list[Order]
    page: int
    limit: int
    total: int
    pages: int


class OrderLifecycle:
    """Owns the order state machine.

    ``transition`` is the only place that writes Order.status. The write is
    conditional on the status the caller read, so two handlers racing on the same
    order (webhook and client poll) cannot both move it.
    """

    def __init__(self, unit_of_work, stock_ledger: StockLedger):
        self._uow = unit_of_work
        self._stock = stock_ledger

    @staticmethod
    def ensure_transition_allowed(current: OrderStatus, target: OrderStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current, target)

    async def transition(self, uow, order: Order, new_status: OrderStatus,
                         reason: Optional[str] = None) -> TransitionResult:
        self.ensure_transition_allowed(order.status, new_status)

        updated = await uow.orders.update_status(order.id, new_status, expected_status=order.status)
        if not updated:
            current = await uow.orders.get_by_id(order.id)
            current_status = current.status if current else order.status
            logger.info(
                f"Order {order.id} is no longer {order.status.value} (now {current_status.value}), "
                f"skipping transition to {new_status.value}"
            )
            return TransitionResult(
                order_id=order.id, previous_status=order.status, status=current_status, changed=False
            )

        if new_status == OrderStatus.CANCELLED:
            for item in sorted(order.items, key=lambda item: item.product_id):
                await self._stock.restore(uow, item.product_id, item.quantity, order_id=order.id)

        await uow.outbox.create(
            event_type=f"order.{new_status.value}",
            event_data=self._event_data(order, new_status, reason),
            order_id=order.id
        )
        logger.info(f"Order {order.id}: {order.status.value} -> {new_status.value}")
        return TransitionResult(order_id=order.id, previous_status=order.status, status=new_status, changed=True)

    async def apply_payment_outcome(self, order_id: str, target: OrderStatus,
                                    correlation_ids: Optional[dict] = None,
                                    reason: Optional[str] = None) -> TransitionResult:
        """Move a pending order to its payment outcome, or do nothing if it already left pending."""
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if not order:
                raise OrderNotFoundError(f"Order {order_id} not found")

            if not order.is_pending() or target == OrderStatus.PENDING:
                return TransitionResult(
                    order_id=order.id, previous_status=order.status, status=order.status, changed=False
                )

            result = await self.transition(uow, order, target, reason=reason)
            if result.changed and correlation_ids:
                await uow.orders.add_correlation_ids(order.id, order.gateway_name, correlation_ids)
            await uow.commit()
            return result

    async def update_status(self, order_id: str, new_status: OrderStatus, reason: Optional[str] = None) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if not order:
                raise OrderNotFoundError(f"Order {order_id} not found")
            if new_status == OrderStatus.CANCELLED and order.status in NON_CANCELLABLE:
                raise InvalidTransitionError(
                    order.status, new_status, "Cannot cancel order that has been shipped or delivered"
                )

            result = await self.transition(uow, order, new_status, reason=reason)
            if not result.changed:
                raise InvalidTransitionError(
                    result.status, new_status, f"Order {order_id} changed concurrently, now {result.status.value}"
                )
            await uow.commit()
        return order.model_copy(update={"status": new_status})

    async def cancel_order(self, order_id: str, user_id: Optional[str] = None, is_admin: bool = False,
                           reason: Optional[str] = None) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if not order:
                raise OrderNotFoundError(f"Order {order_id} not found")
            if not is_admin and order.user_id != user_id:
                raise NotAuthorizedError("Not authorized to cancel this order")

        logger.info(f"Cancelling order {order_id} ({'admin' if is_admin else f'user-{user_id}'}): {reason}")
        return await self.update_status(order_id, OrderStatus.CANCELLED, reason=reason)

    async def get_order(self, order_id: str) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if not order:
                raise OrderNotFoundError(f"Order {order_id} not found")
            return order

    async def list_user_orders(self, user_id: str, page: int = 1, limit: int = 10) -> OrderPage:
        page = max(page, 1)
        async with self._uow() as uow:
            orders = await uow.orders.list_by_user(user_id, limit=limit, offset=(page - 1) * limit)
            total = await uow.orders.count_by_user(user_id)
        return OrderPage(orders=orders, page=page, limit=limit, total=total, pages=math.ceil(total / limit))

    def _event_data(self, order: Order, new_status: OrderStatus, reason: Optional[str]) -> dict:
        message = STATUS_MESSAGES.get(new_status, f"Your order is now {new_status.value}")
        if reason:
            message = f"{message}. Reason: {reason}"
        return {
            "order_id": order.id,
            "user_id": order.user_id,
            "previous_status": order.status.value,
            "status": new_status.value,
            "total_amount": order.total_amount,
            "currency": order.currency,
            "gateway_name": order.gateway_name,
            "items": [{"product_id": item.product_id, "quantity": item.quantity} for item in order.items],
            "reason": reason,
            "refund_required": order.status in (OrderStatus.PAID, OrderStatus.PROCESSING)
            and new_status == OrderStatus.CANCELLED,
            "message": message,
            "idempotency_key": f"order_{order.id}_{new_status.value}"
        }
