import logging
import time
import uuid
from typing import Mapping, Optional
from pydantic import BaseModel

from storefront.domain.models import OrderStatus
from storefront.domain.exceptions import (
    GatewayCallError, GatewayConfigurationError, InvalidTransitionError, ValidationError
)
from storefront.application.interfaces import PaymentGateway, RefundContext
from storefront.application.order_lifecycle import OrderLifecycle

logger = logging.getLogger(__name__)


class RefundOrderDTO(BaseModel):
    order_id: str
    amount: Optional[int] = None
    reason: Optional[str] = None


class RefundOutcome(BaseModel):
    order_id: str
    status: OrderStatus
    amount: int
    refund_id: Optional[str] = None
    refund_status: Optional[str] = None


class RefundOrderUseCase:
    def __init__(self, unit_of_work, gateways: Mapping[str, PaymentGateway], order_lifecycle: OrderLifecycle):
        self._uow = unit_of_work
        self._gateways = gateways
        self._lifecycle = order_lifecycle

    async def __call__(self, data: RefundOrderDTO) -> RefundOutcome:
        order = await self._lifecycle.get_order(data.order_id)
        if order.status != OrderStatus.PAID:
            raise InvalidTransitionError(
                order.status, OrderStatus.REFUNDED, f"Only paid orders can be refunded, order is {order.status.value}"
            )

        amount = order.total_amount if data.amount is None else data.amount
        if amount <= 0 or amount > order.total_amount:
            raise ValidationError(f"Refund amount must be between 1 and {order.total_amount}")

        gateway = self._gateways.get(order.gateway_name)
        if gateway is None:
            raise GatewayConfigurationError(f"Unknown payment gateway: {order.gateway_name}")

        context = RefundContext(
            order_id=order.id,
            amount=amount,
            currency=order.currency,
            merchant_refund_id=f"RFND_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8].upper()}",
            merchant_transaction_id=order.merchant_transaction_id,
            correlation_ids=order.correlation_ids,
            user_id=order.user_id,
            reason=data.reason
        )
        # Provider call outside the transaction, UnsupportedOperationError propagates as is
        result = await gateway.initiate_refund(context)
        if not result.success:
            raise GatewayCallError(f"Refund rejected by {order.gateway_name}: {result.message}")
        logger.info(f"Refund {result.refund_id} for order {order.id} accepted ({result.status})")

        async with self._uow() as uow:
            current = await uow.orders.get_by_id(order.id)
            transition = await self._lifecycle.transition(
                uow, current, OrderStatus.REFUNDED, reason=data.reason or "Refund issued"
            )
            if not transition.changed:
                logger.error(
                    f"Refund {result.refund_id} issued but order {order.id} moved to {transition.status.value}"
                )
                raise InvalidTransitionError(transition.status, OrderStatus.REFUNDED)
            await uow.commit()

        return RefundOutcome(
            order_id=order.id,
            status=OrderStatus.REFUNDED,
            amount=amount,
            refund_id=result.refund_id,
            refund_status=result.status
        )
