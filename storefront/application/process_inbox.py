import logging
from typing import Optional

from storefront.domain.models import OrderStatus
from storefront.domain.exceptions import InvalidTransitionError
from storefront.application.order_lifecycle import OrderLifecycle

logger = logging.getLogger(__name__)

FULFILLMENT_TRANSITIONS = {
    "order.processing": OrderStatus.PROCESSING,
    "order.shipped": OrderStatus.SHIPPED,
    "order.delivered": OrderStatus.DELIVERED,
}


class ReceiveFulfillmentEventUseCase:
    """Stores a fulfilment event in the inbox once per idempotency key"""

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, event_data: dict) -> Optional[str]:
        event_type = event_data.get("event_type")
        order_id = event_data.get("order_id")
        if event_type not in FULFILLMENT_TRANSITIONS or not order_id:
            logger.warning(f"Ignoring fulfilment event {event_type} for order {order_id}")
            return None

        idempotency_key = event_data.get("idempotency_key") or f"{event_type}_{order_id}"
        async with self._uow() as uow:
            if await uow.inbox.exists(idempotency_key):
                logger.info(f"Event {idempotency_key} already received")
                return None
            event_id = await uow.inbox.create(
                event_type=event_type,
                event_data=event_data,
                order_id=order_id,
                idempotency_key=idempotency_key
            )
            await uow.commit()

        logger.info(f"Stored {event_type} in inbox for order {order_id}")
        return event_id


class ProcessInboxEventsUseCase:
    def __init__(self, unit_of_work, order_lifecycle: OrderLifecycle):
        self._uow = unit_of_work
        self._lifecycle = order_lifecycle

    async def __call__(self, limit: int = 10) -> int:
        """Applies pending inbox events. Returns the number processed."""
        async with self._uow() as uow:
            pending = await uow.inbox.get_pending(limit=limit)

        if not pending:
            return 0

        logger.info(f"Processing {len(pending)} inbox events")
        processed = 0
        for event in pending:
            if await self._apply(event):
                processed += 1
        return processed

    async def _apply(self, event: dict) -> bool:
        event_id = event["id"]
        order_id = event["order_id"]
        target = FULFILLMENT_TRANSITIONS.get(event["event_type"])

        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if not order or target is None:
                logger.error(f"Cannot apply inbox event {event_id} ({event['event_type']}) to order {order_id}")
                await uow.inbox.mark_as_failed(event_id)
                await uow.commit()
                return False

            if order.status == target:
                await uow.inbox.mark_as_processed(event_id)
                await uow.commit()
                return True

            try:
                result = await self._lifecycle.transition(uow, order, target, reason=event["event_data"].get("reason"))
            except InvalidTransitionError as e:
                # Raised before any write, so the same unit of work can record the failure
                logger.warning(f"Inbox event {event_id} rejected for order {order_id}: {e}")
                await uow.inbox.mark_as_failed(event_id)
                await uow.commit()
                return False

            if not result.changed:
                # Order moved concurrently; the event stays pending for the next pass
                return False

            await uow.inbox.mark_as_processed(event_id)
            await uow.commit()
        return True
