import logging
import json

from storefront.domain.exceptions import CartServiceError

logger = logging.getLogger(__name__)


class ProcessOutboxEventsUseCase:
    """Delivers outbox events written by checkout and lifecycle transactions.

    Events are read in one short unit of work, delivered, and their outcome is
    recorded in a second one. Delivery failures never raise: the event stays
    pending until ``max_attempts`` is reached.
    """

    def __init__(self, unit_of_work, kafka_producer, notifications_client, cart_service, max_attempts: int = 5):
        self._uow = unit_of_work
        self._kafka = kafka_producer
        self._notifications = notifications_client
        self._cart = cart_service
        self._max_attempts = max_attempts

    async def __call__(self, limit: int = 10) -> int:
        """Returns the number of events delivered."""
        async with self._uow() as uow:
            pending = await uow.outbox.get_pending(limit=limit)

        if not pending:
            return 0

        delivered, failed = [], []
        for event in pending:
            try:
                ok = await self._deliver(event)
            except Exception as e:
                logger.error(f"Error processing outbox event {event['id']} ({event['event_type']}): {e}")
                ok = False
            (delivered if ok else failed).append(event["id"])

        async with self._uow() as uow:
            for event_id in delivered:
                await uow.outbox.mark_as_published(event_id)
            for event_id in failed:
                await uow.outbox.record_failed_attempt(event_id, self._max_attempts)
            await uow.commit()

        if failed:
            logger.warning(f"{len(failed)} outbox events not delivered, will retry")
        return len(delivered)

    async def _deliver(self, event: dict) -> bool:
        event_type = event["event_type"]
        event_data = event["event_data"]
        if isinstance(event_data, str):
            event_data = json.loads(event_data)

        if event_type.startswith("order."):
            published = await self._kafka.publish(event_type, event_data, key=event_data["order_id"])
            if not published:
                return False
            if event_data.get("message"):
                return await self._notify(event, event_data)
            return True

        if event_type == "stock.alert":
            return await self._kafka.publish(event_type, event_data, key=event_data["product_id"])

        if event_type == "notification":
            return await self._notify(event, event_data)

        if event_type == "cart.clear":
            try:
                await self._cart.clear_user_cart(event_data["user_id"])
            except CartServiceError as e:
                logger.warning(f"Cart clear for user {event_data['user_id']} failed again: {e}")
                return False
            logger.info(f"Cart cleared for user {event_data['user_id']} (order {event_data.get('order_id')})")
            return True

        logger.error(f"Unknown outbox event type {event_type} for event {event['id']}")
        return False

    async def _notify(self, event: dict, event_data: dict) -> bool:
        sent = await self._notifications.send(
            message=event_data["message"],
            reference_id=event_data.get("order_id") or event["id"],
            idempotency_key=event_data.get("idempotency_key") or f"notification_{event['id']}",
            user_id=event_data["user_id"]
        )
        if sent:
            logger.info(f"Notification '{event_data['message']}' sent for {event_data.get('order_id')}")
        else:
            logger.info(f"Notification '{event_data['message']}' not sent for {event_data.get('order_id')}")
        return sent
