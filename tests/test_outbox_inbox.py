import pytest
from sqlalchemy import select

from storefront.application.process_inbox import ProcessInboxEventsUseCase, ReceiveFulfillmentEventUseCase
from storefront.application.process_outbox import ProcessOutboxEventsUseCase
from storefront.domain.models import OrderStatus
from storefront.infrastructure.db_schema import inbox_events_tbl, outbox_events_tbl


async def event_rows(engine, table):
    async with engine.connect() as conn:
        result = await conn.execute(select(table))
        return result.fetchall()


@pytest.fixture
def process_outbox(uow, kafka, notifications, cart):
    return ProcessOutboxEventsUseCase(uow, kafka, notifications, cart, max_attempts=2)


@pytest.fixture
def receive_event(uow):
    return ReceiveFulfillmentEventUseCase(uow)


@pytest.fixture
def process_inbox(uow, container):
    return ProcessInboxEventsUseCase(uow, container.order_lifecycle)


@pytest.fixture
async def paid_order(container, add_product, place_order):
    await add_product("p1", stock=100)
    result = await place_order([{"product_id": "p1", "quantity": 1}])
    await container.order_lifecycle.update_status(result.order_id, OrderStatus.PAID)
    return result


class TestOutbox:
    async def test_delivers_order_events_to_kafka_and_notifications(self, process_outbox, kafka, notifications,
                                                                    paid_order, pending_outbox):
        delivered = await process_outbox()

        assert delivered == 2
        assert [(event_type, key) for event_type, _, key in kafka.published] == [
            ("order.created", paid_order.order_id), ("order.paid", paid_order.order_id)
        ]
        assert [n["idempotency_key"] for n in notifications.sent] == [
            f"order_{paid_order.order_id}_created", f"order_{paid_order.order_id}_paid"
        ]
        assert await pending_outbox() == []
        assert await process_outbox() == 0

    async def test_kafka_failure_retries_then_gives_up(self, engine, process_outbox, kafka, notifications,
                                                       paid_order, pending_outbox):
        kafka.succeed = False

        assert await process_outbox() == 0
        assert {e["attempts"] for e in await pending_outbox()} == {1}
        assert notifications.sent == []

        assert await process_outbox() == 0
        assert await pending_outbox() == []
        assert {(row.status, row.attempts) for row in await event_rows(engine, outbox_events_tbl)} == {("failed", 2)}

    async def test_notification_failure_keeps_event_pending(self, process_outbox, notifications, paid_order,
                                                            pending_outbox):
        notifications.succeed = False

        assert await process_outbox() == 0
        assert len(await pending_outbox()) == 2

        notifications.succeed = True
        assert await process_outbox() == 2

    async def test_stock_alert_keyed_by_product(self, uow, process_outbox, kafka, add_product, place_order):
        await add_product("low", stock=6)
        await place_order([{"product_id": "low", "quantity": 2}])

        await process_outbox()

        alerts = [(payload, key) for event_type, payload, key in kafka.published if event_type == "stock.alert"]
        assert alerts == [({"product_id": "low", "stock": 4, "level": "critical_stock"}, "low")]

    async def test_cart_clear_event_is_retried(self, uow, process_outbox, cart, pending_outbox):
        async with uow() as tx:
            await tx.outbox.create("cart.clear", {"user_id": "user-9", "order_id": "o-9"}, order_id="o-9")
            await tx.commit()

        cart.fail_clear = True
        assert await process_outbox() == 0
        cart.fail_clear = False
        assert await process_outbox() == 1
        assert cart.cleared == ["user-9"]
        assert await pending_outbox() == []

    async def test_unknown_event_type_is_not_marked_published(self, uow, process_outbox, pending_outbox):
        async with uow() as tx:
            await tx.outbox.create("inventory.audit", {"product_id": "p1"})
            await tx.commit()

        assert await process_outbox() == 0
        [event] = await pending_outbox()
        assert event["attempts"] == 1


class TestInbox:
    async def test_duplicate_delivery_is_stored_once(self, receive_event, paid_order):
        event = {"event_type": "order.processing", "order_id": paid_order.order_id}

        first = await receive_event(event)
        second = await receive_event(event)

        assert first is not None
        assert second is None

    async def test_ignores_unknown_event_types(self, receive_event, paid_order):
        assert await receive_event({"event_type": "order.teleported", "order_id": paid_order.order_id}) is None
        assert await receive_event({"event_type": "order.shipped"}) is None

    async def test_applies_fulfilment_progression(self, engine, container, receive_event, process_inbox,
                                                  paid_order, pending_outbox):
        for event_type in ("order.processing", "order.shipped", "order.delivered"):
            await receive_event({"event_type": event_type, "order_id": paid_order.order_id,
                                 "idempotency_key": f"{event_type}-{paid_order.order_id}"})
            assert await process_inbox() == 1

        order = await container.order_lifecycle.get_order(paid_order.order_id)
        assert order.status == OrderStatus.DELIVERED
        assert {row.status for row in await event_rows(engine, inbox_events_tbl)} == {"processed"}
        assert len(await pending_outbox("order.delivered")) == 1

    async def test_invalid_transition_marks_event_failed(self, engine, container, receive_event, process_inbox,
                                                         add_product, place_order):
        await add_product("p1", stock=10)
        result = await place_order([{"product_id": "p1", "quantity": 1}])

        await receive_event({"event_type": "order.shipped", "order_id": result.order_id})

        assert await process_inbox() == 0
        assert (await container.order_lifecycle.get_order(result.order_id)).status == OrderStatus.PENDING
        [row] = await event_rows(engine, inbox_events_tbl)
        assert row.status == "failed"
        assert await process_inbox() == 0

    async def test_event_for_unknown_order_fails(self, engine, receive_event, process_inbox):
        await receive_event({"event_type": "order.processing", "order_id": "missing"})

        assert await process_inbox() == 0
        [row] = await event_rows(engine, inbox_events_tbl)
        assert row.status == "failed"

    async def test_already_applied_status_is_processed(self, engine, container, receive_event, process_inbox,
                                                       paid_order):
        await container.order_lifecycle.update_status(paid_order.order_id, OrderStatus.PROCESSING)
        await receive_event({"event_type": "order.processing", "order_id": paid_order.order_id})

        assert await process_inbox() == 1
        [row] = await event_rows(engine, inbox_events_tbl)
        assert row.status == "processed"
