"""
Shared fixtures: a file backed SQLite database per test, the fake gateway and
in-memory collaborators.

Every transaction starts with BEGIN IMMEDIATE, so concurrent units of work
serialise on the database write lock the way row locks serialise them on
PostgreSQL.
"""
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine

from storefront.application.checkout import CheckoutRequest
from storefront.container import Container
from storefront.database import create_session_factory, create_tables
from storefront.domain.exceptions import CartServiceError
from storefront.domain.models import CartItem, Product
from storefront.application.interfaces import CartService, KafkaProducer, NotificationsService
from storefront.infrastructure.gateways.fake import FakeGateway
from storefront.infrastructure.unit_of_work import UnitOfWork

ADDRESS = {
    "name": "Asha Verma",
    "email": "asha@example.com",
    "phone": "+91 98765 43210",
    "address": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}


class InMemoryCartService(CartService):
    def __init__(self):
        self.carts: dict[str, list[CartItem]] = {}
        self.cleared: list[str] = []
        self.fail_clear = False

    async def get_user_cart(self, user_id: str) -> list[CartItem]:
        return list(self.carts.get(user_id, []))

    async def clear_user_cart(self, user_id: str) -> None:
        if self.fail_clear:
            raise CartServiceError("Cart service unavailable")
        self.carts.pop(user_id, None)
        self.cleared.append(user_id)


class RecordingNotifications(NotificationsService):
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent: list[dict] = []

    async def send(self, message: str, reference_id: str, idempotency_key: str, user_id: str) -> bool:
        if self.succeed:
            self.sent.append({"message": message, "reference_id": reference_id,
                              "idempotency_key": idempotency_key, "user_id": user_id})
        return self.succeed


class RecordingKafkaProducer(KafkaProducer):
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.published: list[tuple[str, dict, str]] = []

    async def publish(self, event_type: str, payload: dict, key: str) -> bool:
        if self.succeed:
            self.published.append((event_type, payload, key))
        return self.succeed


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}",
        connect_args={"timeout": 30}
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def uow(engine):
    return UnitOfWork(create_session_factory(engine))


@pytest.fixture
def fake_gateway():
    return FakeGateway(secret="test-webhook-secret")


@pytest.fixture
def cart():
    return InMemoryCartService()


@pytest.fixture
def notifications():
    return RecordingNotifications()


@pytest.fixture
def kafka():
    return RecordingKafkaProducer()


@pytest.fixture
def address():
    return dict(ADDRESS)


@pytest.fixture
def container(uow, fake_gateway, cart):
    return Container(
        unit_of_work=uow,
        gateways={"fake": fake_gateway},
        cart_service=cart,
        default_gateway="fake",
        currency="INR",
        max_quantity=1000
    )


@pytest.fixture
def add_product(uow):
    async def _add(product_id: str, stock: int, price: int = 100000, sale_price=None, name=None):
        async with uow() as tx:
            await tx.products.create(Product(
                id=product_id,
                name=name or f"Product {product_id}",
                description=f"Description of {product_id}",
                stock=stock,
                price=price,
                sale_price=sale_price
            ))
            await tx.commit()
    return _add


@pytest.fixture
def get_stock(uow):
    async def _get(product_id: str):
        async with uow() as tx:
            return await tx.products.get_stock(product_id)
    return _get


@pytest.fixture
def pending_outbox(uow):
    async def _pending(event_type=None):
        async with uow() as tx:
            events = await tx.outbox.get_pending(limit=100)
        return [e for e in events if event_type is None or e["event_type"] == event_type]
    return _pending


@pytest.fixture
def place_order(container, address):
    async def _place(items, user_id: str = "user-1"):
        return await container.checkout.initiate_checkout(user_id, CheckoutRequest(items=items, address=address))
    return _place
