from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional, List, Union
from pydantic import BaseModel, Field

from storefront.domain.models import Order, OrderStatus, Product, StockMovement, CartItem
from storefront.domain.exceptions import UnsupportedOperationError


class OrderRepository(ABC):
    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def find_by_correlation_id(self, value: str, gateway_name: Optional[str] = None) -> Optional[Order]:
        pass

    @abstractmethod
    async def create(self, order: Order) -> None:
        pass

    @abstractmethod
    async def update_status(self, order_id: str, status: OrderStatus,
                            expected_status: Optional[OrderStatus] = None) -> bool:
        pass

    @abstractmethod
    async def add_correlation_ids(self, order_id: str, gateway_name: str, correlation_ids: dict) -> None:
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str, limit: int = 10, offset: int = 0) -> List[Order]:
        pass

    @abstractmethod
    async def count_by_user(self, user_id: str) -> int:
        pass


class ProductRepository(ABC):
    @abstractmethod
    async def get_by_id(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_stock(self, product_id: str) -> Optional[int]:
        pass

    @abstractmethod
    async def decrement_stock_if_available(self, product_id: str, quantity: int) -> Optional[int]:
        """Compare-and-decrement. Returns the resulting stock, or None when no row was updated."""

    @abstractmethod
    async def increment_stock(self, product_id: str, quantity: int) -> Optional[int]:
        pass

    @abstractmethod
    async def create(self, product: Product) -> None:
        pass


class StockMovementRepository(ABC):
    @abstractmethod
    async def append(self, movement: StockMovement) -> None:
        pass

    @abstractmethod
    async def list_for_product(self, product_id: str, limit: int = 50) -> List[StockMovement]:
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> List[StockMovement]:
        pass


class OutboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, order_id: Optional[str] = None) -> str:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 10) -> List[dict]:
        pass

    @abstractmethod
    async def mark_as_published(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def record_failed_attempt(self, event_id: str, max_attempts: int) -> None:
        pass


class InboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, order_id: str, idempotency_key: str) -> str:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 10) -> List[dict]:
        pass

    @abstractmethod
    async def mark_as_processed(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def mark_as_failed(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def exists(self, idempotency_key: str) -> bool:
        pass


class UnitOfWork(ABC):
    @property
    @abstractmethod
    def orders(self) -> OrderRepository:
        pass

    @property
    @abstractmethod
    def products(self) -> ProductRepository:
        pass

    @property
    @abstractmethod
    def stock_movements(self) -> StockMovementRepository:
        pass

    @property
    @abstractmethod
    def outbox(self) -> OutboxRepository:
        pass

    @property
    @abstractmethod
    def inbox(self) -> InboxRepository:
        pass

    @abstractmethod
    async def __call__(self):
        pass

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


class CartService(ABC):
    @abstractmethod
    async def get_user_cart(self, user_id: str) -> List[CartItem]:
        pass

    @abstractmethod
    async def clear_user_cart(self, user_id: str) -> None:
        pass


class NotificationsService(ABC):
    @abstractmethod
    async def send(self, message: str, reference_id: str, idempotency_key: str, user_id: str) -> bool:
        pass


class KafkaProducer(ABC):
    @abstractmethod
    async def publish(self, event_type: str, payload: dict, key: str) -> bool:
        pass


# Payment gateway port

class PaymentState(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentContext(BaseModel):
    order_id: str
    amount: int
    currency: str
    merchant_transaction_id: str
    receipt: str
    user_id: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: dict[str, str] = Field(default_factory=dict)


class PaymentRequest(BaseModel):
    payment_url: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    correlation_ids: dict[str, str] = Field(default_factory=dict)


class GatewayVerification(BaseModel):
    success: bool
    verified: bool
    provider_transaction_id: Optional[str] = None
    amount: Optional[int] = None
    message: str = ""
    code: Optional[str] = None
    state: Optional[str] = None
    correlation_ids: dict[str, str] = Field(default_factory=dict)


class PaymentStatusResult(BaseModel):
    state: PaymentState
    provider_transaction_id: Optional[str] = None
    amount: Optional[int] = None
    code: Optional[str] = None
    message: str = ""
    correlation_ids: dict[str, str] = Field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.state == PaymentState.SUCCESS


class WebhookCorrelation(BaseModel):
    key: str
    value: str
    payment_payload: dict[str, Any]


class RefundContext(BaseModel):
    order_id: str
    amount: int
    currency: str
    merchant_refund_id: str
    merchant_transaction_id: str
    provider_transaction_id: Optional[str] = None
    correlation_ids: dict[str, str] = Field(default_factory=dict)
    user_id: str
    reason: Optional[str] = None


class RefundResult(BaseModel):
    success: bool
    refund_id: Optional[str] = None
    status: Optional[str] = None
    message: str = ""


class PaymentGateway(ABC):
    """Uniform contract over payment providers.

    Implementations must be interchangeable: the checkout flow never branches on
    the gateway name. Provider specific identifiers travel in ``correlation_ids``
    using the keys listed in ``CORRELATION_KEYS``.
    """

    name: str = ""
    REQUIRED_PAYMENT_FIELDS: tuple = ()
    CORRELATION_KEYS: tuple = ()
    SIGNATURE_HEADER: str = ""

    @abstractmethod
    async def create_payment_request(self, context: PaymentContext) -> PaymentRequest:
        pass

    @abstractmethod
    async def verify_payment(self, payload: dict) -> GatewayVerification:
        pass

    @abstractmethod
    async def check_payment_status(self, correlation_id: str) -> PaymentStatusResult:
        pass

    @abstractmethod
    def verify_webhook_signature(self, raw_payload: Union[bytes, str], signature: Optional[str]) -> bool:
        pass

    @abstractmethod
    def extract_webhook_correlation(self, raw_payload: Union[bytes, str]) -> WebhookCorrelation:
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        pass

    @abstractmethod
    def get_frontend_config(self) -> Optional[dict]:
        pass

    def get_gateway_name(self) -> str:
        return self.name

    def status_correlation_id(self, order: Order) -> str:
        """Identifier this provider expects when polling an order's payment status"""
        return order.merchant_transaction_id

    async def initiate_refund(self, context: RefundContext) -> RefundResult:
        raise UnsupportedOperationError(f"Refunds are not supported by {self.get_gateway_name()}")
