import logging
from typing import Mapping, Optional

from storefront.application.checkout import CheckoutOrchestrator
from storefront.application.interfaces import CartService, PaymentGateway
from storefront.application.order_lifecycle import OrderLifecycle
from storefront.application.order_validator import OrderValidator
from storefront.application.payment_verifier import PaymentVerifier
from storefront.application.refund_order import RefundOrderUseCase
from storefront.application.stock_ledger import StockLedger
from storefront.infrastructure.gateways.registry import build_gateways, required_payment_fields
from storefront.infrastructure.http_clients import HTTPCartClient
from storefront.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class Container:
    """Application services wired once per process"""

    def __init__(
        self,
        unit_of_work,
        gateways: Mapping[str, PaymentGateway],
        cart_service: CartService,
        default_gateway: str,
        currency: str = "INR",
        max_quantity: int = 1000,
        low_stock_threshold: int = 10,
        critical_stock_threshold: int = 5
    ):
        self.unit_of_work = unit_of_work
        self.gateways = dict(gateways)
        self.cart_service = cart_service
        self.default_gateway = default_gateway

        self.stock_ledger = StockLedger(low_stock_threshold, critical_stock_threshold)
        self.order_validator = OrderValidator(
            max_quantity=max_quantity, payment_fields=required_payment_fields(self.gateways)
        )
        self.payment_verifier = PaymentVerifier()
        self.order_lifecycle = OrderLifecycle(unit_of_work, self.stock_ledger)
        self.checkout = CheckoutOrchestrator(
            unit_of_work=unit_of_work,
            gateways=self.gateways,
            cart_service=cart_service,
            order_validator=self.order_validator,
            payment_verifier=self.payment_verifier,
            order_lifecycle=self.order_lifecycle,
            stock_ledger=self.stock_ledger,
            default_gateway=default_gateway,
            currency=currency
        )
        self.refund_order = RefundOrderUseCase(unit_of_work, self.gateways, self.order_lifecycle)


def build_container(settings, session_factory, gateways: Optional[Mapping[str, PaymentGateway]] = None,
                    cart_service: Optional[CartService] = None) -> Container:
    return Container(
        unit_of_work=UnitOfWork(session_factory),
        gateways=gateways if gateways is not None else build_gateways(settings),
        cart_service=cart_service or HTTPCartClient(settings.CART_BASE_URL, settings.API_TOKEN),
        default_gateway=settings.PAYMENT_GATEWAY,
        currency=settings.CURRENCY,
        max_quantity=settings.MAX_QUANTITY_PER_LINE,
        low_stock_threshold=settings.LOW_STOCK_THRESHOLD,
        critical_stock_threshold=settings.CRITICAL_STOCK_THRESHOLD
    )
