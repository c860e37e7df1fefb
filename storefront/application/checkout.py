import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union
from pydantic import BaseModel

from storefront.domain.models import Order, OrderItem, OrderStatus
from storefront.domain.exceptions import (
    CartServiceError, DomainException, GatewayCallError, GatewayConfigurationError, GatewayNotFoundError,
    OrderNotFoundError, ProductNotFoundError, StockConflictError, ValidationError, WebhookSignatureError
)
from storefront.application.interfaces import CartService, PaymentContext, PaymentGateway
from storefront.application.order_lifecycle import OrderLifecycle
from storefront.application.order_validator import OrderValidator
from storefront.application.payment_verifier import PaymentVerifier
from storefront.application.stock_ledger import StockLedger

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("storefront.security")

SETTLED_STATUSES = frozenset({
    OrderStatus.PAID, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED
})


class CheckoutRequest(BaseModel):
    # Validated by OrderValidator, which reports per-line errors
    items: Optional[list[Any]] = None
    address: Any = None
    gateway_name: Optional[str] = None


class CheckoutResult(BaseModel):
    order_id: str
    payment_url: Optional[str] = None
    merchant_transaction_id: str
    receipt: str
    gateway_name: str
    amount: int
    currency: str
    provider_transaction_id: Optional[str] = None
    frontend_config: Optional[dict] = None


class PaymentOutcome(BaseModel):
    success: bool
    order_id: str
    status: OrderStatus
    gateway_name: str
    message: str = ""
    changed: bool = False
    payment_state: Optional[str] = None


def generate_merchant_transaction_id() -> str:
    return f"TXN_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12].upper()}"


def generate_receipt() -> str:
    return f"rcpt_{uuid.uuid4().hex[:20]}"


class CheckoutOrchestrator:
    """End-to-end checkout: initiate, verify, poll, webhook.

    Database work happens in short units of work; every call to a payment
    provider happens between them, never inside one. All paths that move an
    order out of ``pending`` go through ``OrderLifecycle.apply_payment_outcome``.
    """

    def __init__(
        self,
        unit_of_work,
        gateways: Mapping[str, PaymentGateway],
        cart_service: CartService,
        order_validator: OrderValidator,
        payment_verifier: PaymentVerifier,
        order_lifecycle: OrderLifecycle,
        stock_ledger: StockLedger,
        default_gateway: str,
        currency: str = "INR"
    ):
        self._uow = unit_of_work
        self._gateways = dict(gateways)
        self._cart = cart_service
        self._validator = order_validator
        self._verifier = payment_verifier
        self._lifecycle = order_lifecycle
        self._stock = stock_ledger
        self._default_gateway = default_gateway
        self._currency = currency

    def get_gateway(self, gateway_name: str) -> PaymentGateway:
        gateway = self._gateways.get(gateway_name)
        if gateway is None:
            raise GatewayConfigurationError(f"Unknown payment gateway: {gateway_name}")
        return gateway

    def get_webhook_gateway(self, gateway_name: str) -> PaymentGateway:
        gateway = self._gateways.get(gateway_name)
        if gateway is None:
            raise GatewayNotFoundError(f"No webhook endpoint for payment gateway {gateway_name}")
        return gateway

    def available_gateways(self) -> dict[str, dict]:
        return {
            name: gateway.get_frontend_config()
            for name, gateway in self._gateways.items()
            if gateway.is_configured()
        }

    async def initiate_checkout(self, user_id: str, request: CheckoutRequest) -> CheckoutResult:
        gateway_name = request.gateway_name or self._default_gateway
        gateway = self.get_gateway(gateway_name)
        if not gateway.is_configured():
            raise GatewayConfigurationError(f"Payment gateway {gateway_name} is not configured")

        logger.info(f"Checkout for user {user_id} via {gateway_name}")

        items = request.items
        if items is None:
            cart = await self._cart.get_user_cart(user_id)
            items = [item.model_dump() for item in cart]

        # 1. Cart and address
        self._raise_if_invalid(self._validator.validate_cart_items(items), "Invalid cart items")
        self._raise_if_invalid(self._validator.validate_shipping_address(request.address), "Invalid shipping address")

        # 2-3. Stock pre-check and price snapshot
        order_id = str(uuid.uuid4())
        async with self._uow() as uow:
            precheck = await self._validator.validate_stock_availability(items, uow.products.get_stock)
            for check in precheck.stock_checks:
                if not check.sufficient:
                    raise StockConflictError(check.product_id, check.requested, check.available)
            self._raise_if_invalid(precheck, "Stock information not available")

            lines = []
            for item in items:
                product_id = str(_item_field(item, "product_id"))
                product = await uow.products.get_by_id(product_id)
                if not product:
                    raise ProductNotFoundError(f"Product {product_id} not found")
                lines.append(OrderItem(
                    id=str(uuid.uuid4()),
                    order_id=order_id,
                    product_id=product.id,
                    quantity=_item_field(item, "quantity"),
                    unit_price=product.unit_price,
                    product_name=product.name,
                    product_description=product.description
                ))

        # 4. Identifiers
        now = datetime.now(timezone.utc)
        order = Order(
            id=order_id,
            user_id=user_id,
            total_amount=sum(line.subtotal for line in lines),
            currency=self._currency,
            status=OrderStatus.PENDING,
            gateway_name=gateway_name,
            shipping_address=dict(request.address),
            merchant_transaction_id=generate_merchant_transaction_id(),
            receipt=generate_receipt(),
            items=lines,
            created_at=now,
            updated_at=now
        )

        # 5-6. Order, items and reservations commit together or not at all
        async with self._uow() as uow:
            await uow.orders.create(order)
            # Rows are locked in product id order so concurrent checkouts cannot deadlock
            for line in sorted(order.items, key=lambda item: item.product_id):
                await self._stock.reserve(uow, line.product_id, line.quantity, order_id=order.id)
            await uow.outbox.create(
                event_type="order.created",
                event_data={
                    "order_id": order.id,
                    "user_id": order.user_id,
                    "status": order.status.value,
                    "total_amount": order.total_amount,
                    "currency": order.currency,
                    "message": "Your order has been created and is awaiting payment",
                    "idempotency_key": f"order_{order.id}_created"
                },
                order_id=order.id
            )
            await uow.commit()
        logger.info(f"Order {order.id} created: total {order.total_amount} {order.currency}")

        # 7. Payment request outside any transaction
        address = order.shipping_address
        context = PaymentContext(
            order_id=order.id,
            amount=order.total_amount,
            currency=order.currency,
            merchant_transaction_id=order.merchant_transaction_id,
            receipt=order.receipt,
            user_id=user_id,
            customer_name=address.get("name"),
            customer_email=address.get("email"),
            customer_phone=address.get("phone"),
            notes={"order_id": order.id, "receipt": order.receipt}
        )
        try:
            payment = await gateway.create_payment_request(context)
        except Exception as e:
            logger.error(f"Payment request for order {order.id} failed: {e}")
            await self._lifecycle.apply_payment_outcome(
                order.id, OrderStatus.FAILED, reason="Payment request could not be created"
            )
            if isinstance(e, DomainException):
                raise
            raise GatewayCallError(f"Payment request failed: {e}") from e

        # 8. Correlation identifiers
        if payment.correlation_ids:
            async with self._uow() as uow:
                await uow.orders.add_correlation_ids(order.id, gateway_name, payment.correlation_ids)
                await uow.commit()

        return CheckoutResult(
            order_id=order.id,
            payment_url=payment.payment_url,
            merchant_transaction_id=order.merchant_transaction_id,
            receipt=order.receipt,
            gateway_name=gateway_name,
            amount=order.total_amount,
            currency=order.currency,
            provider_transaction_id=payment.provider_transaction_id,
            frontend_config=gateway.get_frontend_config()
        )

    async def verify_payment(self, order_id: str, payload: Any) -> PaymentOutcome:
        order = await self._lifecycle.get_order(order_id)
        if not order.is_pending():
            return self._unchanged(order, f"Order is already {order.status.value}")

        self._raise_if_invalid(
            self._validator.validate_payment_data(payload, order.gateway_name), "Invalid payment data"
        )
        return await self._verify_and_settle(order, dict(payload))

    async def check_payment_status(self, correlation_id: str, gateway_name: Optional[str] = None) -> PaymentOutcome:
        async with self._uow() as uow:
            order = await uow.orders.find_by_correlation_id(correlation_id, gateway_name)
        if not order:
            raise OrderNotFoundError(f"No order found for transaction {correlation_id}")

        gateway = self.get_gateway(order.gateway_name)
        poll = await gateway.check_payment_status(gateway.status_correlation_id(order))
        target = self._verifier.status_from_poll(poll)
        logger.info(f"Status poll for order {order.id}: {poll.state.value}")

        if not order.is_pending() or target == OrderStatus.PENDING:
            outcome = self._unchanged(order, poll.message or f"Payment is {poll.state.value}")
        elif not self._matches_order(order, poll.amount, poll.correlation_ids):
            outcome = self._unchanged(order, "Payment details do not match the order")
        else:
            outcome = await self._settle(order, target, poll.correlation_ids, poll.message)
        return outcome.model_copy(update={"payment_state": poll.state.value})

    async def handle_webhook(self, raw_payload: Union[bytes, str], signature: Optional[str],
                             gateway_name: str) -> PaymentOutcome:
        gateway = self.get_webhook_gateway(gateway_name)

        if not signature:
            security_logger.warning(f"Rejected {gateway_name} webhook: missing signature")
            raise WebhookSignatureError("Missing webhook signature")
        if not gateway.verify_webhook_signature(raw_payload, signature):
            security_logger.warning(f"Rejected {gateway_name} webhook: invalid signature")
            raise WebhookSignatureError("Invalid webhook signature")

        correlation = gateway.extract_webhook_correlation(raw_payload)
        async with self._uow() as uow:
            order = await uow.orders.find_by_correlation_id(correlation.value, gateway_name)
        if not order:
            raise OrderNotFoundError(f"No order found for {correlation.key}={correlation.value}")

        logger.info(f"Webhook from {gateway_name} for order {order.id} ({correlation.key})")
        if not order.is_pending():
            return self._unchanged(order, f"Order is already {order.status.value}")
        return await self._verify_and_settle(order, correlation.payment_payload)

    async def _verify_and_settle(self, order: Order, payload: dict) -> PaymentOutcome:
        gateway = self.get_gateway(order.gateway_name)
        result = await self._verifier.verify_payment_response(payload, gateway)
        target = self._verifier.determine_order_status(result)

        if target == OrderStatus.PENDING:
            return self._unchanged(order, result.message)
        if not self._matches_order(order, result.amount, result.correlation_ids):
            return self._unchanged(order, "Payment details do not match the order")
        return await self._settle(order, target, result.correlation_ids, result.message)

    async def _settle(self, order: Order, target: OrderStatus, correlation_ids: dict,
                      message: str) -> PaymentOutcome:
        reason = None if target == OrderStatus.PAID else message
        transition = await self._lifecycle.apply_payment_outcome(order.id, target, correlation_ids, reason=reason)

        if transition.changed and transition.status == OrderStatus.PAID:
            await self._clear_cart(order)

        return PaymentOutcome(
            success=transition.status in SETTLED_STATUSES,
            order_id=order.id,
            status=transition.status,
            gateway_name=order.gateway_name,
            message=message,
            changed=transition.changed
        )

    async def _clear_cart(self, order: Order) -> None:
        try:
            await self._cart.clear_user_cart(order.user_id)
            logger.info(f"Cart cleared for user {order.user_id} after order {order.id}")
        except CartServiceError as e:
            logger.warning(f"Cart clear for user {order.user_id} failed, queued for retry: {e}")
            async with self._uow() as uow:
                await uow.outbox.create(
                    event_type="cart.clear",
                    event_data={"user_id": order.user_id, "order_id": order.id},
                    order_id=order.id
                )
                await uow.commit()

    def _matches_order(self, order: Order, amount: Optional[int], correlation_ids: dict) -> bool:
        mismatches = []
        if amount is not None and amount != order.total_amount:
            mismatches.append(f"amount {amount} != {order.total_amount}")
        for key, value in (correlation_ids or {}).items():
            expected = order.correlation_ids.get(key)
            if key == "merchant_transaction_id":
                expected = order.merchant_transaction_id
            if expected is not None and value and value != expected:
                mismatches.append(f"{key} {value} != {expected}")

        if mismatches:
            security_logger.warning(f"Payment for order {order.id} does not match: {'; '.join(mismatches)}")
            return False
        return True

    @staticmethod
    def _unchanged(order: Order, message: str) -> PaymentOutcome:
        return PaymentOutcome(
            success=order.status in SETTLED_STATUSES,
            order_id=order.id,
            status=order.status,
            gateway_name=order.gateway_name,
            message=message,
            changed=False
        )

    @staticmethod
    def _raise_if_invalid(result, message: str) -> None:
        if not result.is_valid:
            raise ValidationError(message, errors=result.errors, reason=result.reason)


def _item_field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)
