import hashlib
import hmac
import json
import logging
from typing import Optional, Union
import httpx

from storefront.domain.models import Order
from storefront.domain.exceptions import GatewayCallError, GatewayConfigurationError, ValidationError
from storefront.application.interfaces import (
    GatewayVerification, PaymentContext, PaymentGateway, PaymentRequest, PaymentState,
    PaymentStatusResult, RefundContext, RefundResult, WebhookCorrelation
)

logger = logging.getLogger(__name__)

# Payment entity statuses: created -> authorized -> captured, or failed
PAYMENT_STATES = {
    "captured": PaymentState.SUCCESS,
    "failed": PaymentState.FAILED,
    "created": PaymentState.PENDING,
    "authorized": PaymentState.PENDING,
}


class RazorpayGateway(PaymentGateway):
    """Razorpay Orders API.

    The checkout widget runs in the browser, so ``create_payment_request`` only
    creates a Razorpay order and returns its id; there is no redirect URL.
    """

    name = "razorpay"
    REQUIRED_PAYMENT_FIELDS = ("razorpay_order_id", "razorpay_payment_id", "razorpay_signature")
    CORRELATION_KEYS = ("razorpay_order_id", "razorpay_payment_id")
    SIGNATURE_HEADER = "X-Razorpay-Signature"
    BASE_URL = "https://api.razorpay.com/v1"

    def __init__(self, key_id: str, key_secret: str, webhook_secret: str = "", shop_name: str = "MyShop",
                 currency: str = "INR", base_url: str = BASE_URL,
                 transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30.0):
        self._key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._shop_name = shop_name
        self._currency = currency
        self._base_url = base_url
        self._transport = transport
        self._timeout = timeout

    async def create_payment_request(self, context: PaymentContext) -> PaymentRequest:
        data = await self._request("POST", "/orders", json={
            "amount": context.amount,
            "currency": context.currency,
            "receipt": context.receipt,
            "notes": {**context.notes, "merchant_transaction_id": context.merchant_transaction_id}
        })
        razorpay_order_id = data.get("id")
        if not razorpay_order_id:
            raise GatewayCallError("Razorpay order id not received")

        logger.info(f"Razorpay order {razorpay_order_id} created for {context.order_id}")
        return PaymentRequest(
            payment_url=None,
            provider_transaction_id=razorpay_order_id,
            correlation_ids={"razorpay_order_id": razorpay_order_id}
        )

    async def verify_payment(self, payload: dict) -> GatewayVerification:
        order_id = payload.get("razorpay_order_id")
        payment_id = payload.get("razorpay_payment_id")
        if not payment_id:
            return GatewayVerification(success=False, verified=False, message="razorpay_payment_id is required")

        # Client callbacks carry a signature; webhook payloads were authenticated by the caller
        if "razorpay_signature" in payload and not self.verify_payment_signature(
                order_id, payment_id, payload.get("razorpay_signature")):
            return GatewayVerification(success=False, verified=False, message="Invalid payment signature")

        payment = await self._request("GET", f"/payments/{payment_id}")
        if order_id and payment.get("order_id") != order_id:
            return GatewayVerification(
                success=False, verified=False, message=f"Payment {payment_id} does not belong to {order_id}"
            )

        return self._verification_from_payment(payment)

    async def check_payment_status(self, correlation_id: str) -> PaymentStatusResult:
        data = await self._request("GET", f"/orders/{correlation_id}/payments")
        payments = data.get("items", [])

        captured = next((p for p in payments if p.get("status") == "captured"), None)
        if captured:
            payment, state = captured, PaymentState.SUCCESS
        elif payments and all(p.get("status") == "failed" for p in payments):
            payment, state = payments[-1], PaymentState.FAILED
        else:
            payment, state = (payments[-1] if payments else {}), PaymentState.PENDING

        return PaymentStatusResult(
            state=state,
            provider_transaction_id=payment.get("id"),
            amount=payment.get("amount"),
            code=payment.get("status"),
            message=payment.get("error_description") or f"Payment {state.value}",
            correlation_ids=_correlation_ids(correlation_id, payment.get("id"))
        )

    def status_correlation_id(self, order: Order) -> str:
        return order.correlation_ids.get("razorpay_order_id", order.merchant_transaction_id)

    def verify_payment_signature(self, order_id: Optional[str], payment_id: Optional[str],
                                 signature: Optional[str]) -> bool:
        if not (order_id and payment_id and signature and self._key_secret):
            return False
        expected = _hmac_hex(self._key_secret, f"{order_id}|{payment_id}".encode())
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, raw_payload: Union[bytes, str], signature: Optional[str]) -> bool:
        if not signature or not self._webhook_secret:
            return False
        return hmac.compare_digest(_hmac_hex(self._webhook_secret, _as_bytes(raw_payload)), signature)

    def extract_webhook_correlation(self, raw_payload: Union[bytes, str]) -> WebhookCorrelation:
        try:
            data = json.loads(_as_bytes(raw_payload))
            entity = data["payload"]["payment"]["entity"]
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationError(f"Malformed Razorpay webhook body: {e}")

        order_id = entity.get("order_id")
        if not order_id:
            raise ValidationError("Razorpay webhook payment has no order_id")
        logger.info(f"Razorpay webhook {data.get('event')} for {order_id}")

        return WebhookCorrelation(
            key="razorpay_order_id",
            value=order_id,
            payment_payload={"razorpay_order_id": order_id, "razorpay_payment_id": entity.get("id")}
        )

    async def initiate_refund(self, context: RefundContext) -> RefundResult:
        payment_id = context.provider_transaction_id or context.correlation_ids.get("razorpay_payment_id")
        if not payment_id:
            raise GatewayCallError(f"No Razorpay payment recorded for order {context.order_id}")

        data = await self._request("POST", f"/payments/{payment_id}/refund", json={
            "amount": context.amount,
            "receipt": context.merchant_refund_id,
            "notes": {"order_id": context.order_id, "reason": context.reason or ""}
        })
        return RefundResult(
            success=True,
            refund_id=data.get("id"),
            status=data.get("status"),
            message="Refund initiated"
        )

    def is_configured(self) -> bool:
        return bool(self._key_id and self._key_secret)

    def get_frontend_config(self) -> Optional[dict]:
        if not self.is_configured():
            return None
        return {"gateway": self.name, "key_id": self._key_id, "name": self._shop_name, "currency": self._currency}

    def _verification_from_payment(self, payment: dict) -> GatewayVerification:
        status = payment.get("status")
        state = PAYMENT_STATES.get(status, PaymentState.PENDING)
        return GatewayVerification(
            success=state == PaymentState.SUCCESS,
            verified=True,
            provider_transaction_id=payment.get("id"),
            amount=payment.get("amount"),
            code=status,
            state=state.value,
            message=payment.get("error_description") or f"Payment {status}",
            correlation_ids=_correlation_ids(payment.get("order_id"), payment.get("id"))
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.is_configured():
            raise GatewayConfigurationError("Razorpay is not configured")
        try:
            async with httpx.AsyncClient(base_url=self._base_url, auth=(self._key_id, self._key_secret),
                                         transport=self._transport, timeout=self._timeout) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Razorpay {method} {path} failed: {e}")
            raise GatewayCallError(f"Razorpay unreachable: {e}") from e

        if response.status_code >= 400:
            try:
                description = response.json().get("error", {}).get("description")
            except ValueError:
                description = response.text
            raise GatewayCallError(f"Razorpay error {response.status_code}: {description}",
                                   status_code=response.status_code)
        return response.json()


def _correlation_ids(order_id: Optional[str], payment_id: Optional[str]) -> dict[str, str]:
    ids = {"razorpay_order_id": order_id, "razorpay_payment_id": payment_id}
    return {key: value for key, value in ids.items() if value}


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _as_bytes(raw_payload: Union[bytes, str]) -> bytes:
    return raw_payload.encode() if isinstance(raw_payload, str) else raw_payload
