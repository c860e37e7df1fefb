"""Configurable fake payment gateway for development and tests.

Simulates a hosted payment page without any network calls. Outcomes are set at
runtime through ``configure``; every call is recorded in ``calls``. Webhooks
are signed with HMAC-SHA256 over the raw body using the shared secret.
"""

import hashlib
import hmac
import json
import uuid
from typing import Optional, Union

from storefront.domain.models import Order
from storefront.domain.exceptions import GatewayCallError, ValidationError
from storefront.application.interfaces import (
    GatewayVerification, PaymentContext, PaymentGateway, PaymentRequest, PaymentState,
    PaymentStatusResult, RefundContext, RefundResult, WebhookCorrelation
)


class FakeGateway(PaymentGateway):
    name = "fake"
    REQUIRED_PAYMENT_FIELDS = ("session_id", "status")
    CORRELATION_KEYS = ("fake_session_id", "fake_transaction_id")
    SIGNATURE_HEADER = "X-Fake-Signature"

    def __init__(self, secret: str = "", payment_page_url: str = "http://localhost:5173/fake-pay",
                 currency: str = "INR"):
        self._secret = secret
        self._payment_page_url = payment_page_url
        self._currency = currency
        self._sessions: dict[str, dict] = {}
        self.should_succeed: bool = True
        self.payment_state: PaymentState = PaymentState.SUCCESS
        self.failure_reason: str = "Gateway unavailable"
        self.supports_refunds: bool = True
        self.calls: list[dict] = []

    def configure(self, should_succeed: bool = True, payment_state: PaymentState = PaymentState.SUCCESS,
                  failure_reason: str = "Gateway unavailable", supports_refunds: bool = True) -> None:
        """Configure gateway behaviour at runtime"""
        self.should_succeed = should_succeed
        self.payment_state = payment_state
        self.failure_reason = failure_reason
        self.supports_refunds = supports_refunds

    def sign(self, raw_payload: Union[bytes, str]) -> str:
        return hmac.new(self._secret.encode(), _as_bytes(raw_payload), hashlib.sha256).hexdigest()

    async def create_payment_request(self, context: PaymentContext) -> PaymentRequest:
        self.calls.append({"method": "create_payment_request", "order_id": context.order_id,
                           "amount": context.amount, "merchant_transaction_id": context.merchant_transaction_id})
        if not self.should_succeed:
            raise GatewayCallError(self.failure_reason)

        session_id = f"fake_sess_{uuid.uuid4().hex[:12]}"
        self._sessions[session_id] = {
            "amount": context.amount,
            "merchant_transaction_id": context.merchant_transaction_id,
            "transaction_id": f"fake_txn_{uuid.uuid4().hex[:12]}"
        }
        return PaymentRequest(
            payment_url=f"{self._payment_page_url}/{session_id}",
            provider_transaction_id=session_id,
            correlation_ids={"fake_session_id": session_id}
        )

    async def verify_payment(self, payload: dict) -> GatewayVerification:
        session_id = payload.get("session_id")
        self.calls.append({"method": "verify_payment", "session_id": session_id})

        session = self._sessions.get(session_id)
        if session is None:
            return GatewayVerification(success=False, verified=False, message=f"Unknown session {session_id}")

        # The provider side state decides; the status claimed in the payload is only echoed back
        return GatewayVerification(
            success=self.payment_state == PaymentState.SUCCESS,
            verified=True,
            provider_transaction_id=session["transaction_id"],
            amount=session["amount"],
            code=payload.get("status"),
            state=self.payment_state.value,
            message=f"Payment {self.payment_state.value}",
            correlation_ids={"fake_session_id": session_id, "fake_transaction_id": session["transaction_id"]}
        )

    async def check_payment_status(self, correlation_id: str) -> PaymentStatusResult:
        self.calls.append({"method": "check_payment_status", "correlation_id": correlation_id})
        session = self._sessions.get(correlation_id)
        if session is None:
            return PaymentStatusResult(state=PaymentState.PENDING, message=f"Unknown session {correlation_id}")

        return PaymentStatusResult(
            state=self.payment_state,
            provider_transaction_id=session["transaction_id"],
            amount=session["amount"],
            code=self.payment_state.value,
            message=f"Payment {self.payment_state.value}",
            correlation_ids={"fake_session_id": correlation_id, "fake_transaction_id": session["transaction_id"]}
        )

    def status_correlation_id(self, order: Order) -> str:
        return order.correlation_ids.get("fake_session_id", order.merchant_transaction_id)

    def verify_webhook_signature(self, raw_payload: Union[bytes, str], signature: Optional[str]) -> bool:
        if not signature or not self._secret:
            return False
        return hmac.compare_digest(self.sign(raw_payload), signature)

    def extract_webhook_correlation(self, raw_payload: Union[bytes, str]) -> WebhookCorrelation:
        try:
            data = json.loads(_as_bytes(raw_payload))
        except ValueError as e:
            raise ValidationError(f"Malformed webhook body: {e}")
        session_id = data.get("session_id") if isinstance(data, dict) else None
        if not session_id:
            raise ValidationError("session_id is required in webhook body")

        return WebhookCorrelation(
            key="fake_session_id",
            value=session_id,
            payment_payload={"session_id": session_id, "status": data.get("status")}
        )

    async def initiate_refund(self, context: RefundContext) -> RefundResult:
        if not self.supports_refunds:
            return await super().initiate_refund(context)
        self.calls.append({"method": "initiate_refund", "order_id": context.order_id, "amount": context.amount})
        if not self.should_succeed:
            return RefundResult(success=False, status="failed", message=self.failure_reason)
        return RefundResult(success=True, refund_id=f"fake_ref_{uuid.uuid4().hex[:12]}", status="processed")

    def is_configured(self) -> bool:
        return bool(self._secret)

    def get_frontend_config(self) -> Optional[dict]:
        if not self.is_configured():
            return None
        return {"gateway": self.name, "payment_page_url": self._payment_page_url, "currency": self._currency}


def _as_bytes(raw_payload: Union[bytes, str]) -> bytes:
    return raw_payload.encode() if isinstance(raw_payload, str) else raw_payload
