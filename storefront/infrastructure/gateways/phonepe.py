import base64
import hashlib
import hmac
import json
import logging
import re
from typing import Optional, Union
import httpx

from storefront.domain.exceptions import GatewayCallError, GatewayConfigurationError, ValidationError
from storefront.application.interfaces import (
    GatewayVerification, PaymentContext, PaymentGateway, PaymentRequest, PaymentState,
    PaymentStatusResult, RefundContext, RefundResult, WebhookCorrelation
)

logger = logging.getLogger(__name__)

HOSTS = {
    "SANDBOX": "https://api-preprod.phonepe.com/apis/pg-sandbox",
    "PRODUCTION": "https://api.phonepe.com/apis/hermes",
}

CODE_STATES = {
    "PAYMENT_SUCCESS": PaymentState.SUCCESS,
    "PAYMENT_PENDING": PaymentState.PENDING,
    "INTERNAL_SERVER_ERROR": PaymentState.PENDING,
    "PAYMENT_ERROR": PaymentState.FAILED,
    "PAYMENT_DECLINED": PaymentState.FAILED,
    "TIMED_OUT": PaymentState.FAILED,
    "PAYMENT_CANCELLED": PaymentState.CANCELLED,
}


class PhonePeGateway(PaymentGateway):
    """PhonePe PG v1 (pay page flow).

    Requests are base64 encoded JSON signed with
    ``X-VERIFY = sha256(payload + path + salt_key) + "###" + salt_index``.
    Callbacks and webhooks carry the same checksum over the base64 ``response``.
    Payment outcomes are always confirmed with a server side status call.
    """

    name = "phonepe"
    REQUIRED_PAYMENT_FIELDS = ("merchantTransactionId", "response", "xVerify")
    CORRELATION_KEYS = ("merchant_transaction_id", "phonepe_transaction_id", "payment_instrument_type")
    SIGNATURE_HEADER = "X-VERIFY"

    def __init__(self, merchant_id: str, salt_key: str, salt_index: str = "1", env: str = "SANDBOX",
                 redirect_url: str = "", callback_url: str = "", currency: str = "INR",
                 transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30.0):
        if env.upper() not in HOSTS:
            raise GatewayConfigurationError(f"Unknown PhonePe environment: {env}")
        self._merchant_id = merchant_id
        self._salt_key = salt_key
        self._salt_index = str(salt_index)
        self._env = env.upper()
        self._redirect_url = redirect_url
        self._callback_url = callback_url
        self._currency = currency
        self._transport = transport
        self._timeout = timeout

    def checksum(self, payload: str, path: str = "") -> str:
        digest = hashlib.sha256(f"{payload}{path}{self._salt_key}".encode()).hexdigest()
        return f"{digest}###{self._salt_index}"

    async def create_payment_request(self, context: PaymentContext) -> PaymentRequest:
        body = {
            "merchantId": self._merchant_id,
            "merchantTransactionId": context.merchant_transaction_id,
            "merchantUserId": _merchant_user_id(context.user_id),
            "amount": context.amount,
            "redirectUrl": self._redirect_url,
            "redirectMode": "REDIRECT",
            "callbackUrl": self._callback_url,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        mobile = re.sub(r"\D", "", context.customer_phone or "")[-10:]
        if mobile:
            body["mobileNumber"] = mobile

        data = await self._signed_post("/pg/v1/pay", body)
        if not data.get("success"):
            raise GatewayCallError(f"PhonePe rejected payment request: {data.get('code')} {data.get('message')}")

        payment_url = (
            (data.get("data") or {}).get("instrumentResponse", {}).get("redirectInfo", {}).get("url")
        )
        if not payment_url:
            raise GatewayCallError("Payment URL not received from PhonePe")

        logger.info(f"PhonePe payment {context.merchant_transaction_id} created for {context.order_id}")
        return PaymentRequest(
            payment_url=payment_url,
            provider_transaction_id=context.merchant_transaction_id,
            correlation_ids={"merchant_transaction_id": context.merchant_transaction_id}
        )

    async def verify_payment(self, payload: dict) -> GatewayVerification:
        merchant_transaction_id = payload.get("merchantTransactionId")

        response = payload.get("response")
        if response is not None:
            if not self.verify_callback(response, payload.get("xVerify")):
                return GatewayVerification(success=False, verified=False, message="Invalid X-VERIFY checksum")
            decoded = _decode_response(response)
            decoded_id = (decoded.get("data") or {}).get("merchantTransactionId")
            if merchant_transaction_id and decoded_id and decoded_id != merchant_transaction_id:
                return GatewayVerification(success=False, verified=False, message="Transaction id mismatch")
            merchant_transaction_id = merchant_transaction_id or decoded_id

        if not merchant_transaction_id:
            return GatewayVerification(success=False, verified=False, message="merchantTransactionId is required")

        status = await self.check_payment_status(merchant_transaction_id)
        return GatewayVerification(
            success=status.success,
            verified=True,
            provider_transaction_id=status.provider_transaction_id,
            amount=status.amount,
            code=status.code,
            state=status.state.value,
            message=status.message,
            correlation_ids=status.correlation_ids
        )

    async def check_payment_status(self, correlation_id: str) -> PaymentStatusResult:
        path = f"/pg/v1/status/{self._merchant_id}/{correlation_id}"
        data = await self._request("GET", path, headers={
            "X-VERIFY": self.checksum("", path),
            "X-MERCHANT-ID": self._merchant_id,
        })

        code = data.get("code") or "UNKNOWN"
        details = data.get("data") or {}
        instrument = details.get("paymentInstrument") or {}
        correlation_ids = {
            "merchant_transaction_id": correlation_id,
            "phonepe_transaction_id": details.get("transactionId"),
            "payment_instrument_type": instrument.get("type"),
        }
        return PaymentStatusResult(
            state=CODE_STATES.get(code, PaymentState.PENDING),
            provider_transaction_id=details.get("transactionId"),
            amount=details.get("amount"),
            code=code,
            message=data.get("message") or "Status check completed",
            correlation_ids={key: value for key, value in correlation_ids.items() if value}
        )

    def verify_callback(self, response: str, x_verify: Optional[str]) -> bool:
        if not x_verify or not self.is_configured():
            return False
        return hmac.compare_digest(self.checksum(response), x_verify)

    def verify_webhook_signature(self, raw_payload: Union[bytes, str], signature: Optional[str]) -> bool:
        if not signature:
            return False
        # The checksum covers the base64 "response" field of the body
        try:
            response = json.loads(_as_bytes(raw_payload))["response"]
        except (ValueError, KeyError, TypeError):
            return False
        return isinstance(response, str) and self.verify_callback(response, signature)

    def extract_webhook_correlation(self, raw_payload: Union[bytes, str]) -> WebhookCorrelation:
        try:
            response = json.loads(_as_bytes(raw_payload))["response"]
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationError(f"Malformed PhonePe webhook body: {e}")

        decoded = _decode_response(response)
        merchant_transaction_id = (decoded.get("data") or {}).get("merchantTransactionId")
        if not merchant_transaction_id:
            raise ValidationError("PhonePe webhook has no merchantTransactionId")

        return WebhookCorrelation(
            key="merchant_transaction_id",
            value=merchant_transaction_id,
            payment_payload={"merchantTransactionId": merchant_transaction_id}
        )

    async def initiate_refund(self, context: RefundContext) -> RefundResult:
        data = await self._signed_post("/pg/v1/refund", {
            "merchantId": self._merchant_id,
            "merchantUserId": _merchant_user_id(context.user_id),
            "originalTransactionId": context.merchant_transaction_id,
            "merchantTransactionId": context.merchant_refund_id,
            "amount": context.amount,
            "callbackUrl": self._callback_url,
        })
        details = data.get("data") or {}
        return RefundResult(
            success=bool(data.get("success")),
            refund_id=details.get("transactionId") or context.merchant_refund_id,
            status=data.get("code"),
            message=data.get("message") or ""
        )

    def is_configured(self) -> bool:
        return bool(self._merchant_id and self._salt_key)

    def get_frontend_config(self) -> Optional[dict]:
        if not self.is_configured():
            return None
        return {
            "gateway": self.name,
            "env": self._env,
            "redirect_url": self._redirect_url,
            "callback_url": self._callback_url,
            "currency": self._currency,
        }

    async def _signed_post(self, path: str, body: dict) -> dict:
        encoded = base64.b64encode(json.dumps(body).encode()).decode()
        return await self._request("POST", path, json={"request": encoded}, headers={
            "X-VERIFY": self.checksum(encoded, path),
        })

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.is_configured():
            raise GatewayConfigurationError("PhonePe is not configured")
        try:
            async with httpx.AsyncClient(base_url=HOSTS[self._env], transport=self._transport,
                                         timeout=self._timeout) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"PhonePe {method} {path} failed: {e}")
            raise GatewayCallError(f"PhonePe unreachable: {e}") from e

        if response.status_code >= 400:
            raise GatewayCallError(f"PhonePe error {response.status_code}: {response.text}",
                                   status_code=response.status_code)
        return response.json()


def _decode_response(response: str) -> dict:
    try:
        decoded = json.loads(base64.b64decode(response))
    except ValueError as e:
        raise ValidationError(f"Malformed PhonePe response payload: {e}")
    if not isinstance(decoded, dict):
        raise ValidationError("Malformed PhonePe response payload")
    return decoded


def _merchant_user_id(user_id: str) -> str:
    return "MUID" + re.sub(r"[^A-Za-z0-9]", "", user_id)[:32]


def _as_bytes(raw_payload: Union[bytes, str]) -> bytes:
    return raw_payload.encode() if isinstance(raw_payload, str) else raw_payload
