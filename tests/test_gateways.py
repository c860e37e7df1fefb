import base64
import hashlib
import hmac
import json
import httpx
import pytest

from storefront.application.interfaces import PaymentContext, PaymentState, RefundContext
from storefront.config import Settings
from storefront.domain.exceptions import GatewayCallError, GatewayConfigurationError, ValidationError
from storefront.infrastructure.gateways.fake import FakeGateway
from storefront.infrastructure.gateways.phonepe import PhonePeGateway
from storefront.infrastructure.gateways.razorpay import RazorpayGateway
from storefront.infrastructure.gateways.registry import build_gateways, required_payment_fields


def context(**kwargs):
    fields = dict(order_id="o-1", amount=200000, currency="INR", merchant_transaction_id="TXN_1_ABC",
                  receipt="rcpt_1", user_id="user-1", customer_phone="+91 98765 43210")
    fields.update(kwargs)
    return PaymentContext(**fields)


def hmac_hex(secret, message):
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class Recorder:
    """httpx.MockTransport handler that answers from a route table"""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.routes[(request.method, request.url.path)]
        return httpx.Response(status, json=body)

    @property
    def transport(self):
        return httpx.MockTransport(self)


class TestRazorpay:
    def gateway(self, routes, **kwargs):
        recorder = Recorder(routes)
        gateway = RazorpayGateway(key_id="rzp_test_key", key_secret="key-secret", webhook_secret="hook-secret",
                                  transport=recorder.transport, **kwargs)
        return gateway, recorder

    async def test_create_payment_request(self):
        gateway, recorder = self.gateway({("POST", "/v1/orders"): (200, {"id": "order_RZ1", "status": "created"})})

        request = await gateway.create_payment_request(context())

        assert request.provider_transaction_id == "order_RZ1"
        assert request.payment_url is None
        assert request.correlation_ids == {"razorpay_order_id": "order_RZ1"}
        sent = json.loads(recorder.requests[0].content)
        assert sent["amount"] == 200000
        assert sent["notes"]["merchant_transaction_id"] == "TXN_1_ABC"
        assert recorder.requests[0].headers["authorization"].startswith("Basic ")

    async def test_provider_error_raises(self):
        gateway, _ = self.gateway({("POST", "/v1/orders"): (400, {"error": {"description": "amount too small"}})})
        with pytest.raises(GatewayCallError) as exc:
            await gateway.create_payment_request(context())
        assert exc.value.status_code == 400
        assert "amount too small" in str(exc.value)

    async def test_verify_payment_checks_signature_then_fetches_payment(self):
        gateway, _ = self.gateway({("GET", "/v1/payments/pay_1"): (200, {
            "id": "pay_1", "order_id": "order_RZ1", "status": "captured", "amount": 200000
        })})
        signature = hmac_hex("key-secret", b"order_RZ1|pay_1")

        result = await gateway.verify_payment({
            "razorpay_order_id": "order_RZ1", "razorpay_payment_id": "pay_1", "razorpay_signature": signature
        })

        assert result.verified and result.success
        assert result.amount == 200000
        assert result.correlation_ids == {"razorpay_order_id": "order_RZ1", "razorpay_payment_id": "pay_1"}

    async def test_bad_payment_signature(self):
        gateway, recorder = self.gateway({})
        result = await gateway.verify_payment({
            "razorpay_order_id": "order_RZ1", "razorpay_payment_id": "pay_1", "razorpay_signature": "0" * 64
        })
        assert not result.verified
        assert recorder.requests == []

    async def test_payment_for_another_order_is_unverified(self):
        gateway, _ = self.gateway({("GET", "/v1/payments/pay_1"): (200, {
            "id": "pay_1", "order_id": "order_OTHER", "status": "captured", "amount": 200000
        })})
        result = await gateway.verify_payment({"razorpay_order_id": "order_RZ1", "razorpay_payment_id": "pay_1"})
        assert not result.verified

    @pytest.mark.parametrize("statuses,state", [
        (["failed", "captured"], PaymentState.SUCCESS),
        (["failed", "failed"], PaymentState.FAILED),
        (["failed", "authorized"], PaymentState.PENDING),
        ([], PaymentState.PENDING),
    ])
    async def test_check_payment_status(self, statuses, state):
        items = [{"id": f"pay_{i}", "status": s, "amount": 500} for i, s in enumerate(statuses)]
        gateway, _ = self.gateway({("GET", "/v1/orders/order_RZ1/payments"): (200, {"items": items})})

        result = await gateway.check_payment_status("order_RZ1")

        assert result.state == state
        assert result.correlation_ids["razorpay_order_id"] == "order_RZ1"

    def test_webhook_signature_and_correlation(self):
        gateway, _ = self.gateway({})
        body = json.dumps({"event": "payment.captured", "payload": {"payment": {"entity": {
            "id": "pay_1", "order_id": "order_RZ1", "status": "captured"
        }}}}).encode()

        assert gateway.verify_webhook_signature(body, hmac_hex("hook-secret", body))
        assert not gateway.verify_webhook_signature(body, hmac_hex("key-secret", body))
        assert not gateway.verify_webhook_signature(body, None)

        correlation = gateway.extract_webhook_correlation(body)
        assert (correlation.key, correlation.value) == ("razorpay_order_id", "order_RZ1")
        assert correlation.payment_payload == {"razorpay_order_id": "order_RZ1", "razorpay_payment_id": "pay_1"}

    def test_malformed_webhook(self):
        gateway, _ = self.gateway({})
        with pytest.raises(ValidationError):
            gateway.extract_webhook_correlation(b'{"event": "payment.captured"}')

    async def test_refund(self):
        gateway, recorder = self.gateway({("POST", "/v1/payments/pay_1/refund"): (200, {
            "id": "rfnd_1", "status": "processed"
        })})
        result = await gateway.initiate_refund(RefundContext(
            order_id="o-1", amount=5000, currency="INR", merchant_refund_id="RFND_1",
            merchant_transaction_id="TXN_1", correlation_ids={"razorpay_payment_id": "pay_1"}, user_id="user-1"
        ))
        assert result.success and result.refund_id == "rfnd_1"
        assert json.loads(recorder.requests[0].content)["amount"] == 5000

    async def test_unconfigured(self):
        gateway = RazorpayGateway(key_id="", key_secret="")
        assert not gateway.is_configured()
        assert gateway.get_frontend_config() is None
        with pytest.raises(GatewayConfigurationError):
            await gateway.create_payment_request(context())


class TestPhonePe:
    STATUS_PATH = "/apis/pg-sandbox/pg/v1/status/MERCHANT1/TXN_1_ABC"

    def gateway(self, routes):
        recorder = Recorder(routes)
        gateway = PhonePeGateway(merchant_id="MERCHANT1", salt_key="salt", salt_index="1",
                                 redirect_url="https://shop.example/done", callback_url="https://api.example/hook",
                                 transport=recorder.transport)
        return gateway, recorder

    def encoded_response(self, code="PAYMENT_SUCCESS", merchant_transaction_id="TXN_1_ABC"):
        return base64.b64encode(json.dumps({
            "success": code == "PAYMENT_SUCCESS", "code": code,
            "data": {"merchantTransactionId": merchant_transaction_id, "transactionId": "T123", "amount": 200000}
        }).encode()).decode()

    def status_route(self, code="PAYMENT_SUCCESS"):
        return {("GET", self.STATUS_PATH): (200, {
            "success": True, "code": code, "message": "Your payment is successful.",
            "data": {"transactionId": "T123", "amount": 200000, "paymentInstrument": {"type": "UPI"}}
        })}

    def test_checksum(self):
        gateway, _ = self.gateway({})
        expected = hashlib.sha256(b"payload/pg/v1/paysalt").hexdigest() + "###1"
        assert gateway.checksum("payload", "/pg/v1/pay") == expected

    async def test_create_payment_request(self):
        gateway, recorder = self.gateway({("POST", "/apis/pg-sandbox/pg/v1/pay"): (200, {
            "success": True, "code": "PAYMENT_INITIATED",
            "data": {"instrumentResponse": {"redirectInfo": {"url": "https://mercury.example/pay/1"}}}
        })})

        request = await gateway.create_payment_request(context(user_id="user-1"))

        assert request.payment_url == "https://mercury.example/pay/1"
        assert request.correlation_ids == {"merchant_transaction_id": "TXN_1_ABC"}
        sent = recorder.requests[0]
        encoded = json.loads(sent.content)["request"]
        body = json.loads(base64.b64decode(encoded))
        assert body["merchantUserId"] == "MUIDuser1"
        assert body["mobileNumber"] == "9876543210"
        assert sent.headers["X-VERIFY"] == gateway.checksum(encoded, "/pg/v1/pay")

    async def test_rejected_payment_request(self):
        gateway, _ = self.gateway({("POST", "/apis/pg-sandbox/pg/v1/pay"): (200, {
            "success": False, "code": "BAD_REQUEST", "message": "Invalid amount"
        })})
        with pytest.raises(GatewayCallError):
            await gateway.create_payment_request(context())

    @pytest.mark.parametrize("code,state", [
        ("PAYMENT_SUCCESS", PaymentState.SUCCESS),
        ("PAYMENT_PENDING", PaymentState.PENDING),
        ("PAYMENT_DECLINED", PaymentState.FAILED),
        ("PAYMENT_CANCELLED", PaymentState.CANCELLED),
        ("SOMETHING_NEW", PaymentState.PENDING),
    ])
    async def test_check_payment_status(self, code, state):
        gateway, recorder = self.gateway(self.status_route(code))

        result = await gateway.check_payment_status("TXN_1_ABC")

        assert result.state == state
        assert result.correlation_ids == {
            "merchant_transaction_id": "TXN_1_ABC", "phonepe_transaction_id": "T123", "payment_instrument_type": "UPI"
        }
        headers = recorder.requests[0].headers
        assert headers["X-MERCHANT-ID"] == "MERCHANT1"
        assert headers["X-VERIFY"] == gateway.checksum("", "/pg/v1/status/MERCHANT1/TXN_1_ABC")

    async def test_verify_payment_confirms_with_status_call(self):
        gateway, recorder = self.gateway(self.status_route())
        response = self.encoded_response()

        result = await gateway.verify_payment({
            "merchantTransactionId": "TXN_1_ABC", "response": response, "xVerify": gateway.checksum(response)
        })

        assert result.verified and result.success
        assert result.amount == 200000
        assert len(recorder.requests) == 1

    async def test_verify_payment_rejects_bad_checksum(self):
        gateway, recorder = self.gateway({})
        result = await gateway.verify_payment({
            "merchantTransactionId": "TXN_1_ABC", "response": self.encoded_response(), "xVerify": "nope###1"
        })
        assert not result.verified
        assert recorder.requests == []

    async def test_verify_payment_rejects_swapped_transaction(self):
        gateway, _ = self.gateway({})
        response = self.encoded_response(merchant_transaction_id="TXN_OTHER")
        result = await gateway.verify_payment({
            "merchantTransactionId": "TXN_1_ABC", "response": response, "xVerify": gateway.checksum(response)
        })
        assert not result.verified

    def test_webhook(self):
        gateway, _ = self.gateway({})
        response = self.encoded_response()
        body = json.dumps({"response": response}).encode()

        assert gateway.verify_webhook_signature(body, gateway.checksum(response))
        assert not gateway.verify_webhook_signature(body, gateway.checksum("other"))
        assert not gateway.verify_webhook_signature(b"not json", gateway.checksum(response))

        correlation = gateway.extract_webhook_correlation(body)
        assert correlation.value == "TXN_1_ABC"
        assert correlation.payment_payload == {"merchantTransactionId": "TXN_1_ABC"}

    async def test_unreachable(self):
        def fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = PhonePeGateway(merchant_id="MERCHANT1", salt_key="salt", transport=httpx.MockTransport(fail))
        with pytest.raises(GatewayCallError):
            await gateway.check_payment_status("TXN_1_ABC")

    def test_unknown_environment(self):
        with pytest.raises(GatewayConfigurationError):
            PhonePeGateway(merchant_id="M", salt_key="s", env="STAGING")


class TestFakeGateway:
    async def test_records_calls_and_honours_configuration(self):
        gateway = FakeGateway(secret="s")
        request = await gateway.create_payment_request(context())
        session_id = request.provider_transaction_id

        gateway.configure(payment_state=PaymentState.FAILED)
        result = await gateway.verify_payment({"session_id": session_id, "status": "success"})

        assert result.verified and not result.success
        assert [call["method"] for call in gateway.calls] == ["create_payment_request", "verify_payment"]

    def test_signature(self):
        gateway = FakeGateway(secret="s")
        assert gateway.verify_webhook_signature(b"{}", gateway.sign(b"{}"))
        assert not FakeGateway(secret="").verify_webhook_signature(b"{}", "anything")


class TestRegistry:
    def settings(self, **overrides):
        settings = Settings()
        settings.RAZORPAY_KEY_ID = "rzp"
        settings.RAZORPAY_KEY_SECRET = "secret"
        settings.PHONEPE_MERCHANT_ID = ""
        settings.PHONEPE_SALT_KEY = ""
        settings.PHONEPE_ENV = "SANDBOX"
        settings.FAKE_GATEWAY_SECRET = "fake"
        for key, value in overrides.items():
            setattr(settings, key, value)
        return settings

    def test_builds_enabled_gateways(self):
        gateways = build_gateways(self.settings(ENABLED_GATEWAYS="razorpay, phonepe,fake", PAYMENT_GATEWAY="razorpay"))

        assert list(gateways) == ["razorpay", "phonepe", "fake"]
        assert gateways["razorpay"].is_configured()
        assert not gateways["phonepe"].is_configured()
        assert required_payment_fields(gateways)["fake"] == ("session_id", "status")

    def test_unknown_gateway_name(self):
        with pytest.raises(GatewayConfigurationError):
            build_gateways(self.settings(ENABLED_GATEWAYS="razorpay,stripe", PAYMENT_GATEWAY="razorpay"))

    def test_default_must_be_enabled(self):
        with pytest.raises(GatewayConfigurationError):
            build_gateways(self.settings(ENABLED_GATEWAYS="razorpay", PAYMENT_GATEWAY="phonepe"))
