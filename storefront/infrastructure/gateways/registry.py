import logging
from typing import Mapping, Optional
import httpx

from storefront.domain.exceptions import GatewayConfigurationError
from storefront.application.interfaces import PaymentGateway
from storefront.infrastructure.gateways.fake import FakeGateway
from storefront.infrastructure.gateways.phonepe import PhonePeGateway
from storefront.infrastructure.gateways.razorpay import RazorpayGateway

logger = logging.getLogger(__name__)


def _razorpay(settings, transport):
    return RazorpayGateway(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
        shop_name=settings.SHOP_NAME,
        currency=settings.CURRENCY,
        transport=transport
    )


def _phonepe(settings, transport):
    return PhonePeGateway(
        merchant_id=settings.PHONEPE_MERCHANT_ID,
        salt_key=settings.PHONEPE_SALT_KEY,
        salt_index=settings.PHONEPE_SALT_INDEX,
        env=settings.PHONEPE_ENV,
        redirect_url=settings.PHONEPE_REDIRECT_URL,
        callback_url=settings.PHONEPE_CALLBACK_URL,
        currency=settings.CURRENCY,
        transport=transport
    )


def _fake(settings, transport):
    return FakeGateway(secret=settings.FAKE_GATEWAY_SECRET, currency=settings.CURRENCY)


GATEWAY_FACTORIES = {
    "razorpay": _razorpay,
    "phonepe": _phonepe,
    "fake": _fake,
}


def build_gateways(settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> dict[str, PaymentGateway]:
    """Build every gateway listed in ENABLED_GATEWAYS once, at startup.

    Unknown names and a default gateway that is not enabled are configuration
    mistakes and fail immediately. Enabled but unconfigured gateways are kept:
    checkout reports them as unavailable.
    """
    gateways = {}
    for name in settings.enabled_gateways:
        factory = GATEWAY_FACTORIES.get(name)
        if factory is None:
            raise GatewayConfigurationError(f"Unknown payment gateway in ENABLED_GATEWAYS: {name}")
        gateway = factory(settings, transport)
        if not gateway.is_configured():
            logger.warning(f"Payment gateway {name} is enabled but not configured")
        gateways[name] = gateway

    if settings.PAYMENT_GATEWAY not in gateways:
        raise GatewayConfigurationError(
            f"PAYMENT_GATEWAY={settings.PAYMENT_GATEWAY} is not one of ENABLED_GATEWAYS ({settings.ENABLED_GATEWAYS})"
        )
    logger.info(f"Payment gateways: {', '.join(gateways)} (default {settings.PAYMENT_GATEWAY})")
    return gateways


def required_payment_fields(gateways: Mapping[str, PaymentGateway]) -> dict[str, tuple]:
    return {name: gateway.REQUIRED_PAYMENT_FIELDS for name, gateway in gateways.items()}
