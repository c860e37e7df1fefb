import logging
from typing import Optional
from pydantic import BaseModel, Field

from storefront.domain.models import OrderStatus
from storefront.domain.exceptions import GatewayError
from storefront.application.interfaces import PaymentGateway, PaymentState, PaymentStatusResult

logger = logging.getLogger(__name__)

PENDING_CODES = frozenset({"PAYMENT_PENDING", "INTERNAL_SERVER_ERROR", "authorized", "created"})


class VerificationResult(BaseModel):
    """Gateway verification normalised to one shape for every provider"""
    success: bool
    verified: bool
    gateway: str
    provider_transaction_id: Optional[str] = None
    amount: Optional[int] = None
    code: Optional[str] = None
    state: Optional[str] = None
    message: str = ""
    correlation_ids: dict[str, str] = Field(default_factory=dict)


class PaymentVerifier:
    async def verify_payment_response(self, payload: dict, gateway: PaymentGateway) -> VerificationResult:
        gateway_name = gateway.get_gateway_name()
        try:
            verification = await gateway.verify_payment(payload)
        except GatewayError as e:
            # Unverified results map to "pending": the order is left for a later poll or webhook
            logger.error(f"Payment verification via {gateway_name} failed: {e}")
            return VerificationResult(
                success=False,
                verified=False,
                gateway=gateway_name,
                message=f"Verification failed: {e}"
            )

        logger.info(
            f"Payment verification via {gateway_name}: success={verification.success}, "
            f"verified={verification.verified}"
        )
        return VerificationResult(
            success=verification.success,
            verified=verification.verified,
            gateway=gateway_name,
            provider_transaction_id=verification.provider_transaction_id,
            amount=verification.amount,
            code=verification.code,
            state=verification.state,
            message=verification.message or "Payment verification completed",
            correlation_ids=verification.correlation_ids
        )

    def determine_order_status(self, result: Optional[VerificationResult]) -> OrderStatus:
        # Provider codes are never trusted on their own: an unverified result stays pending
        if result is None or not result.verified:
            return OrderStatus.PENDING
        if result.success:
            return OrderStatus.PAID
        if result.code in PENDING_CODES or (result.state or "").upper() == "PENDING":
            return OrderStatus.PENDING
        return OrderStatus.FAILED

    def status_from_poll(self, result: PaymentStatusResult) -> OrderStatus:
        if result.state == PaymentState.SUCCESS:
            return OrderStatus.PAID
        if result.state in (PaymentState.FAILED, PaymentState.CANCELLED):
            return OrderStatus.FAILED
        return OrderStatus.PENDING
