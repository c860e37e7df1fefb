from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    STOCK_CONFLICT = "stock_conflict"
    GATEWAY_CONFIGURATION = "gateway_configuration"
    GATEWAY_CALL = "gateway_call"
    INVALID_TRANSITION = "invalid_transition"
    WEBHOOK_SIGNATURE = "webhook_signature"
    NOT_FOUND = "not_found"
    NOT_AUTHORIZED = "not_authorized"
    UNSUPPORTED = "unsupported"
    SERVICE_UNAVAILABLE = "service_unavailable"


class DomainException(Exception):
    kind = ErrorKind.SERVICE_UNAVAILABLE
    retryable = False


class ValidationError(DomainException):
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, errors: Optional[list[str]] = None, reason: Optional[str] = None):
        self.errors = errors or [message]
        self.reason = reason
        super().__init__(message)


class StockConflictError(DomainException):
    kind = ErrorKind.STOCK_CONFLICT
    retryable = True

    def __init__(self, product_id: str, requested: int, available: Optional[int]):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}. Available: {available}, requested: {requested}"
        )


class GatewayError(DomainException):
    pass


class GatewayConfigurationError(GatewayError):
    kind = ErrorKind.GATEWAY_CONFIGURATION


class GatewayCallError(GatewayError):
    kind = ErrorKind.GATEWAY_CALL

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class UnsupportedOperationError(GatewayError):
    kind = ErrorKind.UNSUPPORTED


class GatewayNotFoundError(GatewayError):
    kind = ErrorKind.NOT_FOUND


class InvalidTransitionError(DomainException):
    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, current, target, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Invalid status transition from {_value(current)} to {_value(target)}")


class WebhookSignatureError(DomainException):
    kind = ErrorKind.WEBHOOK_SIGNATURE


class OrderNotFoundError(DomainException):
    kind = ErrorKind.NOT_FOUND


class ProductNotFoundError(DomainException):
    kind = ErrorKind.NOT_FOUND


class NotAuthorizedError(DomainException):
    kind = ErrorKind.NOT_AUTHORIZED


class CartServiceError(DomainException):
    pass


def _value(status) -> str:
    return getattr(status, "value", str(status))
