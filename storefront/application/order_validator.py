import logging
import re
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^(\+91)?[6-9]\d{9}$")
PHONE_SEPARATORS_RE = re.compile(r"[\s\-()]")
PINCODE_RE = re.compile(r"^\d{6}$")

REQUIRED_ADDRESS_FIELDS = ("name", "email", "phone", "address", "city", "state", "pincode")

StockLookup = Callable[[str], Awaitable[Optional[int]]]


class StockCheck(BaseModel):
    product_id: str
    requested: int
    available: int
    sufficient: bool


class ValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    reason: Optional[str] = None
    stock_checks: list[StockCheck] = Field(default_factory=list)

    @classmethod
    def ok(cls, **kwargs) -> "ValidationResult":
        return cls(is_valid=True, **kwargs)

    @classmethod
    def fail(cls, errors: list[str], reason: str, **kwargs) -> "ValidationResult":
        return cls(is_valid=False, errors=errors, reason=reason, **kwargs)


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class OrderValidator:
    """Stateless checks on checkout input.

    Every method returns a ``ValidationResult``; nothing here raises for bad input.
    ``validate_stock_availability`` is a fast pre-check for user feedback only,
    the reservation itself is done by ``StockLedger`` inside the checkout transaction.
    """

    def __init__(self, max_quantity: int = 1000, payment_fields: Optional[Mapping[str, Sequence[str]]] = None,
                 min_quantity: int = 1):
        self.min_quantity = min_quantity
        self.max_quantity = max_quantity
        self._payment_fields = dict(payment_fields or {})

    def validate_cart_items(self, items: Any) -> ValidationResult:
        if items is None or not isinstance(items, (list, tuple)):
            return ValidationResult.fail(["Cart items must be a list"], "INVALID_CART_FORMAT")
        if len(items) == 0:
            return ValidationResult.fail(["Cart is empty"], "EMPTY_CART")

        errors = []
        for position, item in enumerate(items, start=1):
            product_id = _field(item, "product_id")
            quantity = _field(item, "quantity")

            if product_id is None or str(product_id).strip() == "":
                errors.append(f"Item {position}: Product ID is required")

            if not _is_int(quantity):
                errors.append(f"Item {position}: Quantity must be an integer")
                continue
            if quantity < self.min_quantity:
                errors.append(f"Item {position}: Quantity must be at least {self.min_quantity}")
            if quantity > self.max_quantity:
                errors.append(f"Item {position}: Quantity cannot exceed {self.max_quantity}")

        if errors:
            logger.warning(f"Cart validation failed: {errors}")
            return ValidationResult.fail(errors, "INVALID_CART_ITEMS")
        return ValidationResult.ok()

    def validate_shipping_address(self, address: Any) -> ValidationResult:
        if not isinstance(address, Mapping):
            return ValidationResult.fail(["Address is required and must be an object"], "INVALID_ADDRESS_FORMAT")

        errors = []
        missing = [
            field for field in REQUIRED_ADDRESS_FIELDS
            if address.get(field) is None or (isinstance(address.get(field), str) and not address[field].strip())
        ]
        if missing:
            errors.append(f"Missing required address fields: {', '.join(missing)}")

        email = address.get("email")
        if email and not self.is_valid_email(str(email)):
            errors.append("Invalid email format")

        phone = address.get("phone")
        if phone and not self.is_valid_phone(str(phone)):
            errors.append("Invalid phone number format. Must be 10 digits")

        pincode = address.get("pincode")
        if pincode and not self.is_valid_pincode(str(pincode)):
            errors.append("Invalid pincode format. Must be 6 digits")

        name = address.get("name")
        if isinstance(name, str) and name.strip():
            if len(name) < 2:
                errors.append("Name must be at least 2 characters long")
            if len(name) > 100:
                errors.append("Name cannot exceed 100 characters")

        if errors:
            logger.warning(f"Shipping address validation failed: {errors}")
            return ValidationResult.fail(errors, "INVALID_ADDRESS")
        return ValidationResult.ok()

    async def validate_stock_availability(self, items: Any, stock_lookup: StockLookup) -> ValidationResult:
        if not items or not isinstance(items, (list, tuple)):
            return ValidationResult.fail(["Items array is required"], "INVALID_ITEMS")

        errors = []
        checks = []
        for item in items:
            product_id = _field(item, "product_id")
            quantity = _field(item, "quantity")
            if product_id is None:
                errors.append("Product ID is required for stock validation")
                continue

            product_id = str(product_id)
            stock = await stock_lookup(product_id)
            if stock is None:
                errors.append(f"Product {product_id}: Stock information not available")
                continue

            sufficient = stock >= quantity
            if not sufficient:
                errors.append(f"Product {product_id}: Insufficient stock. Available: {stock}, Requested: {quantity}")
            checks.append(StockCheck(product_id=product_id, requested=quantity, available=stock, sufficient=sufficient))

        if errors:
            logger.warning(f"Stock pre-check failed: {errors}")
            return ValidationResult.fail(errors, "INSUFFICIENT_STOCK", stock_checks=checks)
        return ValidationResult.ok(stock_checks=checks)

    def validate_payment_data(self, payload: Any, gateway_name: str) -> ValidationResult:
        if not isinstance(payload, Mapping) or not payload:
            return ValidationResult.fail(["Payment data is required"], "INVALID_PAYMENT_DATA")
        if gateway_name not in self._payment_fields:
            return ValidationResult.fail([f"Unsupported payment gateway: {gateway_name}"], "UNSUPPORTED_GATEWAY")

        errors = [
            f"{field} is required for {gateway_name}"
            for field in self._payment_fields[gateway_name]
            if not payload.get(field)
        ]
        if errors:
            logger.warning(f"Payment data validation failed for {gateway_name}: {errors}")
            return ValidationResult.fail(errors, "INVALID_PAYMENT_DATA")
        return ValidationResult.ok()

    @staticmethod
    def is_valid_email(email: str) -> bool:
        return bool(EMAIL_RE.match(email))

    @staticmethod
    def is_valid_phone(phone: str) -> bool:
        return bool(PHONE_RE.match(PHONE_SEPARATORS_RE.sub("", phone)))

    @staticmethod
    def is_valid_pincode(pincode: str) -> bool:
        return bool(PINCODE_RE.match(pincode))
