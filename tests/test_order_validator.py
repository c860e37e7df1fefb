import pytest

from storefront.application.order_validator import OrderValidator
from storefront.infrastructure.gateways.fake import FakeGateway
from storefront.infrastructure.gateways.phonepe import PhonePeGateway
from storefront.infrastructure.gateways.razorpay import RazorpayGateway


@pytest.fixture
def validator():
    return OrderValidator(
        max_quantity=1000,
        payment_fields={
            "razorpay": RazorpayGateway.REQUIRED_PAYMENT_FIELDS,
            "phonepe": PhonePeGateway.REQUIRED_PAYMENT_FIELDS,
            "fake": FakeGateway.REQUIRED_PAYMENT_FIELDS,
        }
    )


class TestCartItems:
    def test_valid_cart(self, validator):
        result = validator.validate_cart_items([{"product_id": "p1", "quantity": 2}])
        assert result.is_valid
        assert result.errors == []

    def test_empty_cart(self, validator):
        result = validator.validate_cart_items([])
        assert not result.is_valid
        assert result.reason == "EMPTY_CART"

    def test_not_a_list(self, validator):
        result = validator.validate_cart_items({"product_id": "p1"})
        assert result.reason == "INVALID_CART_FORMAT"

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, "2", True, None])
    def test_rejects_bad_quantity(self, validator, quantity):
        result = validator.validate_cart_items([{"product_id": "p1", "quantity": quantity}])
        assert not result.is_valid
        assert result.reason == "INVALID_CART_ITEMS"
        assert result.errors[0].startswith("Item 1:")

    def test_rejects_quantity_above_max(self, validator):
        result = validator.validate_cart_items([{"product_id": "p1", "quantity": 1001}])
        assert result.errors == ["Item 1: Quantity cannot exceed 1000"]

    def test_missing_product_id_reported_per_line(self, validator):
        result = validator.validate_cart_items([
            {"product_id": "p1", "quantity": 1},
            {"product_id": "  ", "quantity": 1},
        ])
        assert result.errors == ["Item 2: Product ID is required"]


class TestShippingAddress:
    def test_valid_address(self, validator, address):
        assert validator.validate_shipping_address(address).is_valid

    def test_missing_and_blank_fields(self, validator, address):
        address.pop("city")
        address["state"] = "   "
        result = validator.validate_shipping_address(address)
        assert result.reason == "INVALID_ADDRESS"
        assert "Missing required address fields: city, state" in result.errors

    def test_not_a_mapping(self, validator):
        assert validator.validate_shipping_address("12 MG Road").reason == "INVALID_ADDRESS_FORMAT"

    @pytest.mark.parametrize("field,value,message", [
        ("email", "asha.example.com", "Invalid email format"),
        ("phone", "12345", "Invalid phone number format. Must be 10 digits"),
        ("phone", "5876543210", "Invalid phone number format. Must be 10 digits"),
        ("pincode", "5600", "Invalid pincode format. Must be 6 digits"),
        ("name", "A", "Name must be at least 2 characters long"),
        ("name", "A" * 101, "Name cannot exceed 100 characters"),
    ])
    def test_malformed_fields(self, validator, address, field, value, message):
        address[field] = value
        result = validator.validate_shipping_address(address)
        assert message in result.errors

    @pytest.mark.parametrize("phone", ["9876543210", "+919876543210", "(987) 654-3210", "+91 98765 43210"])
    def test_phone_separators_ignored(self, validator, phone):
        assert validator.is_valid_phone(phone)


class TestStockAvailability:
    async def test_reports_insufficient_lines(self, validator):
        stock = {"p1": 5, "p2": 1}

        async def lookup(product_id):
            return stock.get(product_id)

        result = await validator.validate_stock_availability(
            [{"product_id": "p1", "quantity": 2}, {"product_id": "p2", "quantity": 3}], lookup
        )
        assert not result.is_valid
        assert result.reason == "INSUFFICIENT_STOCK"
        assert [c.sufficient for c in result.stock_checks] == [True, False]
        assert result.errors == ["Product p2: Insufficient stock. Available: 1, Requested: 3"]

    async def test_unknown_product(self, validator):
        async def lookup(product_id):
            return None

        result = await validator.validate_stock_availability([{"product_id": "ghost", "quantity": 1}], lookup)
        assert result.errors == ["Product ghost: Stock information not available"]
        assert result.stock_checks == []


class TestPaymentData:
    def test_razorpay_requires_signature(self, validator):
        result = validator.validate_payment_data(
            {"razorpay_order_id": "order_1", "razorpay_payment_id": "pay_1"}, "razorpay"
        )
        assert result.errors == ["razorpay_signature is required for razorpay"]

    def test_phonepe_complete_payload(self, validator):
        payload = {"merchantTransactionId": "TXN_1", "response": "e30=", "xVerify": "abc###1"}
        assert validator.validate_payment_data(payload, "phonepe").is_valid

    def test_unknown_gateway(self, validator):
        assert validator.validate_payment_data({"a": 1}, "paypal").reason == "UNSUPPORTED_GATEWAY"

    def test_empty_payload(self, validator):
        assert validator.validate_payment_data({}, "fake").reason == "INVALID_PAYMENT_DATA"
