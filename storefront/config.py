import os
from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Settings:
    # Database
    POSTGRES_CONNECTION_STRING: str = os.getenv("POSTGRES_CONNECTION_STRING", "")

    # API
    API_TOKEN: str = os.getenv("API_TOKEN", "")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Collaborating services
    CART_BASE_URL: str = os.getenv("CART_BASE_URL", "http://cart-service:8000")
    NOTIFICATIONS_BASE_URL: str = os.getenv("NOTIFICATIONS_BASE_URL", "http://notification-service:8000")

    # Kafka
    KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "kafka.kafka.svc.cluster.local:9092")
    ORDER_EVENTS_TOPIC: str = os.getenv("ORDER_EVENTS_TOPIC", "storefront.order-events")
    FULFILLMENT_EVENTS_TOPIC: str = os.getenv("FULFILLMENT_EVENTS_TOPIC", "storefront.fulfillment-events")

    # Checkout
    CURRENCY: str = os.getenv("CURRENCY", "INR")
    MAX_QUANTITY_PER_LINE: int = _int("MAX_QUANTITY_PER_LINE", 1000)
    LOW_STOCK_THRESHOLD: int = _int("LOW_STOCK_THRESHOLD", 10)
    CRITICAL_STOCK_THRESHOLD: int = _int("CRITICAL_STOCK_THRESHOLD", 5)
    OUTBOX_MAX_ATTEMPTS: int = _int("OUTBOX_MAX_ATTEMPTS", 10)
    SHOP_NAME: str = os.getenv("SHOP_NAME", "MyShop")

    # Payment gateways
    PAYMENT_GATEWAY: str = os.getenv("PAYMENT_GATEWAY", "phonepe")
    ENABLED_GATEWAYS: str = os.getenv("ENABLED_GATEWAYS", "phonepe,razorpay")

    RAZORPAY_KEY_ID: str = os.getenv("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET: str = os.getenv("RAZORPAY_KEY_SECRET", "")
    RAZORPAY_WEBHOOK_SECRET: str = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")

    PHONEPE_MERCHANT_ID: str = os.getenv("PHONEPE_MERCHANT_ID", "")
    PHONEPE_SALT_KEY: str = os.getenv("PHONEPE_SALT_KEY", "")
    PHONEPE_SALT_INDEX: str = os.getenv("PHONEPE_SALT_INDEX", "1")
    PHONEPE_ENV: str = os.getenv("PHONEPE_ENV", "SANDBOX")
    PHONEPE_REDIRECT_URL: str = os.getenv("PHONEPE_REDIRECT_URL", "http://localhost:5173/checkout/success")
    PHONEPE_CALLBACK_URL: str = os.getenv("PHONEPE_CALLBACK_URL", "http://localhost:8000/api/webhooks/phonepe")

    FAKE_GATEWAY_SECRET: str = os.getenv("FAKE_GATEWAY_SECRET", "")

    @property
    def DATABASE_URL(self) -> str:
        """Async URL for the application"""
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql+asyncpg://")

    @property
    def SYNC_DATABASE_URL(self) -> str:
        """Sync URL for Alembic"""
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql://")

    @property
    def enabled_gateways(self) -> list[str]:
        return [name.strip() for name in self.ENABLED_GATEWAYS.split(",") if name.strip()]


settings = Settings()
