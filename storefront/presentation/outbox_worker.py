import asyncio
import logging

from storefront.config import settings
from storefront.database import create_engine, create_session_factory
from storefront.infrastructure.unit_of_work import UnitOfWork
from storefront.infrastructure.http_clients import HTTPCartClient, HTTPNotificationsClient
from storefront.infrastructure.kafka_producer import KafkaProducerClient
from storefront.application.process_outbox import ProcessOutboxEventsUseCase

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def outbox_worker():
    """Delivers outbox events to Kafka, notifications and the cart service"""
    logger.info("Outbox worker started")

    engine = create_engine(settings.DATABASE_URL)
    kafka_producer = KafkaProducerClient(settings.KAFKA_BOOTSTRAP_SERVERS, settings.ORDER_EVENTS_TOPIC)
    use_case = ProcessOutboxEventsUseCase(
        unit_of_work=UnitOfWork(create_session_factory(engine)),
        kafka_producer=kafka_producer,
        notifications_client=HTTPNotificationsClient(settings.NOTIFICATIONS_BASE_URL, settings.API_TOKEN,
                                                     max_retries=3),
        cart_service=HTTPCartClient(settings.CART_BASE_URL, settings.API_TOKEN),
        max_attempts=settings.OUTBOX_MAX_ATTEMPTS
    )

    await kafka_producer.start()
    try:
        while True:
            try:
                processed = await use_case(limit=10)
                if processed:
                    logger.info(f"Delivered {processed} outbox events")
                await asyncio.sleep(3)

            except Exception as e:
                logger.error(f"Outbox worker error: {e}", exc_info=True)
                await asyncio.sleep(10)
    finally:
        await kafka_producer.stop()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(outbox_worker())
