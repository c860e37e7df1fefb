import asyncio
import logging

from storefront.config import settings
from storefront.database import create_engine, create_session_factory
from storefront.infrastructure.kafka_consumer import KafkaConsumerClient
from storefront.infrastructure.unit_of_work import UnitOfWork
from storefront.application.process_inbox import ReceiveFulfillmentEventUseCase

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def fulfillment_consumer():
    """Stores fulfilment service events (processing, shipped, delivered) in the inbox"""
    logger.info("Fulfillment consumer started")

    engine = create_engine(settings.DATABASE_URL)
    receive_event = ReceiveFulfillmentEventUseCase(UnitOfWork(create_session_factory(engine)))
    consumer = KafkaConsumerClient(settings.KAFKA_BOOTSTRAP_SERVERS, settings.FULFILLMENT_EVENTS_TOPIC)
    await consumer.start()

    try:
        await consumer.consume(receive_event)
    finally:
        await consumer.stop()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(fulfillment_consumer())
