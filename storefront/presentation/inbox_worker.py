import asyncio
import logging

from storefront.config import settings
from storefront.database import create_engine, create_session_factory
from storefront.infrastructure.unit_of_work import UnitOfWork
from storefront.application.order_lifecycle import OrderLifecycle
from storefront.application.process_inbox import ProcessInboxEventsUseCase
from storefront.application.stock_ledger import StockLedger

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def inbox_worker():
    """Applies stored fulfilment events to orders"""
    logger.info("Inbox worker started")

    engine = create_engine(settings.DATABASE_URL)
    uow = UnitOfWork(create_session_factory(engine))
    lifecycle = OrderLifecycle(uow, StockLedger(settings.LOW_STOCK_THRESHOLD, settings.CRITICAL_STOCK_THRESHOLD))
    use_case = ProcessInboxEventsUseCase(unit_of_work=uow, order_lifecycle=lifecycle)

    try:
        while True:
            try:
                processed = await use_case(limit=10)
                if processed:
                    logger.info(f"Applied {processed} inbox events")
                await asyncio.sleep(2)

            except Exception as e:
                logger.error(f"Inbox worker error: {e}", exc_info=True)
                await asyncio.sleep(10)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(inbox_worker())
