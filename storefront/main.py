import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI

from storefront.config import settings
from storefront.container import Container, build_container
from storefront.database import create_engine, create_session_factory, create_tables
from storefront.presentation.api import router

logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def create_app(container: Optional[Container] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        if getattr(app.state, "container", None) is None:
            engine = create_engine(settings.DATABASE_URL)
            await create_tables(engine)
            app.state.container = build_container(settings, create_session_factory(engine))
            logger.info("Database ready, container built")

        yield

        logger.info("Application shutting down...")
        if engine is not None:
            await engine.dispose()

    app = FastAPI(
        title="Storefront Checkout Service",
        description="Checkout, order lifecycle and payment orchestration",
        version="1.0.0",
        lifespan=lifespan
    )
    if container is not None:
        app.state.container = container

    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health():
        gateways = app.state.container.checkout.available_gateways() if getattr(app.state, "container", None) else {}
        return {"status": "healthy", "gateways": sorted(gateways)}

    return app


app = create_app()
