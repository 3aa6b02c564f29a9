"""
FastAPI Application

Main entry point for the Retail Price Ingestion Service.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from pricefeed.config import Settings, get_settings
from pricefeed.config.logging import configure_logging
from pricefeed.container import ServiceContainer, build_services
from pricefeed.database.connection import close_database, get_session_factory, init_database
from pricefeed.serving.api.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from pricefeed.serving.api.routes import health_router, ingestion_router

logger = structlog.get_logger(__name__)


def create_app(services: Optional[ServiceContainer] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Create the API application.

    When ``services`` is given the lifespan neither connects to the database
    nor builds services; the caller owns them.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info("Starting price ingestion service", environment=settings.app_env)

        owned = services is None
        if owned:
            await init_database(create_tables=settings.database.create_tables)
            app.state.services = build_services(settings, get_session_factory())

        container: ServiceContainer = app.state.services
        await container.start_background()
        if settings.scheduler.autostart:
            await container.scheduler.start()

        yield

        logger.info("Shutting down...")
        await container.scheduler.stop()
        if owned:
            await container.aclose()
            await close_database()

    app = FastAPI(
        title="Retail Price Ingestion API",
        description="Daily retail price ingestion: crawl, reconcile and job history",
        version=settings.version,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(ingestion_router, prefix="/api/v1/ingestion", tags=["Ingestion"])

    @app.get("/api/v1/info")
    async def api_info():
        """API information endpoint."""
        return {
            "name": "Retail Price Ingestion API",
            "version": settings.version,
            "environment": settings.app_env,
            "chains": app.state.services.chains if app.state.services else [],
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
