"""
LeadLink - FastAPI Backend

Main application entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from leadlink.core.config import settings
from leadlink.core.errors import InvalidAddress, StoreUnavailable
from leadlink.core.logging import configure_logging
from leadlink.db.postgres import async_session_maker, close_db, init_db
from leadlink.middleware.rate_limit import setup_rate_limiting
from leadlink.services.engine import AttributionEngine

# Import routers
from leadlink.api.v1 import campaigns, clicks, health, redirect, webhooks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    configure_logging(settings.log_level, settings.log_format)

    # Startup
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    logger.info("Environment: %s", settings.environment)

    # Validate production settings
    try:
        settings.validate_production_settings()
        logger.info("Production settings validated successfully")
    except ValueError as e:
        if settings.environment == "production":
            logger.error("CRITICAL: %s", e)
            raise  # Stop startup in production with invalid config
        else:
            logger.warning("Production settings validation: %s", e)

    owns_engine = app.state.engine is None
    if owns_engine:
        try:
            await init_db()
            logger.info("Database connected and tables created")
        except Exception as e:
            logger.error("Database initialization failed: %s", e)
            logger.error("Clicks will NOT be recorded without a database!")
        app.state.engine = AttributionEngine(settings, async_session_maker)

    # Check Kommo (never fatal, unconfigured registrations are marked failed)
    await app.state.engine.check_crm()

    yield

    # Shutdown
    if owns_engine:
        await app.state.engine.shutdown()
        logger.info("Background registrations drained, Kommo client closed")
        await close_db()
        logger.info("Database disconnected")
        app.state.engine = None
    logger.info("Shutdown complete")


async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"success": False, "detail": "Database unavailable"})


async def invalid_address_handler(request: Request, exc: InvalidAddress):
    return JSONResponse(status_code=400, content={"success": False, "detail": exc.reason})


def create_app(engine: Optional[AttributionEngine] = None) -> FastAPI:
    """Build the FastAPI application.

    When ``engine`` is given the app uses it as is and leaves its lifecycle
    to the caller; otherwise the lifespan builds one over the configured
    database and closes it on shutdown.
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="""
        LeadLink API

        Click attribution for WhatsApp ad links, correlated with Kommo CRM leads.

        ## Features

        - **Redirect**: `/wa/{phone}` records the click and opens WhatsApp
        - **Webhooks**: `/webhooks/kommo` links Kommo activity to recent clicks
        - **Clicks**: inspect clicks and retry failed Kommo registrations
        - **Campaigns**: manage campaigns and build tracking links
        """,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.engine = engine

    # Rate limiting
    setup_rate_limiting(app)

    app.add_exception_handler(StoreUnavailable, store_unavailable_handler)
    app.add_exception_handler(InvalidAddress, invalid_address_handler)

    # Root endpoint
    @app.get("/", tags=["Root"])
    async def root():
        """API root - returns basic info."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
            "health": "/health",
            "redirect": "/wa/{phone}?utm_source=...&utm_campaign=...",
        }

    # Include routers
    app.include_router(health.router)  # Health check at /health (no /api/v1 prefix)
    app.include_router(redirect.router)
    app.include_router(webhooks.router)
    app.include_router(clicks.router, prefix=settings.api_v1_prefix)
    app.include_router(campaigns.router, prefix=settings.api_v1_prefix)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "leadlink.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
