"""
Storefront Subscriptions - FastAPI Application

Main entry point for the reconciliation backend.
Provides the return-flow, webhook and scheduled-sync endpoints.

``create_app(settings)`` builds an application around explicit settings;
the module-level ``app`` is the one uvicorn serves, built from the
environment.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.config.settings import Settings, get_settings
from storefront.infrastructure.container import build_container
from storefront.infrastructure.db.database import DatabaseManager
from storefront.infrastructure.exceptions import (
    CriticalActivationError,
    LockTimeoutError,
    NotFoundError,
    ProviderError,
    StorefrontError,
    ValidationError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)


def configure_logging(app_settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, app_settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    app_settings: Settings = app.state.settings

    # Startup
    logger.info(f"Storefront Subscriptions starting in {app_settings.environment} mode...")

    database = DatabaseManager(app_settings)
    http_client = httpx.AsyncClient()
    container = build_container(app_settings, database.session_factory, http_client)
    app.state.container = container

    try:
        await database.ping()
        logger.info("Database connection pool initialized")
    except Exception as e:
        logger.warning(f"Database ping failed at startup: {e}")

    yield

    # Shutdown
    await container.notifier.drain()
    await http_client.aclose()
    await database.close()
    logger.info("Storefront Subscriptions shutting down...")


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application around the given settings."""
    app_settings = app_settings or get_settings()
    configure_logging(app_settings)

    app = FastAPI(
        title="Storefront Subscriptions",
        description="Payment-to-subscription reconciliation for the storefront",
        version="1.0.0",
        lifespan=lifespan,
        debug=app_settings.debug,
    )
    app.state.settings = app_settings

    # CORS configuration from Settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # Exception Handlers
    # ========================================================================

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        """Handle validation errors."""
        return JSONResponse(
            status_code=400,
            content=exc.to_dict(),
        )

    @app.exception_handler(WebhookSignatureError)
    async def signature_error_handler(request: Request, exc: WebhookSignatureError):
        return JSONResponse(
            status_code=401,
            content=exc.to_dict(),
        )

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError):
        """Handle not found errors."""
        return JSONResponse(
            status_code=404,
            content=exc.to_dict(),
        )

    @app.exception_handler(LockTimeoutError)
    async def lock_timeout_handler(request: Request, exc: LockTimeoutError):
        """Transient: another trigger holds the activation lock."""
        return JSONResponse(
            status_code=503,
            content=exc.to_dict(),
            headers={"Retry-After": "5"},
        )

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError):
        """Payment provider unavailable or returned garbage."""
        return JSONResponse(
            status_code=502,
            content=exc.to_dict(),
        )

    @app.exception_handler(CriticalActivationError)
    async def critical_error_handler(request: Request, exc: CriticalActivationError):
        logger.critical(f"Critical activation failure: {exc.message}")
        return JSONResponse(
            status_code=500,
            content=exc.to_dict(),
        )

    @app.exception_handler(StorefrontError)
    async def general_error_handler(request: Request, exc: StorefrontError):
        """Handle all other application errors."""
        return JSONResponse(
            status_code=500,
            content=exc.to_dict(),
        )

    # ========================================================================
    # Health Check
    # ========================================================================

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "storefront-subscriptions"}

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Storefront Subscriptions API",
            "version": "1.0.0",
            "docs": "/docs",
        }

    # ========================================================================
    # Routers
    # ========================================================================

    from storefront.api.routes import cron, subscriptions, webhooks

    app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
    app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
    app.include_router(cron.router, prefix="/api", tags=["Cron"])

    return app


app = create_app()
