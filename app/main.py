"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.router import api_router
from app.config import Settings, get_settings
from app.core.exceptions import AppException
from app.core.payment_gateway import StripePaymentGateway
from app.database import TransactionalStore, create_engine_from_settings
from app.middleware.error_handler import (
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from app.middleware.logging import LoggingMiddleware, configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Builds the transactional store and payment gateway unless they were
    injected when the app was created.
    """
    settings: Settings = app.state.settings
    logger.info("application_startup", environment=settings.environment)

    owns_store = app.state.store is None
    if owns_store:
        app.state.store = TransactionalStore(create_engine_from_settings(settings))

    if app.state.gateway is None:
        app.state.gateway = StripePaymentGateway.from_settings(settings)
    if not app.state.gateway.is_configured:
        logger.warning(
            "payment_gateway_not_configured",
            note="Online bookings are disabled. Set STRIPE_SECRET_KEY env var.",
        )

    if await app.state.store.check_connection():
        logger.info("database_connected")
    else:
        logger.error("database_connection_failed")

    yield

    logger.info("application_shutdown")
    if owns_store:
        await app.state.store.dispose()
        logger.info("database_connections_closed")


def create_app(
    settings: Settings | None = None,
    store: TransactionalStore | None = None,
    gateway: StripePaymentGateway | None = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Settings to use instead of the environment-derived ones
        store: Pre-built transactional store
        gateway: Pre-built payment gateway

    Returns:
        Configured application
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Capacity-constrained appointment booking and cancellation API",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, general_exception_handler)  # type: ignore[arg-type]

    app.include_router(api_router, prefix=settings.api_v1_prefix)

    # Prometheus metrics
    if settings.enable_metrics:
        Instrumentator(
            should_group_status_codes=True,
            should_ignore_untemplated=False,
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/docs", "/redoc", "/openapi.json", "/metrics"],
            inprogress_name="http_requests_inprogress",
            inprogress_labels=True,
        ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "message": f"Welcome to {settings.app_name}",
            "version": settings.app_version,
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    current = get_settings()
    uvicorn.run(
        "app.main:app",
        host=current.host,
        port=current.port,
        reload=current.reload,
        log_level=current.log_level.lower(),
    )
