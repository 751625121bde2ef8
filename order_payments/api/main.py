"""
Main FastAPI application.

Order payment reconciliation API with:
- CORS configuration
- Error mapping for channel and ledger errors
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from order_payments.channels.base import (
    ChannelError,
    GatewayResponseError,
    GatewayUnavailableError,
    PayloadValidationError,
    SignatureVerificationError,
)
from order_payments.config import Settings, get_settings
from order_payments.core.ledger import OrderNotFoundError
from order_payments.database.connection import close_db, init_db
from order_payments.monitoring.logging import setup_logging

from .dependencies import Services, build_services
from .routes import admin_router, monitoring_router, order_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)

CHANNEL_ERROR_STATUS = {
    SignatureVerificationError: status.HTTP_401_UNAUTHORIZED,
    PayloadValidationError: status.HTTP_400_BAD_REQUEST,
    GatewayUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    GatewayResponseError: status.HTTP_502_BAD_GATEWAY,
}


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
    initialize_database: bool = True,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings (loaded from the environment if omitted)
        services: Pre-built object graph (built from settings if omitted)
        initialize_database: Create tables on startup
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        setup_logging()
        logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

        if initialize_database:
            try:
                await init_db()
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise

        owns_services = services is None
        app.state.services = services or build_services(settings)

        yield

        logger.info("application_shutdown")
        if owns_services:
            await app.state.services.aclose()
            try:
                await close_db()
                logger.info("database_connections_closed")
            except Exception as e:
                logger.error("database_shutdown_error", error=str(e))

    app = FastAPI(
        title="Order Payments",
        description=(
            "Order payment reconciliation: push webhooks, status polling, redirect "
            "capture, manual and cash confirmations with idempotent settlement and "
            "exactly-once side effects."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )
    if services is not None:
        app.state.services = services

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(ChannelError)
    async def channel_exception_handler(request: Request, exc: ChannelError) -> JSONResponse:
        """Map adapter and gateway errors to client-facing status codes."""
        status_code = status.HTTP_400_BAD_REQUEST
        for error_type, code in CHANNEL_ERROR_STATUS.items():
            if isinstance(exc, error_type):
                status_code = code
                break

        logger.warning(
            "channel_error",
            error=str(exc),
            error_type=type(exc).__name__,
            channel=exc.channel,
            status_code=status_code,
        )
        content = {"error": type(exc).__name__, "message": str(exc)}
        if isinstance(exc, PayloadValidationError):
            content["details"] = exc.details
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(OrderNotFoundError)
    async def order_not_found_handler(request: Request, exc: OrderNotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "OrderNotFound", "message": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    # Include routers
    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "order_payments.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
