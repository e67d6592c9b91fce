"""
Main FastAPI application entry point.

This module sets up the FastAPI app with all middleware, routes, and lifecycle events.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.siteguard.api import admin_router, healthz_router, metrics_router, security_router
from src.siteguard.config import Settings, get_settings
from src.siteguard.core.exceptions import SiteGuardException
from src.siteguard.core.secure_logger import create_safe_error_message
from src.siteguard.core.services import SecurityServices, build_services


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging for the application."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    # Silence the verbose watchfiles logger
    logging.getLogger("watchfiles").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_lifespan_handler(services: SecurityServices) -> Any:
    """Create a lifespan handler owning the services container."""
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        FastAPI lifespan context manager.

        Connects the store and starts the background scheduler; on shutdown
        flushes the secure log buffer and closes the store.
        """
        logger = structlog.get_logger(__name__)
        logger.info("Starting SiteGuard service", version=app.version)

        await services.start()

        try:
            logger.info("SiteGuard service started successfully")
            yield
        finally:
            logger.info("Shutting down SiteGuard service")
            await services.stop()
            logger.info("SiteGuard service shutdown complete")

    return lifespan


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SiteGuardException)
    async def siteguard_exception_handler(request: Request, exc: SiteGuardException) -> JSONResponse:
        """Handle custom SiteGuard exceptions."""
        logger = structlog.get_logger(__name__)
        logger.warning(
            "SiteGuard exception occurred",
            error=str(exc),
            status_code=exc.status_code,
            path=request.url.path,
            method=request.method,
        )

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": str(exc),
                "details": exc.details,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Record unexpected exceptions securely and answer with a client-safe message."""
        services: SecurityServices = request.app.state.services
        secure_logger = services.secure_logger

        secure_logger.error(
            "Unhandled exception",
            error=exc,
            metadata={"path": request.url.path, "error_type": type(exc).__name__},
            request=request,
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": create_safe_error_message(exc, secure_logger.is_production),
            },
        )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[SecurityServices] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Tests pass their own settings or a prebuilt services container;
    otherwise both come from the environment.
    """
    if settings is None:
        settings = services.settings if services is not None else get_settings()

    configure_logging(settings.log_level)

    if services is None:
        services = build_services(settings, clock=time.time)

    app = FastAPI(
        title="SiteGuard",
        description="Request throttling and security monitoring",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=create_lifespan_handler(services),
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(admin_router, tags=["admin"])
    app.include_router(security_router, tags=["security"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(healthz_router, tags=["health"])

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, str]:
        """Root endpoint with service information."""
        return {
            "service": "SiteGuard",
            "version": app.version,
            "description": "Request throttling and security monitoring",
            "docs": "/docs",
        }

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "src.siteguard.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )
