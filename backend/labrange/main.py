"""
Lab Range - FastAPI Application Factory
Wires the session orchestrator into the HTTP boundary
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_client import make_asgi_app
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from labrange.core.config import Settings, get_settings
from labrange.core.logging import setup_logging
from labrange.infrastructure.database import DatabaseManager
from labrange.infrastructure.orchestrator.exceptions import OrchestratorError
from labrange.infrastructure.orchestrator.models import NetworkMode
from labrange.infrastructure.orchestrator.repository import SqlSessionRepository
from labrange.infrastructure.orchestrator.services.cleanup_scheduler import CleanupScheduler
from labrange.infrastructure.orchestrator.services.flag_service import FlagService
from labrange.infrastructure.orchestrator.services.hypervisor import LibvirtHypervisor
from labrange.infrastructure.orchestrator.services.network_allocator import NetworkAllocator
from labrange.infrastructure.orchestrator.services.scoring import create_scoring_hook
from labrange.infrastructure.orchestrator.services.session_manager import SessionManager
from labrange.infrastructure.orchestrator.services.vpn_issuer import VpnIssuer
from labrange.interfaces.api.rate_limit import configure_limiter
from labrange.interfaces.api.v1 import api_router
from labrange.interfaces.middleware.error_handler import (
    ErrorHandlerMiddleware,
    orchestrator_error_handler,
)

logger = structlog.get_logger(__name__)


def build_session_manager(settings: Settings, db_manager: DatabaseManager) -> SessionManager:
    """Assemble the orchestrator from settings."""
    return SessionManager(
        repository=SqlSessionRepository(db_manager),
        allocator=NetworkAllocator.from_settings(settings),
        hypervisor=LibvirtHypervisor.from_settings(settings),
        flag_service=FlagService.from_settings(settings),
        vpn_issuer=VpnIssuer.from_settings(settings),
        scoring_hook=create_scoring_hook(settings),
        session_duration=timedelta(minutes=settings.session_duration_minutes),
        extension=timedelta(minutes=settings.session_extension_minutes),
        max_extensions=settings.max_session_extensions,
        max_concurrent_sessions=settings.max_concurrent_sessions,
        max_teardown_attempts=settings.max_teardown_attempts,
        default_network_mode=NetworkMode(settings.network_mode),
        public_host=settings.public_host,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup/shutdown."""
    settings: Settings = app.state.settings

    setup_logging(settings.log_level, settings.log_format)

    logger.info("Starting Lab Range", version=settings.app_version)

    db_manager = DatabaseManager(settings)
    await db_manager.connect()
    await db_manager.create_schema()
    app.state.db = db_manager

    session_manager = build_session_manager(settings, db_manager)
    await session_manager.recover()
    app.state.session_manager = session_manager

    scheduler = CleanupScheduler.from_settings(session_manager, settings)
    await scheduler.start()
    app.state.cleanup_scheduler = scheduler

    logger.info("All services initialized successfully")

    yield

    logger.info("Shutting down Lab Range")

    await scheduler.stop()
    await db_manager.disconnect()
    logger.info("Shutdown complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Application factory pattern for FastAPI.

    Args:
        settings: Optional settings override for testing

    Returns:
        Configured FastAPI application instance
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Lab Range",
        description="On-demand VM lab sessions",
        version=settings.app_version,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # Store settings in app state
    app.state.settings = settings

    # Setup rate limiter
    app.state.limiter = configure_limiter(settings)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)

    # Add middleware (order matters - last added is first executed)
    app.add_middleware(ErrorHandlerMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    # Mount Prometheus metrics
    metrics_app = make_asgi_app()
    app.mount("/metrics", metrics_app)

    # Include API routes
    app.include_router(api_router, prefix="/api/v1")

    return app


def run() -> None:
    """Serve the API with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "labrange.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
