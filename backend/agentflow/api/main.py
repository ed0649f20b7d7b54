"""
Agentflow - FastAPI Application
===============================

Main application factory with all routers and middleware.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agentflow.api import integration, pipeline, sessions, webhooks
from agentflow.api.deps import ServiceContainer, build_container
from agentflow.core.config import load_pipeline_config, settings
from agentflow.core.database import AsyncSessionLocal, close_db, init_db
from agentflow.core.schemas import ErrorResponse, HealthResponse

logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Load and validate .pipeline/config.yaml (fails fast on invalid config)
    - Initialize database connection and restore sessions
    - Start the inactivity watchdog

    Shutdown:
    - Stop the watchdog and running pipelines
    - Close outbound clients and database connections
    """
    logger.info("Starting Agentflow", version=settings.APP_VERSION)

    container: Optional[ServiceContainer] = getattr(app.state, "container", None)
    owns_database = container is None
    if container is None:
        config = load_pipeline_config(settings.PROJECT_PATH)
        session_factory = None
        if settings.PERSIST_SESSIONS:
            await init_db()
            logger.info("Database initialized")
            session_factory = AsyncSessionLocal
        container = build_container(settings, config, session_factory)
        app.state.container = container

    await container.start()
    logger.info("Sessions restored", count=len(container.store.list()))

    yield

    logger.info("Shutting down Agentflow")
    await container.close()
    if owns_database and settings.PERSIST_SESSIONS:
        await close_db()
        logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        container: Pre-built services; built from settings at startup when omitted

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Event-driven orchestration of autonomous coding agents",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(request: Request) -> HealthResponse:
        """
        Check application health.

        Reports whether session persistence and the external runners are
        configured.
        """
        services: Optional[ServiceContainer] = getattr(request.app.state, "container", None)
        persisted = services is not None and services.store.repository is not None
        return HealthResponse(
            status="healthy" if services is not None else "starting",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database="connected" if persisted else "memory",
            workflow_runner="enabled" if services and services.dispatcher.enabled else "disabled",
            agent_runner="enabled" if settings.AGENT_RUNNER_URL else "disabled",
        )

    app.include_router(webhooks.router)
    app.include_router(sessions.router)
    app.include_router(pipeline.router)
    app.include_router(integration.router)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "agentflow.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL,
    )
