"""FastAPI application entry point.

This module initializes the FastAPI application with all routes,
middleware, and lifecycle handlers.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy import text

from blockflow import __version__
from blockflow.api.deps import _async_session_maker, get_db_session
from blockflow.api.routes import (
    apps_router,
    auth_router,
    blocks_router,
    executions_router,
    webhook_router,
    workflows_router,
)
from blockflow.blocks.registry import get_block_registry
from blockflow.config import settings
from blockflow.core.queue import create_job_queue, open_queue_redis
from blockflow.services.execution_service import create_execution_runtime, init_execution_runtime


def configure_logging() -> None:
    """Configure structlog once for the process."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer() if not settings.debug else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler.

    Builds the execution runtime and job queue on startup and releases
    them on shutdown.
    """
    logger.info(
        "application_starting",
        host=settings.host,
        port=settings.port,
        debug=settings.debug,
        log_level=settings.log_level,
    )
    logger.info(
        "configuration_loaded",
        jwt_secret=settings.get_masked_key("jwt_secret_key"),
        webhook_secret=settings.get_masked_key("webhook_secret"),
        queue_backend=settings.queue_backend,
        rate_limit_backend=settings.rate_limit_backend,
        execution_timeout=settings.execution_timeout,
    )

    block_count = len(get_block_registry().list_all())

    redis_client = await open_queue_redis()
    runtime = create_execution_runtime(_async_session_maker, redis_client)
    queue = create_job_queue(runtime.handle_job, redis_client)
    init_execution_runtime(runtime, queue)

    logger.info("application_ready", blocks=block_count, queue_backend=queue.backend)

    yield

    logger.info("application_shutting_down")
    await queue.close()
    if redis_client is not None:
        await redis_client.aclose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Blockflow",
        description="No-code workflow engine over app-scoped SQL tables",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(apps_router, prefix="/api/v1/apps", tags=["apps"])
    app.include_router(blocks_router, prefix="/api/v1/blocks", tags=["blocks"])
    app.include_router(workflows_router, prefix="/api/v1/workflows", tags=["workflows"])
    app.include_router(executions_router, prefix="/api/v1/executions", tags=["executions"])
    app.include_router(webhook_router, prefix="/workflow", tags=["webhooks"])

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions.

        Never expose internal error details in production.
        """
        logger.exception(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )

        if settings.debug:
            detail = str(exc)
        else:
            detail = "An internal error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": detail, "error_type": "internal_error"},
        )

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for load balancers and monitoring."""
        return {"status": "healthy", "version": __version__}

    @app.get("/ready", tags=["health"], response_model=None)
    async def ready_check() -> dict[str, str] | JSONResponse:
        """Readiness check including database connectivity."""
        try:
            async for session in get_db_session():
                await session.execute(text("SELECT 1"))
            return {"status": "ready"}
        except Exception as e:
            logger.error("readiness_check_failed", error=str(e))
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "error": "database_unavailable"},
            )

    FastAPIInstrumentor.instrument_app(app)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "blockflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
