"""
Main Application - FastAPI application setup.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse

from creditgate.api.dependencies import close_services, get_services
from creditgate.api.errors import register_exception_handlers
from creditgate.api.routes import router
from creditgate.api.status_routes import router as status_router
from creditgate.config import settings
from creditgate.db.migration_runner import run_migrations
from creditgate.db.session import close_engine
from creditgate.observability import get_logger, log_context, setup_logging, setup_tracing
from creditgate.observability.metrics import get_metrics_handler
from creditgate.observability.tracing import instrument_fastapi

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the process-wide services, starts token maintenance, and tears
    everything down on shutdown.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        accounting_mode=settings.accounting_mode,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        run_migrations()

    services = get_services()
    if settings.token_maintenance_enabled:
        services.maintenance.start()

    yield

    logger.info("application_shutting_down")
    await close_services()
    await close_engine()
    logger.info("database_engine_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)

register_exception_handlers(app)

# Setup tracing
setup_tracing()
instrument_fastapi(app)


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.perf_counter()
    request_id = request.headers.get("X-Request-ID", "unknown")

    with log_context(request_id=request_id):
        logger.info("request_started", method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_seconds=time.perf_counter() - start_time,
                exc_info=True,
            )
            raise

        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=time.perf_counter() - start_time,
        )
        return response


_metrics_handler = get_metrics_handler()

# Register routes
app.include_router(router)
app.include_router(status_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(_metrics_handler())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "creditgate.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
