"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from jobmanagement import __version__
from jobmanagement.api.routes import health_router, operations_router
from jobmanagement.config import get_settings
from jobmanagement.db import close_db, create_job_store, init_db
from jobmanagement.errors import TransientStoreError
from jobmanagement.observability.logging import setup_logging
from jobmanagement.observability.metrics import get_metrics, setup_metrics
from jobmanagement.observability.tracing import instrument_fastapi, setup_tracing
from jobmanagement.queue.client import QueueClient
from jobmanagement.types.api import ErrorResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the configured job store unless a queue client was injected.
    """
    setup_logging()
    setup_metrics()
    setup_tracing()

    owns_store = getattr(app.state, "queue_client", None) is None
    if owns_store:
        settings = get_settings()
        session_factory = await init_db() if settings.job_store_backend == "sql" else None
        store = await create_job_store(settings, session_factory)
        app.state.queue_client = QueueClient(store, settings)

    logger.info("Application started")

    yield

    if owns_store:
        await close_db()
        app.state.queue_client = None
    logger.info("Application shutdown")


async def transient_store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning(f"Job store unavailable: {exc}", extra={"path": request.url.path})
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=ErrorResponse(error="Job store unavailable", detail=str(exc)).model_dump(),
        headers={"Retry-After": "5"},
    )


def create_app(queue_client: QueueClient | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        queue_client: Pre-built queue client. When omitted, the lifespan
            creates one from settings.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Job Management API",
        description="Status and control of long-running bulk operations",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.queue_client = queue_client

    app.add_exception_handler(TransientStoreError, transient_store_error_handler)

    @app.middleware("http")
    async def record_requests(request: Request, call_next):
        response = await call_next(request)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        get_metrics().record_api_request(request.method, endpoint, response.status_code)
        return response

    app.include_router(health_router)
    app.include_router(operations_router)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
