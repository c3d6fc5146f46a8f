"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from claimqueue import __version__
from claimqueue.api.routes import health_router, jobs_router
from claimqueue.config import get_settings
from claimqueue.errors import StoreError
from claimqueue.observability.logging import setup_logging
from claimqueue.observability.metrics import setup_metrics
from claimqueue.observability.tracing import instrument_fastapi, setup_tracing
from claimqueue.queue import Queue
from claimqueue.store import create_store
from claimqueue.types.api import ErrorResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events. The store is only created (and
    closed) here when no queue was handed to ``create_app``.
    """
    # Startup
    setup_logging()
    setup_metrics()
    setup_tracing()

    owns_store = app.state.queue is None
    if owns_store:
        settings = get_settings()
        store = await create_store(settings)
        app.state.queue = Queue(store, settings.queue_base)

    logger.info("Application started", extra={"queue": app.state.queue.base})

    yield

    # Shutdown
    if owns_store:
        await app.state.queue.store.close()
        app.state.queue = None
    logger.info("Application shutdown")


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Report backing store failures as 503."""
    logger.error(
        "Store error while handling request",
        extra={"path": request.url.path, "operation": exc.operation, "error": str(exc)},
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=ErrorResponse(error="store_unavailable", detail=str(exc)).model_dump(),
    )


def create_app(queue: Queue | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        queue: Queue to serve. When omitted, one is built from settings at
            startup.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Claim Queue API",
        description="Producer and operator API for a distributed work queue",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.queue = queue

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StoreError, store_error_handler)

    # Include routers
    app.include_router(health_router)
    app.include_router(jobs_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app()

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
