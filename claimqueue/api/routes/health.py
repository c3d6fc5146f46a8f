"""
Health check routes.
"""

from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import Response

from claimqueue import __version__
from claimqueue.api.dependencies import QueueDep
from claimqueue.errors import StoreError
from claimqueue.observability.metrics import get_metrics
from claimqueue.types.api import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and backing store connection.",
)
async def health_check(queue: QueueDep) -> HealthResponse:
    """
    Perform a health check.

    Checks store connectivity and returns service status.

    Args:
        queue: The application queue.

    Returns:
        HealthResponse with service status.
    """
    store_status = "healthy"
    try:
        await queue.store.ping()
    except StoreError:
        store_status = "unhealthy"

    return HealthResponse(
        status="healthy" if store_status == "healthy" else "degraded",
        version=__version__,
        store=store_status,
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(queue: QueueDep) -> dict:
    """
    Kubernetes readiness probe endpoint.

    Returns:
        Ready status.
    """
    try:
        await queue.store.ping()
        return {"ready": True}
    except StoreError:
        return {"ready": False}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """
    Kubernetes liveness probe endpoint.

    Returns:
        Alive status.
    """
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
