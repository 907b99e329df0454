"""
Health check routes.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import Response

from jobmanagement import __version__
from jobmanagement.api.dependencies import QueueClientDep
from jobmanagement.clock import utcnow
from jobmanagement.constants import QueueType
from jobmanagement.errors import JobManagementError
from jobmanagement.observability.metrics import get_metrics
from jobmanagement.types.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and the job store.",
)
async def health_check(client: QueueClientDep) -> HealthResponse:
    """
    Perform a health check.

    Refreshes queue depth for every queue type, which doubles as a store
    connectivity probe.
    """
    store_status = "healthy"
    try:
        for queue_type in QueueType:
            await client.refresh_queue_depth(queue_type)
    except Exception as e:
        logger.warning(f"Job store health check failed: {e}")
        store_status = "unhealthy"

    return HealthResponse(
        status="healthy" if store_status == "healthy" else "degraded",
        version=__version__,
        database=store_status,
        timestamp=utcnow(),
    )


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics(client: QueueClientDep) -> Response:
    """Expose Prometheus metrics with fresh queue depth gauges."""
    for queue_type in QueueType:
        try:
            await client.refresh_queue_depth(queue_type)
        except JobManagementError as e:
            logger.warning(f"Queue depth refresh failed: {e}", extra={"queue_type": queue_type.value})

    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
