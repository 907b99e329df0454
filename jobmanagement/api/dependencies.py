"""
FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from jobmanagement.queue.client import QueueClient


def get_queue_client(request: Request) -> QueueClient:
    """Get the queue client attached to the application."""
    client = getattr(request.app.state, "queue_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job store not initialized",
        )
    return client


QueueClientDep = Annotated[QueueClient, Depends(get_queue_client)]
