"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from jobmanagement.constants import JobStatus, QueueType


class CreateOperationRequest(BaseModel):
    """Request body for starting a long-running operation."""

    request: dict[str, Any] = Field(..., description="Operation request description")
    max_failure_count: int | None = Field(
        default=None, ge=0, le=100, description="Retries allowed per job"
    )
    force_one_active_group: bool = Field(
        default=False, description="Reject if the operation type already has active work"
    )


class CreateOperationResponse(BaseModel):
    """Response body after starting an operation."""

    group_id: int
    queue_type: QueueType
    status: JobStatus
    created_at: datetime
    message: str = "Operation accepted"


class CancelOperationResponse(BaseModel):
    """Response body after requesting cancellation."""

    group_id: int
    queue_type: QueueType
    jobs_flagged: int
    message: str = "Cancellation requested"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
