"""
Type definitions for the job management engine.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobmanagement.types.api import (
    CancelOperationResponse,
    CreateOperationRequest,
    CreateOperationResponse,
    ErrorResponse,
    HealthResponse,
)
from jobmanagement.types.job import (
    BackoffPolicy,
    HeartbeatFn,
    JobContext,
    JobInfo,
)
from jobmanagement.types.status import GroupStatus

__all__ = [
    # API types
    "CreateOperationRequest",
    "CreateOperationResponse",
    "CancelOperationResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "JobInfo",
    "JobContext",
    "BackoffPolicy",
    "HeartbeatFn",
    # Status types
    "GroupStatus",
]
