"""
Long-running operation routes.
"""

import logging

from fastapi import APIRouter, HTTPException, status

from jobmanagement.api.dependencies import QueueClientDep
from jobmanagement.constants import API_V1_PREFIX, JobKind, QueueType
from jobmanagement.errors import JobConflictError, JobNotFoundError
from jobmanagement.types.api import (
    CancelOperationResponse,
    CreateOperationRequest,
    CreateOperationResponse,
)
from jobmanagement.types.status import GroupStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/operations", tags=["Operations"])


@router.post(
    "/{queue_type}",
    response_model=CreateOperationResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start an operation",
    description="Queue a coordinator job. Resubmitting an active request returns the existing group.",
)
async def create_operation(
    queue_type: QueueType,
    request: CreateOperationRequest,
    client: QueueClientDep,
) -> CreateOperationResponse:
    """
    Start a long-running operation.

    Raises:
        HTTPException: 409 if ``force_one_active_group`` is set and the
            operation type already has active work.
    """
    try:
        jobs = await client.enqueue(
            queue_type,
            [request.request],
            kind=JobKind.COORDINATOR,
            max_failure_count=request.max_failure_count,
            force_one_active_group=request.force_one_active_group,
        )
    except JobConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    job = jobs[0]
    logger.info(
        "Operation accepted",
        extra={"queue_type": queue_type.value, "group_id": job.group_id},
    )
    return CreateOperationResponse(
        group_id=job.group_id,
        queue_type=queue_type,
        status=job.status,
        created_at=job.created_at,
    )


@router.get(
    "/{queue_type}/{group_id}",
    response_model=GroupStatus,
    summary="Get operation status",
)
async def get_operation(
    queue_type: QueueType,
    group_id: int,
    client: QueueClientDep,
) -> GroupStatus:
    try:
        return await client.get_group_status(queue_type, group_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e


@router.delete(
    "/{queue_type}/{group_id}",
    response_model=CancelOperationResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel an operation",
    description="Request cooperative cancellation of every unfinished job in the group.",
)
async def cancel_operation(
    queue_type: QueueType,
    group_id: int,
    client: QueueClientDep,
) -> CancelOperationResponse:
    try:
        flagged = await client.cancel_group(queue_type, group_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    return CancelOperationResponse(
        group_id=group_id,
        queue_type=queue_type,
        jobs_flagged=flagged,
    )
