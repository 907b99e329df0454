"""
Job store contract.

Every persistence backend implements this protocol identically with respect
to atomic dequeue and optimistic versioning, so callers cannot tell backends
apart. Version mismatches are reported as ``False``; backend exceptions are
raised unchanged and classified by ``classify_error``.
"""

import hashlib
import json
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from jobmanagement.constants import JobKind, JobStatus, QueueType
from jobmanagement.errors import StoreErrorKind
from jobmanagement.types.job import JobInfo

ABANDONED_LEASE_ERROR = "Job lease was abandoned more times than allowed."


def definition_hash(definition: dict[str, Any]) -> str:
    """
    Compute the idempotency hash of a job definition.

    Args:
        definition: The job definition.

    Returns:
        Hex SHA-256 of the canonical JSON encoding.
    """
    canonical = json.dumps(definition, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@runtime_checkable
class JobStore(Protocol):
    """Persistence abstraction over a single logical table of job records."""

    async def create_jobs(
        self,
        queue_type: QueueType,
        definitions: Sequence[dict[str, Any]],
        group_id: int | None = None,
        kind: JobKind = JobKind.WORKER,
        max_failure_count: int | None = None,
        force_one_active_group: bool = False,
    ) -> list[JobInfo]:
        """
        Atomically insert sibling jobs (all or none).

        Without ``group_id`` the first inserted job's id becomes the group id.
        Definitions matching an active job of the same kind and queue type
        (and group, when given) return that job instead of inserting a duplicate.

        Raises:
            JobConflictError: If ``force_one_active_group`` is set and the
                queue type already has an active job.
        """
        ...

    async def dequeue(
        self,
        queue_type: QueueType,
        lease_seconds: float,
        worker: str | None = None,
        admitted_only: bool = False,
    ) -> JobInfo | None:
        """
        Lease one queued job, or one whose lease was abandoned.

        Reclaiming an abandoned lease counts as a failed attempt; jobs whose
        failure count would exceed their limit are failed instead.
        ``admitted_only`` skips coordinators that never started.
        """
        ...

    async def heartbeat(
        self,
        queue_type: QueueType,
        job_id: int,
        version: int,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Renew the lease iff ``version`` matches a running job."""
        ...

    async def complete(
        self,
        queue_type: QueueType,
        job_id: int,
        version: int,
        status: JobStatus,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Move a running job to a terminal status iff ``version`` matches."""
        ...

    async def requeue(
        self,
        queue_type: QueueType,
        job_id: int,
        version: int,
        result: dict[str, Any] | None = None,
        delay_seconds: float = 0,
        count_failure: bool = False,
    ) -> bool:
        """Release a running job back to the queue iff ``version`` matches."""
        ...

    async def get_job(self, queue_type: QueueType, job_id: int) -> JobInfo | None:
        """Get one job by id."""
        ...

    async def get_by_group_id(self, queue_type: QueueType, group_id: int) -> list[JobInfo]:
        """Get every member of a group, ordered by id."""
        ...

    async def request_cancel(self, queue_type: QueueType, group_id: int) -> int:
        """Flag every non-terminal member of a group for cancellation."""
        ...

    async def count_active_coordinators(self, queue_type: QueueType) -> int:
        """Count started, non-terminal coordinators of a queue type."""
        ...

    async def count_by_status(self, queue_type: QueueType) -> dict[str, int]:
        """Count jobs of a queue type by status."""
        ...

    def classify_error(self, exc: BaseException) -> StoreErrorKind:
        """Map a backend exception to a backend-neutral kind."""
        ...
