"""
Queue client.

Job-lifecycle operations on top of a job store: enqueue, polling dequeue with
backoff, lease renewal, terminal transitions and group status. Every store
call goes through one retry wrapper that classifies backend exceptions.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from jobmanagement.config import Settings, get_settings
from jobmanagement.constants import (
    TERMINAL_STATUSES,
    JobKind,
    JobStatus,
    QueueType,
)
from jobmanagement.db.store import JobStore
from jobmanagement.errors import (
    JobNotFoundError,
    StoreErrorKind,
    TransientStoreError,
)
from jobmanagement.observability.metrics import MetricsCollector, get_metrics
from jobmanagement.types.job import BackoffPolicy, JobInfo
from jobmanagement.types.status import GroupStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

DequeueFn = Callable[[], Awaitable[JobInfo | None]]


def error_payload(error: BaseException | dict[str, Any] | str) -> dict[str, Any]:
    """Normalize an error into the payload stored in a job result."""
    if isinstance(error, dict):
        return dict(error)
    if isinstance(error, BaseException):
        return {"error": str(error) or type(error).__name__, "type": type(error).__name__}
    return {"error": error}


class QueueClient:
    """
    Job queue operations shared by the API, the coordinator and the workers.

    Writes made by a lease holder take the caller's ``JobInfo`` and update its
    ``version`` and ``status`` in place on success, so the same object can be
    used for the next conditional write.
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the queue client.

        Args:
            store: The job store backend.
            settings: Application settings. Defaults to the cached settings.
            metrics: Metrics collector. Defaults to the process-wide collector.
        """
        self._store = store
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()

    @property
    def store(self) -> JobStore:
        return self._store

    def backoff_policy(self) -> BackoffPolicy:
        """Build the configured empty-queue backoff policy."""
        return BackoffPolicy(
            initial_seconds=self._settings.dequeue_backoff_initial_seconds,
            maximum_seconds=self._settings.dequeue_backoff_max_seconds,
            multiplier=self._settings.dequeue_backoff_multiplier,
        )

    async def _call(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Run a store call, retrying transient failures.

        Raises:
            TransientStoreError: If the store stayed unavailable for every attempt.
            JobNotFoundError: If the store reported a missing record.
        """
        attempts = max(1, self._settings.store_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await fn(*args, **kwargs)
            except Exception as exc:
                kind = self._store.classify_error(exc)
                if kind == StoreErrorKind.NOT_FOUND:
                    if isinstance(exc, JobNotFoundError):
                        raise
                    raise JobNotFoundError(str(exc)) from exc
                if kind != StoreErrorKind.TRANSIENT:
                    raise
                if attempt == attempts:
                    raise TransientStoreError(
                        f"Store operation {operation} failed after {attempts} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "Transient store error, retrying",
                    extra={"operation": operation, "attempt": attempt, "error": str(exc)},
                )
                await asyncio.sleep(self._settings.store_retry_delay_seconds * attempt)
        raise AssertionError("unreachable")

    # Submission

    async def enqueue(
        self,
        queue_type: QueueType,
        definitions: Sequence[dict[str, Any]],
        group_id: int | None = None,
        kind: JobKind = JobKind.WORKER,
        max_failure_count: int | None = None,
        force_one_active_group: bool = False,
    ) -> list[JobInfo]:
        """
        Create jobs, returning the existing record for duplicate active definitions.

        Raises:
            JobConflictError: If ``force_one_active_group`` is set and the
                queue type already has active work.
        """
        jobs = await self._call(
            "create_jobs",
            self._store.create_jobs,
            queue_type,
            definitions,
            group_id=group_id,
            kind=kind,
            max_failure_count=max_failure_count,
            force_one_active_group=force_one_active_group,
        )
        self._metrics.record_enqueued(queue_type.value, kind.value, len(jobs))
        return jobs

    async def enqueue_group(
        self,
        queue_type: QueueType,
        definitions: Sequence[dict[str, Any]],
        group_id: int | None = None,
        kind: JobKind = JobKind.WORKER,
        max_failure_count: int | None = None,
        force_one_active_group: bool = False,
    ) -> int:
        """Create jobs and return their group id."""
        if not definitions:
            raise ValueError("At least one job definition is required")
        jobs = await self.enqueue(
            queue_type,
            definitions,
            group_id=group_id,
            kind=kind,
            max_failure_count=max_failure_count,
            force_one_active_group=force_one_active_group,
        )
        return jobs[0].group_id

    # Leasing

    async def dequeue(
        self,
        queue_type: QueueType,
        lease_seconds: float,
        worker: str | None = None,
        admitted_only: bool = False,
    ) -> JobInfo | None:
        """Lease one eligible job without waiting."""
        job = await self._call(
            "dequeue",
            self._store.dequeue,
            queue_type,
            lease_seconds,
            worker=worker,
            admitted_only=admitted_only,
        )
        if job is not None:
            self._metrics.record_lease_acquired(queue_type.value)
        return job

    async def poll_dequeue(
        self,
        queue_type: QueueType,
        lease_seconds: float,
        backoff_policy: BackoffPolicy | None = None,
        stop_event: asyncio.Event | None = None,
        dequeue: DequeueFn | None = None,
    ) -> JobInfo | None:
        """
        Dequeue, backing off while the queue is empty or the store is down.

        Args:
            queue_type: The queue to poll.
            lease_seconds: Lease duration passed to the store.
            backoff_policy: Delay schedule between empty polls.
            stop_event: Stops polling when set.
            dequeue: Replacement for the single dequeue attempt, e.g. admission control.

        Returns:
            The leased job, or None once ``stop_event`` is set.
        """
        policy = backoff_policy or self.backoff_policy()
        fetch = dequeue or (lambda: self.dequeue(queue_type, lease_seconds))
        attempt = 0

        while stop_event is None or not stop_event.is_set():
            try:
                job = await fetch()
            except TransientStoreError as e:
                logger.warning(
                    f"Dequeue failed: {e}",
                    extra={"queue_type": queue_type.value, "attempt": attempt},
                )
                job = None

            if job is not None:
                return job

            delay = policy.delay(attempt)
            attempt += 1
            if stop_event is None:
                await asyncio.sleep(delay)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except TimeoutError:
                pass

        return None

    async def heartbeat(self, job: JobInfo, result: dict[str, Any] | None = None) -> bool:
        """
        Renew the lease on ``job``.

        On success the local version is advanced and ``cancel_requested`` is
        refreshed from the store.

        Returns:
            False if the lease was lost.
        """
        renewed = await self._call(
            "heartbeat",
            self._store.heartbeat,
            job.queue_type,
            job.id,
            job.version,
            result,
        )
        if not renewed:
            self._metrics.record_lease_lost(job.queue_type.value)
            logger.warning(
                "Lease lost",
                extra={"job_id": job.id, "queue_type": job.queue_type.value, "version": job.version},
            )
            return False

        job.version += 1
        if result is not None:
            job.result = result
        current = await self._call("get_job", self._store.get_job, job.queue_type, job.id)
        if current is not None and current.cancel_requested and not job.cancel_requested:
            job.cancel_requested = True
            logger.info(
                "Cancellation observed",
                extra={"job_id": job.id, "queue_type": job.queue_type.value},
            )
        return True

    # Terminal transitions

    async def _finish(self, job: JobInfo, status: JobStatus, result: dict[str, Any] | None) -> bool:
        finished = await self._call(
            "complete",
            self._store.complete,
            job.queue_type,
            job.id,
            job.version,
            status,
            result,
        )
        if not finished:
            logger.info(
                "Job already finished or reclaimed elsewhere",
                extra={"job_id": job.id, "queue_type": job.queue_type.value, "status": status.value},
            )
            return False

        job.version += 1
        job.status = status
        if result is not None:
            job.result = result
        self._metrics.record_finished(job.queue_type.value, job.kind.value, status.value)
        return True

    async def complete_job(self, job: JobInfo, result: dict[str, Any] | None = None) -> bool:
        """Mark a leased job completed. A stale version returns False."""
        return await self._finish(job, JobStatus.COMPLETED, result)

    async def fail_job(self, job: JobInfo, error: BaseException | dict[str, Any] | str) -> bool:
        """Mark a leased job permanently failed. A stale version returns False."""
        return await self._finish(job, JobStatus.FAILED, error_payload(error))

    async def cancel_job(self, job: JobInfo, result: dict[str, Any] | None = None) -> bool:
        """Mark a leased job cancelled. A stale version returns False."""
        return await self._finish(job, JobStatus.CANCELLED, result)

    async def requeue_job(
        self,
        job: JobInfo,
        result: dict[str, Any] | None = None,
        delay_seconds: float = 0,
    ) -> bool:
        """Return a leased job to the queue, visible again after ``delay_seconds``."""
        requeued = await self._call(
            "requeue",
            self._store.requeue,
            job.queue_type,
            job.id,
            job.version,
            result=result,
            delay_seconds=delay_seconds,
        )
        if requeued:
            job.version += 1
            job.status = JobStatus.QUEUED
            if result is not None:
                job.result = result
        return requeued

    async def release_job(
        self,
        job: JobInfo,
        error: BaseException | dict[str, Any] | str,
        delay_seconds: float = 0,
    ) -> JobStatus | None:
        """
        Record a transient failure of a leased job.

        The job is requeued with its failure count incremented, keeping any
        saved checkpoint, or failed permanently once the count would exceed
        ``max_failure_count``.

        Returns:
            The new status, or None if the lease was already lost.
        """
        payload = error_payload(error)
        failures = job.failure_count + 1

        if failures > job.max_failure_count:
            payload["failure_count"] = failures
            logger.warning(
                "Retries exhausted, failing job",
                extra={"job_id": job.id, "queue_type": job.queue_type.value, "failures": failures},
            )
            return JobStatus.FAILED if await self.fail_job(job, payload) else None

        result = dict(job.result or {})
        result["last_error"] = payload.get("error")
        requeued = await self._call(
            "requeue",
            self._store.requeue,
            job.queue_type,
            job.id,
            job.version,
            result=result,
            delay_seconds=delay_seconds,
            count_failure=True,
        )
        if not requeued:
            self._metrics.record_lease_lost(job.queue_type.value)
            return None

        job.version += 1
        job.status = JobStatus.QUEUED
        job.failure_count = failures
        job.result = result
        logger.info(
            "Job released for retry",
            extra={"job_id": job.id, "queue_type": job.queue_type.value, "failures": failures},
        )
        return JobStatus.QUEUED

    # Groups

    async def get_job(self, queue_type: QueueType, job_id: int) -> JobInfo:
        """
        Get one job.

        Raises:
            JobNotFoundError: If no such job exists.
        """
        job = await self._call("get_job", self._store.get_job, queue_type, job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found in queue {queue_type}")
        return job

    async def get_group(self, queue_type: QueueType, group_id: int) -> list[JobInfo]:
        """Get every member of a group, ordered by id."""
        return await self._call("get_by_group_id", self._store.get_by_group_id, queue_type, group_id)

    async def cancel_group(self, queue_type: QueueType, group_id: int) -> int:
        """
        Request cancellation of every non-terminal member of a group.

        Advisory only: lease holders observe the flag at their next checkpoint.

        Raises:
            JobNotFoundError: If the group does not exist.
        """
        members = await self.get_group(queue_type, group_id)
        if not members:
            raise JobNotFoundError(f"Group {group_id} not found in queue {queue_type}")
        return await self._call("request_cancel", self._store.request_cancel, queue_type, group_id)

    async def count_active_coordinators(self, queue_type: QueueType) -> int:
        return await self._call(
            "count_active_coordinators",
            self._store.count_active_coordinators,
            queue_type,
        )

    async def refresh_queue_depth(self, queue_type: QueueType) -> dict[str, int]:
        """Read per-status counts and publish them as the queue depth gauge."""
        counts = await self._call("count_by_status", self._store.count_by_status, queue_type)
        self._metrics.update_queue_depth(queue_type.value, counts)
        return counts

    async def get_group_status(self, queue_type: QueueType, group_id: int) -> GroupStatus:
        """
        Build the status view of a group.

        The group's own record is the member whose id equals the group id;
        every other member is a partition.

        Raises:
            JobNotFoundError: If the group does not exist.
        """
        members = await self.get_group(queue_type, group_id)
        if not members:
            raise JobNotFoundError(f"Group {group_id} not found in queue {queue_type}")

        owner = next((m for m in members if m.id == group_id), members[0])
        partitions = [m for m in members if m.id != owner.id]

        counts: dict[str, int] = {}
        for job in partitions:
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        completed = counts.get(JobStatus.COMPLETED.value, 0)
        finished = sum(1 for job in partitions if job.status in TERMINAL_STATUSES)

        errors = [
            {"job_id": job.id, **(job.result or {"error": "unknown error"})}
            for job in partitions
            if job.status == JobStatus.FAILED
        ]
        if not errors and owner.status == JobStatus.FAILED and owner.result:
            errors = [{"job_id": owner.id, **owner.result}]

        progress = f"{completed} of {len(partitions)} partitions complete"
        if finished != completed:
            progress += f", {finished - completed} ended otherwise"

        return GroupStatus(
            group_id=group_id,
            queue_type=queue_type,
            status=owner.status,
            cancel_requested=owner.cancel_requested,
            total=len(partitions),
            completed=completed,
            counts=counts,
            progress=progress,
            errors=errors,
            result=owner.result,
            created_at=owner.created_at,
            ended_at=owner.ended_at,
        )
