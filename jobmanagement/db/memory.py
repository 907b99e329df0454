"""
In-memory job store.

Single-process implementation of the job store contract, used for local
development and tests. Each operation holds one lock for its whole duration,
which plays the role of the SQL backend's single conditional statement.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from jobmanagement.clock import utcnow
from jobmanagement.config import get_settings
from jobmanagement.constants import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobKind,
    JobStatus,
    QueueType,
)
from jobmanagement.db.store import ABANDONED_LEASE_ERROR, definition_hash
from jobmanagement.errors import (
    JobConflictError,
    JobNotFoundError,
    StoreErrorKind,
    TransientStoreError,
)
from jobmanagement.types.job import JobInfo

logger = logging.getLogger(__name__)


class InMemoryJobStore:
    """Job store keeping records in a dict keyed by id."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._settings = get_settings()
        self._records: dict[int, JobInfo] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    def _snapshot(self, record: JobInfo) -> JobInfo:
        # Callers never share mutable state with the store
        return record.model_copy(deep=True)

    def _find(self, queue_type: QueueType, job_id: int) -> JobInfo | None:
        record = self._records.get(job_id)
        if record is None or record.queue_type != queue_type:
            return None
        return record

    async def create_jobs(
        self,
        queue_type: QueueType,
        definitions: Sequence[dict[str, Any]],
        group_id: int | None = None,
        kind: JobKind = JobKind.WORKER,
        max_failure_count: int | None = None,
        force_one_active_group: bool = False,
    ) -> list[JobInfo]:
        if not definitions:
            return []

        now = self._clock()
        limit = (
            max_failure_count
            if max_failure_count is not None
            else self._settings.default_max_failure_count
        )

        async with self._lock:
            active = [
                r for r in self._records.values()
                if r.queue_type == queue_type and r.status in ACTIVE_STATUSES
            ]
            if force_one_active_group and active:
                raise JobConflictError(
                    f"Queue {queue_type} already has {len(active)} active job(s)"
                )

            by_hash: dict[str, JobInfo] = {}
            for record in sorted(active, key=lambda r: r.id):
                if record.kind == kind and (group_id is None or record.group_id == group_id):
                    by_hash.setdefault(record.definition_hash or "", record)

            ordered: list[JobInfo] = []
            new_records: list[JobInfo] = []
            for definition in definitions:
                digest = definition_hash(definition)
                record = by_hash.get(digest)
                if record is None:
                    record = JobInfo(
                        id=self._next_id,
                        queue_type=queue_type,
                        group_id=group_id if group_id is not None else 0,
                        kind=kind,
                        status=JobStatus.QUEUED,
                        definition=dict(definition),
                        definition_hash=digest,
                        version=1,
                        max_failure_count=limit,
                        available_at=now,
                        created_at=now,
                    )
                    self._next_id += 1
                    by_hash[digest] = record
                    new_records.append(record)
                ordered.append(record)

            if new_records:
                first_id = new_records[0].id
                for record in new_records:
                    if group_id is None:
                        record.group_id = first_id
                    self._records[record.id] = record
                logger.info(
                    f"Created {len(new_records)} jobs",
                    extra={
                        "queue_type": queue_type.value,
                        "group_id": new_records[0].group_id,
                        "kind": kind.value,
                    },
                )

            return [self._snapshot(record) for record in ordered]

    def _is_eligible(
        self,
        record: JobInfo,
        now: datetime,
        lease_seconds: float,
        admitted_only: bool,
    ) -> bool:
        if admitted_only and record.kind == JobKind.COORDINATOR and record.started_at is None:
            return False
        if record.status == JobStatus.QUEUED:
            return record.available_at is None or record.available_at <= now
        return record.is_lease_expired(lease_seconds, now)

    def _fail_exhausted_leases(
        self,
        records: list[JobInfo],
        queue_type: QueueType,
        now: datetime,
        lease_seconds: float,
    ) -> int:
        count = 0
        for record in records:
            if (
                record.is_lease_expired(lease_seconds, now)
                and record.failure_count + 1 > record.max_failure_count
            ):
                record.status = JobStatus.FAILED
                record.failure_count += 1
                record.version += 1
                record.ended_at = now
                record.result = {"error": ABANDONED_LEASE_ERROR}
                count += 1
        if count:
            logger.warning(
                f"Failed {count} jobs with exhausted abandoned leases",
                extra={"queue_type": queue_type.value},
            )
        return count

    async def dequeue(
        self,
        queue_type: QueueType,
        lease_seconds: float,
        worker: str | None = None,
        admitted_only: bool = False,
    ) -> JobInfo | None:
        now = self._clock()

        async with self._lock:
            candidates = sorted(
                (r for r in self._records.values() if r.queue_type == queue_type),
                key=lambda r: r.id,
            )
            self._fail_exhausted_leases(candidates, queue_type, now, lease_seconds)

            for record in candidates:
                if not self._is_eligible(record, now, lease_seconds, admitted_only):
                    continue

                if record.status == JobStatus.RUNNING:
                    record.failure_count += 1
                record.status = JobStatus.RUNNING
                record.heartbeat_at = now
                record.worker = worker
                record.version += 1
                if record.started_at is None:
                    record.started_at = now

                logger.info(
                    "Acquired lease",
                    extra={
                        "job_id": record.id,
                        "queue_type": queue_type.value,
                        "worker": worker,
                        "version": record.version,
                    },
                )
                return self._snapshot(record)

        return None

    def _leased(self, queue_type: QueueType, job_id: int, version: int) -> JobInfo | None:
        record = self._find(queue_type, job_id)
        if record is None or record.version != version or record.status != JobStatus.RUNNING:
            logger.debug(
                "Conditional update skipped (stale version)",
                extra={"job_id": job_id, "queue_type": queue_type.value, "version": version},
            )
            return None
        return record

    async def heartbeat(
        self,
        queue_type: QueueType,
        job_id: int,
        version: int,
        result: dict[str, Any] | None = None,
    ) -> bool:
        async with self._lock:
            record = self._leased(queue_type, job_id, version)
            if record is None:
                return False
            record.heartbeat_at = self._clock()
            record.version += 1
            if result is not None:
                record.result = dict(result)
            return True

    async def complete(
        self,
        queue_type: QueueType,
        job_id: int,
        version: int,
        status: JobStatus,
        result: dict[str, Any] | None = None,
    ) -> bool:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")

        async with self._lock:
            record = self._leased(queue_type, job_id, version)
            if record is None:
                return False
            now = self._clock()
            record.status = status
            record.ended_at = now
            record.heartbeat_at = now
            record.version += 1
            if result is not None:
                record.result = dict(result)

        logger.info(
            "Job completed",
            extra={"job_id": job_id, "queue_type": queue_type.value, "status": status.value},
        )
        return True

    async def requeue(
        self,
        queue_type: QueueType,
        job_id: int,
        version: int,
        result: dict[str, Any] | None = None,
        delay_seconds: float = 0,
        count_failure: bool = False,
    ) -> bool:
        async with self._lock:
            record = self._leased(queue_type, job_id, version)
            if record is None:
                return False
            record.status = JobStatus.QUEUED
            record.available_at = self._clock() + timedelta(seconds=delay_seconds)
            record.version += 1
            if count_failure:
                record.failure_count += 1
            if result is not None:
                record.result = dict(result)
            return True

    async def get_job(self, queue_type: QueueType, job_id: int) -> JobInfo | None:
        async with self._lock:
            record = self._find(queue_type, job_id)
            return self._snapshot(record) if record is not None else None

    async def get_by_group_id(self, queue_type: QueueType, group_id: int) -> list[JobInfo]:
        async with self._lock:
            members = [
                r for r in self._records.values()
                if r.queue_type == queue_type and r.group_id == group_id
            ]
            return [self._snapshot(r) for r in sorted(members, key=lambda r: r.id)]

    async def request_cancel(self, queue_type: QueueType, group_id: int) -> int:
        count = 0
        async with self._lock:
            for record in self._records.values():
                if (
                    record.queue_type == queue_type
                    and record.group_id == group_id
                    and record.status not in TERMINAL_STATUSES
                ):
                    record.cancel_requested = True
                    count += 1

        logger.info(
            f"Cancellation requested for {count} jobs",
            extra={"queue_type": queue_type.value, "group_id": group_id},
        )
        return count

    async def count_active_coordinators(self, queue_type: QueueType) -> int:
        async with self._lock:
            return sum(
                1
                for r in self._records.values()
                if r.queue_type == queue_type
                and r.kind == JobKind.COORDINATOR
                and r.status in ACTIVE_STATUSES
                and r.started_at is not None
            )

    async def count_by_status(self, queue_type: QueueType) -> dict[str, int]:
        counts: dict[str, int] = {}
        async with self._lock:
            for record in self._records.values():
                if record.queue_type == queue_type:
                    counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts

    def classify_error(self, exc: BaseException) -> StoreErrorKind:
        if isinstance(exc, (TransientStoreError, ConnectionError, TimeoutError)):
            return StoreErrorKind.TRANSIENT
        if isinstance(exc, (JobNotFoundError, KeyError)):
            return StoreErrorKind.NOT_FOUND
        return StoreErrorKind.FATAL
