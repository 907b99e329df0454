"""
SQL job store.
Implements the job store contract with conditional updates on the job queue table.
"""

import logging
from collections.abc import AsyncGenerator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, case, exists, func, or_, select, update
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased
from sqlalchemy.orm.exc import StaleDataError

from jobmanagement.clock import utcnow
from jobmanagement.config import get_settings
from jobmanagement.constants import (
    ACTIVE_STATUSES,
    DEQUEUE_CAS_ATTEMPTS,
    TERMINAL_STATUSES,
    JobKind,
    JobStatus,
    QueueType,
)
from jobmanagement.db.models import JobRecord
from jobmanagement.db.store import ABANDONED_LEASE_ERROR, definition_hash
from jobmanagement.errors import JobConflictError, StoreErrorKind
from jobmanagement.types.job import JobInfo

logger = logging.getLogger(__name__)

# SQLSTATE codes worth retrying: serialization failure, deadlock, lock timeout
_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}


class SqlJobStore:
    """
    Job store backed by a relational table.

    Every operation runs in its own short transaction. Mutual exclusion comes
    from single-statement conditional updates:
    - dequeue is ``UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED)``
      with the eligibility predicate repeated in the outer statement
    - heartbeat, complete and requeue are ``UPDATE ... WHERE version = :v``
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the store.

        Args:
            session_factory: Factory for async database sessions.
            clock: Time source, naive UTC.
        """
        self._session_factory = session_factory
        self._clock = clock
        self._settings = get_settings()

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession]:
        async with self._session_factory() as session:
            async with session.begin():
                yield session

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
        Atomically insert sibling jobs.

        Args:
            queue_type: The queue the jobs belong to.
            definitions: One definition per job.
            group_id: Existing group to join. Defaults to the first new job's id.
            kind: Coordinator or worker.
            max_failure_count: Retry limit. Defaults to the configured value.
            force_one_active_group: Reject if the queue already has active jobs.

        Returns:
            One JobInfo per definition, in order.
        """
        if not definitions:
            return []

        now = self._clock()
        limit = (
            max_failure_count
            if max_failure_count is not None
            else self._settings.default_max_failure_count
        )
        hashes = [definition_hash(d) for d in definitions]

        async with self._transaction() as session:
            if force_one_active_group:
                active = await session.scalar(
                    select(func.count()).select_from(JobRecord).where(
                        JobRecord.queue_type == queue_type,
                        JobRecord.status.in_(ACTIVE_STATUSES),
                    )
                )
                if active:
                    raise JobConflictError(
                        f"Queue {queue_type} already has {active} active job(s)"
                    )

            filters = [
                JobRecord.queue_type == queue_type,
                JobRecord.definition_hash.in_(list(dict.fromkeys(hashes))),
                JobRecord.kind == kind,
                JobRecord.status.in_(ACTIVE_STATUSES),
            ]
            if group_id is not None:
                filters.append(JobRecord.group_id == group_id)
            existing = (
                await session.execute(select(JobRecord).where(*filters).order_by(JobRecord.id))
            ).scalars().all()
            by_hash: dict[str, JobRecord] = {}
            for record in existing:
                by_hash.setdefault(record.definition_hash, record)

            ordered: list[JobRecord] = []
            new_records: list[JobRecord] = []
            for definition, digest in zip(definitions, hashes):
                record = by_hash.get(digest)
                if record is None:
                    record = JobRecord(
                        queue_type=queue_type,
                        group_id=group_id if group_id is not None else 0,
                        kind=kind,
                        status=JobStatus.QUEUED,
                        definition=definition,
                        definition_hash=digest,
                        result=None,
                        version=1,
                        worker=None,
                        heartbeat_at=None,
                        started_at=None,
                        ended_at=None,
                        cancel_requested=False,
                        failure_count=0,
                        max_failure_count=limit,
                        available_at=now,
                        created_at=now,
                    )
                    by_hash[digest] = record
                    new_records.append(record)
                ordered.append(record)

            if new_records:
                first = new_records[0]
                session.add(first)
                await session.flush()
                if group_id is None:
                    for record in new_records:
                        record.group_id = first.id
                session.add_all(new_records[1:])
                await session.flush()

                logger.info(
                    f"Created {len(new_records)} jobs",
                    extra={
                        "queue_type": queue_type.value,
                        "group_id": first.group_id,
                        "kind": kind.value,
                    },
                )
            else:
                logger.info(
                    "Returned existing jobs (idempotent)",
                    extra={"queue_type": queue_type.value, "group_id": ordered[0].group_id},
                )

            return [JobInfo.model_validate(record) for record in ordered]

    def _eligible(
        self,
        entity: Any,
        queue_type: QueueType,
        now: datetime,
        cutoff: datetime,
        admitted_only: bool,
    ) -> Any:
        condition = and_(
            entity.queue_type == queue_type,
            or_(
                and_(
                    entity.status == JobStatus.QUEUED,
                    or_(entity.available_at.is_(None), entity.available_at <= now),
                ),
                and_(
                    entity.status == JobStatus.RUNNING,
                    entity.heartbeat_at < cutoff,
                ),
            ),
        )
        if admitted_only:
            condition = and_(
                condition,
                or_(entity.kind == JobKind.WORKER, entity.started_at.is_not(None)),
            )
        return condition

    async def _fail_exhausted_leases(
        self,
        session: AsyncSession,
        queue_type: QueueType,
        now: datetime,
        cutoff: datetime,
    ) -> int:
        stmt = (
            update(JobRecord)
            .where(
                JobRecord.queue_type == queue_type,
                JobRecord.status == JobStatus.RUNNING,
                JobRecord.heartbeat_at < cutoff,
                JobRecord.failure_count + 1 > JobRecord.max_failure_count,
            )
            .values(
                status=JobStatus.FAILED,
                failure_count=JobRecord.failure_count + 1,
                version=JobRecord.version + 1,
                ended_at=now,
                result={"error": ABANDONED_LEASE_ERROR},
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        count = result.rowcount
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
        """
        Lease the oldest eligible job.

        Args:
            queue_type: The queue to poll.
            lease_seconds: Heartbeat silence after which a running job is abandoned.
            worker: Name recorded as the lease holder.
            admitted_only: Skip coordinators that never started.

        Returns:
            The leased job, or None if nothing is eligible.
        """
        now = self._clock()
        cutoff = now - timedelta(seconds=lease_seconds)
        eligible = self._eligible(JobRecord, queue_type, now, cutoff, admitted_only)
        # Aliased so the subquery is not correlated to the outer UPDATE
        picked = aliased(JobRecord, name="picked")
        pick_eligible = self._eligible(picked, queue_type, now, cutoff, admitted_only)

        async with self._transaction() as session:
            await self._fail_exhausted_leases(session, queue_type, now, cutoff)

            for _ in range(DEQUEUE_CAS_ATTEMPTS):
                candidate = (
                    select(picked.id)
                    .where(pick_eligible)
                    .order_by(picked.id)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                    .scalar_subquery()
                )
                stmt = (
                    update(JobRecord)
                    .where(JobRecord.id == candidate, eligible)
                    .values(
                        status=JobStatus.RUNNING,
                        heartbeat_at=now,
                        worker=worker,
                        version=JobRecord.version + 1,
                        started_at=func.coalesce(JobRecord.started_at, now),
                        failure_count=JobRecord.failure_count
                        + case((JobRecord.status == JobStatus.RUNNING, 1), else_=0),
                    )
                    .returning(JobRecord)
                    .execution_options(synchronize_session=False, populate_existing=True)
                )
                record = (await session.execute(stmt)).scalars().first()
                if record is not None:
                    job = JobInfo.model_validate(record)
                    logger.info(
                        "Acquired lease",
                        extra={
                            "job_id": job.id,
                            "queue_type": queue_type.value,
                            "worker": worker,
                            "version": job.version,
                        },
                    )
                    return job

                # A concurrent caller took the candidate; retry only if work remains
                remaining = await session.scalar(select(exists().where(eligible)))
                if not remaining:
                    return None

        return None

    async def heartbeat(
        self,
        queue_type: QueueType,
        job_id: int,
        version: int,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """
        Renew the lease on a running job (compare-and-swap on version).

        Returns:
            True if renewed, False if the version is stale or the job is not running.
        """
        values: dict[str, Any] = {
            "heartbeat_at": self._clock(),
            "version": JobRecord.version + 1,
        }
        if result is not None:
            values["result"] = result
        return await self._conditional_update(queue_type, job_id, version, values)

    async def complete(
        self,
        queue_type: QueueType,
        job_id: int,
        version: int,
        status: JobStatus,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """
        Move a running job to a terminal status (compare-and-swap on version).

        Returns:
            True if completed, False if the version is stale or the job is not running.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")

        now = self._clock()
        values: dict[str, Any] = {
            "status": status,
            "ended_at": now,
            "heartbeat_at": now,
            "version": JobRecord.version + 1,
        }
        if result is not None:
            values["result"] = result
        completed = await self._conditional_update(queue_type, job_id, version, values)
        if completed:
            logger.info(
                "Job completed",
                extra={"job_id": job_id, "queue_type": queue_type.value, "status": status.value},
            )
        return completed

    async def requeue(
        self,
        queue_type: QueueType,
        job_id: int,
        version: int,
        result: dict[str, Any] | None = None,
        delay_seconds: float = 0,
        count_failure: bool = False,
    ) -> bool:
        """
        Release a running job back to the queue (compare-and-swap on version).

        Returns:
            True if requeued, False if the version is stale or the job is not running.
        """
        values: dict[str, Any] = {
            "status": JobStatus.QUEUED,
            "available_at": self._clock() + timedelta(seconds=delay_seconds),
            "version": JobRecord.version + 1,
        }
        if count_failure:
            values["failure_count"] = JobRecord.failure_count + 1
        if result is not None:
            values["result"] = result
        return await self._conditional_update(queue_type, job_id, version, values)

    async def _conditional_update(
        self,
        queue_type: QueueType,
        job_id: int,
        version: int,
        values: dict[str, Any],
    ) -> bool:
        stmt = (
            update(JobRecord)
            .where(
                JobRecord.queue_type == queue_type,
                JobRecord.id == job_id,
                JobRecord.version == version,
                JobRecord.status == JobStatus.RUNNING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            updated = result.rowcount == 1

        if not updated:
            logger.debug(
                "Conditional update skipped (stale version)",
                extra={"job_id": job_id, "queue_type": queue_type.value, "version": version},
            )
        return updated

    async def get_job(self, queue_type: QueueType, job_id: int) -> JobInfo | None:
        """
        Get a job by ID.

        Returns:
            The job or None if not found.
        """
        stmt = select(JobRecord).where(
            JobRecord.queue_type == queue_type,
            JobRecord.id == job_id,
        )
        async with self._transaction() as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            return JobInfo.model_validate(record) if record is not None else None

    async def get_by_group_id(self, queue_type: QueueType, group_id: int) -> list[JobInfo]:
        """Get every member of a group, ordered by id."""
        stmt = (
            select(JobRecord)
            .where(JobRecord.queue_type == queue_type, JobRecord.group_id == group_id)
            .order_by(JobRecord.id)
        )
        async with self._transaction() as session:
            records = (await session.execute(stmt)).scalars().all()
            return [JobInfo.model_validate(record) for record in records]

    async def request_cancel(self, queue_type: QueueType, group_id: int) -> int:
        """
        Flag all non-terminal members of a group for cancellation.

        The flag is advisory and leaves ``version`` untouched so the current
        lease holder keeps its lease and observes the request at its next
        checkpoint.

        Returns:
            Number of jobs flagged.
        """
        stmt = (
            update(JobRecord)
            .where(
                JobRecord.queue_type == queue_type,
                JobRecord.group_id == group_id,
                JobRecord.status.not_in(TERMINAL_STATUSES),
            )
            .values(cancel_requested=True)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            count = result.rowcount

        logger.info(
            f"Cancellation requested for {count} jobs",
            extra={"queue_type": queue_type.value, "group_id": group_id},
        )
        return count

    async def count_active_coordinators(self, queue_type: QueueType) -> int:
        """Count coordinators that started and are not terminal."""
        stmt = select(func.count()).select_from(JobRecord).where(
            JobRecord.queue_type == queue_type,
            JobRecord.kind == JobKind.COORDINATOR,
            JobRecord.status.in_(ACTIVE_STATUSES),
            JobRecord.started_at.is_not(None),
        )
        async with self._transaction() as session:
            return (await session.scalar(stmt)) or 0

    async def count_by_status(self, queue_type: QueueType) -> dict[str, int]:
        """
        Get job statistics by status.

        Returns:
            Dictionary of status -> count.
        """
        stmt = (
            select(JobRecord.status, func.count())
            .where(JobRecord.queue_type == queue_type)
            .group_by(JobRecord.status)
        )
        async with self._transaction() as session:
            rows = (await session.execute(stmt)).all()
            return {status.value: count for status, count in rows}

    def classify_error(self, exc: BaseException) -> StoreErrorKind:
        """
        Map SQLAlchemy and driver exceptions to a store error kind.

        Args:
            exc: The raised exception.

        Returns:
            The error kind.
        """
        if isinstance(exc, sa_exc.NoResultFound):
            return StoreErrorKind.NOT_FOUND
        if isinstance(exc, StaleDataError):
            return StoreErrorKind.VERSION_CONFLICT
        if isinstance(exc, sa_exc.TimeoutError):
            return StoreErrorKind.TRANSIENT
        if isinstance(exc, sa_exc.DBAPIError):
            sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
            if exc.connection_invalidated or sqlstate in _TRANSIENT_SQLSTATES:
                return StoreErrorKind.TRANSIENT
            if isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError)):
                return StoreErrorKind.TRANSIENT
            return StoreErrorKind.FATAL
        if isinstance(exc, (ConnectionError, TimeoutError)):
            return StoreErrorKind.TRANSIENT
        return StoreErrorKind.FATAL
