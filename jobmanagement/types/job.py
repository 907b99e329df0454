"""
Job-related type definitions for internal use.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict

from jobmanagement.constants import (
    DEFAULT_MAX_FAILURE_COUNT,
    TERMINAL_STATUSES,
    JobKind,
    JobStatus,
    QueueType,
)
from jobmanagement.errors import JobCancelledError, LeaseLostError


class JobInfo(BaseModel):
    """
    Snapshot of one persisted job record.

    Returned by every store operation. The ``version`` field is the caller's
    handle for compare-and-swap writes; it goes stale as soon as anyone else
    mutates the record.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    queue_type: QueueType
    group_id: int
    kind: JobKind = JobKind.WORKER
    status: JobStatus
    definition: dict[str, Any]
    definition_hash: str | None = None
    result: dict[str, Any] | None = None
    version: int
    heartbeat_at: datetime | None = None
    cancel_requested: bool = False
    failure_count: int = 0
    max_failure_count: int = DEFAULT_MAX_FAILURE_COUNT
    worker: str | None = None
    available_at: datetime | None = None
    created_at: datetime
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached a final status."""
        return self.status in TERMINAL_STATUSES

    @property
    def is_coordinator(self) -> bool:
        """Check if this job plans and monitors a group."""
        return self.kind == JobKind.COORDINATOR

    def is_lease_expired(self, lease_seconds: float, now: datetime) -> bool:
        """Check if a running job stopped heartbeating for longer than the lease."""
        if self.status != JobStatus.RUNNING or self.heartbeat_at is None:
            return False
        return now - self.heartbeat_at > timedelta(seconds=lease_seconds)


@dataclass
class BackoffPolicy:
    """
    Exponential backoff with jitter for polling an empty queue.

    The delay for attempt ``n`` (0-based) is ``initial * multiplier**n``,
    capped at ``maximum`` and scaled by a random factor in
    ``[1 - jitter, 1 + jitter]`` to avoid convoys of pollers.
    """

    initial_seconds: float = 1.0
    maximum_seconds: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def delay(self, attempt: int) -> float:
        """Get the sleep duration before the next poll."""
        base = min(self.maximum_seconds, self.initial_seconds * (self.multiplier ** attempt))
        if self.jitter <= 0:
            return base
        return base * random.uniform(1 - self.jitter, 1 + self.jitter)


# Renews the lease, optionally persisting a checkpoint. Returns False when lost.
HeartbeatFn = Callable[[dict[str, Any] | None], Awaitable[bool]]


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.

    Wraps the leased job and serializes every lease renewal, whether it comes
    from the host's heartbeat task or from a checkpoint, so the local version
    always matches the stored one.
    """

    job: JobInfo
    worker: str
    renew_lease: HeartbeatFn
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def partition(self) -> dict[str, Any]:
        """The partition or request description of this job."""
        return self.job.definition

    @property
    def checkpoint_state(self) -> dict[str, Any] | None:
        """Progress saved by a previous attempt, if any."""
        if not self.job.result:
            return None
        return self.job.result.get("checkpoint")

    @property
    def cancel_requested(self) -> bool:
        """Check if cancellation was observed for this job."""
        return self.job.cancel_requested

    @property
    def lock(self) -> asyncio.Lock:
        """Lock that every write made under this lease must hold."""
        return self._lock

    async def heartbeat(self, result: dict[str, Any] | None = None) -> bool:
        """
        Renew the lease.

        Args:
            result: Optional payload to persist into the job result.

        Returns:
            True if the lease is still held, False if it was lost.
        """
        async with self._lock:
            if self.job.status != JobStatus.RUNNING:
                return False
            return await self.renew_lease(result)

    async def checkpoint(self, state: dict[str, Any] | None = None) -> None:
        """
        Cooperative checkpoint for executors.

        Persists ``state`` so a retried attempt can resume from it, then
        checks the lease and the cancellation flag.

        Raises:
            LeaseLostError: If another worker reclaimed the job.
            JobCancelledError: If cancellation was requested.
        """
        result = {"checkpoint": state} if state is not None else None
        if not await self.heartbeat(result):
            raise LeaseLostError(f"Lease lost for job {self.job.id}")
        if self.job.cancel_requested:
            raise JobCancelledError(f"Cancellation requested for job {self.job.id}")
