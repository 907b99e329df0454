"""
SQLAlchemy database models.
Defines the job queue table.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobmanagement.constants import DEFAULT_MAX_FAILURE_COUNT, JobKind, JobStatus, QueueType

# BIGINT on real databases, INTEGER on SQLite so the rowid autoincrements
JobId = BigInteger().with_variant(Integer, "sqlite")
JsonPayload = JSON().with_variant(JSONB, "postgresql")


def _enum(enum_cls: type, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        create_constraint=True,
        values_callable=lambda x: [e.value for e in x],
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class JobRecord(Base):
    """
    One schedulable unit of work.

    This is the authoritative source of truth for job state. Every mutation
    made by a lease holder is a conditional update on ``version``; the table
    is the only coordination point between worker processes.

    Key constraints:
    - ``id`` is unique, so it is unique within every queue type
    - a coordinator's ``group_id`` equals its ``id``; children share it
    - terminal rows (completed, failed, cancelled) are never updated again
    """

    __tablename__ = "job_queue"

    id: Mapped[int] = mapped_column(JobId, primary_key=True, autoincrement=True)

    queue_type: Mapped[QueueType] = mapped_column(_enum(QueueType, "queue_type"), nullable=False)
    group_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[JobKind] = mapped_column(
        _enum(JobKind, "job_kind"),
        nullable=False,
        default=JobKind.WORKER,
    )

    status: Mapped[JobStatus] = mapped_column(
        _enum(JobStatus, "job_status"),
        nullable=False,
        default=JobStatus.QUEUED,
    )

    # Payloads
    definition: Mapped[dict[str, Any]] = mapped_column(JsonPayload, nullable=False, default=dict)
    definition_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    result: Mapped[dict[str, Any] | None] = mapped_column(JsonPayload, nullable=True)

    # Optimistic concurrency
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)

    # Lease management
    worker: Mapped[str | None] = mapped_column(String(255), nullable=True)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    available_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Retry tracking
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_failure_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_FAILURE_COUNT,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # Dequeue scan
        Index("ix_job_queue_queue_type_status", "queue_type", "status"),
        # Aggregation queries
        Index("ix_job_queue_group_id", "group_id"),
        # Idempotent submission lookups
        Index("ix_job_queue_definition_hash", "queue_type", "definition_hash"),
    )

    def __repr__(self) -> str:
        return (
            f"JobRecord(id={self.id}, queue={self.queue_type}, group={self.group_id}, "
            f"status={self.status}, version={self.version})"
        )
