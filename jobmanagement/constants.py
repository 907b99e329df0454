"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class QueueType(StrEnum):
    """Operation family a job belongs to. Each family is polled independently."""

    EXPORT = "export"
    REINDEX = "reindex"
    IMPORT = "import"


class JobKind(StrEnum):
    """Discriminator used to dispatch a dequeued job to its handler."""

    COORDINATOR = "coordinator"
    WORKER = "worker"


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - QUEUED -> RUNNING (dequeue, lease acquired)
    - RUNNING -> RUNNING (heartbeat, abandoned lease reclaimed by dequeue)
    - RUNNING -> QUEUED (requeue: coordinator poll, transient failure)
    - RUNNING -> COMPLETED | FAILED | CANCELLED (terminal, immutable)
    - RUNNING -> FAILED (abandoned too many times)
    """

    CREATED = "created"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)
ACTIVE_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})

# Default values
DEFAULT_MAX_FAILURE_COUNT = 3
DEFAULT_LEASE_SECONDS = 600
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 60.0
DEFAULT_COORDINATOR_POLL_SECONDS = 60.0

# Dequeue retries when a candidate row was taken by a concurrent caller
DEQUEUE_CAS_ATTEMPTS = 5

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_ACQUIRED = "lease_acquired_total"
METRIC_LEASE_LOST = "lease_lost_total"
METRIC_ADMISSION_DEFERRED = "admission_deferred_total"
METRIC_API_REQUESTS = "api_requests_total"

# Trace span names
SPAN_DEQUEUE_JOB = "dequeue_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_PLAN_PARTITIONS = "plan_partitions"
