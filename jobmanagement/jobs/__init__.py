"""
Jobs module.
Contains the operation registry and the coordinator and worker job handlers.
"""

from collections.abc import Awaitable, Callable

from jobmanagement.constants import JobKind
from jobmanagement.jobs.coordinator import CoordinatorJob
from jobmanagement.jobs.processing import WorkerJob
from jobmanagement.jobs.registry import (
    Aggregator,
    Executor,
    Operation,
    OperationRegistry,
    Planner,
    default_aggregate,
)
from jobmanagement.queue.client import QueueClient
from jobmanagement.types.job import JobContext

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[None]]


def build_handlers(
    client: QueueClient,
    registry: OperationRegistry,
    poll_interval_seconds: float,
) -> dict[JobKind, JobHandler]:
    """Map each job kind to the handler that runs it."""
    return {
        JobKind.COORDINATOR: CoordinatorJob(client, registry, poll_interval_seconds).run,
        JobKind.WORKER: WorkerJob(client, registry).run,
    }


__all__ = [
    "Planner",
    "Executor",
    "Aggregator",
    "Operation",
    "OperationRegistry",
    "default_aggregate",
    "CoordinatorJob",
    "WorkerJob",
    "JobHandler",
    "build_handlers",
]
