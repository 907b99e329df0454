"""
Operation registry.

An operation pairs a planner, which splits a request into partition
definitions, with an executor, which processes one partition. The host looks
operations up by queue type.

Executors must be idempotent: a partition may run more than once after a
crash or a lost lease, so output is written overwrite-by-key.
"""

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from jobmanagement.constants import QueueType
from jobmanagement.types.job import JobContext, JobInfo

logger = logging.getLogger(__name__)


@runtime_checkable
class Planner(Protocol):
    """Splits an operation request into partition definitions."""

    async def plan(self, definition: dict[str, Any]) -> list[dict[str, Any]]:
        ...


@runtime_checkable
class Executor(Protocol):
    """
    Processes one partition.

    Raises ``PartitionFailure`` for permanent domain failures; any other
    exception is treated as transient and retried.
    """

    async def execute(self, context: JobContext) -> dict[str, Any]:
        ...


# Builds the coordinator result from its terminal, successful children
Aggregator = Callable[[list[JobInfo]], dict[str, Any]]


def default_aggregate(children: list[JobInfo]) -> dict[str, Any]:
    """Collect child results in partition order."""
    return {
        "partitions": len(children),
        "results": [child.result or {} for child in children],
    }


@dataclass
class Operation:
    """A registered long-running operation."""

    planner: Planner
    executor: Executor
    aggregate: Aggregator = field(default=default_aggregate)
    max_failure_count: int | None = None


class OperationRegistry:
    """Operations keyed by queue type."""

    def __init__(self) -> None:
        self._operations: dict[QueueType, Operation] = {}

    def register(self, queue_type: QueueType, operation: Operation) -> None:
        """
        Register an operation.

        Raises:
            ValueError: If the queue type already has an operation.
        """
        if queue_type in self._operations:
            raise ValueError(f"An operation is already registered for {queue_type}")
        self._operations[queue_type] = operation
        logger.info(f"Registered operation for queue type: {queue_type.value}")

    def get(self, queue_type: QueueType) -> Operation | None:
        return self._operations.get(queue_type)

    @property
    def queue_types(self) -> list[QueueType]:
        return list(self._operations)

    def __contains__(self, queue_type: object) -> bool:
        return queue_type in self._operations

    def __iter__(self) -> Iterator[QueueType]:
        return iter(self._operations)

    def __len__(self) -> int:
        return len(self._operations)
