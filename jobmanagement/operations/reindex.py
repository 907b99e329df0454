"""
Reindex operation.

Re-extracts search parameters for every resource, one surrogate-id range per
partition, in batches with a checkpoint after each batch.
"""

import logging
from typing import Any, Protocol

from jobmanagement.errors import PlanningFailure
from jobmanagement.operations.ranges import split_id_range
from jobmanagement.types.job import JobContext, JobInfo

logger = logging.getLogger(__name__)


class SearchIndexer(Protocol):
    """Search index maintenance for stored resources."""

    async def resource_types(self) -> list[str]:
        ...

    async def id_range(self, resource_type: str) -> tuple[int, int] | None:
        ...

    async def reindex(
        self,
        resource_type: str,
        start_id: int,
        end_id: int,
        limit: int,
        search_parameters: list[str] | None = None,
    ) -> tuple[int, int | None]:
        """
        Reindex up to ``limit`` resources with ids in ``[start_id, end_id]``.

        Returns:
            ``(count, last_id)``; ``last_id`` is None when nothing was left.
        """
        ...


class ReindexPlanner:
    """Split a reindex request into id-range partitions per resource type."""

    def __init__(self, indexer: SearchIndexer, range_size: int):
        self._indexer = indexer
        self._range_size = range_size

    async def plan(self, definition: dict[str, Any]) -> list[dict[str, Any]]:
        resource_types = definition.get("resource_types") or await self._indexer.resource_types()
        search_parameters = definition.get("search_parameters")
        if search_parameters is not None and not isinstance(search_parameters, list):
            raise PlanningFailure("search_parameters must be a list")

        partitions = []
        for resource_type in resource_types:
            bounds = await self._indexer.id_range(resource_type)
            if bounds is None:
                continue
            for start_id, end_id in split_id_range(bounds[0], bounds[1], self._range_size):
                partition: dict[str, Any] = {
                    "resource_type": resource_type,
                    "start_id": start_id,
                    "end_id": end_id,
                }
                if search_parameters:
                    partition["search_parameters"] = search_parameters
                partitions.append(partition)
        return partitions


class ReindexExecutor:
    def __init__(self, indexer: SearchIndexer, batch_size: int):
        self._indexer = indexer
        self._batch_size = batch_size

    async def execute(self, context: JobContext) -> dict[str, Any]:
        partition = context.partition
        resource_type = partition["resource_type"]
        end_id = partition["end_id"]

        state = context.checkpoint_state or {}
        next_id = state.get("last_id", partition["start_id"] - 1) + 1
        total = state.get("count", 0)

        while next_id <= end_id:
            count, last_id = await self._indexer.reindex(
                resource_type,
                next_id,
                end_id,
                self._batch_size,
                partition.get("search_parameters"),
            )
            if last_id is None or count == 0:
                break
            total += count
            next_id = last_id + 1
            await context.checkpoint({"last_id": last_id, "count": total})

        logger.info(
            f"Reindexed {total} resources",
            extra={"job_id": context.job.id, "resource_type": resource_type},
        )
        return {
            "resource_type": resource_type,
            "start_id": partition["start_id"],
            "end_id": end_id,
            "count": total,
        }


def aggregate_reindex(children: list[JobInfo]) -> dict[str, Any]:
    """Sum reindexed resources per type."""
    counts: dict[str, int] = {}
    for child in children:
        result = child.result or {}
        resource_type = result.get("resource_type", "unknown")
        counts[resource_type] = counts.get(resource_type, 0) + result.get("count", 0)
    return {"reindexed": counts, "total": sum(counts.values())}
