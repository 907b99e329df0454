"""
Bulk export operation.

The planner splits each resource type's surrogate-id window into fixed-size
ranges; each partition streams its range to one NDJSON file. Files are
written as numbered parts and committed at the end, so a retried partition
overwrites the parts it already wrote instead of duplicating lines.
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

from jobmanagement.errors import PlanningFailure
from jobmanagement.operations.ranges import split_id_range
from jobmanagement.types.job import JobContext, JobInfo

logger = logging.getLogger(__name__)


class ResourceReader(Protocol):
    """Read access to stored resources by surrogate id."""

    async def resource_types(self) -> list[str]:
        """All resource types present in the store."""
        ...

    async def id_range(
        self,
        resource_type: str,
        since: str | None = None,
        till: str | None = None,
    ) -> tuple[int, int] | None:
        """Lowest and highest surrogate id last updated in ``[since, till]``."""
        ...

    def read_range(
        self,
        resource_type: str,
        start_id: int,
        end_id: int,
    ) -> AsyncIterator[tuple[int, dict[str, Any]]]:
        """Yield ``(surrogate_id, resource)`` in ascending id order."""
        ...


class ExportDestination(Protocol):
    """Output storage for export files."""

    async def write_part(self, file_name: str, part: int, data: str) -> None:
        """Stage part ``part`` of a file, replacing any earlier write of it."""
        ...

    async def commit(self, file_name: str, parts: int) -> str:
        """Assemble parts ``0..parts-1`` into the file and return its location."""
        ...


def export_file_name(group_id: int, resource_type: str, start_id: int, end_id: int) -> str:
    return f"{group_id}/{resource_type}-{start_id}-{end_id}.ndjson"


class ExportPlanner:
    """Split an export request into surrogate-id range partitions."""

    def __init__(self, reader: ResourceReader, range_size: int):
        self._reader = reader
        self._range_size = range_size

    async def plan(self, definition: dict[str, Any]) -> list[dict[str, Any]]:
        resource_types = definition.get("resource_types")
        if resource_types is not None and not isinstance(resource_types, list):
            raise PlanningFailure("resource_types must be a list")
        if not resource_types:
            resource_types = await self._reader.resource_types()

        since = definition.get("since")
        till = definition.get("till")
        range_size = int(definition.get("range_size") or self._range_size)

        partitions = []
        for resource_type in resource_types:
            bounds = await self._reader.id_range(resource_type, since=since, till=till)
            if bounds is None:
                continue
            for start_id, end_id in split_id_range(bounds[0], bounds[1], range_size):
                partitions.append(
                    {
                        "resource_type": resource_type,
                        "start_id": start_id,
                        "end_id": end_id,
                    }
                )
        return partitions


class ExportExecutor:
    """Write one surrogate-id range of one resource type to an NDJSON file."""

    def __init__(
        self,
        reader: ResourceReader,
        destination: ExportDestination,
        batch_size: int,
    ):
        self._reader = reader
        self._destination = destination
        self._batch_size = batch_size

    async def execute(self, context: JobContext) -> dict[str, Any]:
        partition = context.partition
        resource_type = partition["resource_type"]
        start_id = partition["start_id"]
        end_id = partition["end_id"]
        file_name = export_file_name(context.job.group_id, resource_type, start_id, end_id)

        state = context.checkpoint_state or {}
        next_id = state.get("last_id", start_id - 1) + 1
        part = state.get("parts", 0)
        count = state.get("count", 0)

        batch: list[str] = []
        last_id = next_id - 1
        async for surrogate_id, resource in self._reader.read_range(resource_type, next_id, end_id):
            batch.append(json.dumps(resource, separators=(",", ":")))
            last_id = surrogate_id
            if len(batch) >= self._batch_size:
                await self._destination.write_part(file_name, part, "\n".join(batch) + "\n")
                part += 1
                count += len(batch)
                batch = []
                await context.checkpoint({"last_id": last_id, "parts": part, "count": count})

        if batch:
            await self._destination.write_part(file_name, part, "\n".join(batch) + "\n")
            part += 1
            count += len(batch)

        url = await self._destination.commit(file_name, part) if part else None
        logger.info(
            f"Exported {count} resources",
            extra={"job_id": context.job.id, "resource_type": resource_type},
        )
        return {
            "resource_type": resource_type,
            "start_id": start_id,
            "end_id": end_id,
            "count": count,
            "url": url,
        }


def aggregate_export(children: list[JobInfo]) -> dict[str, Any]:
    """List output files per resource type, in partition order."""
    output: dict[str, list[dict[str, Any]]] = {}
    total = 0
    for child in children:
        result = child.result or {}
        count = result.get("count", 0)
        total += count
        if result.get("url"):
            output.setdefault(result["resource_type"], []).append(
                {"url": result["url"], "count": count}
            )
    return {"output": output, "exported": total}
