"""
Bulk import operation.

Each input file is split into fixed-size byte ranges; a partition parses the
NDJSON lines that start in its range and upserts them. Upserts are keyed by
resource id, so replaying a range after a retry is harmless.
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

from jobmanagement.errors import PartitionFailure, PlanningFailure
from jobmanagement.operations.ranges import split_byte_range
from jobmanagement.types.job import JobContext, JobInfo

logger = logging.getLogger(__name__)

# Per-partition cap on stored line errors
MAX_REPORTED_ERRORS = 100


class ImportSource(Protocol):
    """Read access to NDJSON input files."""

    async def size(self, url: str) -> int:
        """Length of the file in bytes."""
        ...

    def read_lines(self, url: str, offset: int, length: int) -> AsyncIterator[tuple[int, str]]:
        """
        Yield ``(next_offset, line)`` for every line starting in ``[offset, offset + length)``.

        A line starts at byte 0 or right after a newline; the last line may
        extend past the range. ``next_offset`` is the byte after the line.
        """
        ...


class ResourceWriter(Protocol):
    async def upsert(self, resources: list[dict[str, Any]]) -> int:
        """Create or replace resources by id, returning how many were written."""
        ...


class ImportPlanner:
    """Split every input file into byte ranges."""

    def __init__(self, source: ImportSource, chunk_bytes: int):
        self._source = source
        self._chunk_bytes = chunk_bytes

    async def plan(self, definition: dict[str, Any]) -> list[dict[str, Any]]:
        inputs = definition.get("inputs")
        if not isinstance(inputs, list):
            raise PlanningFailure("inputs must be a list of {url, type} objects")

        partitions = []
        for item in inputs:
            url = item.get("url") if isinstance(item, dict) else None
            if not url:
                raise PlanningFailure(f"Import input without url: {item!r}")
            length = await self._source.size(url)
            for offset, length_to_read in split_byte_range(length, self._chunk_bytes):
                partitions.append(
                    {
                        "url": url,
                        "resource_type": item.get("type"),
                        "offset": offset,
                        "bytes_to_read": length_to_read,
                    }
                )
        return partitions


class ImportExecutor:
    """Load one byte range of one input file."""

    def __init__(self, source: ImportSource, writer: ResourceWriter, batch_size: int):
        self._source = source
        self._writer = writer
        self._batch_size = batch_size

    def _parse(self, line: str, resource_type: str | None) -> dict[str, Any]:
        resource = json.loads(line)
        if not isinstance(resource, dict) or "resourceType" not in resource:
            raise ValueError("line is not a resource")
        if resource_type and resource["resourceType"] != resource_type:
            raise ValueError(f"expected {resource_type}, found {resource['resourceType']}")
        return resource

    async def execute(self, context: JobContext) -> dict[str, Any]:
        partition = context.partition
        url = partition["url"]
        resource_type = partition.get("resource_type")
        end = partition["offset"] + partition["bytes_to_read"]

        state = context.checkpoint_state or {}
        offset = state.get("offset", partition["offset"])
        succeeded = state.get("succeeded", 0)
        failed = state.get("failed", 0)
        errors: list[dict[str, Any]] = list(state.get("errors", []))

        if offset >= end:
            return self._result(partition, succeeded, failed, errors)

        batch: list[dict[str, Any]] = []
        async for next_offset, line in self._source.read_lines(url, offset, end - offset):
            if line.strip():
                try:
                    batch.append(self._parse(line, resource_type))
                except ValueError as e:
                    failed += 1
                    if len(errors) < MAX_REPORTED_ERRORS:
                        errors.append({"offset": offset, "error": str(e)})
            offset = next_offset

            if len(batch) >= self._batch_size:
                succeeded += await self._upsert(batch)
                batch = []
                await context.checkpoint(
                    {"offset": offset, "succeeded": succeeded, "failed": failed, "errors": errors}
                )

        if batch:
            succeeded += await self._upsert(batch)

        logger.info(
            f"Imported {succeeded} resources, {failed} failed",
            extra={"job_id": context.job.id, "url": url},
        )
        return self._result(partition, succeeded, failed, errors)

    async def _upsert(self, batch: list[dict[str, Any]]) -> int:
        try:
            return await self._writer.upsert(batch)
        except (TypeError, ValueError) as e:
            raise PartitionFailure(f"Resources rejected by the store: {e}") from e

    def _result(
        self,
        partition: dict[str, Any],
        succeeded: int,
        failed: int,
        errors: list[dict[str, Any]],
    ) -> dict[str, Any]:
        return {
            "url": partition["url"],
            "offset": partition["offset"],
            "bytes_to_read": partition["bytes_to_read"],
            "succeeded": succeeded,
            "failed": failed,
            "errors": errors,
        }


def aggregate_import(children: list[JobInfo]) -> dict[str, Any]:
    """Sum succeeded and failed counts per input file."""
    per_file: dict[str, dict[str, int]] = {}
    for child in children:
        result = child.result or {}
        totals = per_file.setdefault(result.get("url", "unknown"), {"succeeded": 0, "failed": 0})
        totals["succeeded"] += result.get("succeeded", 0)
        totals["failed"] += result.get("failed", 0)
    return {
        "files": per_file,
        "succeeded": sum(t["succeeded"] for t in per_file.values()),
        "failed": sum(t["failed"] for t in per_file.values()),
    }
