"""
Built-in bulk operations: export, reindex and import.
"""

from jobmanagement.config import Settings, get_settings
from jobmanagement.constants import QueueType
from jobmanagement.jobs.registry import Operation, OperationRegistry
from jobmanagement.operations.bulk_import import (
    ImportExecutor,
    ImportPlanner,
    ImportSource,
    ResourceWriter,
    aggregate_import,
)
from jobmanagement.operations.export import (
    ExportDestination,
    ExportExecutor,
    ExportPlanner,
    ResourceReader,
    aggregate_export,
)
from jobmanagement.operations.reindex import (
    ReindexExecutor,
    ReindexPlanner,
    SearchIndexer,
    aggregate_reindex,
)


def build_registry(
    reader: ResourceReader | None = None,
    destination: ExportDestination | None = None,
    indexer: SearchIndexer | None = None,
    source: ImportSource | None = None,
    writer: ResourceWriter | None = None,
    settings: Settings | None = None,
) -> OperationRegistry:
    """
    Register every built-in operation whose collaborators are provided.

    Returns:
        A registry with export (reader + destination), reindex (indexer) and
        import (source + writer) as available.
    """
    settings = settings or get_settings()
    registry = OperationRegistry()

    if reader is not None and destination is not None:
        registry.register(
            QueueType.EXPORT,
            Operation(
                planner=ExportPlanner(reader, settings.export_range_size),
                executor=ExportExecutor(reader, destination, settings.export_batch_size),
                aggregate=aggregate_export,
            ),
        )
    if indexer is not None:
        registry.register(
            QueueType.REINDEX,
            Operation(
                planner=ReindexPlanner(indexer, settings.reindex_range_size),
                executor=ReindexExecutor(indexer, settings.reindex_batch_size),
                aggregate=aggregate_reindex,
            ),
        )
    if source is not None and writer is not None:
        registry.register(
            QueueType.IMPORT,
            Operation(
                planner=ImportPlanner(source, settings.import_chunk_bytes),
                executor=ImportExecutor(source, writer, settings.import_batch_size),
                aggregate=aggregate_import,
            ),
        )
    return registry


__all__ = [
    "build_registry",
    "ResourceReader",
    "ExportDestination",
    "SearchIndexer",
    "ImportSource",
    "ResourceWriter",
    "ExportPlanner",
    "ExportExecutor",
    "ReindexPlanner",
    "ReindexExecutor",
    "ImportPlanner",
    "ImportExecutor",
]
