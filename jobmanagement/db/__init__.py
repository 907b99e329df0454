"""
Database module.
Contains the job store contract, its SQL and in-memory backends, and connection helpers.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobmanagement.config import Settings
from jobmanagement.db.connection import (
    close_db,
    create_schema,
    create_session_factory,
    get_engine,
    get_test_engine,
    init_db,
)
from jobmanagement.db.memory import InMemoryJobStore
from jobmanagement.db.models import Base, JobRecord
from jobmanagement.db.repository import SqlJobStore
from jobmanagement.db.store import JobStore, definition_hash


async def create_job_store(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> JobStore:
    """
    Build the configured job store backend.

    Args:
        settings: Application settings; ``job_store_backend`` selects the backend.
        session_factory: Session factory for the SQL backend. Defaults to ``init_db()``.

    Returns:
        A job store instance.
    """
    if settings.job_store_backend == "memory":
        return InMemoryJobStore()
    if settings.job_store_backend != "sql":
        raise ValueError(f"Unknown job store backend: {settings.job_store_backend}")
    if session_factory is None:
        session_factory = await init_db()
    return SqlJobStore(session_factory)


__all__ = [
    "JobStore",
    "SqlJobStore",
    "InMemoryJobStore",
    "create_job_store",
    "definition_hash",
    "get_engine",
    "get_test_engine",
    "create_session_factory",
    "create_schema",
    "init_db",
    "close_db",
    "JobRecord",
    "Base",
]
