"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from jobmanagement.config import Settings
from jobmanagement.constants import JobStatus, QueueType
from jobmanagement.db import (
    InMemoryJobStore,
    JobStore,
    SqlJobStore,
    create_schema,
    create_session_factory,
    get_test_engine,
)
from jobmanagement.observability.metrics import MetricsCollector
from jobmanagement.queue import QueueClient
from jobmanagement.types.job import JobContext, JobInfo

LEASE_SECONDS = 30


class FakeClock:
    """Controllable naive-UTC time source."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with fast timings."""
    return Settings(
        job_store_backend="memory",
        log_level="DEBUG",
        log_format="console",
        worker_concurrency=2,
        worker_lease_seconds=LEASE_SECONDS,
        worker_heartbeat_interval_seconds=0.05,
        dequeue_backoff_initial_seconds=0.01,
        dequeue_backoff_max_seconds=0.05,
        store_retry_attempts=3,
        store_retry_delay_seconds=0,
        coordinator_poll_interval_seconds=0,
        default_max_failure_count=3,
        admission_caps={},
    )


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(metrics_registry: CollectorRegistry) -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=metrics_registry)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path: Path, clock: FakeClock) -> AsyncGenerator[JobStore]:
    """Job store under test; every contract test runs against both backends."""
    if request.param == "memory":
        yield InMemoryJobStore(clock=clock)
        return
    engine = get_test_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    await create_schema(engine)
    yield SqlJobStore(create_session_factory(engine), clock=clock)
    await engine.dispose()


@pytest.fixture
def memory_store(clock: FakeClock) -> InMemoryJobStore:
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def queue_client(store: JobStore, test_settings: Settings, metrics: MetricsCollector) -> QueueClient:
    return QueueClient(store, test_settings, metrics)


@pytest.fixture
def memory_client(
    memory_store: InMemoryJobStore,
    test_settings: Settings,
    metrics: MetricsCollector,
) -> QueueClient:
    """Queue client over the in-memory store only."""
    return QueueClient(memory_store, test_settings, metrics)


@pytest.fixture
def make_context():
    """Factory for the context the host passes to a handler."""

    def _make(client: QueueClient, job: JobInfo, worker: str = "test-worker") -> JobContext:
        return JobContext(
            job=job,
            worker=worker,
            renew_lease=lambda result: client.heartbeat(job, result),
        )

    return _make


@pytest.fixture
def make_running_job():
    """Factory for standalone running job snapshots used by executor tests."""

    def _make(
        definition: dict[str, Any],
        queue_type: QueueType = QueueType.EXPORT,
        result: dict[str, Any] | None = None,
    ) -> JobInfo:
        return JobInfo(
            id=7,
            queue_type=queue_type,
            group_id=1,
            status=JobStatus.RUNNING,
            definition=definition,
            result=result,
            version=2,
            created_at=datetime(2026, 1, 1),
        )

    return _make
