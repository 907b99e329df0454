"""
Unit tests for the coordinator job.

Every test runs against the in-memory store and the SQL store.
"""

import pytest

from jobmanagement.constants import JobKind, JobStatus, QueueType
from jobmanagement.errors import PlanningFailure, TransientStoreError
from jobmanagement.jobs import CoordinatorJob, Operation, OperationRegistry
from jobmanagement.jobs.coordinator import summarize

LEASE = 30
POLL = 60


class ListPlanner:
    def __init__(self, partitions, error=None):
        self.partitions = partitions
        self.error = error
        self.calls = 0

    async def plan(self, definition):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.partitions)


class PassThroughPlanner:
    """Plans the whole request as a single partition."""

    def __init__(self):
        self.calls = 0

    async def plan(self, definition):
        self.calls += 1
        return [dict(definition)]


class NoopExecutor:
    async def execute(self, context):
        return {}


def build(client, planner, aggregate=None):
    registry = OperationRegistry()
    operation = Operation(planner=planner, executor=NoopExecutor())
    if aggregate is not None:
        operation.aggregate = aggregate
    registry.register(QueueType.EXPORT, operation)
    return CoordinatorJob(client, registry, poll_interval_seconds=POLL)


@pytest.fixture
def run_coordinator(queue_client, make_context):
    """Lease the next export job, which must be the coordinator, and run it."""

    async def _run(coordinator):
        job = await queue_client.dequeue(QueueType.EXPORT, LEASE, worker="coordinator")
        assert job.kind == JobKind.COORDINATOR
        await coordinator.run(make_context(queue_client, job))
        return job

    return _run


async def submit(client):
    [owner] = await client.enqueue(QueueType.EXPORT, [{"request": 1}], kind=JobKind.COORDINATOR)
    return owner


async def finish_children(client, statuses):
    """Lease each queued child and move it to the given terminal status."""
    for index, status in enumerate(statuses):
        child = await client.dequeue(QueueType.EXPORT, LEASE)
        assert child.kind == JobKind.WORKER
        if status == JobStatus.COMPLETED:
            await client.complete_job(child, {"count": index})
        elif status == JobStatus.FAILED:
            await client.fail_job(child, {"error": f"partition {index} broke"})
        else:
            await client.cancel_job(child)


def test_summarize():
    assert summarize([]) == {
        "counts": {},
        "completed": 0,
        "total": 0,
        "progress": "0 of 0 partitions complete",
    }


class TestPlanning:
    """Tests for fan-out and planning outcomes."""

    async def test_plans_once(self, queue_client, run_coordinator, clock):
        """Test that a requeued coordinator monitors instead of planning again."""
        planner = ListPlanner([{"p": 1}, {"p": 2}, {"p": 3}])
        coordinator = build(queue_client, planner)
        owner = await submit(queue_client)

        job = await run_coordinator(coordinator)

        assert job.status == JobStatus.QUEUED
        assert job.result["progress"] == "0 of 3 partitions complete"
        members = await queue_client.get_group(QueueType.EXPORT, owner.group_id)
        assert len(members) == 4
        assert all(m.kind == JobKind.WORKER for m in members[1:])
        assert {m.max_failure_count for m in members[1:]} == {owner.max_failure_count}

        clock.advance(POLL)
        await run_coordinator(coordinator)

        assert planner.calls == 1
        assert len(await queue_client.get_group(QueueType.EXPORT, owner.group_id)) == 4

    async def test_partition_equal_to_request(self, queue_client, run_coordinator, clock):
        """Test that a single partition carrying the whole request is created and finished."""
        planner = PassThroughPlanner()
        coordinator = build(queue_client, planner)
        owner = await submit(queue_client)

        await run_coordinator(coordinator)

        members = await queue_client.get_group(QueueType.EXPORT, owner.group_id)
        assert [(m.kind, m.definition) for m in members] == [
            (JobKind.COORDINATOR, {"request": 1}),
            (JobKind.WORKER, {"request": 1}),
        ]

        await finish_children(queue_client, [JobStatus.COMPLETED])
        clock.advance(POLL)
        job = await run_coordinator(coordinator)

        assert job.status == JobStatus.COMPLETED
        assert planner.calls == 1

    async def test_planning_failure(self, queue_client, run_coordinator):
        coordinator = build(
            queue_client, ListPlanner([], error=PlanningFailure("resource_types must be a list"))
        )
        owner = await submit(queue_client)

        await run_coordinator(coordinator)

        stored = await queue_client.get_job(QueueType.EXPORT, owner.id)
        assert stored.status == JobStatus.FAILED
        assert stored.result == {"error": "resource_types must be a list"}
        assert len(await queue_client.get_group(QueueType.EXPORT, owner.id)) == 1

    async def test_unexpected_planner_error_fails(self, queue_client, run_coordinator):
        coordinator = build(queue_client, ListPlanner([], error=ValueError("no reader")))
        owner = await submit(queue_client)

        await run_coordinator(coordinator)

        stored = await queue_client.get_job(QueueType.EXPORT, owner.id)
        assert stored.status == JobStatus.FAILED
        assert stored.result == {"error": "Planning failed: no reader"}

    async def test_transient_planner_error_propagates(self, queue_client, run_coordinator):
        coordinator = build(queue_client, ListPlanner([], error=TransientStoreError("store down")))
        await submit(queue_client)

        with pytest.raises(TransientStoreError):
            await run_coordinator(coordinator)

    async def test_zero_partitions_completes(self, queue_client, run_coordinator):
        coordinator = build(queue_client, ListPlanner([]))
        owner = await submit(queue_client)

        await run_coordinator(coordinator)

        stored = await queue_client.get_job(QueueType.EXPORT, owner.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result == {"partitions": 0, "results": []}
        assert len(await queue_client.get_group(QueueType.EXPORT, owner.id)) == 1


class TestFinalization:
    """Tests for aggregating finished partitions."""

    async def test_completes_with_aggregate(self, queue_client, run_coordinator, clock):
        coordinator = build(queue_client, ListPlanner([{"p": 1}, {"p": 2}]))
        owner = await submit(queue_client)
        await run_coordinator(coordinator)
        await finish_children(queue_client, [JobStatus.COMPLETED, JobStatus.COMPLETED])

        clock.advance(POLL)
        job = await run_coordinator(coordinator)

        assert job.status == JobStatus.COMPLETED
        stored = await queue_client.get_job(QueueType.EXPORT, owner.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result["progress"] == "2 of 2 partitions complete"
        assert stored.result["partitions"] == 2
        assert stored.result["results"] == [{"count": 0}, {"count": 1}]

    async def test_failed_child_fails_group(self, queue_client, run_coordinator, clock):
        coordinator = build(queue_client, ListPlanner([{"p": 1}, {"p": 2}]))
        owner = await submit(queue_client)
        await run_coordinator(coordinator)
        await finish_children(queue_client, [JobStatus.COMPLETED, JobStatus.FAILED])

        clock.advance(POLL)
        await run_coordinator(coordinator)

        stored = await queue_client.get_job(QueueType.EXPORT, owner.id)
        assert stored.status == JobStatus.FAILED
        assert stored.result["error"] == "1 partition(s) failed"
        assert stored.result["errors"] == [{"job_id": owner.id + 2, "error": "partition 1 broke"}]
        assert stored.result["counts"] == {"completed": 1, "failed": 1}


class TestCancellation:
    """Tests for cooperative group cancellation."""

    async def test_cancel_before_planning(self, queue_client, run_coordinator):
        planner = ListPlanner([{"p": 1}])
        coordinator = build(queue_client, planner)
        owner = await submit(queue_client)
        await queue_client.cancel_group(QueueType.EXPORT, owner.group_id)

        await run_coordinator(coordinator)

        stored = await queue_client.get_job(QueueType.EXPORT, owner.id)
        assert stored.status == JobStatus.CANCELLED
        assert planner.calls == 0
        assert len(await queue_client.get_group(QueueType.EXPORT, owner.id)) == 1

    async def test_cancel_with_running_children(self, queue_client, run_coordinator, clock):
        """Test that a cancelled group finishes cancelled once every child stopped."""
        coordinator = build(queue_client, ListPlanner([{"p": 1}, {"p": 2}]))
        owner = await submit(queue_client)
        await run_coordinator(coordinator)
        await finish_children(queue_client, [JobStatus.COMPLETED])
        await queue_client.cancel_group(QueueType.EXPORT, owner.group_id)

        clock.advance(POLL)
        job = await run_coordinator(coordinator)
        assert job.status == JobStatus.QUEUED
        assert len(await queue_client.get_group(QueueType.EXPORT, owner.group_id)) == 3

        remaining = await queue_client.get_job(QueueType.EXPORT, owner.id + 2)
        assert remaining.cancel_requested
        await finish_children(queue_client, [JobStatus.CANCELLED])

        clock.advance(POLL)
        await run_coordinator(coordinator)

        stored = await queue_client.get_job(QueueType.EXPORT, owner.id)
        assert stored.status == JobStatus.CANCELLED
        assert stored.result["counts"] == {"completed": 1, "cancelled": 1}
        assert "errors" not in stored.result

    async def test_cancel_keeps_partition_errors(self, queue_client, run_coordinator, clock):
        """Test that errors of partitions failed before the cancel stay on the result."""
        coordinator = build(queue_client, ListPlanner([{"p": 1}, {"p": 2}]))
        owner = await submit(queue_client)
        await run_coordinator(coordinator)
        await finish_children(queue_client, [JobStatus.FAILED])
        await queue_client.cancel_group(QueueType.EXPORT, owner.group_id)

        clock.advance(POLL)
        await run_coordinator(coordinator)
        await finish_children(queue_client, [JobStatus.CANCELLED])

        clock.advance(POLL)
        await run_coordinator(coordinator)

        stored = await queue_client.get_job(QueueType.EXPORT, owner.id)
        assert stored.status == JobStatus.CANCELLED
        assert stored.result["counts"] == {"failed": 1, "cancelled": 1}
        assert stored.result["errors"] == [{"job_id": owner.id + 1, "error": "partition 0 broke"}]
