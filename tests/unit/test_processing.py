"""
Unit tests for the worker job.
"""

import pytest

from jobmanagement.constants import JobStatus, QueueType
from jobmanagement.errors import PartitionFailure
from jobmanagement.jobs import Operation, OperationRegistry, WorkerJob

LEASE = 30


class ItemsExecutor:
    """
    Processes ``items`` units, checkpointing after each one.

    ``fail_at`` raises a transient error the first time that unit is reached.
    """

    def __init__(self, fail_at=None, on_unit=None):
        self.fail_at = fail_at
        self.on_unit = on_unit
        self.processed = []

    async def execute(self, context):
        state = context.checkpoint_state or {"done": 0}
        done = state["done"]
        while done < context.partition["items"]:
            if done == self.fail_at:
                self.fail_at = None
                raise ConnectionError("source unavailable")
            if self.on_unit is not None:
                await self.on_unit(context, done)
            self.processed.append(done)
            done += 1
            await context.checkpoint({"done": done})
        return {"done": done}


class RejectingExecutor:
    async def execute(self, context):
        raise PartitionFailure("invalid partition", {"line": 4})


def build(client, executor):
    registry = OperationRegistry()
    registry.register(QueueType.REINDEX, Operation(planner=None, executor=executor))
    return WorkerJob(client, registry)


@pytest.fixture
def run_worker(memory_client, make_context):
    async def _run(worker):
        job = await memory_client.dequeue(QueueType.REINDEX, LEASE, worker="worker-1")
        await worker.run(make_context(memory_client, job))
        return job

    return _run


async def submit(client, items=3, max_failure_count=None):
    [job] = await client.enqueue(
        QueueType.REINDEX, [{"items": items}], max_failure_count=max_failure_count
    )
    return job


async def test_completes_with_output(memory_client, run_worker):
    executor = ItemsExecutor()
    submitted = await submit(memory_client)

    job = await run_worker(build(memory_client, executor))

    assert job.status == JobStatus.COMPLETED
    stored = await memory_client.get_job(QueueType.REINDEX, submitted.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result == {"done": 3}
    assert executor.processed == [0, 1, 2]


async def test_partition_failure_is_permanent(memory_client, run_worker):
    submitted = await submit(memory_client)

    await run_worker(build(memory_client, RejectingExecutor()))

    stored = await memory_client.get_job(QueueType.REINDEX, submitted.id)
    assert stored.status == JobStatus.FAILED
    assert stored.result == {"error": "invalid partition", "line": 4}
    assert stored.failure_count == 0


async def test_transient_error_resumes_from_checkpoint(memory_client, run_worker):
    """Test that a retried attempt skips the units saved by the failed one."""
    executor = ItemsExecutor(fail_at=2)
    submitted = await submit(memory_client, items=4)
    worker = build(memory_client, executor)

    first = await run_worker(worker)
    assert first.status == JobStatus.QUEUED
    assert first.failure_count == 1

    second = await run_worker(worker)

    assert second.status == JobStatus.COMPLETED
    assert executor.processed == [0, 1, 2, 3]
    stored = await memory_client.get_job(QueueType.REINDEX, submitted.id)
    assert stored.result == {"done": 4}
    assert stored.failure_count == 1


async def test_transient_errors_exhaust_retries(memory_client, run_worker):
    class AlwaysFails:
        async def execute(self, context):
            raise ConnectionError("source unavailable")

    submitted = await submit(memory_client, max_failure_count=1)
    worker = build(memory_client, AlwaysFails())

    await run_worker(worker)
    await run_worker(worker)

    stored = await memory_client.get_job(QueueType.REINDEX, submitted.id)
    assert stored.status == JobStatus.FAILED
    assert stored.result["error"] == "source unavailable"
    assert stored.failure_count == 1


async def test_cancelled_before_start(memory_client, run_worker):
    executor = ItemsExecutor()
    submitted = await submit(memory_client)
    await memory_client.cancel_group(QueueType.REINDEX, submitted.group_id)

    await run_worker(build(memory_client, executor))

    assert (await memory_client.get_job(QueueType.REINDEX, submitted.id)).status == JobStatus.CANCELLED
    assert executor.processed == []


async def test_cancelled_at_checkpoint(memory_client, run_worker):
    """Test that a running partition stops at the checkpoint after a cancel request."""

    async def cancel_midway(context, unit):
        if unit == 1:
            await memory_client.cancel_group(QueueType.REINDEX, context.job.group_id)

    executor = ItemsExecutor(on_unit=cancel_midway)
    submitted = await submit(memory_client, items=5)

    job = await run_worker(build(memory_client, executor))

    assert job.status == JobStatus.CANCELLED
    assert executor.processed == [0, 1]
    stored = await memory_client.get_job(QueueType.REINDEX, submitted.id)
    assert stored.status == JobStatus.CANCELLED
    assert stored.result == {"checkpoint": {"done": 2}}


async def test_lost_lease_stops_without_writing(memory_client, run_worker, clock):
    """Test that a reclaimed partition leaves the new holder's lease untouched."""
    reclaimed = []

    async def lose_lease(context, unit):
        if unit == 1:
            clock.advance(LEASE + 1)
            reclaimed.append(await memory_client.dequeue(QueueType.REINDEX, LEASE, worker="worker-2"))

    executor = ItemsExecutor(on_unit=lose_lease)
    submitted = await submit(memory_client, items=5)

    job = await run_worker(build(memory_client, executor))

    assert job.status == JobStatus.RUNNING
    assert executor.processed == [0, 1]
    stored = await memory_client.get_job(QueueType.REINDEX, submitted.id)
    assert stored.status == JobStatus.RUNNING
    assert stored.worker == "worker-2"
    assert stored.version == reclaimed[0].version


async def test_missing_operation(memory_client, run_worker):
    await memory_client.enqueue(QueueType.REINDEX, [{"items": 1}])

    with pytest.raises(LookupError):
        await run_worker(WorkerJob(memory_client, OperationRegistry()))
