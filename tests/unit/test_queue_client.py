"""
Unit tests for the queue client.
"""

import asyncio

import pytest

from jobmanagement.constants import JobKind, JobStatus, QueueType
from jobmanagement.errors import JobNotFoundError, TransientStoreError
from jobmanagement.queue import QueueClient
from jobmanagement.queue.client import error_payload
from jobmanagement.types.job import BackoffPolicy

LEASE = 30


class FlakyStore:
    """Wraps a store and raises queued errors from get_job before delegating."""

    def __init__(self, inner, errors):
        self._inner = inner
        self.errors = list(errors)
        self.calls = 0

    async def get_job(self, queue_type, job_id):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return await self._inner.get_job(queue_type, job_id)

    def classify_error(self, exc):
        return self._inner.classify_error(exc)


class TestErrorPayload:
    def test_exception(self):
        assert error_payload(RuntimeError("boom")) == {"error": "boom", "type": "RuntimeError"}

    def test_exception_without_message(self):
        assert error_payload(TimeoutError())["error"] == "TimeoutError"

    def test_dict_and_string(self):
        assert error_payload({"error": "x", "line": 3}) == {"error": "x", "line": 3}
        assert error_payload("bad") == {"error": "bad"}


class TestRetryWrapper:
    """Tests for transient error handling around store calls."""

    async def test_transient_error_is_retried(self, memory_store, test_settings, metrics):
        [job] = await memory_store.create_jobs(QueueType.EXPORT, [{"n": 1}])
        flaky = FlakyStore(memory_store, [ConnectionError("reset"), ConnectionError("reset")])
        client = QueueClient(flaky, test_settings, metrics)

        found = await client.get_job(QueueType.EXPORT, job.id)

        assert found.id == job.id
        assert flaky.calls == 3

    async def test_persistent_transient_error_surfaces(self, memory_store, test_settings, metrics):
        flaky = FlakyStore(memory_store, [ConnectionError("down")] * 5)
        client = QueueClient(flaky, test_settings, metrics)

        with pytest.raises(TransientStoreError):
            await client.get_job(QueueType.EXPORT, 1)
        assert flaky.calls == test_settings.store_retry_attempts

    async def test_not_found_is_translated(self, memory_store, test_settings, metrics):
        client = QueueClient(FlakyStore(memory_store, [KeyError(1)]), test_settings, metrics)

        with pytest.raises(JobNotFoundError):
            await client.get_job(QueueType.EXPORT, 1)

    async def test_fatal_error_is_not_retried(self, memory_store, test_settings, metrics):
        flaky = FlakyStore(memory_store, [RuntimeError("corrupt")])
        client = QueueClient(flaky, test_settings, metrics)

        with pytest.raises(RuntimeError):
            await client.get_job(QueueType.EXPORT, 1)
        assert flaky.calls == 1


class TestEnqueue:
    async def test_enqueue_group_returns_group_id(self, queue_client, metrics_registry):
        group_id = await queue_client.enqueue_group(QueueType.EXPORT, [{"n": 1}, {"n": 2}])

        members = await queue_client.get_group(QueueType.EXPORT, group_id)
        assert [m.group_id for m in members] == [group_id, group_id]
        assert metrics_registry.get_sample_value(
            "jobs_enqueued_total", {"queue_type": "export", "kind": "worker"}
        ) == 2

    async def test_enqueue_group_requires_definitions(self, queue_client):
        with pytest.raises(ValueError):
            await queue_client.enqueue_group(QueueType.EXPORT, [])

    async def test_get_unknown_job(self, queue_client):
        with pytest.raises(JobNotFoundError):
            await queue_client.get_job(QueueType.EXPORT, 999)


class TestLeaseWrites:
    """Tests for writes made by a lease holder."""

    async def test_heartbeat_tracks_version(self, queue_client):
        await queue_client.enqueue(QueueType.EXPORT, [{"n": 1}])
        job = await queue_client.dequeue(QueueType.EXPORT, LEASE)

        assert await queue_client.heartbeat(job, {"checkpoint": {"last_id": 10}})
        assert await queue_client.heartbeat(job)

        stored = await queue_client.get_job(QueueType.EXPORT, job.id)
        assert stored.version == job.version
        assert stored.result == {"checkpoint": {"last_id": 10}}

    async def test_heartbeat_observes_cancellation(self, queue_client):
        await queue_client.enqueue(QueueType.EXPORT, [{"n": 1}])
        job = await queue_client.dequeue(QueueType.EXPORT, LEASE)

        await queue_client.cancel_group(QueueType.EXPORT, job.group_id)
        assert not job.cancel_requested

        assert await queue_client.heartbeat(job)
        assert job.cancel_requested

    async def test_stale_heartbeat_reports_lost_lease(self, queue_client, metrics_registry):
        await queue_client.enqueue(QueueType.EXPORT, [{"n": 1}])
        job = await queue_client.dequeue(QueueType.EXPORT, LEASE)
        stale = job.model_copy()
        assert await queue_client.complete_job(job, {"ok": True})

        assert not await queue_client.heartbeat(stale)
        assert not await queue_client.fail_job(stale, "late")
        assert metrics_registry.get_sample_value("lease_lost_total", {"queue_type": "export"}) == 1
        assert (await queue_client.get_job(QueueType.EXPORT, job.id)).result == {"ok": True}

    async def test_terminal_write_updates_local_job(self, queue_client, metrics_registry):
        await queue_client.enqueue(QueueType.REINDEX, [{"n": 1}])
        job = await queue_client.dequeue(QueueType.REINDEX, LEASE)
        version = job.version

        assert await queue_client.cancel_job(job, {"reason": "user"})

        assert job.status == JobStatus.CANCELLED
        assert job.version == version + 1
        assert metrics_registry.get_sample_value(
            "jobs_finished_total",
            {"queue_type": "reindex", "kind": "worker", "status": "cancelled"},
        ) == 1

    async def test_release_requeues_then_fails(self, queue_client):
        """Test that transient failures retry until the failure limit."""
        await queue_client.enqueue(QueueType.EXPORT, [{"n": 1}], max_failure_count=1)
        job = await queue_client.dequeue(QueueType.EXPORT, LEASE)
        assert await queue_client.heartbeat(job, {"checkpoint": {"last_id": 5}})

        assert await queue_client.release_job(job, RuntimeError("boom")) == JobStatus.QUEUED
        assert job.failure_count == 1

        retried = await queue_client.dequeue(QueueType.EXPORT, LEASE)
        assert retried.id == job.id
        assert retried.failure_count == 1
        assert retried.result == {"checkpoint": {"last_id": 5}, "last_error": "boom"}

        assert await queue_client.release_job(retried, RuntimeError("boom again")) == JobStatus.FAILED

        failed = await queue_client.get_job(QueueType.EXPORT, job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.result["error"] == "boom again"
        assert failed.result["failure_count"] == 2

    async def test_release_with_lost_lease(self, queue_client):
        await queue_client.enqueue(QueueType.EXPORT, [{"n": 1}])
        job = await queue_client.dequeue(QueueType.EXPORT, LEASE)
        stale = job.model_copy()
        assert await queue_client.heartbeat(job)

        assert await queue_client.release_job(stale, "boom") is None

    async def test_requeue_with_delay(self, queue_client, clock):
        await queue_client.enqueue(QueueType.EXPORT, [{"n": 1}])
        job = await queue_client.dequeue(QueueType.EXPORT, LEASE)

        assert await queue_client.requeue_job(job, {"progress": "1 of 2"}, delay_seconds=10)
        assert job.status == JobStatus.QUEUED
        assert await queue_client.dequeue(QueueType.EXPORT, LEASE) is None

        clock.advance(10)
        assert (await queue_client.dequeue(QueueType.EXPORT, LEASE)).id == job.id


class TestPollDequeue:
    """Tests for polling with backoff."""

    async def test_returns_none_when_stopped(self, queue_client):
        stop = asyncio.Event()
        stop.set()

        assert await queue_client.poll_dequeue(QueueType.EXPORT, LEASE, stop_event=stop) is None

    async def test_waits_for_work(self, queue_client):
        stop = asyncio.Event()
        poll = asyncio.create_task(
            queue_client.poll_dequeue(QueueType.EXPORT, LEASE, stop_event=stop)
        )
        await asyncio.sleep(0.03)
        assert not poll.done()

        [job] = await queue_client.enqueue(QueueType.EXPORT, [{"n": 1}])

        leased = await asyncio.wait_for(poll, timeout=2)
        assert leased.id == job.id

    async def test_stop_interrupts_backoff(self, queue_client):
        stop = asyncio.Event()
        policy = BackoffPolicy(initial_seconds=30, maximum_seconds=30, jitter=0)
        poll = asyncio.create_task(
            queue_client.poll_dequeue(QueueType.EXPORT, LEASE, backoff_policy=policy, stop_event=stop)
        )
        await asyncio.sleep(0.01)

        stop.set()

        assert await asyncio.wait_for(poll, timeout=2) is None

    async def test_transient_failure_keeps_polling(self, queue_client):
        [job] = await queue_client.enqueue(QueueType.EXPORT, [{"n": 1}])
        attempts = []

        async def dequeue():
            attempts.append(1)
            if len(attempts) == 1:
                raise TransientStoreError("store down")
            return await queue_client.dequeue(QueueType.EXPORT, LEASE)

        leased = await queue_client.poll_dequeue(QueueType.EXPORT, LEASE, dequeue=dequeue)

        assert leased.id == job.id
        assert len(attempts) == 2


class TestGroups:
    """Tests for group status and cancellation."""

    async def test_group_status(self, queue_client):
        [owner] = await queue_client.enqueue(
            QueueType.IMPORT, [{"inputs": []}], kind=JobKind.COORDINATOR
        )
        await queue_client.enqueue(
            QueueType.IMPORT, [{"p": 1}, {"p": 2}, {"p": 3}], group_id=owner.group_id
        )
        coordinator = await queue_client.dequeue(QueueType.IMPORT, LEASE)
        assert coordinator.id == owner.id
        first = await queue_client.dequeue(QueueType.IMPORT, LEASE)
        second = await queue_client.dequeue(QueueType.IMPORT, LEASE)
        assert await queue_client.complete_job(first, {"succeeded": 10})
        assert await queue_client.fail_job(second, {"error": "bad file"})

        status = await queue_client.get_group_status(QueueType.IMPORT, owner.group_id)

        assert status.group_id == owner.id
        assert status.status == JobStatus.RUNNING
        assert status.total == 3
        assert status.completed == 1
        assert status.counts == {"completed": 1, "failed": 1, "queued": 1}
        assert status.progress == "1 of 3 partitions complete, 1 ended otherwise"
        assert status.errors == [{"job_id": second.id, "error": "bad file"}]

    async def test_failed_owner_without_partitions(self, queue_client):
        [owner] = await queue_client.enqueue(
            QueueType.EXPORT, [{"resource_types": "bad"}], kind=JobKind.COORDINATOR
        )
        job = await queue_client.dequeue(QueueType.EXPORT, LEASE)
        assert await queue_client.fail_job(job, {"error": "Planning failed"})

        status = await queue_client.get_group_status(QueueType.EXPORT, owner.id)

        assert status.status == JobStatus.FAILED
        assert status.total == 0
        assert status.progress == "0 of 0 partitions complete"
        assert status.errors == [{"job_id": owner.id, "error": "Planning failed"}]

    async def test_unknown_group(self, queue_client):
        with pytest.raises(JobNotFoundError):
            await queue_client.get_group_status(QueueType.EXPORT, 404)
        with pytest.raises(JobNotFoundError):
            await queue_client.cancel_group(QueueType.EXPORT, 404)

    async def test_refresh_queue_depth(self, queue_client, metrics_registry):
        await queue_client.enqueue(QueueType.EXPORT, [{"n": 1}, {"n": 2}])
        await queue_client.dequeue(QueueType.EXPORT, LEASE)

        counts = await queue_client.refresh_queue_depth(QueueType.EXPORT)

        assert counts == {"queued": 1, "running": 1}
        assert metrics_registry.get_sample_value(
            "job_queue_depth", {"queue_type": "export", "status": "running"}
        ) == 1
