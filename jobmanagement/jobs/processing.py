"""
Worker job.

Runs one partition through its operation's executor and records the outcome.
"""

import logging

from jobmanagement.errors import JobCancelledError, LeaseLostError, PartitionFailure
from jobmanagement.jobs.registry import OperationRegistry
from jobmanagement.queue.client import QueueClient
from jobmanagement.types.job import JobContext

logger = logging.getLogger(__name__)


class WorkerJob:
    """
    Handler for worker jobs.

    Outcomes:
    - executor returns: completed with its output
    - PartitionFailure: failed permanently with the failure payload
    - cancellation observed: cancelled
    - lease lost: stop without writing
    - anything else: released for retry
    """

    def __init__(self, client: QueueClient, registry: OperationRegistry):
        self._client = client
        self._registry = registry

    async def run(self, context: JobContext) -> None:
        job = context.job
        operation = self._registry.get(job.queue_type)
        if operation is None:
            raise LookupError(f"No operation registered for {job.queue_type}")

        if job.cancel_requested:
            logger.info("Partition cancelled before start", extra={"job_id": job.id})
            async with context.lock:
                await self._client.cancel_job(job, job.result)
            return

        if context.checkpoint_state is not None:
            logger.info(
                "Resuming partition from checkpoint",
                extra={"job_id": job.id, "failure_count": job.failure_count},
            )

        try:
            output = await operation.executor.execute(context)
        except LeaseLostError:
            logger.warning("Stopping partition after losing its lease", extra={"job_id": job.id})
            return
        except JobCancelledError:
            logger.info("Partition cancelled", extra={"job_id": job.id})
            async with context.lock:
                await self._client.cancel_job(job, job.result)
            return
        except PartitionFailure as e:
            logger.warning(
                f"Partition failed: {e.message}",
                extra={"job_id": job.id, "queue_type": job.queue_type.value},
            )
            async with context.lock:
                await self._client.fail_job(job, e.to_payload())
            return
        except Exception as e:
            logger.exception(
                "Partition raised, releasing for retry",
                extra={"job_id": job.id, "failure_count": job.failure_count},
            )
            async with context.lock:
                await self._client.release_job(job, e)
            return

        async with context.lock:
            await self._client.complete_job(job, output)
