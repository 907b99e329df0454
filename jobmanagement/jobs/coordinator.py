"""
Coordinator job.

Plans a group into partitions, fans them out as worker jobs, and monitors them
until every partition is terminal. State lives entirely in the store: each
lease re-reads the group and either plans, reports progress and requeues
itself, or finalizes.
"""

import logging
from typing import Any

from jobmanagement.constants import SPAN_PLAN_PARTITIONS, JobKind, JobStatus
from jobmanagement.errors import AggregateFailure, PlanningFailure, TransientStoreError
from jobmanagement.jobs.registry import Operation, OperationRegistry
from jobmanagement.observability.tracing import get_tracer
from jobmanagement.queue.client import QueueClient
from jobmanagement.types.job import JobContext, JobInfo

logger = logging.getLogger(__name__)


def summarize(children: list[JobInfo]) -> dict[str, Any]:
    """Progress summary persisted on the coordinator between polls."""
    counts: dict[str, int] = {}
    for child in children:
        counts[child.status.value] = counts.get(child.status.value, 0) + 1
    completed = counts.get(JobStatus.COMPLETED.value, 0)
    return {
        "counts": counts,
        "completed": completed,
        "total": len(children),
        "progress": f"{completed} of {len(children)} partitions complete",
    }


class CoordinatorJob:
    """
    Handler for coordinator jobs.

    Planning happens at most once per group: a coordinator that finds existing
    children goes straight to monitoring, so a crash after fan-out never
    creates a second set of partitions.
    """

    def __init__(
        self,
        client: QueueClient,
        registry: OperationRegistry,
        poll_interval_seconds: float,
    ):
        self._client = client
        self._registry = registry
        self._poll_interval = poll_interval_seconds

    async def run(self, context: JobContext) -> None:
        job = context.job
        operation = self._registry.get(job.queue_type)
        if operation is None:
            raise LookupError(f"No operation registered for {job.queue_type}")

        members = await self._client.get_group(job.queue_type, job.group_id)
        children = [m for m in members if m.id != job.id]

        if not children:
            if job.cancel_requested:
                logger.info("Coordinator cancelled before planning", extra={"job_id": job.id})
                async with context.lock:
                    await self._client.cancel_job(job, {**summarize([]), "message": "Cancelled before planning"})
                return
            children = await self._plan(context, operation)
            if children is None:
                return
            if not children:
                async with context.lock:
                    await self._client.complete_job(job, operation.aggregate([]))
                return
        elif job.cancel_requested:
            # Flag children created after the cancel request arrived
            await self._client.cancel_group(job.queue_type, job.group_id)

        if any(not child.is_terminal for child in children):
            summary = summarize(children)
            logger.debug(
                "Group still running",
                extra={"job_id": job.id, "group_id": job.group_id, "progress": summary["progress"]},
            )
            async with context.lock:
                await self._client.requeue_job(job, summary, delay_seconds=self._poll_interval)
            return

        await self._finalize(context, operation, children)

    async def _plan(self, context: JobContext, operation: Operation) -> list[JobInfo] | None:
        """
        Plan partitions and create them atomically.

        Returns:
            The created children, or None if planning failed and the
            coordinator was finalized.
        """
        job = context.job
        with get_tracer().start_as_current_span(SPAN_PLAN_PARTITIONS) as span:
            span.set_attribute("job_id", job.id)
            span.set_attribute("queue_type", job.queue_type.value)
            try:
                partitions = await operation.planner.plan(job.definition)
                span.set_attribute("partitions", len(partitions))
                if not partitions:
                    return []
                children = await self._client.enqueue(
                    job.queue_type,
                    partitions,
                    group_id=job.group_id,
                    kind=JobKind.WORKER,
                    max_failure_count=(
                        operation.max_failure_count
                        if operation.max_failure_count is not None
                        else job.max_failure_count
                    ),
                )
            except TransientStoreError:
                raise
            except Exception as exc:
                failure = exc if isinstance(exc, PlanningFailure) else PlanningFailure(f"Planning failed: {exc}")
                logger.exception(
                    "Planning failed",
                    extra={"job_id": job.id, "queue_type": job.queue_type.value},
                )
                async with context.lock:
                    await self._client.fail_job(job, {"error": str(failure)})
                return None

        logger.info(
            f"Planned {len(children)} partitions",
            extra={"job_id": job.id, "group_id": job.group_id, "queue_type": job.queue_type.value},
        )
        return children

    async def _finalize(
        self,
        context: JobContext,
        operation: Operation,
        children: list[JobInfo],
    ) -> None:
        job = context.job
        summary = summarize(children)
        failed = [child for child in children if child.status == JobStatus.FAILED]
        failure = AggregateFailure(
            [{"job_id": child.id, **(child.result or {})} for child in failed]
        )

        async with context.lock:
            if job.cancel_requested or any(c.status == JobStatus.CANCELLED for c in children):
                # Partitions that failed before the cancel keep their errors
                if failed:
                    summary["errors"] = failure.errors
                await self._client.cancel_job(job, summary)
            elif failed:
                await self._client.fail_job(job, {**summary, **failure.to_payload()})
            else:
                await self._client.complete_job(job, {**summary, **operation.aggregate(children)})

        logger.info(
            "Group finished",
            extra={"job_id": job.id, "group_id": job.group_id, "status": job.status.value},
        )
