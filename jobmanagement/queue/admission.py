"""
Admission control for coordinators.

Caps how many coordinators of a queue type may be active at once. Workers
and coordinators that already started are always handed out, so running
groups keep making progress while new ones wait in the queue.
"""

import logging

from jobmanagement.constants import QueueType
from jobmanagement.observability.metrics import MetricsCollector, get_metrics
from jobmanagement.queue.client import QueueClient
from jobmanagement.types.job import JobInfo

logger = logging.getLogger(__name__)


class AdmissionController:
    """
    Dequeue wrapper enforcing per-queue-type coordinator caps.

    Best effort: the count and the dequeue are separate reads, so two hosts
    racing at the cap may briefly admit one coordinator too many.
    """

    def __init__(
        self,
        client: QueueClient,
        caps: dict[str, int] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the controller.

        Args:
            client: Queue client used for counting and dequeuing.
            caps: Max active coordinators keyed by queue type value.
                Queue types without an entry are unlimited.
            metrics: Metrics collector.
        """
        self._client = client
        self._caps = dict(caps or {})
        self._metrics = metrics or get_metrics()

    def cap_for(self, queue_type: QueueType) -> int | None:
        return self._caps.get(queue_type.value)

    async def is_at_capacity(self, queue_type: QueueType) -> bool:
        """Check if no further coordinator of ``queue_type`` may start."""
        cap = self.cap_for(queue_type)
        if cap is None:
            return False
        active = await self._client.count_active_coordinators(queue_type)
        return active >= cap

    async def dequeue(
        self,
        queue_type: QueueType,
        lease_seconds: float,
        worker: str | None = None,
    ) -> JobInfo | None:
        """
        Lease one job, skipping un-admitted coordinators while at capacity.

        Returns:
            The leased job, or None if nothing admissible is eligible.
        """
        admitted_only = await self.is_at_capacity(queue_type)
        if admitted_only:
            self._metrics.record_admission_deferred(queue_type.value)
            logger.debug(
                "Coordinator cap reached, deferring new coordinators",
                extra={"queue_type": queue_type.value, "cap": self.cap_for(queue_type)},
            )
        return await self._client.dequeue(
            queue_type,
            lease_seconds,
            worker=worker,
            admitted_only=admitted_only,
        )
