"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobmanagement.constants import (
    METRIC_ADMISSION_DEFERRED,
    METRIC_API_REQUESTS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_LOST,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth by status
    - Enqueued and finished jobs
    - Job execution duration
    - Lease acquisition and loss
    - Admission deferrals
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Tests pass a fresh one.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs per queue type and status",
            ["queue_type", "status"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs submitted",
            ["queue_type", "kind"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of jobs reaching a terminal status",
            ["queue_type", "kind", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Time spent executing one lease of a job",
            ["queue_type", "kind"],
            buckets=(0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0, 900.0, 3600.0),
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["queue_type"],
            registry=self._registry,
        )

        self.lease_lost = Counter(
            METRIC_LEASE_LOST,
            "Total number of leases lost to another worker",
            ["queue_type"],
            registry=self._registry,
        )

        self.admission_deferred = Counter(
            METRIC_ADMISSION_DEFERRED,
            "Dequeues restricted because the coordinator cap was reached",
            ["queue_type"],
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

    def record_enqueued(self, queue_type: str, kind: str, count: int = 1) -> None:
        """Record newly created jobs."""
        self.jobs_enqueued.labels(queue_type=queue_type, kind=kind).inc(count)

    def record_finished(
        self,
        queue_type: str,
        kind: str,
        status: str,
    ) -> None:
        """Record a job reaching a terminal status."""
        self.jobs_finished.labels(queue_type=queue_type, kind=kind, status=status).inc()

    def record_duration(self, queue_type: str, kind: str, duration_seconds: float) -> None:
        """Record the execution time of one lease."""
        self.job_duration.labels(queue_type=queue_type, kind=kind).observe(duration_seconds)

    def record_lease_acquired(self, queue_type: str) -> None:
        """Record a lease acquisition."""
        self.lease_acquired.labels(queue_type=queue_type).inc()

    def record_lease_lost(self, queue_type: str) -> None:
        """Record a lease lost to a concurrent writer."""
        self.lease_lost.labels(queue_type=queue_type).inc()

    def record_admission_deferred(self, queue_type: str) -> None:
        """Record a dequeue that skipped new coordinators."""
        self.admission_deferred.labels(queue_type=queue_type).inc()

    def update_queue_depth(self, queue_type: str, counts: dict[str, int]) -> None:
        """Update per-status queue depth for a queue type."""
        for status, count in counts.items():
            self.queue_depth.labels(queue_type=queue_type, status=status).set(count)

    def record_api_request(self, method: str, endpoint: str, status: int) -> None:
        """Record an API request."""
        self.api_requests.labels(method=method, endpoint=endpoint, status=str(status)).inc()

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """Create the process-wide metrics collector on first use."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """Get the process-wide metrics collector."""
    if _metrics is None:
        return setup_metrics()
    return _metrics
