"""
Worker host process.

Polls every queue type that has a registered operation, runs dequeued jobs
through the coordinator or worker handler, and keeps their leases alive with
a background heartbeat while they run.
"""

import asyncio
import contextlib
import importlib
import logging
import os
import signal
import socket
import time

from jobmanagement.config import Settings, get_settings
from jobmanagement.constants import (
    SPAN_DEQUEUE_JOB,
    SPAN_EXECUTE_JOB,
    JobKind,
    JobStatus,
    QueueType,
)
from jobmanagement.db import close_db, create_job_store, get_engine, init_db
from jobmanagement.errors import JobManagementError
from jobmanagement.jobs import JobHandler, OperationRegistry, build_handlers
from jobmanagement.observability.logging import bind_job_context, clear_context, setup_logging
from jobmanagement.observability.metrics import MetricsCollector, get_metrics
from jobmanagement.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from jobmanagement.queue import AdmissionController, QueueClient
from jobmanagement.types.job import JobContext, JobInfo

logger = logging.getLogger(__name__)


class JobHost:
    """
    Runs jobs from the queue.

    Features:
    - ``worker_concurrency`` polling slots per registered queue type
    - Admission-controlled dequeue with jittered exponential backoff
    - Per-job heartbeat task sharing the job's lease lock
    - Graceful shutdown: slots stop polling and finish their current job
    """

    def __init__(
        self,
        client: QueueClient,
        registry: OperationRegistry,
        admission: AdmissionController | None = None,
        settings: Settings | None = None,
        worker_id: str | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the host.

        Args:
            client: Queue client.
            registry: Operations to run, keyed by queue type.
            admission: Dequeue wrapper. Defaults to the configured caps.
            settings: Application settings.
            worker_id: Lease holder name. Defaults to hostname + PID.
            metrics: Metrics collector.
        """
        settings = settings or get_settings()

        self.worker_id = worker_id or settings.worker_id or f"{socket.gethostname()}-{os.getpid()}"
        self.concurrency = settings.worker_concurrency
        self.lease_seconds = settings.worker_lease_seconds
        self.heartbeat_interval = settings.worker_heartbeat_interval_seconds

        self._client = client
        self._registry = registry
        self._admission = admission or AdmissionController(client, settings.admission_caps)
        self._backoff = client.backoff_policy()
        self._handlers: dict[JobKind, JobHandler] = build_handlers(
            client, registry, settings.coordinator_poll_interval_seconds
        )
        self._metrics = metrics or get_metrics()

        self._stop_event = asyncio.Event()
        self._current_jobs: dict[int, JobInfo] = {}

    @property
    def current_jobs(self) -> dict[int, JobInfo]:
        return dict(self._current_jobs)

    async def start(self) -> None:
        """Poll until stopped, then wait for running jobs to finish."""
        queue_types = self._registry.queue_types
        if not queue_types:
            logger.warning("No operations registered, host has nothing to poll")
            return

        logger.info(
            "Job host starting",
            extra={
                "worker_id": self.worker_id,
                "queue_types": [q.value for q in queue_types],
                "concurrency": self.concurrency,
            },
        )
        self._stop_event.clear()
        slots = [
            asyncio.create_task(self._slot(queue_type, index), name=f"{queue_type.value}-{index}")
            for queue_type in queue_types
            for index in range(self.concurrency)
        ]
        await asyncio.gather(*slots)
        logger.info("Job host stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop polling. Jobs already dequeued run to their next outcome."""
        logger.info(
            "Job host stopping",
            extra={"worker_id": self.worker_id, "running": len(self._current_jobs)},
        )
        self._stop_event.set()

    async def _slot(self, queue_type: QueueType, index: int) -> None:
        async def dequeue() -> JobInfo | None:
            with get_tracer().start_as_current_span(SPAN_DEQUEUE_JOB) as span:
                span.set_attribute("queue_type", queue_type.value)
                job = await self._admission.dequeue(
                    queue_type, self.lease_seconds, worker=self.worker_id
                )
                if job is not None:
                    span.set_attribute("job_id", job.id)
                return job

        while not self._stop_event.is_set():
            try:
                job = await self._client.poll_dequeue(
                    queue_type,
                    self.lease_seconds,
                    self._backoff,
                    stop_event=self._stop_event,
                    dequeue=dequeue,
                )
            except Exception as e:
                logger.exception(
                    f"Error in polling slot: {e}",
                    extra={"queue_type": queue_type.value, "slot": index},
                )
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self._backoff.maximum_seconds
                    )
                continue

            if job is not None:
                await self.process(job)

    async def process(self, job: JobInfo) -> None:
        """
        Run one leased job to its outcome for this lease.

        Handlers own terminal writes. Anything escaping a handler is treated
        as a transient failure of the job.
        """
        handler: JobHandler | None = self._handlers.get(job.kind)
        context = JobContext(
            job=job,
            worker=self.worker_id,
            renew_lease=lambda result: self._client.heartbeat(job, result),
        )
        self._current_jobs[job.id] = job
        bind_job_context(job.id, job.queue_type.value, job.group_id)
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(context))
        start_time = time.monotonic()

        try:
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", job.id)
                span.set_attribute("group_id", job.group_id)
                span.set_attribute("queue_type", job.queue_type.value)
                span.set_attribute("kind", job.kind.value)
                span.set_attribute("failure_count", job.failure_count)

                if handler is None or job.queue_type not in self._registry:
                    logger.error(
                        "Unsupported job, releasing",
                        extra={"job_id": job.id, "kind": job.kind.value},
                    )
                    async with context.lock:
                        await self._client.release_job(
                            job, f"Unsupported job {job.queue_type.value}/{job.kind.value}"
                        )
                    return

                logger.info(
                    "Executing job",
                    extra={"job_id": job.id, "kind": job.kind.value, "version": job.version},
                )
                await handler(context)
                span.set_attribute("status", job.status.value)

        except Exception as e:
            logger.exception(
                "Exception executing job",
                extra={"job_id": job.id, "error": str(e)},
            )
            await self._release_after_error(context, e)

        finally:
            heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat_task
            self._metrics.record_duration(
                job.queue_type.value, job.kind.value, time.monotonic() - start_time
            )
            self._current_jobs.pop(job.id, None)
            clear_context()

    async def _release_after_error(self, context: JobContext, error: Exception) -> None:
        job = context.job
        try:
            async with context.lock:
                if job.status == JobStatus.RUNNING:
                    await self._client.release_job(job, error)
        except JobManagementError:
            # The lease expires and the next dequeue counts the failure
            logger.exception("Failed to release job", extra={"job_id": job.id})

    async def _heartbeat_loop(self, context: JobContext) -> None:
        """Renew the lease until the job ends or the lease is lost."""
        job = context.job
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                renewed = await context.heartbeat()
            except JobManagementError as e:
                logger.warning(
                    f"Heartbeat failed: {e}",
                    extra={"job_id": job.id},
                )
                continue
            if not renewed:
                return
            logger.debug("Extended lease", extra={"job_id": job.id, "version": job.version})


def load_registry(settings: Settings) -> OperationRegistry:
    """
    Build the operation registry named by ``operation_registry_factory``.

    The setting has the form ``package.module:function``; the function takes
    the settings and returns an OperationRegistry.
    """
    factory_path = settings.operation_registry_factory
    if not factory_path:
        raise RuntimeError(
            "OPERATION_REGISTRY_FACTORY is not set; point it at a function "
            "returning an OperationRegistry"
        )
    module_name, _, attribute = factory_path.partition(":")
    if not attribute:
        raise ValueError(f"Invalid registry factory {factory_path!r}, expected 'module:function'")
    factory = getattr(importlib.import_module(module_name), attribute)
    registry = factory(settings)
    if not isinstance(registry, OperationRegistry):
        raise TypeError(f"{factory_path} returned {type(registry).__name__}, not OperationRegistry")
    return registry


async def run_async() -> None:
    """Run the job host asynchronously."""
    setup_logging()
    setup_tracing()
    settings = get_settings()

    session_factory = None
    if settings.job_store_backend == "sql":
        session_factory = await init_db()
        if settings.otel_enabled:
            instrument_sqlalchemy(get_engine())

    store = await create_job_store(settings, session_factory)
    client = QueueClient(store, settings)
    host = JobHost(client, load_registry(settings), settings=settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(host.stop()))

    try:
        await host.start()
    finally:
        await close_db()


def run() -> None:
    """Run the job host."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
