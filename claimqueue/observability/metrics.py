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

from claimqueue.constants import (
    METRIC_ACTIVE_WORKERS,
    METRIC_CLAIMS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_RETRIED,
    METRIC_QUEUE_DEPTH,
    METRIC_WORKER_ERRORS,
    METRIC_WORKER_REPLACEMENTS,
    ClaimOutcome,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the work queue.

    Collects metrics for:
    - Job enqueues and retries
    - Claim attempts, won and lost
    - Job completions and execution duration
    - Worker pool size, fatal errors and replacements
    - Queue depth per partition
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_retried = Counter(
            METRIC_JOBS_RETRIED,
            "Total number of failed jobs moved back to pending",
            ["queue"],
            registry=self._registry,
        )

        self.claims = Counter(
            METRIC_CLAIMS,
            "Total number of claim attempts by outcome",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs completed",
            ["queue", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.active_workers = Gauge(
            METRIC_ACTIVE_WORKERS,
            "Number of workers in the pool",
            registry=self._registry,
        )

        self.worker_replacements = Counter(
            METRIC_WORKER_REPLACEMENTS,
            "Total number of workers replaced after a fatal error",
            registry=self._registry,
        )

        self.worker_errors = Counter(
            METRIC_WORKER_ERRORS,
            "Total number of fatal worker errors",
            ["queue"],
            registry=self._registry,
        )

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of entries in a queue partition",
            ["queue", "partition"],
            registry=self._registry,
        )

    def record_job_enqueued(self, queue: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(queue=queue).inc()

    def record_jobs_retried(self, queue: str, count: int) -> None:
        """Record failed jobs moved back to pending."""
        if count:
            self.jobs_retried.labels(queue=queue).inc(count)

    def record_claim(self, queue: str, outcome: ClaimOutcome) -> None:
        """Record one claim attempt."""
        self.claims.labels(queue=queue, outcome=outcome.value).inc()

    def record_job_completed(
        self,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a job completion."""
        self.jobs_completed.labels(queue=queue, status=status).inc()
        self.job_duration.labels(queue=queue, status=status).observe(
            duration_seconds
        )

    def record_worker_error(self, queue: str) -> None:
        """Record a fatal worker error."""
        self.worker_errors.labels(queue=queue).inc()

    def record_worker_replaced(self) -> None:
        """Record a worker replacement."""
        self.worker_replacements.inc()

    def set_active_workers(self, count: int) -> None:
        """Set the current pool size."""
        self.active_workers.set(count)

    def update_queue_depth(self, queue: str, partition: str, depth: int) -> None:
        """Update the depth of one queue partition."""
        self.queue_depth.labels(queue=queue, partition=partition).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
