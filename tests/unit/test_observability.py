"""
Unit tests for logging context, tracing helpers and metrics.
"""

import pytest
import structlog
from prometheus_client import CollectorRegistry

from claimqueue.constants import ClaimOutcome
from claimqueue.observability.logging import job_log_context
from claimqueue.observability.metrics import MetricsCollector
from claimqueue.observability.tracing import traced
from claimqueue.queue import Queue
from claimqueue.types.job import Job
from claimqueue.worker.worker import Worker


class TestJobLogContext:
    """Tests for job-scoped log context."""

    def test_binds_and_restores(self):
        """Test that the job identity is bound only inside the block."""
        with job_log_context("w1", "jobs", "job-1"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["worker"] == "w1"
            assert bound["queue"] == "jobs"
            assert bound["job_id"] == "job-1"

        assert "job_id" not in structlog.contextvars.get_contextvars()

    async def test_worker_binds_job_identity(self, queue: Queue, recorder, wait_for):
        """Test that a job function sees its own job id in the log context."""
        seen = []

        def perform(job: Job, done) -> None:
            seen.append(dict(structlog.contextvars.get_contextvars()))
            done()

        worker = Worker(queue, perform, listeners=[recorder], name="ctx-worker")
        await worker.start()
        await queue.enqueue({"id": "job-7"})

        await wait_for(lambda: recorder.job_ids("finish") == ["job-7"])
        await worker.stop()

        assert seen[0]["job_id"] == "job-7"
        assert seen[0]["worker"] == "ctx-worker"
        assert seen[0]["queue"] == "test-queue"


class TestTraced:
    """Tests for the span helper."""

    def test_yields_span(self):
        """Test that attributes with None values are accepted."""
        with traced("unit.test", job_id=None, worker="w") as span:
            assert span is not None

    def test_reraises(self):
        """Test that exceptions escape the block unchanged."""
        with pytest.raises(ValueError, match="boom"):
            with traced("unit.test"):
                raise ValueError("boom")


class TestMetricsCollector:
    """Tests for the metrics collector on a private registry."""

    @pytest.fixture
    def registry(self) -> CollectorRegistry:
        return CollectorRegistry()

    @pytest.fixture
    def metrics(self, registry: CollectorRegistry) -> MetricsCollector:
        return MetricsCollector(registry=registry)

    def test_claims_by_outcome(self, metrics: MetricsCollector, registry: CollectorRegistry):
        """Test claim counting per outcome."""
        metrics.record_claim("jobs", ClaimOutcome.WON)
        metrics.record_claim("jobs", ClaimOutcome.LOST)
        metrics.record_claim("jobs", ClaimOutcome.LOST)

        lost = registry.get_sample_value(
            "job_claims_total", {"queue": "jobs", "outcome": "lost"}
        )
        won = registry.get_sample_value(
            "job_claims_total", {"queue": "jobs", "outcome": "won"}
        )
        assert (won, lost) == (1.0, 2.0)

    def test_job_completed(self, metrics: MetricsCollector, registry: CollectorRegistry):
        """Test completion counter and duration histogram."""
        metrics.record_job_completed("jobs", "failed", 0.25)

        assert registry.get_sample_value(
            "jobs_completed_total", {"queue": "jobs", "status": "failed"}
        ) == 1.0
        assert registry.get_sample_value(
            "job_duration_seconds_sum", {"queue": "jobs", "status": "failed"}
        ) == 0.25

    def test_zero_retries_not_counted(self, metrics: MetricsCollector, registry: CollectorRegistry):
        """Test that an empty retry sweep leaves the counter unset."""
        metrics.record_jobs_retried("jobs", 0)
        metrics.record_jobs_retried("other", 3)

        assert registry.get_sample_value("jobs_retried_total", {"queue": "jobs"}) is None
        assert registry.get_sample_value("jobs_retried_total", {"queue": "other"}) == 3.0

    def test_exposition(self, metrics: MetricsCollector):
        """Test the Prometheus text output."""
        metrics.set_active_workers(4)

        output = metrics.get_metrics().decode()

        assert "active_workers 4.0" in output
        assert metrics.get_content_type().startswith("text/plain")
