"""
Type definitions for the work queue.
"""

from claimqueue.types.api import (
    EnqueueJobRequest,
    EnqueueJobResponse,
    ErrorResponse,
    HealthResponse,
    QueueStatsResponse,
    RetryFailedRequest,
    RetryFailedResponse,
    StartedJobResponse,
)
from claimqueue.types.job import Job, is_failed_record

__all__ = [
    # API types
    "EnqueueJobRequest",
    "EnqueueJobResponse",
    "StartedJobResponse",
    "QueueStatsResponse",
    "RetryFailedRequest",
    "RetryFailedResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "Job",
    "is_failed_record",
]
