"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class EnqueueJobRequest(BaseModel):
    """Request body for enqueueing a job."""

    payload: dict[str, Any] = Field(..., description="User-defined job fields")
    id: str | None = Field(default=None, description="Explicit job id; generated when omitted")
    priority: int | float | None = Field(
        default=None, description="Ordering key, lower sorts first"
    )


class EnqueueJobResponse(BaseModel):
    """Response body after enqueueing a job."""

    id: str
    message: str = "Job enqueued"


class StartedJobResponse(BaseModel):
    """A job from the started partition, with its lifecycle metadata."""

    id: str
    payload: dict[str, Any]
    priority: int | float | None = None
    started_at: int | None = None
    succeeded_at: int | None = None
    failed_at: int | None = None
    error: str | None = None


class QueueStatsResponse(BaseModel):
    """Snapshot counts of both partitions."""

    pending: int
    started: int


class RetryFailedRequest(BaseModel):
    """Request body for retrying failed jobs."""

    max_jobs: int = Field(default=0, ge=0, description="Maximum jobs to retry, 0 for all")


class RetryFailedResponse(BaseModel):
    """Response body after retrying failed jobs."""

    retried: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    store: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
