"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class WorkerState(StrEnum):
    """
    Worker lifecycle states.

    State transitions:
    - IDLE -> WATCHING (start)
    - WATCHING -> CLAIMING (candidate available, not busy)
    - CLAIMING -> RUNNING (claim won)
    - CLAIMING -> WATCHING (claim lost)
    - RUNNING -> WATCHING (job finished)
    - any -> STOPPED (stop, or fatal store error)
    """

    IDLE = "idle"
    WATCHING = "watching"
    CLAIMING = "claiming"
    RUNNING = "running"
    STOPPED = "stopped"


class ClaimOutcome(StrEnum):
    """Result of one claim attempt."""

    WON = "won"
    LOST = "lost"


# Partition names under the queue base location
PENDING_PARTITION = "pending"
STARTED_PARTITION = "started"
DEFAULT_QUEUE_BASE = "jobs"

# Reserved job fields (wire names). Producers never set the last four.
FIELD_ID = "id"
FIELD_PRIORITY = "priority"
FIELD_STARTED_AT = "startedAt"
FIELD_SUCCEEDED_AT = "succeededAt"
FIELD_FAILED_AT = "failedAt"
FIELD_ERROR = "error"

METADATA_FIELDS = (FIELD_STARTED_AT, FIELD_SUCCEEDED_AT, FIELD_FAILED_AT, FIELD_ERROR)
RESERVED_FIELDS = (FIELD_ID, FIELD_PRIORITY, *METADATA_FIELDS)

# Field used by the handler registry to route a job
JOB_TYPE_FIELD = "type"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_RETRIED = "jobs_retried_total"
METRIC_CLAIMS = "job_claims_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_ACTIVE_WORKERS = "active_workers"
METRIC_WORKER_REPLACEMENTS = "worker_replacements_total"
METRIC_WORKER_ERRORS = "worker_errors_total"
METRIC_QUEUE_DEPTH = "job_queue_depth"

# Trace span names
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_RETRY_FAILED = "retry_failed_jobs"
