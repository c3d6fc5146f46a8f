"""
Job management routes.

Producer and operator endpoints: enqueue, inspect, retry, and reset.
"""

import logging

from fastapi import APIRouter, HTTPException, Response, status

from claimqueue.api.dependencies import QueueDep
from claimqueue.constants import (
    API_V1_PREFIX,
    FIELD_ID,
    FIELD_PRIORITY,
    PENDING_PARTITION,
    RESERVED_FIELDS,
    STARTED_PARTITION,
)
from claimqueue.observability.metrics import get_metrics
from claimqueue.types.api import (
    EnqueueJobRequest,
    EnqueueJobResponse,
    QueueStatsResponse,
    RetryFailedRequest,
    RetryFailedResponse,
    StartedJobResponse,
)
from claimqueue.types.job import Job

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=EnqueueJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description="Add a job to the pending partition. An existing pending job with the same id is replaced.",
)
async def enqueue_job(request: EnqueueJobRequest, queue: QueueDep) -> EnqueueJobResponse:
    """
    Enqueue a job.

    Args:
        request: Job fields, plus optional id and priority.
        queue: The application queue.

    Returns:
        EnqueueJobResponse with the job id.

    Raises:
        HTTPException: If the payload sets a reserved field.
    """
    reserved = sorted(set(request.payload) & set(RESERVED_FIELDS))
    if reserved:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Payload may not set reserved fields: {', '.join(reserved)}",
        )

    fields = dict(request.payload)
    if request.id is not None:
        fields[FIELD_ID] = request.id
    if request.priority is not None:
        fields[FIELD_PRIORITY] = request.priority

    job_id = await queue.enqueue(Job.model_validate(fields))

    logger.info("Job enqueued via API", extra={"job_id": job_id, "queue": queue.base})
    return EnqueueJobResponse(id=job_id)


@router.get(
    "/stats",
    response_model=QueueStatsResponse,
    summary="Queue statistics",
    description="Snapshot counts of the pending and started partitions.",
)
async def get_queue_stats(queue: QueueDep) -> QueueStatsResponse:
    pending = await queue.count_pending()
    started = await queue.count_started()

    metrics = get_metrics()
    metrics.update_queue_depth(queue.base, PENDING_PARTITION, pending)
    metrics.update_queue_depth(queue.base, STARTED_PARTITION, started)

    return QueueStatsResponse(pending=pending, started=started)


@router.get(
    "/started/{job_id}",
    response_model=StartedJobResponse,
    summary="Get a started job",
    description="Get a claimed job with its lifecycle metadata.",
)
async def get_started_job(job_id: str, queue: QueueDep) -> StartedJobResponse:
    """
    Get a started job by id.

    Raises:
        HTTPException: If no started job has that id.
    """
    job = await queue.get_started(job_id)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return StartedJobResponse(
        id=job.id,
        payload=job.payload,
        priority=job.priority,
        started_at=job.started_at,
        succeeded_at=job.succeeded_at,
        failed_at=job.failed_at,
        error=job.error,
    )


@router.post(
    "/retry",
    response_model=RetryFailedResponse,
    summary="Retry failed jobs",
    description="Move failed jobs from the started partition back to pending.",
)
async def retry_failed_jobs(
    queue: QueueDep,
    request: RetryFailedRequest = RetryFailedRequest(),
) -> RetryFailedResponse:
    retried = await queue.retry_failed_jobs(max_jobs=request.max_jobs)
    return RetryFailedResponse(retried=retried)


@router.delete(
    "/pending/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a pending job",
)
async def remove_pending_job(job_id: str, queue: QueueDep) -> Response:
    await queue.remove_pending(job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/started/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a started job",
)
async def remove_started_job(job_id: str, queue: QueueDep) -> Response:
    await queue.remove_started(job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Clear the queue",
    description="Delete every pending and started job.",
)
async def clear_queue(queue: QueueDep) -> Response:
    await queue.clear()
    logger.warning("Queue cleared via API", extra={"queue": queue.base})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
