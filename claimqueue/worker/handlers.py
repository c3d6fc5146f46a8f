"""
Job handlers registry and implementations.

A handler receives the claimed Job and either returns (success) or raises
(failure). ``dispatch_job`` adapts the registry to the worker's
``perform_job(job, done)`` signature, routing on the job's ``type`` field.

Jobs are claimed at most once, but a job that failed may be retried, so
handlers should tolerate running again for the same job id.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from claimqueue.constants import JOB_TYPE_FIELD
from claimqueue.errors import JobError
from claimqueue.types.job import Job

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[Job], Awaitable[Any]]

DEFAULT_JOB_TYPE = "echo"

# Handler registry
_handlers: dict[str, JobHandler] = {}


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        job_type: The job type this handler processes.

    Returns:
        Decorator function.

    Example:
        @register_handler("send_email")
        async def handle_send_email(job: Job) -> None:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")
        return handler
    return decorator


def get_handler(job_type: str) -> JobHandler | None:
    """
    Get the handler for a job type.

    Args:
        job_type: The job type.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(job_type)


def list_handlers() -> list[str]:
    """List all registered job types."""
    return list(_handlers.keys())


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(job: Job) -> dict[str, Any]:
    """
    Echo handler for testing.

    Simply returns the job's own fields.
    """
    logger.info("Echo job executing", extra={"job_id": job.id})
    return {"echo": job.payload}


@register_handler("sleep")
async def handle_sleep(job: Job) -> dict[str, Any]:
    """
    Sleep handler for testing delays.

    Job fields:
    - duration_seconds: How long to sleep
    """
    duration = job.get("duration_seconds", 1)

    logger.info("Sleep job starting", extra={"job_id": job.id, "duration": duration})

    await asyncio.sleep(duration)
    return {"slept_for": duration}


@register_handler("failing_job")
async def handle_failing_job(job: Job) -> None:
    """
    Handler that always fails - for testing retry of failed jobs.
    """
    logger.info("Failing job executing (will fail)", extra={"job_id": job.id})
    raise JobError(job.get("message", "Intentional failure"))


@register_handler("http_request")
async def handle_http_request(job: Job) -> dict[str, Any]:
    """
    Make an HTTP request.

    Job fields:
    - url: The URL to request
    - method: HTTP method (GET, POST, etc.)
    - headers: Optional headers
    - body: Optional JSON request body
    """
    url = job.get("url")
    method = job.get("method", "GET").upper()
    headers = job.get("headers", {})
    body = job.get("body")

    if not url:
        raise JobError("Missing 'url' in job")

    logger.info("HTTP request job", extra={"job_id": job.id, "method": method, "url": url})

    try:
        async with httpx.AsyncClient() as client:
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                json=body if method in ["POST", "PUT", "PATCH"] else None,
                timeout=30.0,
            )
    except httpx.HTTPError as e:
        raise JobError(f"HTTP request failed: {e}") from e

    if not response.is_success:
        raise JobError(f"HTTP {response.status_code}")

    return {
        "status_code": response.status_code,
        "body": response.text[:1000],  # Truncate response
    }


async def dispatch_job(job: Job, done: Callable[..., None]) -> None:
    """
    Perform a job with the handler registered for its type.

    Usable directly as a worker's ``perform_job``. Jobs without a ``type``
    field go to the echo handler; an unknown type is a failure.

    Args:
        job: The claimed job.
        done: The worker's completion callback.
    """
    job_type = job.get(JOB_TYPE_FIELD, DEFAULT_JOB_TYPE)
    handler = get_handler(job_type)

    if handler is None:
        logger.error(
            f"No handler for job type: {job_type}",
            extra={"job_id": job.id},
        )
        done(JobError(f"No handler registered for job type: {job_type}"))
        return

    try:
        output = await handler(job)
    except Exception as e:
        if not isinstance(e, JobError):
            logger.exception(
                "Handler raised exception",
                extra={"job_id": job.id, "job_type": job_type, "error": str(e)},
            )
        done(e)
        return

    logger.debug(
        "Handler finished",
        extra={"job_id": job.id, "job_type": job_type, "output": output},
    )
    done()
