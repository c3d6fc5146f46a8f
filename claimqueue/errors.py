"""
Exception hierarchy.

Job-level failures are never raised past the worker; only store and
transport failures escalate, as StoreError.
"""


class ClaimQueueError(Exception):
    """Base class for all errors raised by this package."""


class StoreError(ClaimQueueError):
    """A backing store or transport failure. Fatal to the worker that hits it."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class InvalidWorkerError(ClaimQueueError, TypeError):
    """A worker factory returned something that is not a Worker."""


class WorkerStateError(ClaimQueueError):
    """An operation is not allowed in the worker's current state."""


class JobError(ClaimQueueError):
    """Wraps a non-exception failure value reported by a job function."""
