"""
Worker module.
Contains the claiming worker and the job handler registry.
"""

from claimqueue.worker.handlers import dispatch_job, get_handler, list_handlers, register_handler
from claimqueue.worker.worker import Worker, WorkerListener

__all__ = [
    "Worker",
    "WorkerListener",
    "dispatch_job",
    "register_handler",
    "get_handler",
    "list_handlers",
]
