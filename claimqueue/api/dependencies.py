"""
FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from claimqueue.queue import Queue


def get_queue(request: Request) -> Queue:
    """The queue bound to the application at startup."""
    return request.app.state.queue


QueueDep = Annotated[Queue, Depends(get_queue)]
