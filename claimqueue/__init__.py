"""
Distributed Work Queue

Producers enqueue jobs into a shared ordered store; independent workers,
possibly on different machines, claim each job exactly once with an optimistic
conditional transform, run it, and record the outcome.
"""

__version__ = "1.0.0"
