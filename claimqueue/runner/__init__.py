"""
Runner module.
Manages a pool of workers against one queue.
"""

from claimqueue.runner.main import Runner, run, run_async

__all__ = ["Runner", "run", "run_async"]
