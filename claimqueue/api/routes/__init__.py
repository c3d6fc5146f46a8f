"""
API routes module.
"""

from claimqueue.api.routes.health import router as health_router
from claimqueue.api.routes.jobs import router as jobs_router

__all__ = ["jobs_router", "health_router"]
