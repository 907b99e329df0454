"""
API routes module.
"""

from jobmanagement.api.routes.health import router as health_router
from jobmanagement.api.routes.operations import router as operations_router

__all__ = ["operations_router", "health_router"]
