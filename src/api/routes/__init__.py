"""
API Routes
==========
FastAPI route modules for the task planner API.
"""

from .features import router as features_router
from .ws import router as ws_router
from .metrics import router as metrics_router

__all__ = [
    "features_router",
    "ws_router",
    "metrics_router",
]
