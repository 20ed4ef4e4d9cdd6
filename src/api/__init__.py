"""
API Module
==========
FastAPI application pieces for the task planner: websocket notifier,
request types and the planner context built at startup.
"""

from .websocket import ConnectionManager
from .types import WebSocketMessage, PlanFeatureRequest, AdjustPlanRequest, ReviewChangesRequest, PlanResponse

__all__ = [
    "ConnectionManager",
    "WebSocketMessage",
    "PlanFeatureRequest",
    "AdjustPlanRequest",
    "ReviewChangesRequest",
    "PlanResponse",
]
