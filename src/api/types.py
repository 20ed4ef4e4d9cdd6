"""
API Request/Response Types
===========================
Pydantic models for API request validation and the websocket envelope.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from planner_types import MessageType


class WebSocketMessage(BaseModel):
    """Envelope of every websocket message, in both directions."""
    type: MessageType
    featureId: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class QuestionResponsePayload(BaseModel):
    """Answer to a show_question message."""
    questionId: Optional[str] = None
    response: str = ""


class ClientRegistrationPayload(BaseModel):
    featureId: Optional[str] = None
    clientId: Optional[str] = None


class PlanFeatureRequest(BaseModel):
    """Request body for planning a new feature."""
    feature_description: str = Field(min_length=1)
    project_path: Optional[str] = None


class AdjustPlanRequest(BaseModel):
    adjustment_request: str = Field(min_length=1)


class ReviewChangesRequest(BaseModel):
    """Unified diff of the changes to review."""
    diff: str = ""


class PlanResponse(BaseModel):
    """Result of a planning request."""
    featureId: str
    status: str  # planned / clarification_needed / no_changes
    message: str
    tasks: List[Dict[str, Any]] = Field(default_factory=list)
    question: Optional[Dict[str, Any]] = None
