"""
Task Planner — Type Definitions
===============================
Version 1.0 — November 2025

Core data structures shared by the planning pipeline, the task store and
the websocket layer.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# ENUMS
# =============================================================================

class TaskStatus(str, Enum):
    """All possible states a task can be in."""
    PENDING = "pending"            # Actionable, not started
    IN_PROGRESS = "in_progress"    # Someone is working on it
    COMPLETED = "completed"        # Done
    DECOMPOSED = "decomposed"      # Container for subtasks, not actionable itself


class Effort(str, Enum):
    """Coarse sizing tag attached to every task."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PlanningType(str, Enum):
    """Which planning call produced a clarification question."""
    FEATURE_PLANNING = "feature_planning"
    PLAN_ADJUSTMENT = "plan_adjustment"


class HistoryRole(str, Enum):
    USER = "user"
    MODEL = "model"
    TOOL_CALL = "tool_call"
    TOOL_RESPONSE = "tool_response"


class FeatureStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class ResultKind(str, Enum):
    """Outcome category of a model call or a parse."""
    OK = "ok"
    PARSE_ERROR = "parse_error"
    BLOCKED = "blocked"            # Safety filter rejected the content
    RATE_LIMITED = "rate_limited"  # Primary and fallback both rate limited
    ERROR = "error"


class MessageType(str, Enum):
    """Closed set of websocket message types."""
    TASKS_UPDATED = "tasks_updated"
    STATUS_CHANGED = "status_changed"
    SHOW_QUESTION = "show_question"
    QUESTION_RESPONSE = "question_response"
    CLIENT_REGISTRATION = "client_registration"
    CONNECTION_ESTABLISHED = "connection_established"
    ERROR = "error"
    REQUEST_SCREENSHOT = "request_screenshot"
    REQUEST_SCREENSHOT_ACK = "request_screenshot_ack"


# =============================================================================
# ERRORS
# =============================================================================

class PlanningError(Exception):
    """A planning request failed in a way the caller should see."""

    def __init__(self, message: str, code: str = "PLANNING_FAILED"):
        super().__init__(message)
        self.message = message
        self.code = code


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class LLMResult:
    """Tagged result of a structured model call or a parse."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    raw_data: Any = None
    kind: ResultKind = ResultKind.OK
    text: Optional[str] = None  # Full model text, when the result came from a model call

    @classmethod
    def fail(cls, error: str, kind: ResultKind = ResultKind.ERROR, raw_data: Any = None) -> "LLMResult":
        return cls(success=False, error=error, raw_data=raw_data, kind=kind)


@dataclass
class PlanItem:
    """A planned step before it becomes a persisted Task."""
    description: str
    effort: Effort
    id: Optional[str] = None  # Set when the model echoes back an existing task id
    parent_task_id: Optional[str] = None


# =============================================================================
# TASK / CLARIFICATION / HISTORY
# =============================================================================

def new_id() -> str:
    return str(uuid.uuid4())


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class Task:
    """A single actionable (or container) task within a feature."""
    id: str
    feature_id: str
    description: str
    title: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    effort: Effort = Effort.MEDIUM
    parent_task_id: Optional[str] = None
    from_review: bool = False
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def __post_init__(self):
        if not self.title:
            self.title = self.description

    @property
    def completed(self) -> bool:
        """Legacy boolean projection of status."""
        return self.status == TaskStatus.COMPLETED

    @property
    def is_actionable(self) -> bool:
        return self.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


@dataclass
class ClarificationState:
    """An in-flight planning call suspended on a question to the user."""
    question_id: str
    feature_id: str
    prompt: str
    partial_response: str
    planning_type: PlanningType = PlanningType.FEATURE_PLANNING
    created_at: str = field(default_factory=_now)


@dataclass
class HistoryEntry:
    """Append-only audit record for a feature."""
    feature_id: str
    role: HistoryRole
    content: Any
    timestamp: str = field(default_factory=_now)
    task_id: Optional[str] = None
    action: Optional[str] = None
    details: Optional[str] = None
    id: Optional[int] = None


# =============================================================================
# SERIALIZATION
# =============================================================================

def task_to_dict(t: Task) -> Dict[str, Any]:
    return {
        "id": t.id,
        "feature_id": t.feature_id,
        "title": t.title,
        "description": t.description,
        "status": t.status.value,
        "completed": t.completed,
        "effort": t.effort.value,
        "parent_task_id": t.parent_task_id,
        "from_review": t.from_review,
        "created_at": t.created_at,
        "updated_at": t.updated_at,
    }


def _dict_to_task(data: Dict[str, Any]) -> Task:
    return Task(
        id=data["id"],
        feature_id=data["feature_id"],
        description=data["description"],
        title=data.get("title"),
        status=TaskStatus(data.get("status", "pending")),
        effort=Effort(data.get("effort") or "medium"),
        parent_task_id=data.get("parent_task_id"),
        from_review=bool(data.get("from_review", False)),
        created_at=data.get("created_at") or _now(),
        updated_at=data.get("updated_at") or _now(),
    )


def task_to_wire(t: Task) -> Dict[str, Any]:
    """camelCase task record as sent to websocket and HTTP clients."""
    return {
        "id": t.id,
        "featureId": t.feature_id,
        "title": t.title,
        "description": t.description,
        "status": t.status.value,
        "completed": t.completed,
        "effort": t.effort.value,
        "parentTaskId": t.parent_task_id,
        "fromReview": t.from_review,
        "createdAt": t.created_at,
        "updatedAt": t.updated_at,
    }


def history_entry_to_dict(h: HistoryEntry) -> Dict[str, Any]:
    return {
        "id": h.id,
        "timestamp": h.timestamp,
        "role": h.role.value,
        "content": h.content,
        "feature_id": h.feature_id,
        "task_id": h.task_id,
        "action": h.action,
        "details": h.details,
    }


def plan_item_to_line(item: PlanItem) -> str:
    """Render a plan item in the tagged text form used inside prompts."""
    return f"[{item.effort.value}] {item.description}"
