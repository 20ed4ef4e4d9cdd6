"""
Planning Module - Model Output Schemas
======================================
Pydantic schemas the model's JSON answers are validated against.
"""

from typing import List, Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


def _normalize_effort(value):
    if isinstance(value, str):
        return value.strip().lower()
    return value


class EffortEstimation(BaseModel):
    """Single-task effort estimate."""
    effort: Literal["low", "medium", "high"] = Field(description="Effort needed to implement the task")
    reasoning: Optional[str] = Field(default=None, description="One sentence justification")

    @field_validator("effort", mode="before")
    @classmethod
    def normalize_effort(cls, value):
        return _normalize_effort(value)


class Subtask(BaseModel):
    """One subtask of a high-effort task."""
    description: str = Field(min_length=1, description="Concrete, actionable coding step")
    effort: Optional[str] = Field(default=None, description="low or medium")

    @field_validator("effort", mode="before")
    @classmethod
    def normalize_effort(cls, value):
        return _normalize_effort(value)


class TaskBreakdownResponse(BaseModel):
    """LLM response for splitting one task."""
    subtasks: List[Subtask] = Field(min_length=1)


class PlannedTask(BaseModel):
    """A task proposed by the model for a feature plan."""
    description: str = Field(min_length=1)
    effort: Optional[str] = Field(default=None, description="low, medium or high")
    id: Optional[str] = Field(default=None, description="Existing task id when the task is kept from the current plan")
    parentTaskId: Optional[str] = Field(default=None, description="Id of the container task this subtask belongs to")

    @field_validator("effort", mode="before")
    @classmethod
    def normalize_effort(cls, value):
        return _normalize_effort(value)


class ClarificationQuestion(BaseModel):
    """Question the model needs answered before it can plan."""
    question: str = Field(min_length=1)
    options: Optional[List[str]] = None
    allowsText: bool = True


class PlanFeatureResponse(BaseModel):
    """Either a task list or a clarification request."""
    tasks: Optional[List[PlannedTask]] = None
    clarificationNeeded: Optional[ClarificationQuestion] = None

    @model_validator(mode="after")
    def _tasks_or_question(self):
        if self.clarificationNeeded is None and not self.tasks:
            raise ValueError("response must contain tasks or clarificationNeeded")
        return self


class ReviewResponse(BaseModel):
    """Follow-up tasks proposed after reviewing code changes."""
    tasks: List[PlannedTask] = Field(default_factory=list)
