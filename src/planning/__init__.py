"""
Planning Module
===============
Turns feature requests into effort-rated, decomposed task plans and keeps
the stored plan in step with each new answer from the model.
"""

from .response_parser import parse_and_validate_json_response
from .clarification import ClarificationRequest, detect_clarification_request
from .effort import determine_task_effort, ensure_effort_ratings, extract_effort
from .decomposition import break_down_high_effort_task, process_and_breakdown_tasks
from .reconciliation import PlanDiff, apply_plan_diff, compute_plan_diff
from .state_machine import InvalidTransitionError, TaskNotFoundError, TaskStateMachine, plan_completion

__all__ = [
    "parse_and_validate_json_response",
    "ClarificationRequest",
    "detect_clarification_request",
    "determine_task_effort",
    "ensure_effort_ratings",
    "extract_effort",
    "break_down_high_effort_task",
    "process_and_breakdown_tasks",
    "PlanDiff",
    "apply_plan_diff",
    "compute_plan_diff",
    "InvalidTransitionError",
    "TaskNotFoundError",
    "TaskStateMachine",
    "plan_completion",
]
