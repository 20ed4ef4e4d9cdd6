"""
Planning Module - Task State Machine
====================================
Status transitions for stored tasks, including the cascade that completes
a container once its last subtask is done.

Allowed transitions:
    pending      -> in_progress, completed, decomposed
    in_progress  -> completed, pending
    decomposed   -> completed (only through the cascade)
    completed    -> (terminal)

The cascade reaches exactly one parent level.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from metrics import planning_metrics
from planner_types import FeatureStatus, HistoryRole, Task, TaskStatus

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[TaskStatus, Set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.DECOMPOSED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.PENDING},
    TaskStatus.DECOMPOSED: {TaskStatus.COMPLETED},
    TaskStatus.COMPLETED: set(),
}

PARENT_PREVIEW_CHARS = 30


class TaskNotFoundError(Exception):
    def __init__(self, feature_id: str, task_id: Optional[str] = None):
        if task_id:
            message = f"Task with ID {task_id} not found in feature {feature_id}."
        else:
            message = (
                f"No tasks found for feature ID {feature_id}. "
                f"The feature may not exist or has not been planned yet."
            )
        super().__init__(message)
        self.feature_id = feature_id
        self.task_id = task_id


class InvalidTransitionError(Exception):
    def __init__(self, task_id: str, from_status: TaskStatus, to_status: TaskStatus, reason: str = ""):
        message = f"Task {task_id} cannot move from {from_status.value} to {to_status.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status


def check_transition(task: Task, to_status: TaskStatus, cascade: bool = False):
    """Raise InvalidTransitionError unless ``task`` may move to ``to_status``."""
    if task.status == TaskStatus.DECOMPOSED and to_status == TaskStatus.COMPLETED and not cascade:
        raise InvalidTransitionError(
            task.id, task.status, to_status,
            "container tasks complete automatically when all their subtasks are complete",
        )
    if to_status not in ALLOWED_TRANSITIONS[task.status]:
        raise InvalidTransitionError(task.id, task.status, to_status)


@dataclass
class CompletionPlan:
    """What completing one task changes, worked out without touching storage."""
    task_id: str
    already_completed: bool = False
    parent_to_complete: Optional[str] = None


def plan_completion(tasks: List[Task], task_id: str) -> CompletionPlan:
    """
    Decide the effect of marking ``task_id`` complete within ``tasks``.

    Raises:
        TaskNotFoundError: task is not among ``tasks``
        InvalidTransitionError: task is a container
    """
    by_id = {t.id: t for t in tasks}
    task = by_id.get(task_id)
    if task is None:
        raise TaskNotFoundError(tasks[0].feature_id if tasks else "", task_id)

    if task.status == TaskStatus.COMPLETED:
        return CompletionPlan(task_id=task_id, already_completed=True)

    check_transition(task, TaskStatus.COMPLETED)

    plan = CompletionPlan(task_id=task_id)
    parent = by_id.get(task.parent_task_id) if task.parent_task_id else None
    if parent is not None and parent.status != TaskStatus.COMPLETED:
        siblings = [t for t in tasks if t.parent_task_id == parent.id]
        if all(t.id == task_id or t.status == TaskStatus.COMPLETED for t in siblings):
            check_transition(parent, TaskStatus.COMPLETED, cascade=True)
            plan.parent_to_complete = parent.id
    return plan


@dataclass
class CompletionOutcome:
    task_id: str
    message: str
    already_completed: bool = False
    parent_completed: Optional[str] = None
    feature_completed: bool = False
    tasks: List[Task] = field(default_factory=list)


@dataclass
class NextTaskResult:
    message: str
    task: Optional[Task] = None
    is_error: bool = False


def format_next_task(task: Task, tasks: List[Task]) -> str:
    effort_info = f" (Effort: {task.effort.value})" if task.effort else ""
    parent_info = ""
    if task.parent_task_id:
        parent = next((t for t in tasks if t.id == task.parent_task_id), None)
        if parent is not None:
            parent_desc = parent.description
            if len(parent_desc) > PARENT_PREVIEW_CHARS:
                parent_desc = parent_desc[:PARENT_PREVIEW_CHARS] + "..."
            parent_info = f' (Subtask of: "{parent_desc}")'
        else:
            parent_info = f" (Subtask of parent ID: {task.parent_task_id})"
    return f"Next pending task (ID: {task.id}){effort_info}{parent_info}: {task.description}"


class TaskStateMachine:
    """
    Applies status changes to stored tasks and tells connected clients.

    Every change is persisted before any notification goes out. A failing
    notifier is logged and never undoes or fails the change.
    """

    def __init__(self, store, notifier=None):
        self.store = store
        self.notifier = notifier

    async def _record(self, feature_id: str, role: HistoryRole, content: Dict, task_id: Optional[str] = None):
        await self.store.add_history_entry(feature_id, role, content, task_id=task_id)

    async def _notify_status(self, feature_id: str, task_id: str, status: TaskStatus):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_status_changed(feature_id, status.value, task_id=task_id)
        except Exception as e:
            logger.error(f"❌ Failed to broadcast status change for task {task_id}: {e}")

    async def _notify_tasks(self, feature_id: str, tasks: List[Task]):
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_tasks_updated(feature_id, tasks)
        except Exception as e:
            logger.error(f"❌ Failed to broadcast task update for feature {feature_id}: {e}")

    async def _load(self, feature_id: str) -> List[Task]:
        tasks = await self.store.get_tasks_by_feature(feature_id)
        if not tasks:
            raise TaskNotFoundError(feature_id)
        return tasks

    async def complete_task(self, feature_id: str, task_id: str) -> CompletionOutcome:
        """
        Mark a task complete, auto-completing its parent when it was the
        last open subtask.

        Completing an already completed task is a no-op that still answers
        with a message, and sends no broadcast.
        """
        tool = "mark_task_complete"
        await self._record(feature_id, HistoryRole.TOOL_CALL,
                           {"tool": tool, "params": {"feature_id": feature_id, "task_id": task_id}})
        try:
            tasks = await self._load(feature_id)
            if task_id not in {t.id for t in tasks}:
                raise TaskNotFoundError(feature_id, task_id)
            plan = plan_completion(tasks, task_id)
        except (TaskNotFoundError, InvalidTransitionError) as e:
            await self._record(feature_id, HistoryRole.TOOL_RESPONSE,
                               {"tool": tool, "isError": True, "message": str(e), "taskId": task_id})
            raise

        if plan.already_completed:
            message = f"Task {task_id} was already marked as complete."
            await self._record(feature_id, HistoryRole.TOOL_RESPONSE, {
                "tool": tool, "isError": False, "message": message,
                "taskId": task_id, "status": "already_completed",
            })
            return CompletionOutcome(task_id=task_id, message=message, already_completed=True, tasks=tasks)

        await self.store.update_task_status(task_id, TaskStatus.COMPLETED)
        planning_metrics.task_transitions_total.labels(to_status=TaskStatus.COMPLETED.value).inc()
        message = f"Task {task_id} marked as complete."
        history = {"tool": tool, "isError": False, "taskId": task_id, "status": "completed"}

        if plan.parent_to_complete:
            await self.store.update_task_status(plan.parent_to_complete, TaskStatus.COMPLETED)
            planning_metrics.task_transitions_total.labels(to_status=TaskStatus.COMPLETED.value).inc()
            logger.info(f"Auto-completed parent task {plan.parent_to_complete}; all subtasks complete")
            message = (
                f"{message} Parent task {plan.parent_to_complete} also auto-completed "
                f"as all subtasks are now complete."
            )
            history.update(parentTaskId=plan.parent_to_complete, status="completed_with_parent")

        history["message"] = message
        await self._record(feature_id, HistoryRole.TOOL_RESPONSE, history, task_id=task_id)

        updated = await self.store.get_tasks_by_feature(feature_id)
        feature_completed = all(t.status == TaskStatus.COMPLETED for t in updated)
        if feature_completed:
            await self.store.update_feature_status(feature_id, FeatureStatus.COMPLETED)
            logger.info(f"✅ Feature {feature_id} completed")

        await self._notify_status(feature_id, task_id, TaskStatus.COMPLETED)
        if plan.parent_to_complete:
            await self._notify_status(feature_id, plan.parent_to_complete, TaskStatus.COMPLETED)
        await self._notify_tasks(feature_id, updated)

        return CompletionOutcome(
            task_id=task_id,
            message=message,
            parent_completed=plan.parent_to_complete,
            feature_completed=feature_completed,
            tasks=updated,
        )

    async def start_task(self, feature_id: str, task_id: str) -> Task:
        """Move a pending task to in_progress."""
        tasks = await self._load(feature_id)
        task = next((t for t in tasks if t.id == task_id), None)
        if task is None:
            raise TaskNotFoundError(feature_id, task_id)
        if task.status == TaskStatus.IN_PROGRESS:
            return task

        check_transition(task, TaskStatus.IN_PROGRESS)
        await self.store.update_task_status(task_id, TaskStatus.IN_PROGRESS)
        planning_metrics.task_transitions_total.labels(to_status=TaskStatus.IN_PROGRESS.value).inc()
        await self._record(feature_id, HistoryRole.TOOL_RESPONSE,
                           {"tool": "start_task", "isError": False, "taskId": task_id, "status": "in_progress"},
                           task_id=task_id)
        await self._notify_status(feature_id, task_id, TaskStatus.IN_PROGRESS)

        task.status = TaskStatus.IN_PROGRESS
        return task

    async def get_next_task(self, feature_id: str) -> NextTaskResult:
        """First pending, non-container task in creation order."""
        tool = "get_next_task"
        await self._record(feature_id, HistoryRole.TOOL_CALL, {"tool": tool, "params": {"feature_id": feature_id}})

        tasks = await self.store.get_tasks_by_feature(feature_id)
        if not tasks:
            result = NextTaskResult(message=str(TaskNotFoundError(feature_id)), is_error=True)
        else:
            task = next((t for t in tasks if t.status == TaskStatus.PENDING), None)
            if task is None:
                result = NextTaskResult(
                    message=f"No pending tasks found for feature ID: {feature_id}. All tasks have been completed."
                )
            else:
                result = NextTaskResult(message=format_next_task(task, tasks), task=task)

        content = {"tool": tool, "isError": result.is_error, "message": result.message}
        if result.task is not None:
            content["taskId"] = result.task.id
        await self._record(feature_id, HistoryRole.TOOL_RESPONSE, content)
        return result
