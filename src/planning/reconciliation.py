"""
Planning Module - Plan Reconciliation
=====================================
Diffs a freshly generated plan against the tasks already stored for a
feature and applies the resulting adds, updates and deletes.

Ordinary planning replaces the stored plan: stored tasks missing from the
new plan are deleted. Review plans only add and update, never delete.
Matched tasks only get the fields the planner owns written (description,
effort, parent, review flag, container status), so progress recorded on a
task in the meantime is kept.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Set, Tuple

from metrics import planning_metrics
from planner_types import Task, TaskStatus, new_id

logger = logging.getLogger(__name__)


@dataclass
class TaskUpdate:
    """Changed planner-owned fields of one stored task."""
    task_id: str
    fields: Dict[str, Any]


@dataclass
class PlanDiff:
    adds: List[Task] = field(default_factory=list)
    updates: List[TaskUpdate] = field(default_factory=list)
    deletes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.adds or self.updates or self.deletes)

    def summary(self) -> Dict[str, int]:
        return {"added": len(self.adds), "updated": len(self.updates), "deleted": len(self.deletes)}


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def resolve_id_collisions(tasks: List[Task], foreign_ids: Iterable[str] = ()) -> Tuple[List[Task], List[str]]:
    """
    Give fresh ids to tasks whose id cannot be used as-is.

    An id is replaced when it is not a UUID, belongs to a task of another
    feature, or repeats an id used earlier in the same plan. Parent
    references to a replaced (non-duplicate) id follow the new id.

    Returns:
        (tasks, warnings); the input list is not modified
    """
    foreign = set(foreign_ids)
    remap: Dict[str, str] = {}
    seen: Set[str] = set()
    warnings: List[str] = []
    resolved: List[Task] = []

    for task in tasks:
        task_id = task.id
        if task_id in seen:
            task_id = new_id()
            warnings.append(f"Duplicate task id {task.id} in plan; assigned {task_id}")
        elif task_id in foreign or not _is_uuid(task_id):
            task_id = new_id()
            remap[task.id] = task_id
            reason = "belongs to another feature" if task.id in foreign else "is not a UUID"
            warnings.append(f"Task id {task.id} {reason}; assigned {task_id}")
        seen.add(task_id)
        resolved.append(task if task_id == task.id else replace(task, id=task_id))

    if remap:
        resolved = [
            replace(t, parent_task_id=remap[t.parent_task_id]) if t.parent_task_id in remap else t
            for t in resolved
        ]
    return resolved, warnings


def _parents_first(tasks: List[Task]) -> List[Task]:
    """Order tasks so a parent is always inserted before its children, otherwise keeping plan order."""
    ids = {t.id for t in tasks}
    placed: Set[str] = set()
    ordered: List[Task] = []
    pending = list(tasks)
    while pending:
        deferred = []
        for task in pending:
            if task.parent_task_id in ids and task.parent_task_id not in placed:
                deferred.append(task)
            else:
                ordered.append(task)
                placed.add(task.id)
        if len(deferred) == len(pending):
            # Parent cycle; insert the rest as they come
            ordered += deferred
            break
        pending = deferred
    return ordered


def _changed_fields(new: Task, current: Task, from_review: bool) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if new.description != current.description:
        changes["description"] = new.description
    if new.effort != current.effort:
        changes["effort"] = new.effort
    if new.parent_task_id != current.parent_task_id:
        changes["parent_task_id"] = new.parent_task_id
    if from_review and not current.from_review:
        changes["from_review"] = True

    # Container status follows the plan; any other status belongs to whoever works the task
    if new.status == TaskStatus.DECOMPOSED and current.is_actionable:
        changes["status"] = TaskStatus.DECOMPOSED
    elif new.status == TaskStatus.PENDING and current.status == TaskStatus.DECOMPOSED:
        changes["status"] = TaskStatus.PENDING
    return changes


def compute_plan_diff(
    new_tasks: List[Task],
    existing_tasks: List[Task],
    from_review: bool = False,
    foreign_ids: Iterable[str] = (),
) -> PlanDiff:
    """
    Compute the store operations that turn ``existing_tasks`` into the new plan.

    Args:
        new_tasks: Plan produced by decomposition (parents before children)
        existing_tasks: Tasks currently stored for the same feature
        from_review: Review plans never delete stored tasks
        foreign_ids: Ids of the new plan already used by other features

    Returns:
        PlanDiff; applying it and diffing the same plan again yields an empty diff
    """
    tasks, warnings = resolve_id_collisions(new_tasks, foreign_ids)
    existing_by_id = {t.id: t for t in existing_tasks}
    new_ids = {t.id for t in tasks}
    surviving = (new_ids | set(existing_by_id)) if from_review else new_ids

    checked: List[Task] = []
    for task in tasks:
        parent = task.parent_task_id
        if parent and (parent not in surviving or parent == task.id):
            warnings.append(f"Task {task.id} references missing parent {parent}; clearing parent")
            task = replace(task, parent_task_id=None)
        checked.append(task)

    diff = PlanDiff(warnings=warnings)
    for task in checked:
        current = existing_by_id.get(task.id)
        if current is None:
            diff.adds.append(task)
            continue
        changes = _changed_fields(task, current, from_review)
        if changes:
            diff.updates.append(TaskUpdate(task_id=task.id, fields=changes))

    diff.adds = _parents_first(diff.adds)
    if not from_review:
        diff.deletes = [t.id for t in existing_tasks if t.id not in new_ids]

    for warning in diff.warnings:
        logger.warning(f"⚠️ {warning}")
    return diff


async def apply_plan_diff(store, diff: PlanDiff) -> Dict[str, int]:
    """
    Write a PlanDiff to the task store: adds, then updates, then deletes.

    Each delete runs in its own transaction; the sequence as a whole is not
    atomic.
    """
    for task in diff.adds:
        await store.add_task(task)
    for update in diff.updates:
        await store.update_task_fields(update.task_id, update.fields)

    deleted = 0
    for task_id in diff.deletes:
        if await store.delete_task(task_id):
            deleted += 1
        else:
            logger.debug(f"Task {task_id} already gone (removed with its parent)")

    planning_metrics.reconcile_operations_total.labels(op="add").inc(len(diff.adds))
    planning_metrics.reconcile_operations_total.labels(op="update").inc(len(diff.updates))
    planning_metrics.reconcile_operations_total.labels(op="delete").inc(deleted)

    counts = diff.summary()
    counts["deleted"] = deleted
    logger.info(f"Reconciled plan: {counts}")
    return counts
