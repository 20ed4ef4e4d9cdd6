"""
Planning Module - High-Effort Task Breakdown
============================================
Splits tasks rated "high" into low/medium subtasks under a container task.

The decomposer talks only to the completion provider; it does not touch the
task store. What happened to each high-effort task is reported back as
BreakdownEvents so the pipeline can record it in the feature history.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from config import BreakdownConfig
from metrics import planning_metrics
from planner_types import Effort, PlanItem, ResultKind, Task, TaskStatus, new_id, plan_item_to_line
from .effort import coerce_effort, determine_task_effort
from .prompts import BREAKDOWN_PROMPT
from .schemas import TaskBreakdownResponse

logger = logging.getLogger(__name__)

SUBTASK_EFFORTS = (Effort.LOW, Effort.MEDIUM)

# Failures worth sending the identical request again
_RETRYABLE_KINDS = (ResultKind.PARSE_ERROR, ResultKind.ERROR)


@dataclass
class BreakdownEvent:
    """One step of a breakdown, recorded in the feature history."""
    action: str  # task_breakdown_attempt / _success / _failure / _error
    task_id: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BreakdownResult:
    """Tasks ready for reconciliation plus the breakdown trail."""
    tasks: List[Task]
    events: List[BreakdownEvent] = field(default_factory=list)

    @property
    def decomposed_ids(self) -> List[str]:
        return [t.id for t in self.tasks if t.status == TaskStatus.DECOMPOSED]


async def _rate_subtask(provider, description: str, raw_effort: Optional[str],
                        options: BreakdownConfig, feature_id: Optional[str]) -> Effort:
    effort = coerce_effort(raw_effort)
    if effort in SUBTASK_EFFORTS:
        return effort

    effort = await determine_task_effort(provider, description, feature_id)
    if effort not in SUBTASK_EFFORTS:
        logger.warning(f"Subtask '{description[:60]}' rated {effort.value}; capping at {options.preferred_effort}")
        effort = Effort(options.preferred_effort)
    return effort


async def break_down_high_effort_task(
    provider,
    task_description: str,
    context: str = "",
    options: Optional[BreakdownConfig] = None,
    feature_id: Optional[str] = None,
) -> List[PlanItem]:
    """
    Ask the model to split one task into low/medium subtasks.

    The identical request is sent up to ``options.max_attempts`` times while
    the answer is unparseable or the call errors. Blocked and rate-limited
    calls are not repeated.

    Returns:
        Subtask plan items, or an empty list when no usable breakdown came back
    """
    options = options or BreakdownConfig()
    if provider is None:
        return []

    prompt = BREAKDOWN_PROMPT.format(
        task_description=task_description,
        context=context or "None",
        min_subtasks=options.min_subtasks,
        max_subtasks=options.max_subtasks,
        preferred_effort=options.preferred_effort,
    )

    for attempt in range(1, options.max_attempts + 1):
        result = await provider.generate_structured(
            prompt,
            TaskBreakdownResponse,
            temperature=options.temperature,
            feature_id=feature_id,
        )

        if result.success:
            subtasks = result.data.subtasks
            if len(subtasks) > options.max_subtasks:
                logger.warning(f"Breakdown returned {len(subtasks)} subtasks; keeping first {options.max_subtasks}")
                subtasks = subtasks[:options.max_subtasks]
            elif len(subtasks) < options.min_subtasks:
                logger.warning(f"Breakdown returned only {len(subtasks)} subtask(s) for '{task_description[:60]}'")

            items = []
            for subtask in subtasks:
                description = subtask.description.strip()
                effort = await _rate_subtask(provider, description, subtask.effort, options, feature_id)
                items.append(PlanItem(description=description, effort=effort))
            logger.info(f"✅ Broke '{task_description[:60]}' into {len(items)} subtasks (attempt {attempt})")
            return items

        logger.warning(
            f"⚠️ Breakdown attempt {attempt}/{options.max_attempts} failed "
            f"({result.kind.value}): {result.error}"
        )
        if result.kind not in _RETRYABLE_KINDS:
            break

    logger.error(f"❌ Could not break down '{task_description[:60]}'; keeping it as a single task")
    return []


def _container_ids(items: List[PlanItem]) -> Set[str]:
    """Ids referenced as a parent by other items of the same plan."""
    return {item.parent_task_id for item in items if item.parent_task_id}


async def process_and_breakdown_tasks(
    provider,
    items: List[PlanItem],
    feature_id: str,
    from_review: bool = False,
    context: str = "",
    options: Optional[BreakdownConfig] = None,
) -> BreakdownResult:
    """
    Turn rated plan items into Tasks, decomposing high-effort ones.

    Items are handled one at a time. A high-effort item gets its id before
    the model is called, so the container and the history trail share it
    whether or not the breakdown succeeds. Items another item already
    names as its parent are kept as containers without a new breakdown,
    and subtasks are never broken down again.
    """
    options = options or BreakdownConfig()
    containers = _container_ids(items)
    tasks: List[Task] = []
    events: List[BreakdownEvent] = []

    def make_task(item: PlanItem, task_id: str, status: TaskStatus = TaskStatus.PENDING,
                  parent_task_id: Optional[str] = None) -> Task:
        return Task(
            id=task_id,
            feature_id=feature_id,
            description=item.description,
            status=status,
            effort=item.effort,
            parent_task_id=parent_task_id,
            from_review=from_review,
        )

    for item in items:
        task_id = item.id or new_id()

        if task_id in containers:
            tasks.append(make_task(item, task_id, status=TaskStatus.DECOMPOSED))
            continue
        if item.effort != Effort.HIGH or item.parent_task_id:
            tasks.append(make_task(item, task_id, parent_task_id=item.parent_task_id))
            continue

        events.append(BreakdownEvent("task_breakdown_attempt", task_id, {"description": item.description}))
        try:
            subtasks = await break_down_high_effort_task(provider, item.description, context, options, feature_id)
        except Exception as e:
            logger.error(f"❌ Breakdown of '{item.description[:60]}' raised: {e}")
            events.append(BreakdownEvent("task_breakdown_error", task_id, {"error": str(e)}))
            subtasks = []

        if not subtasks:
            planning_metrics.decompositions_total.labels(result="failure").inc()
            events.append(BreakdownEvent("task_breakdown_failure", task_id, {"description": item.description}))
            tasks.append(make_task(item, task_id))
            continue

        planning_metrics.decompositions_total.labels(result="success").inc()
        tasks.append(make_task(item, task_id, status=TaskStatus.DECOMPOSED))
        for subtask in subtasks:
            tasks.append(make_task(subtask, new_id(), parent_task_id=task_id))
        events.append(BreakdownEvent("task_breakdown_success", task_id, {
            "description": item.description,
            "subtask_count": len(subtasks),
            "subtasks": [plan_item_to_line(s) for s in subtasks],
        }))

    return BreakdownResult(tasks=tasks, events=events)
