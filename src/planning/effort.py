"""
Planning Module - Effort Classification
=======================================
Makes sure every planned task carries a low/medium/high effort rating.
"""

import logging
import re
from typing import List, Optional, Tuple

from planner_types import Effort, PlanItem
from .prompts import EFFORT_PROMPT
from .schemas import EffortEstimation, PlannedTask

logger = logging.getLogger(__name__)

_EFFORT_TAG_RE = re.compile(r"^\[(low|medium|high)\]\s*", re.I)


def coerce_effort(value) -> Optional[Effort]:
    """Effort for a loosely typed value, None when it is not a valid rating."""
    if isinstance(value, Effort):
        return value
    if isinstance(value, str):
        try:
            return Effort(value.strip().lower())
        except ValueError:
            return None
    return None


def has_effort_tag(line: str) -> bool:
    return bool(_EFFORT_TAG_RE.match(line.strip()))


def extract_effort(line: str) -> Tuple[Effort, str]:
    """
    Split a ``[effort] description`` line.

    Returns:
        (effort, description); untagged lines are rated medium and returned
        unchanged apart from surrounding whitespace
    """
    text = line.strip()
    match = _EFFORT_TAG_RE.match(text)
    if not match:
        return Effort.MEDIUM, text
    return Effort(match.group(1).lower()), text[match.end():].strip()


async def determine_task_effort(
    provider,
    description: str,
    feature_id: Optional[str] = None,
    temperature: float = 0.1,
    max_tokens: int = 100,
) -> Effort:
    """
    Ask the model to rate a single task.

    Any failure (no provider, provider error, unparseable answer) yields
    Effort.MEDIUM so one task never blocks a plan.
    """
    if provider is None:
        return Effort.MEDIUM

    prompt = EFFORT_PROMPT.format(task_description=description)
    try:
        result = await provider.generate_structured(
            prompt,
            EffortEstimation,
            temperature=temperature,
            max_tokens=max_tokens,
            feature_id=feature_id,
        )
    except Exception as e:
        logger.warning(f"Effort estimation raised for '{description[:60]}': {e}; using medium")
        return Effort.MEDIUM

    if not result.success:
        logger.warning(f"Effort estimation failed for '{description[:60]}': {result.error}; using medium")
        return Effort.MEDIUM

    effort = Effort(result.data.effort)
    logger.debug(f"Estimated {effort.value} effort for '{description[:60]}'")
    return effort


async def ensure_effort_ratings(
    lines: List[str],
    provider,
    feature_id: Optional[str] = None,
    temperature: float = 0.1,
    max_tokens: int = 100,
) -> List[PlanItem]:
    """
    Rate raw task lines.

    Tagged lines (``[high] Build auth``) keep their tag, normalized to
    lower case; untagged lines are rated by the model.
    """
    items: List[PlanItem] = []
    for line in lines:
        if has_effort_tag(line):
            effort, description = extract_effort(line)
        else:
            description = line.strip()
            if not description:
                continue
            effort = await determine_task_effort(provider, description, feature_id, temperature, max_tokens)
        if description:
            items.append(PlanItem(description=description, effort=effort))
    return items


async def rate_planned_tasks(
    planned: List[PlannedTask],
    provider,
    feature_id: Optional[str] = None,
    temperature: float = 0.1,
    max_tokens: int = 100,
) -> List[PlanItem]:
    """Rate tasks from a structured plan, keeping model-supplied ids."""
    items: List[PlanItem] = []
    for task in planned:
        description = task.description.strip()
        effort = coerce_effort(task.effort)
        if has_effort_tag(description):
            tagged_effort, description = extract_effort(description)
            effort = effort or tagged_effort
        if not description:
            continue
        if effort is None:
            effort = await determine_task_effort(provider, description, feature_id, temperature, max_tokens)
        items.append(PlanItem(description=description, effort=effort, id=task.id, parent_task_id=task.parentTaskId))
    return items
