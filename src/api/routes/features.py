"""
Features API Routes
===================
FastAPI routes for planning features and working through their tasks.
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from api import state as api_state
from api.state import get_context
from api.types import AdjustPlanRequest, PlanFeatureRequest, PlanResponse, ReviewChangesRequest
from planner_types import PlanningError, task_to_wire
from planning.state_machine import InvalidTransitionError, TaskNotFoundError

logger = logging.getLogger(__name__)

# Create router with prefix and tags
router = APIRouter(prefix="/api/features", tags=["features"])

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _planning_http_error(e: PlanningError) -> HTTPException:
    if e.code == "FEATURE_NOT_FOUND":
        return HTTPException(status_code=404, detail=e.message)
    return HTTPException(status_code=502, detail={"code": e.code, "message": e.message})


def _plan_response(outcome) -> PlanResponse:
    return PlanResponse(
        featureId=outcome.feature_id,
        status=outcome.status,
        message=outcome.message,
        tasks=[task_to_wire(t) for t in outcome.tasks],
        question=outcome.question,
    )


async def _require_feature(feature_id: str):
    feature = await get_context().store.get_feature(feature_id)
    if feature is None:
        raise HTTPException(status_code=404, detail=f"Feature {feature_id} not found")
    return feature


# =============================================================================
# PLANNING
# =============================================================================

@router.post("/plan", response_model=PlanResponse)
@limiter.limit("30/minute")
async def plan_feature(request: Request, body: PlanFeatureRequest):
    """Create a feature and generate its task plan."""
    if not body.feature_description.strip():
        raise HTTPException(status_code=400, detail="feature_description must not be blank")
    try:
        outcome = await get_context().pipeline.plan_feature(body.feature_description, body.project_path)
    except PlanningError as e:
        raise _planning_http_error(e)
    return _plan_response(outcome)


@router.post("/{feature_id}/adjust", response_model=PlanResponse)
@limiter.limit("30/minute")
async def adjust_plan(request: Request, feature_id: str, body: AdjustPlanRequest):
    """Revise a feature's plan. Tasks left out of the revised plan are removed."""
    if not body.adjustment_request.strip():
        raise HTTPException(status_code=400, detail="adjustment_request must not be blank")
    try:
        outcome = await get_context().pipeline.adjust_plan(feature_id, body.adjustment_request)
    except PlanningError as e:
        raise _planning_http_error(e)
    return _plan_response(outcome)


@router.post("/{feature_id}/review", response_model=PlanResponse)
@limiter.limit("30/minute")
async def review_changes(request: Request, feature_id: str, body: ReviewChangesRequest):
    """Add follow-up tasks for a diff; existing tasks are never removed."""
    try:
        outcome = await get_context().pipeline.review_changes(feature_id, body.diff)
    except PlanningError as e:
        raise _planning_http_error(e)
    return _plan_response(outcome)


# =============================================================================
# TASKS
# =============================================================================

@router.get("/{feature_id}/tasks")
async def list_tasks(feature_id: str):
    """Tasks of a feature in creation order."""
    feature = await _require_feature(feature_id)
    tasks = await get_context().store.get_tasks_by_feature(feature_id)
    return {
        "featureId": feature_id,
        "status": feature["status"],
        "tasks": [task_to_wire(t) for t in tasks],
    }


@router.get("/{feature_id}/tasks/next")
async def next_task(feature_id: str):
    """First pending task that is not a container."""
    result = await get_context().pipeline.get_next_task(feature_id)
    if result.is_error:
        raise HTTPException(status_code=404, detail=result.message)
    return {
        "message": result.message,
        "task": task_to_wire(result.task) if result.task else None,
    }


@router.post("/{feature_id}/tasks/{task_id}/start")
async def start_task(feature_id: str, task_id: str):
    try:
        task = await get_context().pipeline.start_task(feature_id, task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"task": task_to_wire(task)}


@router.post("/{feature_id}/tasks/{task_id}/complete")
async def complete_task(feature_id: str, task_id: str):
    """Mark a task complete; a parent whose subtasks are all done completes with it."""
    try:
        outcome = await get_context().pipeline.mark_task_complete(feature_id, task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "message": outcome.message,
        "alreadyCompleted": outcome.already_completed,
        "parentCompleted": outcome.parent_completed,
        "featureCompleted": outcome.feature_completed,
        "tasks": [task_to_wire(t) for t in outcome.tasks],
    }


@router.post("/{feature_id}/screenshot")
async def request_screenshot(feature_id: str):
    """Ask the feature's connected UI clients to send a screenshot."""
    await _require_feature(feature_id)
    if api_state.manager is None:
        raise HTTPException(status_code=503, detail="WebSocket manager not initialized")
    await api_state.manager.request_screenshot(feature_id)
    return {"status": "requested"}
