"""
Planning Module - Pipeline
==========================
Runs a planning request end to end:

    context -> model -> (clarification? suspend) -> effort ratings
            -> breakdown of high-effort tasks -> reconciliation -> notify

Feature planning, plan adjustment and change review all go through here,
as does resuming a plan once the user has answered a clarification
question. Every failure is written to the feature history and broadcast
as an ``error`` message before it reaches the caller.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from config import PlannerConfig
from metrics import planning_metrics
from planner_types import (
    ClarificationState,
    HistoryRole,
    PlanItem,
    PlanningError,
    PlanningType,
    ResultKind,
    Task,
    history_entry_to_dict,
    new_id,
)
from .clarification import ClarificationRequest, clarification_to_payload, detect_clarification_request
from .decomposition import process_and_breakdown_tasks
from .effort import ensure_effort_ratings, rate_planned_tasks
from .plan_text import parse_plan_response
from .prompts import (
    ADJUST_PLAN_PROMPT,
    PLAN_FEATURE_PROMPT,
    PLAN_FEATURE_TEXT_PROMPT,
    REVIEW_PROMPT,
    context_block,
    resume_prompt,
)
from .reconciliation import apply_plan_diff, compute_plan_diff
from .schemas import PlanFeatureResponse, PlannedTask, ReviewResponse
from .state_machine import CompletionOutcome, NextTaskResult, TaskStateMachine

logger = logging.getLogger(__name__)

ContextProvider = Callable[[Optional[str]], Awaitable[str]]

RECENT_HISTORY_ENTRIES = 5


async def empty_context(project_path: Optional[str]) -> str:
    return ""


@dataclass
class PlanOutcome:
    """What a planning request ended in."""
    feature_id: str
    status: str  # planned / clarification_needed / no_changes / error
    tasks: List[Task] = field(default_factory=list)
    question: Optional[Dict[str, Any]] = None
    message: str = ""
    error_code: Optional[str] = None


@dataclass
class _ModelPlan:
    """One model answer: either raw planned tasks or a question."""
    planned: List[Union[PlannedTask, str]] = field(default_factory=list)
    clarification: Optional[ClarificationRequest] = None
    raw_text: str = ""


def _tasks_for_prompt(tasks: List[Task]) -> str:
    return json.dumps(
        [
            {
                "id": t.id,
                "description": t.description,
                "effort": t.effort.value,
                "status": t.status.value,
                "parentTaskId": t.parent_task_id,
            }
            for t in tasks
        ],
        indent=2,
    )


class PlanningPipeline:
    """
    Planning entry points for one process.

    Args:
        config: Planner configuration (temperatures, breakdown options)
        store: TaskStore
        state_store: PlanningStateStore for suspended clarification dialogs
        provider: CompletionProvider, or None when no model is configured
        notifier: Object with notify_tasks_updated / notify_status_changed /
            send_question / send_error coroutines, or None
        context_provider: Async callable returning a codebase summary for a
            project path
    """

    def __init__(
        self,
        config: PlannerConfig,
        store,
        state_store,
        provider=None,
        notifier=None,
        context_provider: Optional[ContextProvider] = None,
    ):
        self.config = config
        self.store = store
        self.state_store = state_store
        self.provider = provider
        self.notifier = notifier
        self.context_provider = context_provider or empty_context
        self.state_machine = TaskStateMachine(store, notifier)

    # =========================================================================
    # NOTIFICATION / HISTORY HELPERS
    # =========================================================================

    async def _notify(self, method: str, *args, **kwargs):
        """Call a notifier method; failures are logged and never raised."""
        if self.notifier is None:
            return
        try:
            await getattr(self.notifier, method)(*args, **kwargs)
        except Exception as e:
            logger.error(f"❌ Notification {method} failed: {e}")

    async def _history(self, feature_id: str, role: HistoryRole, content: Dict[str, Any], **kwargs):
        await self.store.add_history_entry(feature_id, role, content, **kwargs)

    async def _fail(self, feature_id: str, tool: str, code: str, error: Exception, status: str = "failed"):
        """Record a failed request and tell clients about it."""
        message = error.message if isinstance(error, PlanningError) else str(error)
        logger.error(f"❌ {tool} failed for feature {feature_id}: {message}")
        try:
            await self._history(feature_id, HistoryRole.TOOL_RESPONSE, {
                "tool": tool, "isError": True, "status": status, "error": message,
            })
        except Exception as history_error:
            logger.error(f"❌ Failed to record error in history: {history_error}")
        await self._notify("send_error", feature_id, code, message)

    async def _context(self, project_path: Optional[str]) -> str:
        try:
            return await self.context_provider(project_path) or ""
        except Exception as e:
            logger.warning(f"⚠️ Could not gather codebase context for {project_path}: {e}")
            return ""

    # =========================================================================
    # MODEL CALLS
    # =========================================================================

    async def _request_plan(
        self,
        prompt: str,
        feature_id: str,
        temperature: float,
        text_prompt: Optional[str] = None,
        code: str = "PLAN_FEATURE_FAILED",
    ) -> _ModelPlan:
        """
        Ask the model for a plan.

        The raw answer is checked for a clarification block first, whether
        or not it also parsed as a plan. An answer that cannot be parsed is
        then, when ``text_prompt`` is given, requested again as a plain-text
        plan.

        Raises:
            PlanningError: no model configured or no usable answer
        """
        if self.provider is None:
            raise PlanningError("Planning model not initialized", code)

        result = await self.provider.generate_structured(
            prompt, PlanFeatureResponse, temperature=temperature, feature_id=feature_id,
        )
        if result.success:
            # A clarification block wins over tasks parsed from the same answer
            request = detect_clarification_request(result.text)
            if request:
                return _ModelPlan(clarification=request, raw_text=result.text or "")
            data: PlanFeatureResponse = result.data
            if data.clarificationNeeded is not None:
                question = data.clarificationNeeded
                return _ModelPlan(
                    clarification=ClarificationRequest(question.question, question.options, question.allowsText),
                    raw_text=result.text or "",
                )
            return _ModelPlan(planned=list(data.tasks or []), raw_text=result.text or "")

        if result.kind != ResultKind.PARSE_ERROR:
            raise PlanningError(f"Model request failed ({result.kind.value}): {result.error}", code)

        request = detect_clarification_request(result.text)
        if request:
            return _ModelPlan(clarification=request, raw_text=result.text or "")
        if text_prompt is None:
            raise PlanningError(f"Model returned an invalid plan: {result.error}", code)

        logger.warning(f"⚠️ Structured plan unusable ({result.error}); retrying as plain text")
        text = await self.provider.generate_free_text(text_prompt, temperature=temperature, feature_id=feature_id)
        if text is None:
            raise PlanningError("Model request failed while generating a plain-text plan", code)

        request = detect_clarification_request(text)
        if request:
            return _ModelPlan(clarification=request, raw_text=text)

        lines = parse_plan_response(text)
        if not lines:
            raise PlanningError("Model returned no tasks", code)
        return _ModelPlan(planned=lines, raw_text=text)

    async def _ask(
        self,
        feature_id: str,
        tool: str,
        prompt: str,
        model_plan: _ModelPlan,
        planning_type: PlanningType,
    ) -> PlanOutcome:
        """Suspend a planning call on a question to the user."""
        request = model_plan.clarification
        question_id = new_id()
        await self.state_store.put(ClarificationState(
            question_id=question_id,
            feature_id=feature_id,
            prompt=prompt,
            partial_response=model_plan.raw_text or request.question,
            planning_type=planning_type,
        ))
        planning_metrics.clarifications_total.labels(stage="asked").inc()
        planning_metrics.plans_total.labels(planning_type=planning_type.value, result="clarification").inc()

        payload = clarification_to_payload(question_id, request)
        await self._history(feature_id, HistoryRole.MODEL, {"step": "clarification_requested", **payload})
        await self._history(feature_id, HistoryRole.TOOL_RESPONSE, {
            "tool": tool, "isError": False, "status": "awaiting_clarification", "questionId": question_id,
        })
        await self._notify("send_question", feature_id, payload)

        return PlanOutcome(
            feature_id=feature_id,
            status="clarification_needed",
            question=payload,
            message=f"Planning paused: {request.question}",
        )

    # =========================================================================
    # FINALIZATION
    # =========================================================================

    async def _rate(self, planned: List[Union[PlannedTask, str]], feature_id: str) -> List[PlanItem]:
        temperature = self.config.effort_temperature
        max_tokens = self.config.effort_max_tokens
        if all(isinstance(p, str) for p in planned):
            return await ensure_effort_ratings(planned, self.provider, feature_id, temperature, max_tokens)
        planned = [PlannedTask(description=p) if isinstance(p, str) else p for p in planned]
        return await rate_planned_tasks(planned, self.provider, feature_id, temperature, max_tokens)

    async def finalize_plan(
        self,
        feature_id: str,
        planned: List[Union[PlannedTask, str]],
        from_review: bool = False,
        context: str = "",
    ) -> List[Task]:
        """
        Rate, break down and reconcile a plan, then broadcast the result.

        Returns:
            The feature's tasks after reconciliation
        """
        with planning_metrics.finalize_duration.time():
            items = await self._rate(planned, feature_id)
            breakdown = await process_and_breakdown_tasks(
                self.provider, items, feature_id,
                from_review=from_review, context=context, options=self.config.breakdown,
            )
            for event in breakdown.events:
                await self._history(
                    feature_id, HistoryRole.MODEL, {"step": event.action, **event.details},
                    task_id=event.task_id, action=event.action,
                )

            existing = await self.store.get_tasks_by_feature(feature_id)
            owners = await self.store.find_task_features(t.id for t in breakdown.tasks)
            foreign_ids = [task_id for task_id, owner in owners.items() if owner != feature_id]

            diff = compute_plan_diff(breakdown.tasks, existing, from_review=from_review, foreign_ids=foreign_ids)
            counts = await apply_plan_diff(self.store, diff)
            await self._history(feature_id, HistoryRole.MODEL, {
                "step": "plan_reconciled", **counts, "warnings": diff.warnings,
            })

        tasks = await self.store.get_tasks_by_feature(feature_id)
        logger.info(f"✅ Finalized plan for feature {feature_id}: {len(tasks)} tasks")
        await self._notify("notify_tasks_updated", feature_id, tasks)
        return tasks

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def plan_feature(self, feature_description: str, project_path: Optional[str] = None) -> PlanOutcome:
        """Create a feature and plan it from its description."""
        tool = "plan_feature"
        feature_id = await self.store.create_feature(feature_description, project_path)
        await self._history(feature_id, HistoryRole.TOOL_CALL, {
            "tool": tool, "params": {"feature_description": feature_description, "project_path": project_path},
        })

        try:
            context = context_block(await self._context(project_path))
            prompt = PLAN_FEATURE_PROMPT.format(context=context, feature_description=feature_description)
            text_prompt = PLAN_FEATURE_TEXT_PROMPT.format(context=context, feature_description=feature_description)

            model_plan = await self._request_plan(
                prompt, feature_id, self.config.planning_temperature, text_prompt=text_prompt,
            )
            if model_plan.clarification:
                return await self._ask(feature_id, tool, prompt, model_plan, PlanningType.FEATURE_PLANNING)

            await self._history(feature_id, HistoryRole.MODEL, {
                "step": "initial_plan_response", "taskCount": len(model_plan.planned),
            })
            tasks = await self.finalize_plan(feature_id, model_plan.planned, context=context)
        except Exception as e:
            planning_metrics.plans_total.labels(planning_type=PlanningType.FEATURE_PLANNING.value, result="error").inc()
            await self._fail(feature_id, tool, "PLAN_FEATURE_FAILED", e)
            raise

        planning_metrics.plans_total.labels(planning_type=PlanningType.FEATURE_PLANNING.value, result="tasks").inc()
        await self._history(feature_id, HistoryRole.TOOL_RESPONSE, {
            "tool": tool, "isError": False, "status": "completed", "taskCount": len(tasks),
        })
        return PlanOutcome(
            feature_id=feature_id,
            status="planned",
            tasks=tasks,
            message=f"Successfully planned feature with {len(tasks)} tasks.",
        )

    async def _require_feature(self, feature_id: str) -> Dict[str, Any]:
        feature = await self.store.get_feature(feature_id)
        if feature is None:
            raise PlanningError(f"Feature {feature_id} not found", "FEATURE_NOT_FOUND")
        return feature

    async def adjust_plan(self, feature_id: str, adjustment_request: str) -> PlanOutcome:
        """Revise a feature's plan according to a change request."""
        tool = "adjust_plan"
        feature = await self._require_feature(feature_id)
        await self._history(feature_id, HistoryRole.TOOL_CALL, {
            "tool": tool, "params": {"adjustment_request": adjustment_request},
        })

        try:
            current = await self.store.get_tasks_by_feature(feature_id)
            history = await self.store.get_history(feature_id, limit=RECENT_HISTORY_ENTRIES)
            context = context_block(await self._context(feature.get("project_path")))
            prompt = ADJUST_PLAN_PROMPT.format(
                context=context,
                original_request=feature["description"],
                current_tasks=_tasks_for_prompt(current),
                recent_history=json.dumps([history_entry_to_dict(h) for h in history], indent=2, default=str),
                adjustment_request=adjustment_request,
            )

            model_plan = await self._request_plan(
                prompt, feature_id, self.config.planning_temperature, code="PLAN_ADJUST_FAILED",
            )
            if model_plan.clarification:
                return await self._ask(feature_id, tool, prompt, model_plan, PlanningType.PLAN_ADJUSTMENT)

            await self._history(feature_id, HistoryRole.MODEL, {
                "step": "adjusted_plan_response", "taskCount": len(model_plan.planned),
            })
            tasks = await self.finalize_plan(feature_id, model_plan.planned, context=context)
        except Exception as e:
            planning_metrics.plans_total.labels(planning_type=PlanningType.PLAN_ADJUSTMENT.value, result="error").inc()
            await self._fail(feature_id, tool, "PLAN_ADJUST_FAILED", e)
            raise

        planning_metrics.plans_total.labels(planning_type=PlanningType.PLAN_ADJUSTMENT.value, result="tasks").inc()
        await self._history(feature_id, HistoryRole.TOOL_RESPONSE, {
            "tool": tool, "isError": False, "status": "completed", "taskCount": len(tasks),
        })
        return PlanOutcome(
            feature_id=feature_id,
            status="planned",
            tasks=tasks,
            message=f"Plan adjusted. The feature now has {len(tasks)} tasks.",
        )

    async def review_changes(self, feature_id: str, diff_text: str) -> PlanOutcome:
        """Add follow-up tasks found by reviewing a code diff; existing tasks are kept."""
        tool = "review_changes"
        feature = await self._require_feature(feature_id)
        await self._history(feature_id, HistoryRole.TOOL_CALL, {"tool": tool, "params": {"diff_chars": len(diff_text)}})

        current = await self.store.get_tasks_by_feature(feature_id)
        if not diff_text.strip():
            message = "No changes to review."
            await self._history(feature_id, HistoryRole.TOOL_RESPONSE, {
                "tool": tool, "isError": False, "status": "no_changes", "message": message,
            })
            return PlanOutcome(feature_id=feature_id, status="no_changes", tasks=current, message=message)

        try:
            if self.provider is None:
                raise PlanningError("Planning model not initialized", "REVIEW_CHANGES_FAILED")
            prompt = REVIEW_PROMPT.format(
                original_request=feature["description"],
                current_tasks=_tasks_for_prompt(current),
                diff=diff_text,
            )
            result = await self.provider.generate_structured(
                prompt, ReviewResponse, temperature=self.config.planning_temperature, feature_id=feature_id,
            )
            if not result.success:
                raise PlanningError(f"Review failed ({result.kind.value}): {result.error}", "REVIEW_CHANGES_FAILED")

            planned = result.data.tasks
            await self._history(feature_id, HistoryRole.MODEL, {"step": "review_response", "taskCount": len(planned)})
            if not planned:
                message = "Review found no new tasks."
                await self._history(feature_id, HistoryRole.TOOL_RESPONSE, {
                    "tool": tool, "isError": False, "status": "no_changes", "message": message,
                })
                return PlanOutcome(feature_id=feature_id, status="no_changes", tasks=current, message=message)

            tasks = await self.finalize_plan(feature_id, planned, from_review=True)
        except Exception as e:
            await self._fail(feature_id, tool, "REVIEW_CHANGES_FAILED", e)
            raise

        added = len(tasks) - len(current)
        await self._history(feature_id, HistoryRole.TOOL_RESPONSE, {
            "tool": tool, "isError": False, "status": "completed", "taskCount": len(tasks),
        })
        return PlanOutcome(
            feature_id=feature_id,
            status="planned",
            tasks=tasks,
            message=f"Review added {max(added, 0)} tasks.",
        )

    # =========================================================================
    # CLARIFICATION RESUME
    # =========================================================================

    async def _reject_response(self, feature_id: str, code: str, message: str) -> PlanOutcome:
        logger.warning(f"⚠️ Question response rejected for feature {feature_id}: {code}")
        await self._notify("send_error", feature_id, code, message)
        return PlanOutcome(feature_id=feature_id, status="error", message=message, error_code=code)

    async def handle_question_response(self, feature_id: str, question_id: Optional[str], response: str) -> PlanOutcome:
        """
        Resume a suspended planning call with the user's answer.

        The stored state is consumed before the model is called; a failed
        resume does not bring it back.
        """
        if not question_id:
            return await self._reject_response(
                feature_id, "INVALID_RESPONSE", "Invalid response format: missing questionId")

        state = await self.state_store.get(question_id)
        if state is None:
            planning_metrics.clarifications_total.labels(stage="expired").inc()
            return await self._reject_response(
                feature_id, "QUESTION_EXPIRED", "The question session has expired or is invalid.")
        if state.feature_id != feature_id:
            return await self._reject_response(
                feature_id, "FEATURE_MISMATCH", "Response came from a different feature than the question.")
        if not await self.state_store.delete(question_id):
            planning_metrics.clarifications_total.labels(stage="expired").inc()
            return await self._reject_response(
                feature_id, "QUESTION_EXPIRED", "The question session has expired or is invalid.")

        planning_metrics.clarifications_total.labels(stage="answered").inc()
        await self._history(feature_id, HistoryRole.USER, {
            "questionId": question_id, "question": state.partial_response, "response": response,
        })
        await self._notify("notify_status_changed", feature_id, "processing_response",
                           details={"questionId": question_id})

        tool = "plan_feature" if state.planning_type == PlanningType.FEATURE_PLANNING else "adjust_plan"
        try:
            return await self._resume(state, response, tool)
        except Exception as e:
            planning_metrics.plans_total.labels(planning_type=state.planning_type.value, result="error").inc()
            message = e.message if isinstance(e, PlanningError) else str(e)
            await self._fail(
                feature_id, tool, "RESUME_PLANNING_FAILED",
                PlanningError(f"Failed to process your response: {message}", "RESUME_PLANNING_FAILED"),
                status="failed_after_clarification",
            )
            return PlanOutcome(
                feature_id=feature_id,
                status="error",
                message=f"Failed to process your response: {message}",
                error_code="RESUME_PLANNING_FAILED",
            )

    async def _resume(self, state: ClarificationState, response: str, tool: str) -> PlanOutcome:
        feature_id = state.feature_id
        prompt = resume_prompt(state.prompt, response)
        logger.info(f"Resuming {state.planning_type.value} for feature {feature_id}")

        model_plan = await self._request_plan(
            prompt, feature_id, self.config.resume_temperature, code="RESUME_PLANNING_FAILED",
        )
        if model_plan.clarification:
            return await self._ask(feature_id, tool, prompt, model_plan, state.planning_type)

        await self._history(feature_id, HistoryRole.MODEL, {
            "step": "resumed_planning_response", "taskCount": len(model_plan.planned),
        })
        feature = await self.store.get_feature(feature_id) or {}
        context = context_block(await self._context(feature.get("project_path")))
        tasks = await self.finalize_plan(feature_id, model_plan.planned, context=context)

        planning_metrics.plans_total.labels(planning_type=state.planning_type.value, result="tasks").inc()
        await self._history(feature_id, HistoryRole.TOOL_RESPONSE, {
            "tool": tool, "isError": False, "status": "completed_after_clarification", "taskCount": len(tasks),
        })
        return PlanOutcome(
            feature_id=feature_id,
            status="planned",
            tasks=tasks,
            message=f"Planning completed after clarification with {len(tasks)} tasks.",
        )

    # =========================================================================
    # TASK PROGRESS
    # =========================================================================

    async def get_next_task(self, feature_id: str) -> NextTaskResult:
        return await self.state_machine.get_next_task(feature_id)

    async def mark_task_complete(self, feature_id: str, task_id: str) -> CompletionOutcome:
        return await self.state_machine.complete_task(feature_id, task_id)

    async def start_task(self, feature_id: str, task_id: str) -> Task:
        return await self.state_machine.start_task(feature_id, task_id)
