"""
Unit tests for the SQLite task store and the planning state store.
"""
import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from planner_types import (
    ClarificationState,
    Effort,
    FeatureStatus,
    HistoryRole,
    PlanningType,
    Task,
    TaskStatus,
    new_id,
)


def make_task(feature_id, description, status=TaskStatus.PENDING, parent=None):
    return Task(id=new_id(), feature_id=feature_id, description=description,
                status=status, effort=Effort.MEDIUM, parent_task_id=parent)


class TestTaskStore:
    """Features, tasks and history round trips."""

    @pytest.mark.asyncio
    async def test_feature_lifecycle(self, store):
        feature_id = await store.create_feature("Add CSV export", project_path="/work/app")
        feature = await store.get_feature(feature_id)

        assert feature["description"] == "Add CSV export"
        assert feature["status"] == "in_progress"
        assert await store.update_feature_status(feature_id, FeatureStatus.ABANDONED)
        assert (await store.get_feature(feature_id))["status"] == "abandoned"
        assert await store.get_feature("missing") is None

    @pytest.mark.asyncio
    async def test_task_round_trip_and_order(self, store):
        """Tasks come back in insertion order with every field intact."""
        feature_id = await store.create_feature("Auth")
        first = make_task(feature_id, "First")
        second = make_task(feature_id, "Second")
        second.from_review = True
        await store.add_task(first)
        await store.add_task(second)

        tasks = await store.get_tasks_by_feature(feature_id)
        assert [t.id for t in tasks] == [first.id, second.id]
        assert tasks[1].from_review is True
        assert tasks[0].effort == Effort.MEDIUM
        assert tasks[0].title == "First"

    @pytest.mark.asyncio
    async def test_status_keeps_completed_flag_in_sync(self, store):
        """completed is true exactly when status is completed."""
        feature_id = await store.create_feature("Auth")
        task = make_task(feature_id, "Do it")
        await store.add_task(task)

        await store.update_task_status(task.id, TaskStatus.COMPLETED)
        assert (await store.get_task(task.id)).completed is True
        await store.update_task_fields(task.id, {"status": TaskStatus.PENDING})
        assert (await store.get_task(task.id)).completed is False

    @pytest.mark.asyncio
    async def test_update_fields(self, store):
        """A new description becomes the title; unknown columns are refused."""
        feature_id = await store.create_feature("Auth")
        task = make_task(feature_id, "Old")
        await store.add_task(task)

        assert await store.update_task_fields(task.id, {"description": "New", "effort": Effort.HIGH})
        updated = await store.get_task(task.id)
        assert (updated.title, updated.description, updated.effort) == ("New", "New", Effort.HIGH)

        with pytest.raises(ValueError):
            await store.update_task_fields(task.id, {"feature_id": "other"})

    @pytest.mark.asyncio
    async def test_delete_cascades_to_subtasks(self, store):
        """Deleting a container removes its subtasks; a second delete finds nothing."""
        feature_id = await store.create_feature("Auth")
        parent = make_task(feature_id, "Parent", TaskStatus.DECOMPOSED)
        child = make_task(feature_id, "Child", parent=parent.id)
        await store.add_task(parent)
        await store.add_task(child)
        stored = await store.get_tasks_by_feature(feature_id)
        assert [t.id for t in stored if t.parent_task_id == parent.id] == [child.id]

        assert await store.delete_task(parent.id) is True
        assert await store.get_task(child.id) is None
        assert await store.delete_task(child.id) is False

    @pytest.mark.asyncio
    async def test_find_task_features(self, store):
        one = await store.create_feature("One")
        task = make_task(one, "Task")
        await store.add_task(task)

        assert await store.find_task_features([task.id, new_id()]) == {task.id: one}
        assert await store.find_task_features([]) == {}

    @pytest.mark.asyncio
    async def test_history_limit_keeps_newest(self, store):
        """History is oldest first; a limit keeps the most recent entries."""
        feature_id = await store.create_feature("Auth")
        for n in range(4):
            await store.add_history_entry(feature_id, HistoryRole.USER, {"n": n}, action="note")

        everything = await store.get_history(feature_id)
        recent = await store.get_history(feature_id, limit=2)

        assert [h.content["n"] for h in everything] == [0, 1, 2, 3]
        assert [h.content["n"] for h in recent] == [2, 3]
        assert recent[0].action == "note"


class TestPlanningStateStore:
    """Clarification states are consumed once."""

    @pytest.mark.asyncio
    async def test_put_get_delete_once(self, state_store):
        state = ClarificationState(
            question_id="q1",
            feature_id="f1",
            prompt="Plan the feature",
            partial_response="[CLARIFICATION_NEEDED]...",
            planning_type=PlanningType.PLAN_ADJUSTMENT,
        )
        await state_store.put(state)

        loaded = await state_store.get("q1")
        assert loaded.prompt == "Plan the feature"
        assert loaded.planning_type == PlanningType.PLAN_ADJUSTMENT
        assert (await state_store.get_by_feature("f1")).question_id == "q1"

        assert await state_store.delete("q1") is True
        assert await state_store.delete("q1") is False
        assert await state_store.get("q1") is None

