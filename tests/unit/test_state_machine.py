"""
Unit tests for task status transitions and completion cascade.
"""
import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from conftest import RecordingNotifier
from planner_types import Effort, FeatureStatus, HistoryRole, Task, TaskStatus, new_id
from planning.state_machine import (
    InvalidTransitionError,
    TaskNotFoundError,
    TaskStateMachine,
    check_transition,
    format_next_task,
    plan_completion,
)


def make_task(feature_id, description, status=TaskStatus.PENDING, parent=None, effort=Effort.LOW):
    return Task(id=new_id(), feature_id=feature_id, description=description,
                status=status, effort=effort, parent_task_id=parent)


async def seed_feature(store):
    """Container P with children C1 and C2, plus a plain leaf L."""
    feature_id = await store.create_feature("Auth")
    parent = make_task(feature_id, "Build the authentication service", TaskStatus.DECOMPOSED, effort=Effort.HIGH)
    c1 = make_task(feature_id, "Create user model", parent=parent.id)
    c2 = make_task(feature_id, "Add login route", parent=parent.id, effort=Effort.MEDIUM)
    leaf = make_task(feature_id, "Add log line")
    for task in (parent, c1, c2, leaf):
        await store.add_task(task)
    return feature_id, parent, c1, c2, leaf


class TestTransitions:
    def test_allowed_and_rejected(self):
        """Completed is terminal; containers complete only through the cascade."""
        pending = make_task("f", "A")
        check_transition(pending, TaskStatus.IN_PROGRESS)
        check_transition(pending, TaskStatus.DECOMPOSED)

        with pytest.raises(InvalidTransitionError):
            check_transition(make_task("f", "B", TaskStatus.COMPLETED), TaskStatus.PENDING)

        container = make_task("f", "C", TaskStatus.DECOMPOSED)
        with pytest.raises(InvalidTransitionError):
            check_transition(container, TaskStatus.COMPLETED)
        check_transition(container, TaskStatus.COMPLETED, cascade=True)

    def test_plan_completion_cascades_on_last_child(self):
        """Only the last open subtask completes the parent."""
        parent = make_task("f", "P", TaskStatus.DECOMPOSED)
        c1 = make_task("f", "C1", TaskStatus.COMPLETED, parent=parent.id)
        c2 = make_task("f", "C2", parent=parent.id)
        c3 = make_task("f", "C3", parent=parent.id)

        assert plan_completion([parent, c1, c2, c3], c2.id).parent_to_complete is None
        c3.status = TaskStatus.COMPLETED
        assert plan_completion([parent, c1, c2, c3], c2.id).parent_to_complete == parent.id


class TestCompleteTask:
    """TaskStateMachine.complete_task against a real store."""

    @pytest.mark.asyncio
    async def test_last_subtask_completes_parent(self, store, notifier):
        """Completing C1 then C2 auto-completes P and broadcasts after persisting."""
        feature_id, parent, c1, c2, leaf = await seed_feature(store)
        machine = TaskStateMachine(store, notifier)

        first = await machine.complete_task(feature_id, c1.id)
        assert first.message == f"Task {c1.id} marked as complete."
        assert first.parent_completed is None

        second = await machine.complete_task(feature_id, c2.id)
        assert second.message == (
            f"Task {c2.id} marked as complete. Parent task {parent.id} also auto-completed "
            f"as all subtasks are now complete."
        )
        assert second.parent_completed == parent.id
        assert second.feature_completed is False
        assert (await store.get_task(parent.id)).status == TaskStatus.COMPLETED

        statuses = [(e[2], e[3]) for e in notifier.of_type("status_changed")]
        assert statuses[-2:] == [("completed", c2.id), ("completed", parent.id)]
        updated = notifier.of_type("tasks_updated")[-1][2]
        assert {t.id: t.status for t in updated}[parent.id] == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_already_completed_is_idempotent(self, store, notifier):
        """A second completion answers politely and sends nothing."""
        feature_id, _, c1, _, _ = await seed_feature(store)
        machine = TaskStateMachine(store, notifier)
        await machine.complete_task(feature_id, c1.id)
        sent = len(notifier.events)

        outcome = await machine.complete_task(feature_id, c1.id)

        assert outcome.already_completed is True
        assert outcome.message == f"Task {c1.id} was already marked as complete."
        assert len(notifier.events) == sent

    @pytest.mark.asyncio
    async def test_container_cannot_be_completed_directly(self, store):
        """Decomposed tasks only complete through their subtasks."""
        feature_id, parent, _, _, _ = await seed_feature(store)
        with pytest.raises(InvalidTransitionError):
            await TaskStateMachine(store).complete_task(feature_id, parent.id)
        assert (await store.get_task(parent.id)).status == TaskStatus.DECOMPOSED

    @pytest.mark.asyncio
    async def test_completing_every_task_completes_feature(self, store):
        """The feature is marked completed with its last task."""
        feature_id, _, c1, c2, leaf = await seed_feature(store)
        machine = TaskStateMachine(store)
        for task in (c1, c2):
            await machine.complete_task(feature_id, task.id)
        outcome = await machine.complete_task(feature_id, leaf.id)

        assert outcome.feature_completed is True
        assert (await store.get_feature(feature_id))["status"] == FeatureStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_unknown_task_and_feature(self, store):
        """Missing tasks raise TaskNotFoundError with a readable message."""
        feature_id, _, _, _, _ = await seed_feature(store)
        machine = TaskStateMachine(store)

        with pytest.raises(TaskNotFoundError, match="not found in feature"):
            await machine.complete_task(feature_id, new_id())
        with pytest.raises(TaskNotFoundError, match="No tasks found"):
            await machine.complete_task("missing-feature", new_id())

    @pytest.mark.asyncio
    async def test_history_records_call_and_response(self, store):
        """Each completion leaves a tool_call and a tool_response entry."""
        feature_id, _, c1, _, _ = await seed_feature(store)
        await TaskStateMachine(store).complete_task(feature_id, c1.id)

        history = await store.get_history(feature_id)
        assert [h.role for h in history] == [HistoryRole.TOOL_CALL, HistoryRole.TOOL_RESPONSE]
        assert history[1].content["status"] == "completed"
        assert history[1].task_id == c1.id

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_fail_completion(self, store):
        """A broken notifier is logged; the change still stands."""
        feature_id, _, c1, _, _ = await seed_feature(store)
        outcome = await TaskStateMachine(store, RecordingNotifier(fail=True)).complete_task(feature_id, c1.id)

        assert outcome.message == f"Task {c1.id} marked as complete."
        assert (await store.get_task(c1.id)).status == TaskStatus.COMPLETED


class TestNextAndStart:
    @pytest.mark.asyncio
    async def test_next_task_names_parent(self, store):
        """The first pending subtask is reported with its effort and a parent preview."""
        feature_id, _, c1, _, _ = await seed_feature(store)
        result = await TaskStateMachine(store).get_next_task(feature_id)

        assert result.task.id == c1.id
        assert result.message == (
            f'Next pending task (ID: {c1.id}) (Effort: low) '
            f'(Subtask of: "Build the authentication servi..."): Create user model'
        )

    @pytest.mark.asyncio
    async def test_next_task_when_all_done(self, store):
        feature_id, _, c1, c2, leaf = await seed_feature(store)
        machine = TaskStateMachine(store)
        for task in (c1, c2, leaf):
            await machine.complete_task(feature_id, task.id)

        result = await machine.get_next_task(feature_id)
        assert result.task is None
        assert result.is_error is False
        assert "All tasks have been completed" in result.message

    @pytest.mark.asyncio
    async def test_next_task_for_unknown_feature_is_error(self, store):
        result = await TaskStateMachine(store).get_next_task("nope")
        assert result.is_error is True
        assert result.message.startswith("No tasks found for feature ID nope.")

    def test_unknown_parent_shows_id(self):
        """A parent missing from the list is shown by id."""
        child = make_task("f", "Orphaned step", parent="gone")
        assert format_next_task(child, [child]).endswith("(Subtask of parent ID: gone): Orphaned step")

    @pytest.mark.asyncio
    async def test_start_task(self, store, notifier):
        """Starting moves pending to in_progress and is idempotent."""
        feature_id, parent, c1, _, _ = await seed_feature(store)
        machine = TaskStateMachine(store, notifier)

        started = await machine.start_task(feature_id, c1.id)
        again = await machine.start_task(feature_id, c1.id)

        assert started.status == again.status == TaskStatus.IN_PROGRESS
        assert len(notifier.of_type("status_changed")) == 1
        with pytest.raises(InvalidTransitionError):
            await machine.start_task(feature_id, parent.id)
