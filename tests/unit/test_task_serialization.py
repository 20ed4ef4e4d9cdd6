"""
Unit tests for task serialization (task_to_dict/_dict_to_task, wire format).
"""
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from planner_types import (
    Effort,
    HistoryEntry,
    HistoryRole,
    PlanItem,
    Task,
    TaskStatus,
    _dict_to_task,
    history_entry_to_dict,
    plan_item_to_line,
    task_to_dict,
    task_to_wire,
)


class TestTaskSerialization:
    """Test Task to_dict/from_dict round-trip."""

    def test_minimal_task_round_trip(self):
        """Defaults survive: pending, medium effort, title from description."""
        task = Task(id="t1", feature_id="f1", description="Add log line")

        restored = _dict_to_task(task_to_dict(task))

        assert restored.title == "Add log line"
        assert restored.status == TaskStatus.PENDING
        assert restored.effort == Effort.MEDIUM
        assert restored.parent_task_id is None
        assert restored.from_review is False

    def test_full_task_round_trip(self):
        """Every field is carried through a dict round trip."""
        task = Task(
            id="t2",
            feature_id="f1",
            description="Create user model",
            title="User model",
            status=TaskStatus.COMPLETED,
            effort=Effort.LOW,
            parent_task_id="t1",
            from_review=True,
        )

        restored = _dict_to_task(task_to_dict(task))

        assert restored == task
        assert restored.completed is True

    def test_completed_follows_status(self):
        """completed is true only for completed tasks."""
        for status in TaskStatus:
            task = Task(id="t", feature_id="f", description="d", status=status)
            assert task_to_dict(task)["completed"] == (status == TaskStatus.COMPLETED)

    def test_missing_effort_defaults_to_medium(self):
        """Rows without an effort load as medium."""
        data = task_to_dict(Task(id="t", feature_id="f", description="d"))
        data["effort"] = None
        assert _dict_to_task(data).effort == Effort.MEDIUM


class TestWireFormat:
    def test_task_to_wire_is_camel_case(self):
        task = Task(id="t2", feature_id="f1", description="Add login route",
                    status=TaskStatus.DECOMPOSED, effort=Effort.HIGH, parent_task_id=None)
        wire = task_to_wire(task)

        assert wire["featureId"] == "f1"
        assert wire["parentTaskId"] is None
        assert wire["fromReview"] is False
        assert wire["status"] == "decomposed"
        assert wire["effort"] == "high"
        assert "createdAt" in wire and "updatedAt" in wire

    def test_history_entry_to_dict(self):
        entry = HistoryEntry(feature_id="f1", role=HistoryRole.TOOL_CALL, content={"tool": "plan_feature"}, id=3)
        data = history_entry_to_dict(entry)

        assert data["role"] == "tool_call"
        assert data["content"] == {"tool": "plan_feature"}
        assert data["id"] == 3

    def test_plan_item_line(self):
        assert plan_item_to_line(PlanItem("Build auth", Effort.HIGH)) == "[high] Build auth"
