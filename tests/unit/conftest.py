"""
Shared fixtures for the planner unit tests.

Collaborators are replaced by small fakes: a provider that replays canned
LLMResults, a notifier that records every call, and SQLite stores living
in pytest's tmp_path.
"""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from planner_types import LLMResult, ResultKind  # noqa: E402
from planning.response_parser import parse_and_validate_json_response  # noqa: E402
from planning_state import PlanningStateStore  # noqa: E402
from task_store import TaskStore  # noqa: E402


class FakeProvider:
    """
    Completion provider replaying scripted answers.

    ``structured`` maps a schema class name to a list of answers; each answer
    is either raw model text (parsed with the real recovery parser) or a
    ready LLMResult. The last answer of a list repeats once the list is
    exhausted.
    """

    def __init__(self, structured: Optional[Dict[str, List[Any]]] = None, free_text: Optional[List[Optional[str]]] = None):
        self.structured = {k: list(v) for k, v in (structured or {}).items()}
        self.free_text = list(free_text or [])
        self.calls: List[Dict[str, Any]] = []

    def _next(self, queue: List[Any]):
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def generate_structured(self, prompt, schema, temperature=None, max_tokens=None, feature_id=None):
        self.calls.append({"kind": "structured", "schema": schema.__name__, "prompt": prompt,
                           "temperature": temperature})
        queue = self.structured.get(schema.__name__)
        if not queue:
            return LLMResult.fail(f"no scripted answer for {schema.__name__}", kind=ResultKind.ERROR)
        answer = self._next(queue)
        if isinstance(answer, LLMResult):
            return answer
        result = parse_and_validate_json_response(answer, schema)
        result.text = answer
        return result

    async def generate_free_text(self, prompt, temperature=None, feature_id=None):
        self.calls.append({"kind": "free_text", "prompt": prompt, "temperature": temperature})
        if not self.free_text:
            return None
        return self._next(self.free_text)

    def calls_for(self, schema_name: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c.get("schema") == schema_name]


class RecordingNotifier:
    """Notifier that records every message instead of sending it."""

    def __init__(self, fail: bool = False):
        self.events: List[tuple] = []
        self.fail = fail

    async def _record(self, *event):
        self.events.append(event)
        if self.fail:
            raise RuntimeError("notifier down")

    async def notify_tasks_updated(self, feature_id, tasks):
        await self._record("tasks_updated", feature_id, list(tasks))

    async def notify_status_changed(self, feature_id, status, task_id=None, details=None):
        await self._record("status_changed", feature_id, status, task_id, details)

    async def send_question(self, feature_id, payload):
        await self._record("show_question", feature_id, payload)

    async def send_error(self, feature_id, code, message):
        await self._record("error", feature_id, code, message)

    def of_type(self, kind: str) -> List[tuple]:
        return [e for e in self.events if e[0] == kind]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "planner.db")


@pytest_asyncio.fixture
async def store(db_path):
    task_store = TaskStore(db_path)
    await task_store.initialize()
    return task_store


@pytest_asyncio.fixture
async def state_store(db_path):
    planning_states = PlanningStateStore(db_path)
    await planning_states.initialize()
    return planning_states
