"""
Unit tests for effort tags, model effort estimation and free-text plans.
"""
import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from conftest import FakeProvider
from planner_types import Effort, LLMResult, ResultKind
from planning.effort import (
    determine_task_effort,
    ensure_effort_ratings,
    extract_effort,
    rate_planned_tasks,
)
from planning.plan_text import parse_plan_response
from planning.schemas import PlannedTask


class TestExtractEffort:
    """[effort] tag parsing."""

    def test_tag_is_case_insensitive_and_stripped(self):
        """[HIGH] parses as high and is removed from the description."""
        assert extract_effort("[HIGH]  Build auth service") == (Effort.HIGH, "Build auth service")

    def test_untagged_line_defaults_to_medium(self):
        """Lines without a tag are medium and otherwise unchanged."""
        assert extract_effort("  Add a log line ") == (Effort.MEDIUM, "Add a log line")

    def test_unknown_tag_is_not_an_effort(self):
        """Only low/medium/high count as tags."""
        assert extract_effort("[huge] Rewrite everything") == (Effort.MEDIUM, "[huge] Rewrite everything")


class TestDetermineTaskEffort:
    """Model-based effort estimation."""

    @pytest.mark.asyncio
    async def test_uses_model_rating(self):
        """A valid estimate is returned as an Effort."""
        provider = FakeProvider(structured={"EffortEstimation": ['{"effort": "high", "reasoning": "big"}']})
        assert await determine_task_effort(provider, "Rewrite the scheduler") == Effort.HIGH

        call = provider.calls[0]
        assert call["temperature"] == 0.1
        assert "Rewrite the scheduler" in call["prompt"]

    @pytest.mark.asyncio
    async def test_failure_defaults_to_medium(self):
        """Provider failures never block planning."""
        provider = FakeProvider(structured={"EffortEstimation": [
            LLMResult.fail("blocked", kind=ResultKind.BLOCKED),
        ]})
        assert await determine_task_effort(provider, "Anything") == Effort.MEDIUM

    @pytest.mark.asyncio
    async def test_unparseable_answer_defaults_to_medium(self):
        """An answer outside the schema is treated as a failure."""
        provider = FakeProvider(structured={"EffortEstimation": ['{"effort": "gigantic"}']})
        assert await determine_task_effort(provider, "Anything") == Effort.MEDIUM

    @pytest.mark.asyncio
    async def test_no_provider_defaults_to_medium(self):
        assert await determine_task_effort(None, "Anything") == Effort.MEDIUM


class TestEnsureEffortRatings:
    """Rating raw task lines."""

    @pytest.mark.asyncio
    async def test_tagged_lines_skip_the_model(self):
        """Only untagged lines are sent for estimation."""
        provider = FakeProvider(structured={"EffortEstimation": ['{"effort": "low"}']})
        items = await ensure_effort_ratings(["[High] Build auth", "Add a log line"], provider)

        assert [(i.effort, i.description) for i in items] == [
            (Effort.HIGH, "Build auth"),
            (Effort.LOW, "Add a log line"),
        ]
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_structured_tasks_keep_ids(self):
        """Model-supplied ids and parents are carried through."""
        planned = [
            PlannedTask(description="Keep me", effort="LOW", id="abc", parentTaskId="p1"),
            PlannedTask(description="[medium] Tagged"),
        ]
        items = await rate_planned_tasks(planned, FakeProvider())

        assert items[0].id == "abc"
        assert items[0].parent_task_id == "p1"
        assert items[0].effort == Effort.LOW
        assert (items[1].effort, items[1].description) == (Effort.MEDIUM, "Tagged")


class TestParsePlanResponse:
    """Free-text plans split into lines."""

    def test_markers_and_noise_are_removed(self):
        """Bullets, numbering, headings, fences and blank lines go away; tags stay."""
        text = "# Plan\n```\n1. [high] Build auth\n- [low] Add log line\n*\n\n(a) Write migration\nb) Wire routes\n```"
        assert parse_plan_response(text) == [
            "[high] Build auth",
            "[low] Add log line",
            "Write migration",
            "Wire routes",
        ]

    def test_empty_text(self):
        assert parse_plan_response("") == []
        assert parse_plan_response(None) == []
