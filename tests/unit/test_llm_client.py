"""
Unit tests for completion providers: fallback on rate limits, safety blocks
and structured parsing. Chat models are replaced through ``llm_factory``.
"""
import sys
from pathlib import Path

import pytest
from langchain_core.messages import AIMessage

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from config import PlannerConfig
from llm_client import (
    GeminiProvider,
    OpenRouterProvider,
    create_completion_provider,
    is_rate_limit_error,
)
from planner_types import ResultKind
from planning.schemas import TaskBreakdownResponse


GOOD_BREAKDOWN = '{"subtasks": [{"description": "A", "effort": "low"}, {"description": "B", "effort": "medium"}]}'


class RateLimitError(Exception):
    status_code = 429


class FakeChatModel:
    """Replays scripted responses; exceptions in the script are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    async def ainvoke(self, prompt):
        self.prompts.append(prompt)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def make_provider(cls, primary, fallback):
    models = {"primary": primary, "fallback": fallback}
    return cls("primary", "fallback", llm_factory=lambda model_config, json_mode: models[model_config.model_name])


class TestRateLimitFallback:
    """One fallback attempt on rate limits, never more."""

    @pytest.mark.asyncio
    async def test_primary_rate_limit_uses_fallback_once(self):
        """A 429 on the primary is answered by exactly one fallback call."""
        primary = FakeChatModel(RateLimitError("Too Many Requests"))
        fallback = FakeChatModel(AIMessage(content=GOOD_BREAKDOWN))
        provider = make_provider(GeminiProvider, primary, fallback)

        result = await provider.generate_structured("split it", TaskBreakdownResponse)

        assert result.success
        assert [s.description for s in result.data.subtasks] == ["A", "B"]
        assert len(primary.prompts) == 1
        assert len(fallback.prompts) == 1
        assert fallback.prompts[0] == "split it"

    @pytest.mark.asyncio
    async def test_both_rate_limited(self):
        """A second rate limit ends the call as rate_limited."""
        primary = FakeChatModel(RateLimitError("429"))
        fallback = FakeChatModel(RateLimitError("quota exceeded"))
        provider = make_provider(OpenRouterProvider, primary, fallback)

        result = await provider.generate_structured("split it", TaskBreakdownResponse)

        assert not result.success
        assert result.kind == ResultKind.RATE_LIMITED
        assert len(primary.prompts) == len(fallback.prompts) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_embedded_in_response(self):
        """An error body returned as content counts as a rate limit."""
        primary = FakeChatModel(AIMessage(content='{"error": {"code": 429, "message": "Rate limit exceeded"}}'))
        fallback = FakeChatModel(AIMessage(content=GOOD_BREAKDOWN))
        provider = make_provider(OpenRouterProvider, primary, fallback)

        result = await provider.generate_structured("split it", TaskBreakdownResponse)

        assert result.success
        assert len(fallback.prompts) == 1

    @pytest.mark.asyncio
    async def test_other_errors_do_not_fall_back(self):
        """Only rate limits reach the fallback model."""
        primary = FakeChatModel(ConnectionError("connection reset"))
        fallback = FakeChatModel(AIMessage(content=GOOD_BREAKDOWN))
        provider = make_provider(GeminiProvider, primary, fallback)

        result = await provider.generate_structured("split it", TaskBreakdownResponse)

        assert result.kind == ResultKind.ERROR
        assert fallback.prompts == []


class TestBlockedAndParsing:
    @pytest.mark.asyncio
    async def test_gemini_safety_block(self):
        """A SAFETY finish reason is blocked, not a parse error, and is not retried."""
        blocked = AIMessage(content="", response_metadata={"finish_reason": "SAFETY"})
        fallback = FakeChatModel(AIMessage(content=GOOD_BREAKDOWN))
        provider = make_provider(GeminiProvider, FakeChatModel(blocked), fallback)

        result = await provider.generate_structured("split it", TaskBreakdownResponse)

        assert result.kind == ResultKind.BLOCKED
        assert fallback.prompts == []

    @pytest.mark.asyncio
    async def test_openrouter_content_filter(self):
        blocked = AIMessage(content="", response_metadata={"finish_reason": "content_filter"})
        provider = make_provider(OpenRouterProvider, FakeChatModel(blocked), FakeChatModel(blocked))

        result = await provider.generate_structured("split it", TaskBreakdownResponse)
        assert result.kind == ResultKind.BLOCKED

    @pytest.mark.asyncio
    async def test_unparseable_answer_keeps_text(self):
        """Parse failures carry the model text for clarification detection."""
        text = "[CLARIFICATION_NEEDED]\nWhich database?\n[END_CLARIFICATION]"
        provider = make_provider(GeminiProvider, FakeChatModel(AIMessage(content=text)), FakeChatModel(None))

        result = await provider.generate_structured("plan it", TaskBreakdownResponse)

        assert result.kind == ResultKind.PARSE_ERROR
        assert result.text == text

    @pytest.mark.asyncio
    async def test_free_text(self):
        """Free-text calls return the content, or None on failure."""
        ok = make_provider(GeminiProvider, FakeChatModel(AIMessage(content="[low] Add log line")), FakeChatModel(None))
        failing = make_provider(GeminiProvider, FakeChatModel(RuntimeError("boom")), FakeChatModel(None))

        assert await ok.generate_free_text("plan it") == "[low] Add log line"
        assert await failing.generate_free_text("plan it") is None

    @pytest.mark.asyncio
    async def test_list_content_is_joined(self):
        """Content given as text parts is concatenated."""
        message = AIMessage(content=[{"type": "text", "text": '{"subtasks": ['},
                                     {"type": "text", "text": '{"description": "A", "effort": "low"}]}'}])
        provider = make_provider(GeminiProvider, FakeChatModel(message), FakeChatModel(None))

        result = await provider.generate_structured("split it", TaskBreakdownResponse)
        assert [s.description for s in result.data.subtasks] == ["A"]


class TestHelpers:
    def test_is_rate_limit_error(self):
        assert is_rate_limit_error(RateLimitError("Too Many Requests"))
        assert is_rate_limit_error(Exception("RESOURCE_EXHAUSTED: quota"))
        assert not is_rate_limit_error(Exception("invalid api key"))

    def test_rate_limit_text_needs_a_status_phrase(self):
        """A stray 429 or a mention of quota is not a rate limit."""
        assert is_rate_limit_error(Exception("Error code: 429 - slow down"))
        assert is_rate_limit_error(Exception("You exceeded your current quota"))
        assert not is_rate_limit_error(Exception("model acme/llama-429b not found"))
        assert not is_rate_limit_error(Exception("payload of 14290 bytes is too large"))
        assert not is_rate_limit_error(Exception("quota field missing from request"))

    @pytest.mark.asyncio
    async def test_unrelated_429_text_does_not_use_fallback(self):
        """An ordinary error mentioning 429 ends the call without a fallback attempt."""
        primary = FakeChatModel(ValueError("model acme/llama-429b not found"))
        fallback = FakeChatModel(AIMessage(content='{"subtasks": [{"description": "A", "effort": "low"}]}'))
        provider = make_provider(OpenRouterProvider, primary, fallback)

        result = await provider.generate_structured("split it", TaskBreakdownResponse)

        assert result.kind == ResultKind.ERROR
        assert fallback.prompts == []

    def test_provider_selection(self):
        """OpenRouter wins when both keys are set; no key means no provider."""
        both = PlannerConfig(openrouter_api_key="or-key", gemini_api_key="g-key")
        gemini = PlannerConfig(gemini_api_key="g-key")

        assert isinstance(create_completion_provider(both), OpenRouterProvider)
        provider = create_completion_provider(gemini)
        assert isinstance(provider, GeminiProvider)
        assert provider.fallback_model == gemini.fallback_gemini_model
        assert create_completion_provider(PlannerConfig()) is None
