"""
Unit tests for clarification detection.
"""
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from planning.clarification import (
    ClarificationRequest,
    clarification_to_payload,
    detect_clarification_request,
)


SENTINEL = """[CLARIFICATION_NEEDED]
Should the export support CSV as well as JSON?
Options: [CSV only, "JSON only", 'Both']
{flag}[END_CLARIFICATION]"""


class TestSentinelBlock:
    """[CLARIFICATION_NEEDED] ... [END_CLARIFICATION] blocks."""

    def test_multiple_choice_only_disables_text(self):
        """MULTIPLE_CHOICE_ONLY turns free-text answers off."""
        request = detect_clarification_request(SENTINEL.format(flag="MULTIPLE_CHOICE_ONLY\n"))

        assert request is not None
        assert request.allows_text is False

    def test_text_allowed_without_flag(self):
        """Without the flag free-text answers are allowed."""
        request = detect_clarification_request(SENTINEL.format(flag=""))

        assert request is not None
        assert request.allows_text is True

    def test_options_are_split_and_unquoted(self):
        """Options are comma-separated with surrounding quotes removed."""
        request = detect_clarification_request(SENTINEL.format(flag="MULTIPLE_CHOICE_ONLY\n"))

        assert request.options == ["CSV only", "JSON only", "Both"]
        assert request.question == "Should the export support CSV as well as JSON?"

    def test_block_may_run_to_end_of_text(self):
        """A missing end marker closes the block at the end of the text."""
        request = detect_clarification_request("[CLARIFICATION_NEEDED]\nWhich database should be used?")

        assert request.question == "Which database should be used?"
        assert request.options is None

    def test_sentinel_wins_over_json(self):
        """When both forms are present the sentinel block is used."""
        text = '[CLARIFICATION_NEEDED]\nFrom the block?\n[END_CLARIFICATION]\n{"type": "clarification_needed", "question": "From JSON?"}'
        assert detect_clarification_request(text).question == "From the block?"


class TestJsonForm:
    """Clarification requests expressed as JSON."""

    def test_type_field(self):
        """type == clarification_needed marks the object as a question."""
        request = detect_clarification_request('{"type": "clarification_needed", "message": "Which auth provider?"}')
        assert request.question == "Which auth provider?"
        assert request.allows_text is True

    def test_nested_object(self):
        """A nested clarificationNeeded object carries question and options."""
        text = '{"clarificationNeeded": {"question": "REST or GraphQL?", "options": ["REST", "GraphQL"], "allowsText": false}}'
        request = detect_clarification_request(text)

        assert request.question == "REST or GraphQL?"
        assert request.options == ["REST", "GraphQL"]
        assert request.allows_text is False

    def test_boolean_flag(self):
        """needs_clarification: true with a top-level question."""
        request = detect_clarification_request('{"needs_clarification": true, "question": "Mobile too?"}')
        assert request.question == "Mobile too?"

    def test_plain_plan_is_not_a_question(self):
        """Ordinary plans and prose are not clarification requests."""
        assert detect_clarification_request('{"tasks": [{"description": "A", "effort": "low"}]}') is None
        assert detect_clarification_request("[low] Add a log line") is None
        assert detect_clarification_request("") is None
        assert detect_clarification_request(None) is None


class TestPayload:
    def test_show_question_payload(self):
        """Options appear only when present."""
        with_options = clarification_to_payload("q1", ClarificationRequest("Pick", ["a", "b"], False))
        without_options = clarification_to_payload("q2", ClarificationRequest("Why?"))

        assert with_options == {"questionId": "q1", "question": "Pick", "allowsText": False, "options": ["a", "b"]}
        assert without_options == {"questionId": "q2", "question": "Why?", "allowsText": True}
