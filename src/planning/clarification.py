"""
Planning Module - Clarification Detection
=========================================
Recognizes a model asking the user a question instead of returning a plan.

Two forms are understood, the sentinel block taking precedence:

    [CLARIFICATION_NEEDED]
    Should the export support CSV as well as JSON?
    Options: [CSV only, JSON only, Both]
    MULTIPLE_CHOICE_ONLY
    [END_CLARIFICATION]

and a JSON object such as ``{"type": "clarification_needed", "question": ...}``
or ``{"clarificationNeeded": {"question": ..., "options": [...]}}``.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .response_parser import parse_json_text

logger = logging.getLogger(__name__)

_SENTINEL_RE = re.compile(r"\[CLARIFICATION_NEEDED\](.*?)(?:\[END_CLARIFICATION\]|$)", re.S)
_OPTIONS_RE = re.compile(r"Options:\s*\[(.*?)\]", re.S)
_TEXT_OFF_FLAG = "MULTIPLE_CHOICE_ONLY"
_JSON_FLAG_FIELDS = ("clarification_needed", "needs_clarification", "clarificationNeeded")


@dataclass
class ClarificationRequest:
    """Normalized clarification question."""
    question: str
    options: Optional[List[str]] = None
    allows_text: bool = True


def _split_options(raw: str) -> List[str]:
    options = []
    for part in raw.split(","):
        option = part.strip().strip("'\"").strip()
        if option:
            options.append(option)
    return options


def _from_sentinel(text: str) -> Optional[ClarificationRequest]:
    match = _SENTINEL_RE.search(text)
    if not match:
        return None

    body = match.group(1)
    options = None
    options_match = _OPTIONS_RE.search(body)
    if options_match:
        options = _split_options(options_match.group(1)) or None

    question = _OPTIONS_RE.sub("", body).replace(_TEXT_OFF_FLAG, "").strip()
    if not question:
        logger.warning("Clarification block without a question, ignoring")
        return None

    return ClarificationRequest(
        question=question,
        options=options,
        allows_text=_TEXT_OFF_FLAG not in body,
    )


def _from_json(text: str) -> Optional[ClarificationRequest]:
    data = parse_json_text(text)
    if not isinstance(data, dict):
        return None

    source: Optional[Dict[str, Any]] = None
    if data.get("type") == "clarification_needed":
        source = data
    else:
        for name in _JSON_FLAG_FIELDS:
            flag = data.get(name)
            if isinstance(flag, dict):
                source = flag
                break
            if flag:
                source = data
                break
    if source is None:
        return None

    question = source.get("question") or source.get("message")
    if not isinstance(question, str) or not question.strip():
        return None

    options = source.get("options")
    if isinstance(options, list):
        options = [str(o) for o in options if str(o).strip()] or None
    else:
        options = None

    allows_text = source.get("allowsText", source.get("allows_text", True))
    return ClarificationRequest(
        question=question.strip(),
        options=options,
        allows_text=allows_text is not False,
    )


def detect_clarification_request(text: Optional[str]) -> Optional[ClarificationRequest]:
    """
    Look for a clarification request in model output.

    Returns:
        ClarificationRequest, or None when the text is an ordinary answer
    """
    if not text:
        return None

    request = _from_sentinel(text)
    if request is None:
        request = _from_json(text)
    if request:
        logger.info(f"Clarification requested: {request.question[:80]}")
    return request


def clarification_to_payload(question_id: str, request: ClarificationRequest) -> Dict[str, Any]:
    """Payload of a show_question message."""
    payload: Dict[str, Any] = {
        "questionId": question_id,
        "question": request.question,
        "allowsText": request.allows_text,
    }
    if request.options:
        payload["options"] = request.options
    return payload
