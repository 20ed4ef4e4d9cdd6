"""
Planning Module - Free-Text Plans
=================================
Turns a plain-text model answer into one task line per step.
"""

import re
from typing import List, Optional

_BULLET_ONLY_RE = re.compile(r"^[-*+]\s*$")
_LIST_MARKER_RES = (
    re.compile(r"^[-*+]\s*"),           # - item / * item / + item
    re.compile(r"^\d+[.)]\s*"),         # 1. item / 1) item
    re.compile(r"^[a-z]\)\s*", re.I),   # a) item
    re.compile(r"^\([a-z]\)\s*", re.I),  # (a) item
)


def _strip_list_markers(line: str) -> str:
    for marker in _LIST_MARKER_RES:
        line = marker.sub("", line)
    return line.strip()


def parse_plan_response(response_text: Optional[str]) -> List[str]:
    """
    Split a free-text plan into task lines.

    Blank lines, bare bullets, markdown headings and code fences are
    dropped; list markers and numbering are removed. Effort tags such as
    ``[high]`` are left in place for the effort classifier.
    """
    if not response_text:
        return []

    lines = []
    for raw in response_text.split("\n"):
        line = raw.strip()
        if not line or _BULLET_ONLY_RE.match(line):
            continue
        if line.startswith("#") or line.startswith("```"):
            continue
        cleaned = _strip_list_markers(line)
        if cleaned:
            lines.append(cleaned)
    return lines

