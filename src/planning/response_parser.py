"""
Planning Module - Response Recovery
===================================
Repairs and validates the JSON text models return for structured calls.

Models wrap JSON in markdown fences, leave trailing commas and comments in,
break strings across lines and stop before closing every bracket. The
repair steps below run in order and are all no-ops on valid JSON:

1. strip markdown fences outside string literals, keep the first ``{``
   through the last ``}``
2. strip // and /* */ comments
3. drop trailing commas before ``}`` / ``]``
4. join strings broken by raw line breaks
5. append missing closing quotes/brackets
6. json.loads

When parsing still fails and the schema expects a ``subtasks``/``tasks``
list, description/effort pairs are pulled out by regex and then by a
bracket-depth scanner. Nothing here raises: callers get an LLMResult.
"""

import json
import logging
import re
from typing import Any, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from planner_types import LLMResult, ResultKind

logger = logging.getLogger(__name__)

RAW_EXCERPT_CHARS = 500

_FENCED_BLOCK_RE = re.compile(r"^[ \t]*```(?:json|JSON)?[ \t]*\r?\n([\s\S]*?)^[ \t]*```", re.M)
_STRAY_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LINE_BREAK_RE = re.compile(r"[ \t]*[\r\n]+[ \t]*")
_STRING_BODY = r'"((?:[^"\\]|\\.)*)"'
_PAIR_RE = re.compile(
    r'"description"\s*:\s*' + _STRING_BODY + r'\s*,\s*"effort"\s*:\s*"(low|medium|high)"',
    re.IGNORECASE,
)
_REVERSED_PAIR_RE = re.compile(
    r'"effort"\s*:\s*"(low|medium|high)"\s*,\s*"description"\s*:\s*' + _STRING_BODY,
    re.IGNORECASE,
)
_CLOSERS = {"{": "}", "[": "]"}
_ITEM_LIST_FIELDS = ("subtasks", "tasks")


# =============================================================================
# STRING-AWARE SCANNING
# =============================================================================

def _split_strings(text: str) -> Tuple[List[Tuple[bool, str]], bool]:
    """
    Split text into (is_string, chunk) segments.

    Returns:
        (segments, unterminated) where unterminated is True when the text
        ends inside an open string literal
    """
    segments: List[Tuple[bool, str]] = []
    buf: List[str] = []
    in_string = False
    escaped = False

    for ch in text:
        if in_string:
            buf.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                segments.append((True, "".join(buf)))
                buf = []
                in_string = False
        elif ch == '"':
            if buf:
                segments.append((False, "".join(buf)))
            buf = [ch]
            in_string = True
        else:
            buf.append(ch)

    if buf:
        segments.append((in_string, "".join(buf)))
    return segments, in_string


def _map_outside_strings(text: str, fn) -> str:
    segments, _ = _split_strings(text)
    return "".join(chunk if is_string else fn(chunk) for is_string, chunk in segments)


# =============================================================================
# REPAIR STEPS
# =============================================================================

def _extract_json_block(text: str) -> str:
    # A fence opening a line cannot sit inside a JSON string; inline ones may
    fenced = _FENCED_BLOCK_RE.search(text)
    if fenced:
        text = fenced.group(1)
    else:
        text = _map_outside_strings(text, lambda chunk: _STRAY_FENCE_RE.sub("", chunk))

    start = text.find("{")
    if start == -1:
        return text.strip()
    end = text.rfind("}")
    if end < start:
        return text[start:]
    return text[start:end + 1]


def _strip_comments(text: str) -> str:
    out: List[str] = []
    i = 0
    n = len(text)
    in_string = False
    escaped = False

    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            i += 1
            continue

        if ch == '"':
            in_string = True
        elif ch == "/" and i + 1 < n and text[i + 1] == "/":
            newline = text.find("\n", i)
            i = n if newline == -1 else newline
            continue
        elif ch == "/" and i + 1 < n and text[i + 1] == "*":
            close = text.find("*/", i + 2)
            i = n if close == -1 else close + 2
            continue

        out.append(ch)
        i += 1

    return "".join(out)


def _remove_trailing_commas(text: str) -> str:
    return _map_outside_strings(text, lambda chunk: _TRAILING_COMMA_RE.sub(r"\1", chunk))


def _heal_broken_strings(text: str) -> str:
    segments, _ = _split_strings(text)
    return "".join(
        _LINE_BREAK_RE.sub(" ", chunk) if is_string else chunk
        for is_string, chunk in segments
    )


def _balance_brackets(text: str) -> str:
    segments, unterminated = _split_strings(text)
    stack: List[str] = []
    for is_string, chunk in segments:
        if is_string:
            continue
        for ch in chunk:
            if ch in _CLOSERS:
                stack.append(ch)
            elif ch in ("}", "]") and stack and _CLOSERS[stack[-1]] == ch:
                stack.pop()

    suffix = '"' if unterminated else ""
    suffix += "".join(_CLOSERS[opener] for opener in reversed(stack))
    if suffix:
        logger.debug(f"Appending missing closers: {suffix!r}")
    return text + suffix


def repair_json_text(raw_text: str) -> str:
    """Run the textual repair steps without parsing."""
    stripped = raw_text.strip()
    try:
        json.loads(stripped)
    except ValueError:
        pass
    else:
        return stripped

    text = _extract_json_block(raw_text)
    text = _strip_comments(text)
    text = _remove_trailing_commas(text)
    text = _heal_broken_strings(text)
    return _balance_brackets(text)


def parse_json_text(raw_text: str) -> Optional[Any]:
    """Repair and parse model text, returning None when it is not JSON."""
    if not raw_text:
        return None
    try:
        return json.loads(repair_json_text(raw_text))
    except (json.JSONDecodeError, ValueError):
        return None


# =============================================================================
# ITEM-LEVEL FALLBACKS
# =============================================================================

def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except (json.JSONDecodeError, ValueError):
        return value


def _extract_description_effort_pairs(text: str) -> List[dict]:
    items = [
        {"description": _unescape(m.group(1)), "effort": m.group(2).lower()}
        for m in _PAIR_RE.finditer(text)
    ]
    if not items:
        items = [
            {"description": _unescape(m.group(2)), "effort": m.group(1).lower()}
            for m in _REVERSED_PAIR_RE.finditer(text)
        ]
    return items


def extract_json_objects(text: str) -> List[dict]:
    """
    Carve individually parseable object literals out of an array span.

    Walks the text between the first ``[`` and the last ``]`` tracking brace
    depth outside of quoted strings, so a single malformed element (or a
    missing comma between elements) does not lose its neighbours.
    """
    start = text.find("[")
    end = text.rfind("]")
    span = text[start + 1:end] if start != -1 and end > start else text

    objects: List[dict] = []
    depth = 0
    obj_start = -1
    in_string = False
    escaped = False

    for i, ch in enumerate(span):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            if depth == 0:
                obj_start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and obj_start != -1:
                literal = _remove_trailing_commas(span[obj_start:i + 1])
                try:
                    parsed = json.loads(literal)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping unparseable object literal: {literal[:80]}")
                else:
                    if isinstance(parsed, dict):
                        objects.append(parsed)
                obj_start = -1

    return objects


def _item_list_field(schema: Type[BaseModel]) -> Optional[str]:
    """Name of the list-of-items field the schema expects, if any."""
    for name in _ITEM_LIST_FIELDS:
        if name in schema.model_fields:
            return name
    return None


def _has_typed_fields(item: Any) -> bool:
    return (
        isinstance(item, dict)
        and isinstance(item.get("description"), str)
        and isinstance(item.get("effort"), str)
    )


# =============================================================================
# PUBLIC API
# =============================================================================

def _excerpt(text: str) -> str:
    if len(text) <= RAW_EXCERPT_CHARS:
        return text
    return text[:RAW_EXCERPT_CHARS] + "..."


def _validate(schema: Type[BaseModel], data: Any, list_field: Optional[str]) -> LLMResult:
    try:
        return LLMResult(success=True, data=schema.model_validate(data), raw_data=data)
    except ValidationError as e:
        errors = e.errors()
        first_error = f"{errors[0].get('loc')}: {errors[0].get('msg')}" if errors else "validation failed"

        if list_field and isinstance(data, dict) and isinstance(data.get(list_field), list):
            items = data[list_field]
            kept = [item for item in items if _has_typed_fields(item)]
            if kept:
                filtered = {**data, list_field: kept}
                try:
                    model = schema.model_validate(filtered)
                except ValidationError:
                    pass
                else:
                    logger.warning(
                        f"Partial recovery kept {len(kept)}/{len(items)} '{list_field}' items"
                    )
                    return LLMResult(success=True, data=model, raw_data=filtered)

        return LLMResult.fail(
            f"Schema validation failed: {first_error}",
            kind=ResultKind.PARSE_ERROR,
            raw_data=data,
        )


def parse_and_validate_json_response(raw_text: Optional[str], schema: Type[BaseModel]) -> LLMResult:
    """
    Repair, parse and validate model output against a pydantic schema.

    Args:
        raw_text: Text returned by the model
        schema: Pydantic model class the JSON must satisfy

    Returns:
        LLMResult with the validated model instance in ``data`` and the
        parsed JSON in ``raw_data``; on failure ``raw_data`` carries the
        parsed data or a raw-text excerpt.
    """
    if not raw_text or not raw_text.strip():
        return LLMResult.fail("Empty response", kind=ResultKind.PARSE_ERROR, raw_data="")

    list_field = _item_list_field(schema)
    repaired = repair_json_text(raw_text)

    try:
        data = json.loads(repaired)
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning(f"JSON parse failed after repair: {e}")
        if not list_field:
            return LLMResult.fail(
                f"Could not parse JSON: {e}",
                kind=ResultKind.PARSE_ERROR,
                raw_data=_excerpt(raw_text),
            )

        items = _extract_description_effort_pairs(repaired)
        if items:
            logger.info(f"Recovered {len(items)} items by field-pair extraction")
        else:
            items = [obj for obj in extract_json_objects(repaired) if "description" in obj]
            if items:
                logger.info(f"Recovered {len(items)} items by object scanning")

        if not items:
            return LLMResult.fail(
                f"Could not parse JSON: {e}",
                kind=ResultKind.PARSE_ERROR,
                raw_data=_excerpt(raw_text),
            )
        data = {list_field: items}

    return _validate(schema, data, list_field)
