"""Parsing of reasoning-service responses.

Models usually return clean JSON, but sometimes wrap it in markdown, put
literal newlines inside string values, or stop mid-object when they run out
of output tokens. The strict parser handles the first two; the repair and
salvage helpers are the degraded path for the last, and their results must
be flagged as partial by the caller.
"""

import json
import logging
import re
from typing import Any

from services.shared.errors import ResponseParseError

logger = logging.getLogger(__name__)

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_OPEN_CODE_BLOCK = re.compile(r"```(?:json)?\s*")
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}
_MAX_REPAIR_CUTS = 64


def escape_control_characters(text: str) -> str:
    """Escape raw control characters that appear inside JSON string literals."""
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ord(ch) < 0x20:
                out.append(_CONTROL_ESCAPES.get(ch, f"\\u{ord(ch):04x}"))
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        result = json.loads(text)
    except ValueError:
        try:
            result = json.loads(escape_control_characters(text))
        except ValueError:
            return None
    return result if isinstance(result, dict) else None


def parse_json_object(response_text: str) -> dict[str, Any]:
    """Extract and parse the JSON object in a model response.

    Tries, in order: the whole response, a fenced code block, and the span
    from the first "{" to the last "}". Each attempt also retries with raw
    control characters escaped.

    Raises:
        ResponseParseError: If no complete JSON object can be found
    """
    text = response_text.strip()
    if not text:
        raise ResponseParseError("Empty response from reasoning service")

    candidates = [text]
    block = _CODE_BLOCK.search(text)
    if block:
        candidates.append(block.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start >= 0 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        result = _loads_object(candidate)
        if result is not None:
            return result
    raise ResponseParseError("Response is not a complete JSON object", raw_text=response_text)


def _close_structure(fragment: str) -> str | None:
    """Append the quotes and brackets a truncated JSON fragment is missing."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in fragment:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack:
                return None
            stack.pop()

    if escaped:
        fragment = fragment[:-1]
    if in_string:
        fragment += '"'
    fragment = fragment.rstrip()
    if fragment.endswith(":"):
        return None
    fragment = fragment.rstrip(",")
    return fragment + "".join(reversed(stack))


def _top_level_cut_points(text: str) -> list[int]:
    """Offsets of commas outside strings, last first."""
    cuts: list[int] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == ",":
            cuts.append(i)
    return list(reversed(cuts))[:_MAX_REPAIR_CUTS]


def repair_truncated_json(response_text: str) -> dict[str, Any] | None:
    """Best-effort recovery of an object cut off mid-stream.

    Closes open strings and brackets; when the last member is incomplete,
    drops members from the end until the remainder parses.

    Returns:
        The recovered object, or None when nothing usable remains
    """
    text = _OPEN_CODE_BLOCK.sub("", response_text).strip().rstrip("`")
    start = text.find("{")
    if start < 0:
        return None
    candidate = escape_control_characters(text[start:])

    for cut in [len(candidate), *_top_level_cut_points(candidate)]:
        closed = _close_structure(candidate[:cut])
        if closed is None:
            continue
        try:
            result = json.loads(closed)
        except ValueError:
            continue
        if isinstance(result, dict) and result:
            logger.warning(f"Recovered truncated JSON response ({len(response_text)} chars)")
            return result
    return None


_TEXT_FIELD = re.compile(r'"(?:text|raw_text|full_text)"\s*:\s*"((?:[^"\\]|\\.)*)', re.DOTALL)
_CONFIDENCE_FIELD = re.compile(r'"(?:confidence|overall_confidence)"\s*:\s*"?(\d+(?:\.\d+)?)')


def salvage_document_text(response_text: str) -> tuple[str, float | None]:
    """Plain-text fallback for a transcription response that is not valid JSON.

    Returns:
        Tuple of (recovered text, confidence if the response stated one)
    """
    confidence_match = _CONFIDENCE_FIELD.search(response_text)
    confidence = float(confidence_match.group(1)) if confidence_match else None

    text_match = _TEXT_FIELD.search(response_text)
    if text_match:
        raw = text_match.group(1)
        try:
            text = json.loads(f'"{raw}"')
        except ValueError:
            text = raw.replace("\\n", "\n").replace('\\"', '"')
        return text.strip(), confidence

    stripped = _OPEN_CODE_BLOCK.sub("", response_text).replace("```", "").strip()
    if stripped.startswith("{"):
        # A JSON-looking response without a text field carries no transcription
        return "", confidence
    return stripped, confidence
