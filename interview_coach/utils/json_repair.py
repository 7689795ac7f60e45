"""Lenient JSON loading for model output.

Gemini is asked for JSON but occasionally wraps it in markdown fences,
leaves trailing commas, or adds a sentence before the object. Parsing is
lenient; shape validation happens afterwards with pydantic and is strict.
"""

import json
import re

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?|\n?```\s*$")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def _outer_object(text: str) -> str | None:
    """Slice from the first '{' to its matching '}' (string-aware)."""
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_json_object(text: str) -> dict:
    """Parse a JSON object out of model text, repairing common defects.

    Raises ValueError if no JSON object can be recovered.
    """
    if not text or not text.strip():
        raise ValueError("Empty model response")

    candidates = [text, _strip_fences(text)]
    block = _outer_object(candidates[-1])
    if block:
        candidates.append(block)

    for candidate in candidates:
        for attempt in (candidate, _CONTROL_RE.sub("", _TRAILING_COMMA_RE.sub(r"\1", candidate))):
            try:
                value = json.loads(attempt)
            except json.JSONDecodeError:
                continue
            if isinstance(value, dict):
                return value
            raise ValueError(f"Expected a JSON object, got {type(value).__name__}")

    raise ValueError("Could not parse model response as JSON")
