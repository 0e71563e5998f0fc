"""Recover a JSON value from free-form model output."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


class AnalysisParseError(ValueError):
    """Model output did not contain usable JSON."""


def extract_json(text: str) -> Any:
    """Parse raw text, then a fenced block, then the first balanced ``{...}`` or ``[...]``."""

    stripped = (text or "").strip()
    if not stripped:
        raise AnalysisParseError("Model returned an empty response.")

    found, value = _try_load(stripped)
    if found:
        return value

    for fenced in _FENCED_JSON.finditer(stripped):
        found, value = _try_load(fenced.group(1))
        if found:
            return value

    candidate = _first_balanced(stripped)
    if candidate is not None:
        found, value = _try_load(candidate)
        if found:
            return value

    raise AnalysisParseError(f"No valid JSON found in model response: {stripped[:200]!r}")


def _try_load(raw: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(raw)
    except json.JSONDecodeError:
        return False, None


def _first_balanced(text: str) -> str | None:
    """Earliest ``{...}`` or ``[...]`` span with balanced brackets outside strings."""

    starts = [index for index in (text.find("{"), text.find("[")) if index != -1]
    if not starts:
        return None
    start = min(starts)
    closing = {"{": "}", "[": "]"}
    stack: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in closing:
            stack.append(closing[char])
        elif char in ("}", "]"):
            if not stack or stack.pop() != char:
                return None
            if not stack:
                return text[start : index + 1]
    return None
