from __future__ import annotations

import json
import re
from typing import Any

from coach_pipeline.errors import ParseError
from coach_pipeline.utils.log import logger

_FENCE_RE = re.compile(r"```(?:json|JSON)?")


def strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def close_truncated(candidate: str) -> str:
    """
    Append the closers a truncated JSON document is missing.

    Tracks string state (honouring backslash escapes) so brackets inside strings
    are ignored, and closes the open objects/arrays innermost-first:
    `{"a": [1, {"b": "x"` -> `{"a": [1, {"b": "x"}]}`. A document cut inside a
    string is returned as is and will not parse.
    """
    in_string = False
    escaped = False
    stack: list[str] = []
    for ch in candidate:
        if escaped:
            escaped = False
            continue
        if in_string:
            if ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            stack.append("}")
        elif ch == "[":
            stack.append("]")
        elif ch in "}]" and stack and stack[-1] == ch:
            stack.pop()

    if in_string:
        return candidate
    # Trailing separators would still be invalid after closing.
    out = candidate.rstrip()
    while out.endswith(","):
        out = out[:-1].rstrip()
    return out + "".join(reversed(stack))


def parse_structured(raw: str, *, diagnostic_chars: int = 300) -> Any:
    """
    Parse a model's JSON output, repairing the common truncation shape.

    Valid JSON is returned unchanged. Otherwise fences are stripped, the text from
    the first `{` is closed up and re-parsed. Raises ParseError (with head/tail
    diagnostics) when that still fails.
    """
    text = raw or ""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    cleaned = strip_fences(text)
    start = cleaned.find("{")
    if start < 0:
        raise ParseError("no JSON object found in output", raw=text, diagnostic_chars=diagnostic_chars)
    candidate = cleaned[start:]
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    repaired = close_truncated(candidate)
    try:
        out = json.loads(repaired)
    except json.JSONDecodeError as ex:
        err = ParseError(f"unrepairable JSON output: {ex.msg}", raw=text, diagnostic_chars=diagnostic_chars)
        logger.warning("structured_output_unrepairable", error=str(ex), **err.diagnostic())
        raise err from ex
    logger.info(
        "structured_output_repaired",
        raw_length=len(text),
        appended=len(repaired) - len(candidate),
    )
    return out
