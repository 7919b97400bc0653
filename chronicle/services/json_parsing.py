"""Lenient JSON extraction from model output.

Models wrap JSON in markdown fences, leave raw newlines inside strings, or
forget to escape quotes in prose. ``parse_model_json`` recovers from the
common cases and raises LLMResponseParseError for everything else, so a
malformed response fails the step instead of persisting partial data.

Recovery order:
    1. Take the body of a ```json fence, else any ``` fence, else the raw text.
    2. Parse directly.
    3. Escape raw newlines inside string literals and bare quotes inside
       strings, then parse again.
    4. For section drafts, pull ``prose`` and ``synopsis`` out with patterns.
"""

import json
import re
from typing import Any

from chronicle.exceptions import LLMResponseParseError

_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_ANY_FENCE = re.compile(r"```\s*([\s\S]*?)\s*```")
_BARE_QUOTE = re.compile(r'([^\\])"(?=[^:,\[\]{}\s])')
_PROSE_FIELD = re.compile(r'"prose"\s*:\s*"([\s\S]*?)"\s*,\s*"synopsis')
_SYNOPSIS_FIELD = re.compile(r'"synopsis"\s*:\s*"([\s\S]*?)"\s*}')
_OBJECT = re.compile(r"\{[\s\S]*\}")


def extract_json_block(text: str) -> str:
    """Return the fenced JSON body if present, otherwise the stripped text."""
    match = _JSON_FENCE.search(text) or _ANY_FENCE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def extract_json_object(text: str) -> str | None:
    """Return the outermost ``{...}`` span in ``text``, if any."""
    match = _OBJECT.search(text)
    return match.group(0) if match else None


def _escape_newlines_in_strings(candidate: str) -> str:
    out = []
    in_string = False
    escaped = False
    for char in candidate:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            elif char == "\n":
                out.append("\\n")
                continue
            elif char == "\r":
                continue
        elif char == '"':
            in_string = True
        out.append(char)
    return "".join(out)


def _unescape(value: str) -> str:
    return value.replace("\\n", "\n").replace('\\"', '"')


def parse_model_json(text: str) -> Any:
    """Parse JSON from a model response.

    Args:
        text: Raw model output.

    Returns:
        The decoded JSON value (dict or list).

    Raises:
        LLMResponseParseError: If no recovery strategy produces valid JSON.
    """
    candidate = extract_json_block(text)

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    repaired = _escape_newlines_in_strings(candidate)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError:
        pass

    repaired = _BARE_QUOTE.sub(r'\1\\"', repaired)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError:
        pass

    prose_match = _PROSE_FIELD.search(text)
    synopsis_match = _SYNOPSIS_FIELD.search(text)
    if prose_match and synopsis_match:
        return {
            "prose": _unescape(prose_match.group(1)),
            "synopsis": _unescape(synopsis_match.group(1)),
        }

    raise LLMResponseParseError("Failed to parse JSON", raw_text=text)
