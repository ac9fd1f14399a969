# parsing.py
# Pulls a JSON object out of noisy model output.
#
# Models wrap JSON in markdown fences, prepend chatter, or trail off with
# explanations. Callers get either a parsed value or None, never an exception.

import json
import re
from typing import Any

from fieldfix.log import get_logger

logger = get_logger(__name__)

_LEADING_FENCE = re.compile(r"^```[\w-]*[ \t]*\n?")
_TRAILING_FENCE = re.compile(r"\s*```$")


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    cleaned = _LEADING_FENCE.sub("", cleaned)
    cleaned = _TRAILING_FENCE.sub("", cleaned)
    return cleaned.strip()


def extract_first_json(text: str) -> str | None:
    """
    Return the first balanced {...} region of `text`, fences removed.

    Braces inside string literals are ignored. A backslash consumes exactly
    the next character. Returns None when there is no '{' or the braces never
    balance.
    """
    cleaned = strip_code_fences(text)

    start = cleaned.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False

    for index in range(start, len(cleaned)):
        char = cleaned[index]

        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue

        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return cleaned[start : index + 1]

    return None


def safe_json_parse(text: str | None) -> Any | None:
    """Parse model output into a Python value, or None if that is not possible."""
    if not text:
        return None

    candidate = extract_first_json(text)
    if candidate is None:
        cleaned = strip_code_fences(text)
        if "{" not in cleaned:
            return None
        # Unbalanced region: last chance on the whole cleaned text.
        candidate = cleaned

    try:
        return json.loads(candidate, strict=False)
    except (json.JSONDecodeError, ValueError) as exc:
        logger.debug("JSON parse failed: %s", exc)
        return None
