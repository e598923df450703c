"""
Structured output extraction from model responses
"""

import json
import logging
import re
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def first_balanced_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} span in `text`, or None.

    Single pass: braces inside JSON strings are ignored, and an object that
    never closes (a truncated response) yields None.
    """
    start = -1
    depth = 0
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if depth == 0:
            if ch == "{":
                start = i
                depth = 1
            continue
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


def parse_model_json(text: str) -> Optional[Dict[str, Any]]:
    """
    Parse a JSON object out of a model response.

    Tries, in order: the whole text, a fenced ``` block, the first balanced
    object. Returns None when all three fail.
    """
    if not text or not text.strip():
        return None

    parsed = _loads_object(text.strip())
    if parsed is not None:
        return parsed

    match = _FENCED_BLOCK.search(text)
    if match:
        parsed = _loads_object(match.group(1).strip())
        if parsed is not None:
            return parsed

    candidate = first_balanced_object(text)
    if candidate:
        parsed = _loads_object(candidate)
        if parsed is not None:
            return parsed

    logger.debug(f"No JSON object found in model response ({len(text)} chars)")
    return None
