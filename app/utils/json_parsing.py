"""
Midnight Protocol — Tolerant JSON extraction for generation output.

Models asked for "JSON only" still wrap the object in prose or code fences,
or emit trailing commas.  ``parse_json_object`` tries, in order:

1. Direct ``json.loads`` on the raw text
2. Markdown code-fence extraction
3. Outermost ``{ ... }`` slice
4. ``json_repair`` on the raw text, then on the brace slice
"""

from __future__ import annotations

import json
import re

import structlog
from json_repair import repair_json

logger = structlog.get_logger("midnight.json_parsing")

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)


def _loads_object(candidate: str) -> dict | None:
    try:
        result = json.loads(candidate)
    except (json.JSONDecodeError, TypeError):
        return None
    return result if isinstance(result, dict) else None


def parse_json_object(text: str) -> dict:
    """Return the first JSON object recoverable from ``text``.

    Raises
    ------
    ValueError
        If no strategy yields a JSON object.
    """
    if not text or not text.strip():
        raise ValueError("Empty response text, cannot parse JSON")

    cleaned = text.strip()

    result = _loads_object(cleaned)
    if result is not None:
        return result

    fence = _FENCE_PATTERN.search(cleaned)
    if fence:
        result = _loads_object(fence.group(1).strip())
        if result is not None:
            return result

    first_brace = cleaned.find("{")
    last_brace = cleaned.rfind("}")
    brace_slice = (
        cleaned[first_brace : last_brace + 1]
        if first_brace >= 0 and last_brace > first_brace
        else None
    )
    if brace_slice is not None:
        result = _loads_object(brace_slice)
        if result is not None:
            return result

    for candidate in (cleaned, brace_slice):
        if candidate is None:
            continue
        try:
            result = _loads_object(repair_json(candidate))
        except Exception as exc:  # json_repair raises assorted types
            logger.debug("jsonrepair_failed", error=str(exc))
            continue
        if result is not None:
            logger.info("json_parsed_via_jsonrepair", original_preview=cleaned[:80])
            return result

    raise ValueError(f"Failed to parse JSON from model output. Preview: {cleaned[:200]}")
