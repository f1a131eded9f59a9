"""Size bounding for text fields.

Callers store results in cells with hard size limits, so every text field is
capped. A capped field ends with a marker stating how much was removed.
"""

from __future__ import annotations

import json
import re
from typing import Any

MAX_FIELD_CHARS = 45_000

TRUNCATION_MARKER_TEMPLATE = "\n\n[truncated: {removed} characters removed]"
TRUNCATION_MARKER_RE = re.compile(r"\n\n\[truncated: \d+ characters removed\]\Z")

_CODE_FENCE_RE = re.compile(r"\A```[a-zA-Z]*\s*\n?(.*?)\n?```\Z", re.DOTALL)


def is_truncated(text: str) -> bool:
    return bool(TRUNCATION_MARKER_RE.search(text))


def bound_text(text: str, limit: int = MAX_FIELD_CHARS) -> tuple[str, bool]:
    """Cap text at ``limit`` characters including the truncation marker.

    Returns:
        The (possibly) shortened text and whether it was cut.
    """
    if len(text) <= limit:
        return text, False

    # The marker for the full length is the longest one this text can need
    reserve = len(TRUNCATION_MARKER_TEMPLATE.format(removed=len(text)))
    keep = max(limit - reserve, 0)
    marker = TRUNCATION_MARKER_TEMPLATE.format(removed=len(text) - keep)
    return text[:keep] + marker, True


def bound_optional(text: str | None, limit: int = MAX_FIELD_CHARS) -> tuple[str | None, bool]:
    if text is None:
        return None, False
    return bound_text(text, limit)


def parse_structured(content: str) -> tuple[bool, Any]:
    """Parse JSON content, tolerating a surrounding Markdown code fence.

    Returns:
        (True, value) when the content is a JSON object or array,
        (False, None) otherwise.
    """
    text = content.strip()
    fenced = _CODE_FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1).strip()
    try:
        value = json.loads(text)
    except ValueError:
        return False, None
    if not isinstance(value, (dict, list)):
        return False, None
    return True, value


def _bound_value(value: Any, limit: int) -> tuple[Any, bool]:
    if isinstance(value, str):
        return bound_text(value, limit)

    if isinstance(value, dict):
        result = {}
        cut = False
        for key, item in value.items():
            result[key], item_cut = _bound_value(item, limit)
            cut = cut or item_cut
        return result, cut

    if isinstance(value, list):
        items = []
        cut = False
        for item in value:
            bounded, item_cut = _bound_value(item, limit)
            items.append(bounded)
            cut = cut or item_cut
        return items, cut

    return value, False


def bound_raw(raw: dict[str, Any], limit: int = MAX_FIELD_CHARS) -> tuple[dict[str, Any], bool]:
    """Cap every string of a (stripped) raw response, at any depth.

    Covers tool inputs and tool results of every block type.
    """
    return _bound_value(raw, limit)
