"""Removal of bulk and internal-only fields from upstream responses.

Signatures and encrypted replay blobs are large, opaque, and never needed by
the caller. Each block variant lists exactly which keys it sheds.
"""

from __future__ import annotations

from typing import Any, Optional

# Keys removed per block type
_THINKING_DROP = frozenset({"signature"})
_CITATION_DROP = frozenset({"encrypted_index"})
_SEARCH_RESULT_DROP = frozenset({"encrypted_content"})

# Block types removed entirely
_DROPPED_BLOCK_TYPES = frozenset({"redacted_thinking"})


def _without(data: dict[str, Any], keys: frozenset[str]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in keys}


def _strip_text(block: dict[str, Any]) -> dict[str, Any]:
    result = dict(block)
    citations = block.get("citations")
    if isinstance(citations, list):
        result["citations"] = [
            _without(c, _CITATION_DROP) if isinstance(c, dict) else c
            for c in citations
        ]
    return result


def _strip_search_results(block: dict[str, Any]) -> dict[str, Any]:
    result = dict(block)
    content = block.get("content")
    if isinstance(content, list):
        result["content"] = [
            _without(item, _SEARCH_RESULT_DROP) if isinstance(item, dict) else item
            for item in content
        ]
    return result


def strip_block(block: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Return a stripped copy of one content block, or None to drop it."""
    block_type = block.get("type")
    if block_type in _DROPPED_BLOCK_TYPES:
        return None
    if block_type == "thinking":
        return _without(block, _THINKING_DROP)
    if block_type == "text":
        return _strip_text(block)
    if block_type == "web_search_tool_result":
        return _strip_search_results(block)
    return dict(block)


def strip_sensitive(raw: dict[str, Any]) -> dict[str, Any]:
    """Stripped copy of a raw response. The input is not modified."""
    result = dict(raw)
    content = raw.get("content")
    if isinstance(content, list):
        stripped = []
        for block in content:
            if not isinstance(block, dict):
                continue
            kept = strip_block(block)
            if kept is not None:
                stripped.append(kept)
        result["content"] = stripped
    return result
