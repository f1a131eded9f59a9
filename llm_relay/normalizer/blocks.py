"""Typed content blocks of a Messages API response.

The normalizer only understands a closed set of block variants. Each one is
parsed by an explicit function; anything else is skipped, so supporting a new
block type means adding a variant here rather than recursing over arbitrary
JSON.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Citation:
    """A structured citation attached to a text block."""

    url: Optional[str] = None
    title: Optional[str] = None
    cited_text: Optional[str] = None
    document_index: Optional[int] = None

    @property
    def source_key(self) -> tuple[str, Any]:
        """Source identity used for deduplication: URL, else document index."""
        if self.url:
            return ("url", self.url)
        if self.document_index is not None:
            return ("document", self.document_index)
        return ("text", self.title or self.cited_text or "")


@dataclass(frozen=True)
class TextBlock:
    text: str
    citations: tuple[Citation, ...] = ()


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: Optional[str]
    name: Optional[str]
    input: dict[str, Any] = field(default_factory=dict)
    server_side: bool = False


@dataclass(frozen=True)
class SearchResult:
    url: Optional[str]
    title: Optional[str] = None
    page_age: Optional[str] = None


@dataclass(frozen=True)
class SearchResultBlock:
    tool_use_id: Optional[str]
    results: tuple[SearchResult, ...] = ()
    error_code: Optional[str] = None


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, SearchResultBlock]


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _parse_citation(data: dict[str, Any]) -> Citation:
    # web_search_result_location carries url; search_result_location carries source
    url = _str_or_none(data.get("url")) or _str_or_none(data.get("source"))
    document_index = data.get("document_index")
    if document_index is None:
        document_index = data.get("search_result_index")
    return Citation(
        url=url,
        title=_str_or_none(data.get("title")) or _str_or_none(data.get("document_title")),
        cited_text=_str_or_none(data.get("cited_text")),
        document_index=document_index if isinstance(document_index, int) else None,
    )


def _parse_text(data: dict[str, Any]) -> TextBlock:
    raw_citations = data.get("citations") or []
    citations = tuple(
        _parse_citation(c) for c in raw_citations if isinstance(c, dict)
    )
    return TextBlock(text=_str_or_none(data.get("text")) or "", citations=citations)


def _parse_thinking(data: dict[str, Any]) -> ThinkingBlock:
    return ThinkingBlock(thinking=_str_or_none(data.get("thinking")) or "")


def _parse_tool_use(data: dict[str, Any]) -> ToolUseBlock:
    tool_input = data.get("input")
    return ToolUseBlock(
        id=_str_or_none(data.get("id")),
        name=_str_or_none(data.get("name")),
        input=tool_input if isinstance(tool_input, dict) else {},
        server_side=data.get("type") == "server_tool_use",
    )


def _parse_search_results(data: dict[str, Any]) -> SearchResultBlock:
    content = data.get("content")
    tool_use_id = _str_or_none(data.get("tool_use_id"))
    if isinstance(content, dict):
        # web_search_tool_result_error
        return SearchResultBlock(
            tool_use_id=tool_use_id,
            error_code=_str_or_none(content.get("error_code")),
        )
    results = tuple(
        SearchResult(
            url=_str_or_none(item.get("url")),
            title=_str_or_none(item.get("title")),
            page_age=_str_or_none(item.get("page_age")),
        )
        for item in (content or [])
        if isinstance(item, dict)
    )
    return SearchResultBlock(tool_use_id=tool_use_id, results=results)


_PARSERS: dict[str, Callable[[dict[str, Any]], ContentBlock]] = {
    "text": _parse_text,
    "thinking": _parse_thinking,
    "tool_use": _parse_tool_use,
    "server_tool_use": _parse_tool_use,
    "web_search_tool_result": _parse_search_results,
}


def parse_blocks(content: Any) -> list[ContentBlock]:
    """Parse raw content dicts into typed blocks, skipping unknown variants."""
    if not isinstance(content, list):
        return []

    blocks: list[ContentBlock] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        parser = _PARSERS.get(item.get("type"))
        if parser is None:
            logger.debug("Skipping unsupported content block type %r", item.get("type"))
            continue
        blocks.append(parser(item))
    return blocks


def flatten_search_results(blocks: list[ContentBlock]) -> list[SearchResult]:
    """All search results in response order; inline cite indexes point into this list."""
    results: list[SearchResult] = []
    for block in blocks:
        if isinstance(block, SearchResultBlock):
            results.extend(block.results)
    return results
