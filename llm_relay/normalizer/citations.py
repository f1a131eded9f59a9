"""Citation consolidation.

Search-augmented responses cite sources in two shapes: inline
``<cite index="N-M">claim</cite>`` tags inside text, and structured
``citations`` arrays on text blocks. Both are rewritten to footnote markers
(``[^k]``) that share one numbering, keyed by source identity and assigned in
first-seen order, followed by a single Sources section.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from llm_relay.models import SourceCitation

from .blocks import (
    Citation,
    ContentBlock,
    SearchResult,
    SearchResultBlock,
    TextBlock,
    ToolUseBlock,
    flatten_search_results,
)

CITE_TAG_RE = re.compile(r'<cite\s+index="([^"]*)"\s*>(.*?)</cite>', re.DOTALL)

SOURCES_HEADING = "**Sources:**"


def _escape_link_text(text: str) -> str:
    return text.replace("[", "\\[").replace("]", "\\]")


class CitationRegistry:
    """Assigns stable footnote numbers to sources in first-seen order."""

    def __init__(self) -> None:
        self._numbers: dict[tuple[str, Any], int] = {}
        self._entries: list[SourceCitation] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[SourceCitation]:
        return list(self._entries)

    def _register(self, key: tuple[str, Any], **fields: Any) -> int:
        number = self._numbers.get(key)
        if number is not None:
            return number
        number = len(self._entries) + 1
        self._numbers[key] = number
        self._entries.append(SourceCitation(number=number, **fields))
        return number

    def register_citation(self, citation: Citation) -> int:
        return self._register(
            citation.source_key,
            url=citation.url,
            title=citation.title,
            cited_text=citation.cited_text,
            document_index=citation.document_index if not citation.url else None,
        )

    def register_search_result(self, result: SearchResult, index: int) -> int:
        if result.url:
            return self._register(("url", result.url), url=result.url, title=result.title)
        return self._register(("document", index), title=result.title, document_index=index)

    def register_placeholder(self, token: str) -> int:
        return self._register(
            ("unknown", token),
            title=f"Unknown source (index {token})",
            placeholder=True,
        )

    def sources_section(self) -> str:
        lines = [SOURCES_HEADING]
        for entry in self._entries:
            lines.append(f"[^{entry.number}]: {format_source(entry)}")
        return "\n".join(lines)


def format_source(entry: SourceCitation) -> str:
    """Markdown for one Sources line (without the footnote label)."""
    if entry.placeholder:
        return entry.title or "Unknown source"
    if entry.url:
        label = _escape_link_text(entry.title or entry.url)
        return f"[{label}]({entry.url})"
    if entry.document_index is not None:
        title = entry.title or f"Document {entry.document_index}"
        return f"{title} (document {entry.document_index})"
    return entry.title or entry.cited_text or "Untitled source"


def _markers(numbers: list[int]) -> str:
    seen: list[int] = []
    for n in numbers:
        if n not in seen:
            seen.append(n)
    return "".join(f"[^{n}]" for n in seen)


def _source_index(token: str) -> Optional[int]:
    """Source position from an index token like "3-1" (source 3, sentence 1)."""
    head = token.split("-", 1)[0].strip()
    try:
        return int(head)
    except ValueError:
        return None


def _rewrite_cite_tags(
    text: str,
    registry: CitationRegistry,
    search_results: list[SearchResult],
) -> str:
    def replace(match: re.Match) -> str:
        claim = match.group(2)
        numbers = []
        for token in match.group(1).split(","):
            token = token.strip()
            if not token:
                continue
            index = _source_index(token)
            if index is not None and 0 <= index < len(search_results):
                numbers.append(registry.register_search_result(search_results[index], index))
            else:
                numbers.append(registry.register_placeholder(token.split("-", 1)[0].strip()))
        return claim + _markers(numbers)

    return CITE_TAG_RE.sub(replace, text)


def strip_cite_tags(text: str) -> str:
    """Unwrap inline cite tags, keeping only the claim text."""
    return CITE_TAG_RE.sub(lambda m: m.group(2), text)


def _append_markers(text: str, markers: str) -> str:
    if not markers:
        return text
    body = text.rstrip()
    return body + markers + text[len(body):]


def join_text_blocks(parts: list[tuple[str, bool]]) -> str:
    """Join text fragments; a paragraph break separates fragments split by tool activity."""
    out: list[str] = []
    for text, after_tool in parts:
        if out and after_tool:
            out.append("\n\n")
        out.append(text)
    return "".join(out).strip()


def plain_text(blocks: list[ContentBlock]) -> str:
    """Text content without citation markers."""
    return join_text_blocks([
        (strip_cite_tags(text), after_tool)
        for text, after_tool, _ in _text_parts(blocks)
    ])


def _text_parts(blocks: list[ContentBlock]) -> list[tuple[str, bool, TextBlock]]:
    parts = []
    after_tool = False
    for block in blocks:
        if isinstance(block, (ToolUseBlock, SearchResultBlock)):
            after_tool = True
        elif isinstance(block, TextBlock):
            parts.append((block.text, after_tool, block))
            after_tool = False
    return parts


def consolidate(
    blocks: list[ContentBlock],
    append_sources: bool = True,
) -> tuple[str, list[SourceCitation]]:
    """Rewrite citations into numbered markers.

    Args:
        blocks: Parsed content blocks.
        append_sources: Append the Sources section to the content.

    Returns:
        The content with markers and the numbered source list.
    """
    registry = CitationRegistry()
    search_results = flatten_search_results(blocks)

    rendered: list[tuple[str, bool]] = []
    for text, after_tool, block in _text_parts(blocks):
        text = _rewrite_cite_tags(text, registry, search_results)
        numbers = [registry.register_citation(c) for c in block.citations]
        rendered.append((_append_markers(text, _markers(numbers)), after_tool))

    content = join_text_blocks(rendered)
    if append_sources and len(registry):
        content = f"{content}\n\n{registry.sources_section()}"
    return content, registry.entries
