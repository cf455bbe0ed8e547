"""
Citation Resolver Module

Maps inline ``[N]`` markers in generated answers to the sources they cite.

Two phases:
1. insert_citation_placeholders: before any other text transformation
   (markdown rendering etc.), each valid marker becomes an unambiguous
   private-use placeholder. Markers outside 1..20, and all markers when
   there are no sources, stay literal so "[2]" in maths or list notation
   survives untouched.
2. render_citations: at display time, walk a tree of text and nodes and
   replace placeholders inside text leaves with Citation objects. Other
   leaves are returned as-is.

Everything here is a pure function.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from ragcore.sessions import Source

MIN_CITATION = 1
MAX_CITATION = 20

CITATION_MARKER = re.compile(r"\[(\d{1,2})\]")
PLACEHOLDER_OPEN = "\ue000"
PLACEHOLDER_CLOSE = "\ue001"
PLACEHOLDER_PATTERN = re.compile(PLACEHOLDER_OPEN + r"cite:(\d{1,2})" + PLACEHOLDER_CLOSE)


def citation_placeholder(index: int) -> str:
    return f"{PLACEHOLDER_OPEN}cite:{index}{PLACEHOLDER_CLOSE}"


def _in_range(index: int) -> bool:
    return MIN_CITATION <= index <= MAX_CITATION


@dataclass(frozen=True)
class Citation:
    """A resolved marker. ``source`` is None when N exceeds the sources."""

    index: int
    source: Optional[Source] = None

    @property
    def resolved(self) -> bool:
        return self.source is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "source": self.source.to_dict() if self.source else None,
        }


@dataclass
class TextNode:
    """
    A generic element in a rendered document tree.

    Children are strings, nested TextNodes, or any other value (images,
    framework elements), which rendering leaves unchanged.
    """

    tag: str
    attrs: Dict[str, Any] = field(default_factory=dict)
    children: List[Any] = field(default_factory=list)


Segment = Union[str, Citation]


def insert_citation_placeholders(text: str, source_count: int) -> str:
    """Rewrite valid ``[N]`` markers into placeholders."""
    if source_count <= 0:
        return text

    def replace(match: "re.Match[str]") -> str:
        index = int(match.group(1))
        if not _in_range(index):
            return match.group(0)
        return citation_placeholder(index)

    return CITATION_MARKER.sub(replace, text)


def restore_citation_markers(text: str) -> str:
    """Turn placeholders back into the ``[N]`` wire format."""
    return PLACEHOLDER_PATTERN.sub(lambda m: f"[{m.group(1)}]", text)


def resolve_citation(index: int, sources: Sequence[Source]) -> Citation:
    """1-based lookup; out-of-range yields a source-less Citation."""
    if 1 <= index <= len(sources):
        return Citation(index=index, source=sources[index - 1])
    return Citation(index=index)


def split_citations(text: str, sources: Sequence[Source]) -> List[Segment]:
    """Split placeholder-bearing text into text and Citation segments."""
    segments: List[Segment] = []
    position = 0
    for match in PLACEHOLDER_PATTERN.finditer(text):
        if match.start() > position:
            segments.append(text[position:match.start()])
        segments.append(resolve_citation(int(match.group(1)), sources))
        position = match.end()
    if position < len(text):
        segments.append(text[position:])
    return segments


def render_citations(tree: Any, sources: Sequence[Source]) -> Any:
    """
    Resolve placeholders throughout ``tree``.

    A string becomes a list of segments. A TextNode is copied with its
    string children expanded in place and nested nodes rendered
    recursively. Anything else is returned unchanged.
    """
    if isinstance(tree, str):
        return split_citations(tree, sources)

    if isinstance(tree, TextNode):
        children: List[Any] = []
        for child in tree.children:
            if isinstance(child, str):
                children.extend(split_citations(child, sources))
            else:
                children.append(render_citations(child, sources))
        return TextNode(tag=tree.tag, attrs=dict(tree.attrs), children=children)

    return tree


def cited_indices(text: str) -> List[int]:
    """Distinct in-range marker numbers, in order of first appearance."""
    seen: List[int] = []
    for match in CITATION_MARKER.finditer(text):
        index = int(match.group(1))
        if _in_range(index) and index not in seen:
            seen.append(index)
    for match in PLACEHOLDER_PATTERN.finditer(text):
        index = int(match.group(1))
        if index not in seen:
            seen.append(index)
    return seen
