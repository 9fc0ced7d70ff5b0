"""Plain-text projection of a document tree.

Walks the tree depth-first in document order and produces the canonical
text plus an offset map: contiguous segments (one per contributing text
leaf, line break, or injected block separator) that cover the canonical
text exactly once. Offsets are UTF-16 code units throughout.

The walk must stay identical between projection and selection capture,
otherwise stored highlight offsets drift. Both go through the OffsetMap
produced here, and both read the same ProjectionConfig.
"""

# Pattern: Functional Core (pure, repeatable projection)

from __future__ import annotations

import logging
import re
from bisect import bisect_right
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from pagemark.document.tree import (
    VOID_ELEMENTS,
    DocumentTree,
    Element,
    Node,
    NodePath,
    RawMarkup,
    TextLeaf,
)
from pagemark.document.utf16 import pair_midpoints, utf16_len

if TYPE_CHECKING:
    from pagemark.config import ProjectionConfig

logger = logging.getLogger(__name__)

# Non-visible content: contributes no characters
HIDDEN_TAGS = frozenset(("script", "style", "noscript", "template", "head", "title"))

# Block-level elements: entering or leaving one makes a separator pending
BLOCK_TAGS = frozenset(
    (
        "address",
        "article",
        "aside",
        "blockquote",
        "caption",
        "dd",
        "details",
        "div",
        "dl",
        "dt",
        "fieldset",
        "figcaption",
        "figure",
        "footer",
        "form",
        "h1",
        "h2",
        "h3",
        "h4",
        "h5",
        "h6",
        "header",
        "hr",
        "li",
        "main",
        "nav",
        "ol",
        "p",
        "pre",
        "section",
        "summary",
        "table",
        "tbody",
        "td",
        "tfoot",
        "th",
        "thead",
        "tr",
        "ul",
    )
)

# Whitespace-only leaves in block containers (indentation between tags)
_WHITESPACE_ONLY = re.compile(r"\s+")


class SegmentKind(StrEnum):
    """What contributed a segment's characters."""

    TEXT = "text"
    LINE_BREAK = "line_break"
    SEPARATOR = "separator"


@dataclass(frozen=True, slots=True)
class Segment:
    """A contiguous run of canonical text contributed by one node.

    Attributes:
        path: Path of the contributing node. For separators, the block
            element whose boundary triggered it.
        start: Canonical offset of the first code unit.
        length: Length in UTF-16 code units (always > 0).
        kind: Text leaf, line break, or injected separator.
    """

    path: NodePath
    start: int
    length: int
    kind: SegmentKind = SegmentKind.TEXT

    @property
    def end(self) -> int:
        return self.start + self.length


class OffsetMap:
    """Bidirectional index between canonical offsets and tree positions.

    Immutable once built. Safe to share across renders and threads.
    """

    __slots__ = (
        "_leaf_paths",
        "_midpoints",
        "_node_spans",
        "_opaque_paths",
        "_segments",
        "_starts",
        "text",
        "total_length",
    )

    def __init__(
        self,
        text: str,
        segments: tuple[Segment, ...],
        node_spans: dict[NodePath, tuple[int, int]],
        leaf_paths: frozenset[NodePath] = frozenset(),
        opaque_paths: frozenset[NodePath] = frozenset(),
    ) -> None:
        self.text = text
        self.total_length = utf16_len(text)
        self._segments = segments
        self._starts = [seg.start for seg in segments]
        self._node_spans = node_spans
        self._leaf_paths = leaf_paths
        self._opaque_paths = opaque_paths
        self._midpoints = pair_midpoints(text)

    @property
    def segments(self) -> tuple[Segment, ...]:
        return self._segments

    def __len__(self) -> int:
        return len(self._segments)

    def index_at(self, offset: int) -> int:
        """Index of the segment containing *offset*, or -1 if out of range."""
        if offset < 0 or offset >= self.total_length:
            return -1
        return bisect_right(self._starts, offset) - 1

    def segment_at(self, offset: int) -> Segment | None:
        """The segment containing *offset*, or None."""
        index = self.index_at(offset)
        return self._segments[index] if index >= 0 else None

    def node_span(self, path: NodePath) -> tuple[int, int] | None:
        """Canonical ``(start, end)`` covered by the node at *path*.

        Returns None for nodes the projection never visited (for example
        text inside a script element).
        """
        return self._node_spans.get(path)

    def is_leaf(self, path: NodePath) -> bool:
        """True if *path* addresses a text leaf (contributing or not)."""
        return path in self._leaf_paths

    def is_opaque(self, path: NodePath) -> bool:
        """True if the projection did not descend into the node at *path*."""
        return path in self._opaque_paths

    def offset_of(self, path: NodePath, local: int) -> int | None:
        """Canonical offset of a position inside a leaf (inverse lookup).

        *local* is clamped to the leaf's contributed length. Returns None
        if *path* was not visited by the projection.
        """
        span = self._node_spans.get(path)
        if span is None:
            return None
        start, end = span
        return self.snap(start + max(0, min(local, end - start)))

    def snap(self, offset: int, *, round_up: bool = False) -> int:
        """Move an offset that splits a surrogate pair onto a code point."""
        if offset in self._midpoints:
            return offset + 1 if round_up else offset - 1
        return offset

    def slice(self, start: int, end: int) -> str:
        """Canonical text between two UTF-16 offsets (widened to code points)."""
        start = self.snap(max(0, start))
        end = self.snap(min(end, self.total_length), round_up=True)
        if end <= start:
            return ""
        encoded = self.text.encode("utf-16-le")
        return encoded[start * 2 : end * 2].decode("utf-16-le")


@dataclass(frozen=True, slots=True)
class Projection:
    """Canonical text and its offset map for one content version."""

    text: str
    offset_map: OffsetMap

    @property
    def total_length(self) -> int:
        return self.offset_map.total_length


class _ProjectionBuilder:
    """Accumulates segments during the document-order walk."""

    def __init__(self, policy: ProjectionConfig) -> None:
        self.policy = policy
        self.chunks: list[str] = []
        self.segments: list[Segment] = []
        self.node_spans: dict[NodePath, tuple[int, int]] = {}
        self.leaf_paths: set[NodePath] = set()
        self.opaque_paths: set[NodePath] = set()
        self.offset = 0
        self.pending_separator: NodePath | None = None

    def _append(self, path: NodePath, text: str, kind: SegmentKind) -> Segment:
        length = utf16_len(text)
        segment = Segment(path=path, start=self.offset, length=length, kind=kind)
        self.chunks.append(text)
        self.segments.append(segment)
        self.offset += length
        return segment

    def emit(self, path: NodePath, text: str, kind: SegmentKind) -> Segment:
        # A pending separator is only written between two contributions
        if self.pending_separator is not None:
            if self.offset > 0 and self.policy.block_separator:
                self._append(
                    self.pending_separator,
                    self.policy.block_separator,
                    SegmentKind.SEPARATOR,
                )
            self.pending_separator = None
        return self._append(path, text, kind)

    def walk(self, node: Node, path: NodePath, parent_tag: str | None) -> None:
        if isinstance(node, TextLeaf):
            self._walk_text(node, path, parent_tag)
            return

        if isinstance(node, RawMarkup):
            self.node_spans[path] = (self.offset, self.offset)
            self.opaque_paths.add(path)
            return

        if not isinstance(node, Element):
            logger.warning("Skipping unknown node type %s at %s", type(node), path)
            return

        tag = node.tag
        if tag in HIDDEN_TAGS or tag in VOID_ELEMENTS:
            self.opaque_paths.add(path)

        if tag in HIDDEN_TAGS:
            self.node_spans[path] = (self.offset, self.offset)
            return

        if tag == "br":
            if self.policy.line_break:
                segment = self.emit(
                    path, self.policy.line_break, SegmentKind.LINE_BREAK
                )
                self.node_spans[path] = (segment.start, segment.end)
            else:
                self.node_spans[path] = (self.offset, self.offset)
            return

        if tag in VOID_ELEMENTS:
            self.node_spans[path] = (self.offset, self.offset)
            return

        is_block = tag in BLOCK_TAGS
        if is_block:
            self.pending_separator = path
        entry = self.offset
        first = len(self.segments)

        for index, child in enumerate(node.children):
            self.walk(child, path + (index,), tag)

        start = entry
        for segment in self.segments[first:]:
            if segment.kind is not SegmentKind.SEPARATOR:
                start = segment.start
                break
        self.node_spans[path] = (start, self.offset)

        if is_block:
            self.pending_separator = path

    def _walk_text(
        self, leaf: TextLeaf, path: NodePath, parent_tag: str | None
    ) -> None:
        self.leaf_paths.add(path)
        text = leaf.text
        if not text or (
            self.policy.skip_block_whitespace
            and parent_tag in BLOCK_TAGS
            and _WHITESPACE_ONLY.fullmatch(text)
        ):
            self.node_spans[path] = (self.offset, self.offset)
            return
        segment = self.emit(path, text, SegmentKind.TEXT)
        self.node_spans[path] = (segment.start, segment.end)

    def finish(self) -> Projection:
        text = "".join(self.chunks)
        offset_map = OffsetMap(
            text,
            tuple(self.segments),
            self.node_spans,
            leaf_paths=frozenset(self.leaf_paths),
            opaque_paths=frozenset(self.opaque_paths),
        )
        return Projection(text=text, offset_map=offset_map)


def project(tree: DocumentTree, policy: ProjectionConfig | None = None) -> Projection:
    """Project a document tree to canonical text and an offset map.

    Args:
        tree: The parsed document.
        policy: Separator and whitespace policy. Defaults to the configured
            ``Settings.projection``.

    Returns:
        Projection with the canonical text and its OffsetMap. Calling this
        twice on the same tree yields equal results.
    """
    if policy is None:
        from pagemark.config import get_settings

        policy = get_settings().projection

    builder = _ProjectionBuilder(policy)
    builder.walk(tree.root, (), None)
    projection = builder.finish()
    logger.debug(
        "Projected %d segments, %d code units",
        len(projection.offset_map),
        projection.total_length,
    )
    return projection
