"""Highlight compositor: source tree + highlight set -> overlay tree.

Architecture:
    Decomposes the highlight ranges into overlay segments (event sweep in
    ``regions``), resolves every highlighted segment to text-leaf spans,
    then rebuilds only the elements on the path to a touched leaf.
    Touched leaves are split into runs and the highlighted runs wrapped in
    marker elements. Elements are never split, so a range that crosses an
    element boundary becomes one marker per affected leaf and the original
    nesting is preserved. Untouched subtrees are shared with the source
    tree by identity.

The output is a pure function of the tree and the *set* of highlights:
marker id lists are sorted, and color precedence is a total order
(latest ``created_at``, then id).
"""

# Pattern: Functional Core (overlay is recomputed, never patched)

from __future__ import annotations

import logging
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, NamedTuple

from selectolax.lexbor import LexborHTMLParser

from pagemark.document.resolver import resolve
from pagemark.document.selection import TreePosition
from pagemark.document.tree import DocumentTree, Element, Node, NodePath, TextLeaf
from pagemark.document.utf16 import utf16_len, utf16_to_index
from pagemark.errors import SelectionError
from pagemark.overlay.marker_constants import (
    MARKER_ATTR,
    MARKER_COLOR_ATTR,
    MARKER_ID_ATTR,
    MARKER_IDS_ATTR,
    MARKER_SELECTOR,
    NO_MARKER_PARENTS,
)
from pagemark.overlay.regions import OverlaySegment, decompose

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from pagemark.config import OverlayConfig
    from pagemark.document.projection import OffsetMap
    from pagemark.highlights.models import Highlight

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Overlay-to-source position bookkeeping
# ---------------------------------------------------------------------------


class _Origin(NamedTuple):
    """Where an overlay node came from.

    kind:
        ``node``: shared or 1:1 copy of a source node (child indices inside
        are unchanged if it is an untouched subtree).
        ``element``: rebuilt element; ``length`` is its source child count.
        ``piece``: text run cut from source leaf ``source``, starting at
        UTF-16 offset ``base``.
        ``marker``: marker element around a piece of ``length`` units.
    """

    kind: str
    source: NodePath
    base: int = 0
    length: int = 0


@dataclass(frozen=True)
class OverlayResult:
    """The composed overlay and what went into it.

    Attributes:
        tree: Overlay tree ready for serialisation.
        segments: Overlay segments partitioning the canonical text.
        stale_ids: Highlights excluded because their range does not fit
            the current content, ascending.
    """

    tree: DocumentTree
    segments: tuple[OverlaySegment, ...]
    stale_ids: tuple[str, ...] = ()
    _origins: Mapping[NodePath, _Origin] = field(default_factory=dict, repr=False)

    def to_html(self) -> str:
        return self.tree.to_html()

    def active_at(self, offset: int) -> tuple[str, ...]:
        """Ids of the highlights covering canonical *offset*."""
        starts = [seg.start for seg in self.segments]
        index = bisect_right(starts, offset) - 1
        if index < 0 or offset >= self.segments[index].end:
            return ()
        return self.segments[index].active

    def highlight_ids_at(self, position: TreePosition) -> tuple[str, ...]:
        """Ids of every highlight under a clicked point in the overlay tree.

        Returns an empty tuple when the point is not inside a marker.
        """
        path = position.path
        for cut in range(len(path), -1, -1):
            try:
                node = self.tree.node_at(path[:cut])
            except KeyError:
                continue
            if isinstance(node, Element) and node.has_attr(MARKER_ATTR):
                ids = node.get(MARKER_IDS_ATTR) or ""
                return tuple(i for i in ids.split(",") if i)
        return ()

    def source_position(self, position: TreePosition) -> TreePosition:
        """Map a position in the overlay tree back to the source tree.

        Raises:
            SelectionError: The position is not in the overlay tree.
        """
        path = position.path
        for cut in range(len(path), -1, -1):
            origin = self._origins.get(path[:cut])
            if origin is None:
                continue
            if cut == len(path):
                return self._exact_source_position(origin, position)
            if origin.kind == "node":
                # Untouched subtree: indices below it are unchanged
                return TreePosition(origin.source + path[cut:], position.offset)
            break
        raise SelectionError(f"Position {position} is not in the overlay tree")

    def _exact_source_position(
        self, origin: _Origin, position: TreePosition
    ) -> TreePosition:
        if origin.kind == "piece":
            return TreePosition(origin.source, origin.base + position.offset)
        if origin.kind == "marker":
            inner = 0 if position.offset == 0 else origin.length
            return TreePosition(origin.source, origin.base + inner)
        if origin.kind == "element":
            child = self._origins.get(position.path + (position.offset,))
            if child is None:
                return TreePosition(origin.source, origin.length)
            if child.kind in ("piece", "marker"):
                return TreePosition(child.source, child.base)
            return TreePosition(child.source[:-1], child.source[-1])
        return TreePosition(origin.source, position.offset)


# ---------------------------------------------------------------------------
# Tree reconstruction
# ---------------------------------------------------------------------------

# (local_start, local_end, active ids) within one text leaf
_Cut = tuple[int, int, tuple[str, ...]]
_Attrs = tuple[tuple[str, str | None], ...]


class _OverlayBuilder:
    """Rebuilds the elements on the path to every touched leaf."""

    def __init__(
        self,
        cuts: dict[NodePath, list[_Cut]],
        highlights: Mapping[str, Highlight],
        config: OverlayConfig,
    ) -> None:
        self.cuts = cuts
        self.touched = {path[:i] for path in cuts for i in range(len(path) + 1)}
        self.highlights = highlights
        self.config = config
        self.origins: dict[NodePath, _Origin] = {}
        self._marker_attrs: dict[tuple[str, ...], _Attrs] = {}

    def marker_attrs(self, active: tuple[str, ...]) -> _Attrs:
        """Attributes for a marker over *active*; cached per id set."""
        cached = self._marker_attrs.get(active)
        if cached is not None:
            return cached
        winner = max(
            (self.highlights[hid] for hid in active), key=lambda h: h.precedence()
        )
        css = self.config.marker_class
        attrs: _Attrs = (
            ("class", f"{css} {css}-{winner.color.value}"),
            (MARKER_ATTR, "true"),
            (MARKER_ID_ATTR, winner.id),
            (MARKER_IDS_ATTR, ",".join(active)),
            (MARKER_COLOR_ATTR, winner.color.value),
        )
        self._marker_attrs[active] = attrs
        return attrs

    def rebuild(self, node: Element, src: NodePath, ovl: NodePath) -> Element:
        if src not in self.touched:
            self.origins[ovl] = _Origin("node", src)
            return node

        self.origins[ovl] = _Origin("element", src, length=len(node.children))
        children: list[Node] = []
        for index, child in enumerate(node.children):
            child_src = src + (index,)
            if isinstance(child, TextLeaf) and child_src in self.cuts:
                children.extend(
                    self._split_leaf(child, child_src, ovl, len(children), node.tag)
                )
            elif isinstance(child, Element):
                children.append(self.rebuild(child, child_src, ovl + (len(children),)))
            else:
                self.origins[ovl + (len(children),)] = _Origin("node", child_src)
                children.append(child)
        return Element(node.tag, node.attrs, tuple(children))

    def _split_leaf(
        self,
        leaf: TextLeaf,
        src: NodePath,
        parent_ovl: NodePath,
        first_index: int,
        parent_tag: str,
    ) -> list[Node]:
        text = leaf.text
        if parent_tag in NO_MARKER_PARENTS:
            self.origins[parent_ovl + (first_index,)] = _Origin("node", src)
            return [leaf]

        pieces: list[Node] = []

        def _plain(start: int, end: int) -> None:
            piece = text[utf16_to_index(text, start) : utf16_to_index(text, end)]
            self.origins[parent_ovl + (first_index + len(pieces),)] = _Origin(
                "piece", src, base=start
            )
            pieces.append(TextLeaf(piece))

        def _marked(start: int, end: int, active: tuple[str, ...]) -> None:
            piece = text[utf16_to_index(text, start) : utf16_to_index(text, end)]
            marker_path = parent_ovl + (first_index + len(pieces),)
            self.origins[marker_path] = _Origin(
                "marker", src, base=start, length=end - start
            )
            self.origins[marker_path + (0,)] = _Origin("piece", src, base=start)
            marker = Element(
                self.config.marker_tag, self.marker_attrs(active), (TextLeaf(piece),)
            )
            pieces.append(marker)

        position = 0
        for start, end, active in sorted(self.cuts[src]):
            if start > position:
                _plain(position, start)
            _marked(start, end, active)
            position = end
        length = utf16_len(text)
        if position < length:
            _plain(position, length)
        return pieces


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


def _usable_highlights(
    highlights: Iterable[Highlight], total_length: int
) -> tuple[dict[str, Highlight], tuple[str, ...]]:
    """Split highlights into those that fit the text and stale ids."""
    usable: dict[str, Highlight] = {}
    stale: set[str] = set()
    # Sorted so a duplicated id resolves the same way for any input order
    for highlight in sorted(
        highlights,
        key=lambda h: (
            h.id, h.precedence(), h.start_offset, h.end_offset, h.color.value
        ),
    ):
        if highlight.fits(total_length):
            usable[highlight.id] = highlight
            stale.discard(highlight.id)
        elif highlight.id not in usable:
            stale.add(highlight.id)
    if stale:
        logger.info(
            "Excluding %d stale highlight(s) from composition (text length %d): %s",
            len(stale),
            total_length,
            ", ".join(sorted(stale)),
        )
    return usable, tuple(sorted(stale))


def compose(
    tree: DocumentTree,
    offset_map: OffsetMap,
    highlights: Iterable[Highlight],
    config: OverlayConfig | None = None,
) -> OverlayResult:
    """Render a highlight set over a document tree.

    Args:
        tree: Source tree of the content version.
        offset_map: Offset map projected from ``tree``.
        highlights: Highlights to render, in any order.
        config: Marker element settings. Defaults to ``Settings.overlay``.

    Returns:
        OverlayResult with the overlay tree, the overlay segments, and the
        ids of highlights excluded as stale. Never raises for bad ranges.
    """
    if config is None:
        from pagemark.config import get_settings

        config = get_settings().overlay

    total = offset_map.total_length
    usable, stale = _usable_highlights(highlights, total)

    segments = decompose(
        (
            (
                h.id,
                offset_map.snap(h.start_offset),
                offset_map.snap(h.end_offset, round_up=True),
            )
            for h in usable.values()
        ),
        total,
    )

    cuts: dict[NodePath, list[_Cut]] = {}
    for segment in segments:
        if not segment.active:
            continue
        for span in resolve(offset_map, segment.start, segment.end):
            cut = (span.start, span.end, segment.active)
            cuts.setdefault(span.path, []).append(cut)

    builder = _OverlayBuilder(cuts, usable, config)
    root = builder.rebuild(tree.root, (), ())
    overlay_tree = (
        tree
        if root is tree.root
        else DocumentTree(root=root, is_fragment=tree.is_fragment, doctype=tree.doctype)
    )
    logger.debug(
        "Composed %d highlight(s) into %d segment(s), %d leaf/leaves split",
        len(usable),
        len(segments),
        len(cuts),
    )
    return OverlayResult(
        tree=overlay_tree,
        segments=tuple(segments),
        stale_ids=stale,
        _origins=builder.origins,
    )


def strip_markers(html: str) -> str:
    """Remove highlight marker elements from rendered HTML, keeping their text."""
    if not html:
        return html
    parser = LexborHTMLParser(html)
    for node in parser.css(MARKER_SELECTOR):
        node.unwrap()
    lower = html.lstrip()[:15].lower()
    if lower.startswith("<!doctype") or lower.startswith("<html"):
        return parser.html or html
    body = parser.body
    return body.inner_html if body is not None else (parser.html or html)
