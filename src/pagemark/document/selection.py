"""Selection capture: tree positions to canonical offsets and back.

A render target reports a selection as two tree positions (anchor and
focus), in the style of DOM Range endpoints. Capture converts each
endpoint through the *source* tree's offset map, so text wrapped in
highlight markers yields the same offsets as unwrapped text. Positions
reported against an overlay tree are mapped back to the source tree with
``OverlayResult.source_position`` before they reach this module.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pagemark.document.resolver import resolve
from pagemark.errors import SelectionError

if TYPE_CHECKING:
    from pagemark.document.projection import OffsetMap
    from pagemark.document.tree import NodePath

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TreePosition:
    """A point in the document tree.

    Attributes:
        path: Child-index path from the root.
        offset: For a text leaf, a UTF-16 index into its text. For an
            element, the index of the child the point sits before.
    """

    path: NodePath
    offset: int


def _nearest_visited_ancestor(
    offset_map: OffsetMap, path: NodePath
) -> tuple[NodePath, tuple[int, int]] | None:
    for cut in range(len(path) - 1, -1, -1):
        ancestor = path[:cut]
        span = offset_map.node_span(ancestor)
        if span is not None:
            return ancestor, span
    return None


def position_to_offset(position: TreePosition, offset_map: OffsetMap) -> int:
    """Convert one tree position to a canonical offset.

    Raises:
        SelectionError: The position does not address a node of the
            projected tree, or its offset is negative.
    """
    if position.offset < 0:
        raise SelectionError(f"Negative offset in {position}")

    path = position.path
    span = offset_map.node_span(path)

    if span is None:
        # Inside content the projection never descended into (e.g. <script>):
        # the whole subtree collapses onto the opaque ancestor's position.
        found = _nearest_visited_ancestor(offset_map, path)
        if found is None or not offset_map.is_opaque(found[0]):
            raise SelectionError(f"Position {position} is not in the document")
        return found[1][0]

    if offset_map.is_leaf(path):
        offset = offset_map.offset_of(path, position.offset)
        if offset is None:
            raise SelectionError(f"Position {position} is not in the document")
        return offset

    if offset_map.is_opaque(path):
        return span[0] if position.offset == 0 else span[1]

    # Element container: the point sits before child ``offset``
    child_span = offset_map.node_span(path + (position.offset,))
    if child_span is not None:
        return child_span[0]
    return span[1]


def capture_selection(
    anchor: TreePosition,
    focus: TreePosition,
    offset_map: OffsetMap,
) -> tuple[int, int]:
    """Compute the canonical ``(start, end)`` of a user selection.

    The result is normalised so ``start <= end`` whichever direction the
    selection was dragged.

    Args:
        anchor: Where the selection started.
        focus: Where the selection ended.
        offset_map: Offset map of the *source* tree.

    Returns:
        ``(start, end)`` in canonical UTF-16 offsets. A collapsed selection
        gives ``start == end``.
    """
    a = position_to_offset(anchor, offset_map)
    b = position_to_offset(focus, offset_map)
    start, end = (a, b) if a <= b else (b, a)
    logger.debug("Captured selection %s..%s -> [%d, %d)", anchor, focus, start, end)
    return start, end


def selection_for_range(
    offset_map: OffsetMap, start: int, end: int
) -> tuple[TreePosition, TreePosition] | None:
    """Tree positions spanning a stored range, for re-selecting it.

    Returns None when the range covers no text leaf.
    """
    spans = resolve(offset_map, start, end)
    if not spans:
        return None
    first, last = spans[0], spans[-1]
    return TreePosition(first.path, first.start), TreePosition(last.path, last.end)


def selected_text(offset_map: OffsetMap, start: int, end: int) -> str:
    """Text covered by ``[start, end)``, stored as the highlight's snapshot."""
    return offset_map.slice(start, end)
