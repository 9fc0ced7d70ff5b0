"""Range resolution: canonical offsets to leaf-local spans.

Given ``[start, end)`` in canonical text, returns the ordered list of
text-leaf spans the range covers. Ranges may cross any number of leaves
and element boundaries; line breaks and injected separators fall inside a
range but produce no span, since there is no text leaf to wrap.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, NamedTuple

from pagemark.document.projection import SegmentKind
from pagemark.errors import OffsetOutOfRange

if TYPE_CHECKING:
    from pagemark.document.projection import OffsetMap
    from pagemark.document.tree import NodePath

logger = logging.getLogger(__name__)


class LeafSpan(NamedTuple):
    """A ``[start, end)`` slice of one text leaf, in leaf-local UTF-16 units."""

    path: NodePath
    start: int
    end: int


def resolve(
    offset_map: OffsetMap,
    start: int,
    end: int,
    *,
    strict: bool = False,
) -> list[LeafSpan]:
    """Resolve a canonical range to the text-leaf spans it covers.

    Args:
        offset_map: Offset map of the content version.
        start: Range start (inclusive).
        end: Range end (exclusive). Clamped to the text length.
        strict: Raise instead of returning an empty list when *start* is
            out of range.

    Returns:
        Leaf spans in document order. Empty for zero-length ranges.

    Raises:
        OffsetOutOfRange: *start* is negative or past the end, and
            ``strict`` is set.
    """
    total = offset_map.total_length
    if start < 0 or start >= total:
        if strict:
            raise OffsetOutOfRange(start, end, total)
        logger.debug("Start offset %d outside text of length %d", start, total)
        return []

    end = min(end, total)
    if end <= start:
        return []

    # Never split a surrogate pair: widen to whole code points
    start = offset_map.snap(start)
    end = offset_map.snap(end, round_up=True)

    segments = offset_map.segments
    spans: list[LeafSpan] = []
    index = offset_map.index_at(start)
    while index < len(segments):
        segment = segments[index]
        if segment.start >= end:
            break
        if segment.kind is SegmentKind.TEXT:
            spans.append(
                LeafSpan(
                    path=segment.path,
                    start=max(start, segment.start) - segment.start,
                    end=min(end, segment.end) - segment.start,
                )
            )
        if segment.end >= end:
            break
        index += 1
    return spans
