"""Interval decomposition of highlight ranges (event sweep).

Turns a set of possibly overlapping highlight ranges into overlay
segments: maximal runs of canonical text over which the set of active
highlight ids is constant. The segments partition the whole text,
including stretches no highlight covers.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable


@dataclass(frozen=True, slots=True)
class OverlaySegment:
    """A ``[start, end)`` run with a constant active-highlight set.

    Attributes:
        start: Start offset (inclusive).
        end: End offset (exclusive).
        active: Ids of the highlights covering the run, ascending.
    """

    start: int
    end: int
    active: tuple[str, ...]

    @property
    def highlighted(self) -> bool:
        return bool(self.active)


def decompose(
    intervals: Iterable[tuple[str, int, int]],
    total_length: int,
) -> list[OverlaySegment]:
    """Partition ``[0, total_length)`` by active highlight set.

    Builds start/end events per boundary position, sweeps them in order,
    and emits a segment between consecutive boundaries. Adjacent segments
    whose active sets are equal are merged, so every boundary in the
    output is a real change in membership.

    Args:
        intervals: ``(highlight_id, start, end)`` triples. Ranges are
            clamped to the text; empty ranges are ignored.
        total_length: Length of the canonical text.

    Returns:
        Segments in ascending order covering the text exactly once. Empty
        for empty text.
    """
    if total_length <= 0:
        return []

    events: dict[int, list[tuple[str, int]]] = {}
    for highlight_id, start, end in intervals:
        start = max(0, start)
        end = min(end, total_length)
        if start >= end:
            continue
        events.setdefault(start, []).append((highlight_id, 1))
        events.setdefault(end, []).append((highlight_id, -1))

    boundaries = sorted({0, total_length, *events})

    # A counter per id so duplicate intervals for one id nest correctly
    counts: Counter[str] = Counter()
    segments: list[OverlaySegment] = []

    for left, right in zip(boundaries, boundaries[1:], strict=False):
        for highlight_id, delta in events.get(left, ()):
            counts[highlight_id] += delta
        active = tuple(sorted(hid for hid, count in counts.items() if count > 0))

        if segments and segments[-1].active == active:
            previous = segments[-1]
            segments[-1] = OverlaySegment(previous.start, right, active)
        else:
            segments.append(OverlaySegment(left, right, active))

    return segments
