"""Highlight persistence: the store protocol and an in-memory store.

The reconciler is the only caller of a store. Real deployments plug in a
client for their highlight API; ``InMemoryHighlightStore`` serves tests
and the command line, with hooks to inject latency and failures.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol
from uuid import uuid4

from pagemark.errors import HighlightNotFoundError
from pagemark.highlights.models import Highlight, HighlightColor, HighlightPatch

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


class HighlightStore(Protocol):
    """Protocol for highlight persistence backends.

    Implementations may raise any exception on transport failure; the
    reconciler wraps it. ``HighlightNotFoundError`` signals a record that
    was already deleted elsewhere.
    """

    async def list(self, bookmark_id: str) -> list[Highlight]:
        """Return every highlight stored for *bookmark_id*."""
        ...

    async def create(
        self,
        bookmark_id: str,
        start_offset: int,
        end_offset: int,
        color: HighlightColor,
        note: str | None = None,
        text: str | None = None,
    ) -> Highlight:
        """Persist a new highlight and return the stored record."""
        ...

    async def update(self, highlight_id: str, patch: HighlightPatch) -> Highlight:
        """Apply *patch* and return the stored record."""
        ...

    async def delete(self, highlight_id: str) -> None:
        """Remove a highlight."""
        ...


class InMemoryHighlightStore:
    """Dict-backed implementation of HighlightStore.

    Every call is recorded in ``calls`` as ``(method, highlight_or_bookmark_id)``
    in the order requests *arrive*, which lets tests assert ordering.
    """

    def __init__(
        self,
        highlights: Iterable[Highlight] = (),
        *,
        latency: float = 0.0,
        owner_id: str | None = None,
    ) -> None:
        self._records: dict[str, Highlight] = {h.id: h for h in highlights}
        self.latency = latency
        self.owner_id = owner_id
        self.calls: list[tuple[str, str]] = []
        self._failures: list[Exception] = []
        self._delays: list[float] = []

    def fail_next(self, exc: Exception | None = None) -> None:
        """Make the next request raise *exc* (default: ConnectionError)."""
        self._failures.append(exc or ConnectionError("highlight store unavailable"))

    def delay_next(self, seconds: float) -> None:
        """Make the next request take *seconds* to answer."""
        self._delays.append(seconds)

    def get(self, highlight_id: str) -> Highlight | None:
        """Direct lookup, bypassing latency (for tests)."""
        return self._records.get(highlight_id)

    async def _roundtrip(self, method: str, key: str) -> None:
        self.calls.append((method, key))
        delay = self._delays.pop(0) if self._delays else self.latency
        failure = self._failures.pop(0) if self._failures else None
        if delay:
            await asyncio.sleep(delay)
        if failure is not None:
            raise failure

    async def list(self, bookmark_id: str) -> list[Highlight]:
        await self._roundtrip("list", bookmark_id)
        return [h for h in self._records.values() if h.bookmark_id == bookmark_id]

    async def create(
        self,
        bookmark_id: str,
        start_offset: int,
        end_offset: int,
        color: HighlightColor,
        note: str | None = None,
        text: str | None = None,
    ) -> Highlight:
        await self._roundtrip("create", bookmark_id)
        highlight = Highlight(
            id=f"hl-{uuid4().hex[:12]}",
            bookmark_id=bookmark_id,
            start_offset=start_offset,
            end_offset=end_offset,
            color=color,
            note=note,
            text=text,
            owner_id=self.owner_id,
            created_at=datetime.now(UTC),
        )
        self._records[highlight.id] = highlight
        logger.debug("Stored highlight %s for %s", highlight.id, bookmark_id)
        return highlight

    async def update(self, highlight_id: str, patch: HighlightPatch) -> Highlight:
        await self._roundtrip("update", highlight_id)
        current = self._records.get(highlight_id)
        if current is None:
            raise HighlightNotFoundError(highlight_id)
        updated = patch.apply(current)
        self._records[highlight_id] = updated
        return updated

    async def delete(self, highlight_id: str) -> None:
        await self._roundtrip("delete", highlight_id)
        if self._records.pop(highlight_id, None) is None:
            raise HighlightNotFoundError(highlight_id)
