"""Highlight reconciler: the authoritative local highlight list.

Mutations are applied to the local list immediately (optimistic), then
sent to the highlight store as asyncio tasks. A confirmed response
replaces the optimistic record; a failure rolls it back and reports a
PersistenceError through ``on_error``.

Ordering:
    Mutations against one highlight are chained in submission order, so an
    update issued while its create is still in flight waits for the create
    and then targets the id the store assigned. Mutations against
    different highlights are not ordered relative to each other.

Context:
    Every mutation captures the context token current when it was issued.
    ``load()`` starts a new context; responses that arrive for an older one
    are logged and discarded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import pydantic

from pagemark.document.resolver import resolve
from pagemark.document.selection import selected_text
from pagemark.errors import (
    EmptyRangeError,
    HighlightNotFoundError,
    OffsetOutOfRange,
    PersistenceError,
    ValidationError,
)
from pagemark.highlights.models import Highlight, HighlightColor, HighlightPatch
from pagemark.overlay.compositor import OverlayResult, compose

if TYPE_CHECKING:
    from collections.abc import Callable

    from pagemark.config import Settings
    from pagemark.document.content import ContentVersion
    from pagemark.highlights.store import HighlightStore

logger = logging.getLogger(__name__)

# Prefix of ids given to optimistic creates until the store assigns one
PENDING_PREFIX = "pending-"


class Mutation:
    """Handle on one optimistic mutation.

    Attributes:
        kind: ``create``, ``update`` or ``delete``.
        highlight: The optimistic record (None for a delete, or for a
            no-op on an unknown id).
    """

    def __init__(self, kind: str, highlight: Highlight | None) -> None:
        self.kind = kind
        self.highlight = highlight
        self._task: asyncio.Task[None] | None = None
        self._confirmed: Highlight | None = highlight
        self._error: PersistenceError | None = None

    def done(self) -> bool:
        return self._task is None or self._task.done()

    async def result(self) -> Highlight | None:
        """Wait for the store and return the confirmed record.

        Returns None for deletes and for no-op mutations.

        Raises:
            PersistenceError: The store failed; the local change was
                rolled back.
        """
        if self._task is not None:
            await asyncio.shield(self._task)
        if self._error is not None:
            raise self._error
        return self._confirmed


class HighlightReconciler:
    """Owns the highlight list for the loaded bookmark content.

    Args:
        store: Persistence backend.
        settings: Validation and rendering settings. Defaults to
            ``get_settings()``.
        owner_id: Recorded on optimistic records.
        on_change: Called with a fresh OverlayResult after every local
            state change.
        on_error: Called with the PersistenceError of a failed mutation,
            after rollback.
    """

    def __init__(
        self,
        store: HighlightStore,
        settings: Settings | None = None,
        *,
        owner_id: str | None = None,
        on_change: Callable[[OverlayResult], Any] | None = None,
        on_error: Callable[[PersistenceError], Any] | None = None,
    ) -> None:
        if settings is None:
            from pagemark.config import get_settings

            settings = get_settings()
        self.store = store
        self.settings = settings
        self.owner_id = owner_id
        self.on_change = on_change
        self.on_error = on_error

        self._content: ContentVersion | None = None
        self._token = 0
        self._records: dict[str, Highlight] = {}
        # Server-confirmed state, used to restore after a failed delete
        self._confirmed: dict[str, Highlight] = {}
        # Pending id -> id assigned by the store
        self._aliases: dict[str, str] = {}
        self._failed_creates: set[str] = set()
        # Any known id -> key of its mutation chain
        self._chain_keys: dict[str, str] = {}
        self._tails: dict[str, asyncio.Task[None]] = {}
        self._in_flight: dict[str, int] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    # --- Context ---

    @property
    def content(self) -> ContentVersion | None:
        return self._content

    @property
    def pending(self) -> int:
        """Number of mutations not yet answered by the store."""
        return sum(1 for task in self._tasks if not task.done())

    async def load(self, content: ContentVersion) -> list[Highlight]:
        """Bind to *content* and fetch its highlights from the store.

        Any mutation still in flight belongs to the previous context; its
        response will be discarded.

        Raises:
            PersistenceError: The store could not list highlights.
        """
        self._token += 1
        token = self._token
        self._content = content
        self._records.clear()
        self._confirmed.clear()
        self._aliases.clear()
        self._failed_creates.clear()
        self._chain_keys.clear()
        self._tails.clear()
        self._in_flight.clear()

        try:
            highlights = await self.store.list(content.bookmark_id)
        except Exception as exc:
            logger.exception("Failed to list highlights for %s", content.bookmark_id)
            raise PersistenceError(
                f"Could not load highlights for {content.bookmark_id}: {exc}"
            ) from exc

        if token != self._token:
            logger.info(
                "Discarding highlight list for %s: context changed during load",
                content.bookmark_id,
            )
            return self.list()

        for highlight in highlights:
            self._records[highlight.id] = highlight
            self._confirmed[highlight.id] = highlight

        stale = self.stale()
        logger.info(
            "Loaded %d highlight(s) for %s@%s (%d stale)",
            len(highlights),
            content.bookmark_id,
            content.version_id,
            len(stale),
        )
        self._notify()
        return self.list()

    # --- Queries ---

    def list(self) -> list[Highlight]:
        """Current highlights ordered by start offset, then creation time."""
        return sorted(self._records.values(), key=Highlight.list_order)

    def get(self, highlight_id: str) -> Highlight | None:
        local_id = self._local_id(highlight_id)
        return self._records.get(local_id) if local_id is not None else None

    def stale(self) -> list[Highlight]:
        """Highlights whose range does not fit the current content.

        They stay in the list (and in the store); they are only excluded
        from rendering.
        """
        if self._content is None:
            return []
        total = self._content.total_length
        return [h for h in self.list() if not h.fits(total)]

    def render(self) -> OverlayResult:
        """Compose the current highlight list over the loaded content.

        Never raises for bad content or ranges: the worst case is the
        document without overlays.
        """
        if self._content is None:
            msg = "load() must be called before render()"
            raise RuntimeError(msg)
        content = self._content
        try:
            highlights = self.list() if content.highlighting_enabled else []
            return compose(
                content.tree, content.offset_map, highlights, self.settings.overlay
            )
        except Exception:
            logger.exception(
                "Overlay composition failed for %s, rendering without highlights",
                content.bookmark_id,
            )
            return compose(content.tree, content.offset_map, [], self.settings.overlay)

    async def settle(self) -> None:
        """Wait until every submitted mutation has been answered."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- Mutations ---

    def create(
        self,
        range_: tuple[int, int],
        color: HighlightColor | str | None = None,
        note: str | None = None,
    ) -> Mutation:
        """Create a highlight over canonical ``[start, end)``.

        Raises:
            ValidationError: Unknown color, note too long, or the content
                failed to parse.
            EmptyRangeError: ``start >= end``.
            OffsetOutOfRange: The range does not fit the current text.
        """
        content = self._require_content()
        if not content.highlighting_enabled:
            raise ValidationError("Highlighting is disabled for this content")

        start, end = range_
        resolved_color = self._validate_color(color)
        self._validate_note(note)
        if start >= end:
            raise EmptyRangeError(start, end)
        offset_map = content.offset_map
        resolve(offset_map, start, end, strict=True)
        if end > offset_map.total_length:
            raise OffsetOutOfRange(start, end, offset_map.total_length)

        pending_id = f"{PENDING_PREFIX}{uuid4().hex[:12]}"
        optimistic = Highlight(
            id=pending_id,
            bookmark_id=content.bookmark_id,
            start_offset=start,
            end_offset=end,
            color=resolved_color,
            note=note,
            text=selected_text(offset_map, start, end),
            owner_id=self.owner_id,
            created_at=datetime.now(UTC),
        )
        self._records[pending_id] = optimistic
        self._chain_keys[pending_id] = pending_id
        self._notify()

        mutation = Mutation("create", optimistic)
        self._submit(
            pending_id, mutation, self._run_create(mutation, self._token, optimistic)
        )
        return mutation

    def update(
        self, highlight_id: str, patch: HighlightPatch | Mapping[str, Any]
    ) -> Mutation:
        """Change the color and/or note of a highlight.

        An unknown id is a no-op.

        Raises:
            ValidationError: Unknown color or note too long.
        """
        if isinstance(patch, Mapping):
            try:
                patch = HighlightPatch.model_validate(patch)
            except pydantic.ValidationError as exc:
                raise ValidationError(f"Invalid highlight update: {exc}") from exc
        if "note" in patch.model_fields_set:
            self._validate_note(patch.note)

        local_id = self._local_id(highlight_id)
        if local_id is None:
            logger.debug("Ignoring update of unknown highlight %s", highlight_id)
            return Mutation("update", None)

        previous = self._records[local_id]
        optimistic = patch.apply(previous)
        self._records[local_id] = optimistic
        self._notify()

        mutation = Mutation("update", optimistic)
        self._submit(
            self._chain_keys.get(local_id, local_id),
            mutation,
            self._run_update(
                mutation, self._token, local_id, patch, previous, optimistic
            ),
        )
        return mutation

    def delete(self, highlight_id: str) -> Mutation:
        """Remove a highlight. An unknown id is a no-op."""
        local_id = self._local_id(highlight_id)
        if local_id is None:
            logger.debug("Ignoring delete of unknown highlight %s", highlight_id)
            return Mutation("delete", None)

        previous = self._records.pop(local_id)
        self._notify()

        mutation = Mutation("delete", None)
        self._submit(
            self._chain_keys.get(local_id, local_id),
            mutation,
            self._run_delete(mutation, self._token, local_id, previous),
        )
        return mutation

    # --- Internals ---

    def _require_content(self) -> ContentVersion:
        if self._content is None:
            msg = "load() must be called before mutating highlights"
            raise RuntimeError(msg)
        return self._content

    def _validate_color(self, color: HighlightColor | str | None) -> HighlightColor:
        if color is None:
            return self.settings.highlights.default_color
        try:
            return HighlightColor(color)
        except ValueError as exc:
            allowed = ", ".join(c.value for c in HighlightColor)
            raise ValidationError(
                f"Unknown highlight color {color!r} (expected one of: {allowed})"
            ) from exc

    def _validate_note(self, note: str | None) -> None:
        limit = self.settings.highlights.max_note_length
        if note is not None and len(note) > limit:
            raise ValidationError(
                f"Note is {len(note)} characters, the limit is {limit}"
            )

    def _local_id(self, highlight_id: str) -> str | None:
        if highlight_id in self._records:
            return highlight_id
        alias = self._aliases.get(highlight_id)
        if alias is not None and alias in self._records:
            return alias
        return None

    def _target_id(self, local_id: str) -> str | None:
        """Id to send to the store; None if its create failed."""
        if local_id in self._failed_creates:
            return None
        return self._aliases.get(local_id, local_id)

    def _submit(self, key: str, mutation: Mutation, operation: Any) -> None:
        previous = self._tails.get(key)
        token = self._token
        self._in_flight[key] = self._in_flight.get(key, 0) + 1

        async def chained() -> None:
            try:
                if previous is not None:
                    await asyncio.gather(previous, return_exceptions=True)
                await operation
            finally:
                # Counters and tails were reset if load() ran meanwhile
                if token == self._token:
                    self._in_flight[key] = self._in_flight.get(key, 1) - 1
                    if self._tails.get(key) is task:
                        del self._tails[key]

        task = asyncio.create_task(chained())
        mutation._task = task
        mutation._confirmed = None
        self._tails[key] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _quiet(self, key: str) -> bool:
        """True when no later mutation is queued behind the running one."""
        return self._in_flight.get(key, 0) <= 1

    async def _run_create(
        self, mutation: Mutation, token: int, optimistic: Highlight
    ) -> None:
        pending_id = optimistic.id
        try:
            stored = await self.store.create(
                optimistic.bookmark_id,
                optimistic.start_offset,
                optimistic.end_offset,
                optimistic.color,
                note=optimistic.note,
                text=optimistic.text,
            )
        except Exception as exc:
            if token != self._token:
                self._discard("create", pending_id)
                mutation._error = self._wrap(exc, "create", pending_id)
                return
            self._failed_creates.add(pending_id)
            self._records.pop(pending_id, None)
            self._fail(mutation, exc, "create", pending_id)
            return

        mutation._confirmed = stored
        if token != self._token:
            self._discard("create", pending_id)
            return

        self._aliases[pending_id] = stored.id
        self._chain_keys[stored.id] = pending_id
        self._confirmed[stored.id] = stored
        local = self._records.pop(pending_id, None)
        if local is not None:
            if self._quiet(pending_id):
                self._records[stored.id] = stored
            else:
                # Later updates are queued: keep their optimistic fields
                self._records[stored.id] = local.model_copy(
                    update={
                        "id": stored.id,
                        "owner_id": stored.owner_id,
                        "created_at": stored.created_at,
                    }
                )
        logger.info("Created highlight %s (was %s)", stored.id, pending_id)
        self._notify()

    async def _run_update(
        self,
        mutation: Mutation,
        token: int,
        local_id: str,
        patch: HighlightPatch,
        previous: Highlight,
        optimistic: Highlight,
    ) -> None:
        target = self._target_id(local_id)
        if target is None:
            logger.debug("Skipping update of %s: its create failed", local_id)
            return
        try:
            stored = await self.store.update(target, patch)
        except HighlightNotFoundError:
            if token != self._token:
                self._discard("update", target)
                return
            logger.warning("Highlight %s no longer exists, dropping it", target)
            self._records.pop(target, None)
            self._confirmed.pop(target, None)
            mutation._confirmed = None
            self._notify()
            return
        except Exception as exc:
            if token != self._token:
                self._discard("update", target)
                mutation._error = self._wrap(exc, "update", target)
                return
            self._revert_patch(target, patch, previous, optimistic)
            self._fail(mutation, exc, "update", target)
            return

        mutation._confirmed = stored
        if token != self._token:
            self._discard("update", target)
            return
        self._confirmed[target] = stored
        key = self._chain_keys.get(target, target)
        if target in self._records and self._quiet(key):
            self._records[target] = stored
            self._notify()

    async def _run_delete(
        self, mutation: Mutation, token: int, local_id: str, previous: Highlight
    ) -> None:
        target = self._target_id(local_id)
        if target is None:
            logger.debug("Skipping delete of %s: its create failed", local_id)
            return
        try:
            await self.store.delete(target)
        except HighlightNotFoundError:
            logger.debug("Highlight %s was already deleted", target)
        except Exception as exc:
            if token != self._token:
                self._discard("delete", target)
                mutation._error = self._wrap(exc, "delete", target)
                return
            restored = self._confirmed.get(target, previous)
            self._records[target] = restored.model_copy(update={"id": target})
            self._fail(mutation, exc, "delete", target)
            return

        if token != self._token:
            self._discard("delete", target)
            return
        self._confirmed.pop(target, None)
        logger.info("Deleted highlight %s", target)

    def _revert_patch(
        self,
        target: str,
        patch: HighlightPatch,
        previous: Highlight,
        optimistic: Highlight,
    ) -> None:
        """Undo *patch* on fields no later mutation has changed since."""
        current = self._records.get(target)
        if current is None:
            return
        revert = {
            name: getattr(previous, name)
            for name in patch.model_fields_set
            if getattr(current, name) == getattr(optimistic, name)
        }
        if revert:
            self._records[target] = current.model_copy(update=revert)

    def _wrap(self, exc: Exception, action: str, highlight_id: str) -> PersistenceError:
        if isinstance(exc, PersistenceError):
            return exc
        error = PersistenceError(
            f"Could not {action} highlight {highlight_id}: {exc}", highlight_id
        )
        error.__cause__ = exc
        return error

    def _fail(
        self, mutation: Mutation, exc: Exception, action: str, highlight_id: str
    ) -> None:
        error = self._wrap(exc, action, highlight_id)
        mutation._error = error
        logger.warning("Rolled back %s of highlight %s: %s", action, highlight_id, exc)
        self._notify()
        if self.on_error is not None:
            try:
                self.on_error(error)
            except Exception:
                logger.exception("on_error callback failed")

    def _discard(self, action: str, highlight_id: str) -> None:
        logger.info(
            "Discarding %s response for %s: content changed since it was sent",
            action,
            highlight_id,
        )

    def _notify(self) -> None:
        if self.on_change is None or self._content is None:
            return
        try:
            self.on_change(self.render())
        except Exception:
            logger.exception("on_change callback failed")
