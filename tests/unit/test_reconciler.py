"""Tests for the highlight reconciler: optimistic mutations and rollback."""

from __future__ import annotations

import asyncio
from datetime import datetime
from unittest.mock import patch

import pytest

from pagemark.config import HighlightConfig, Settings
from pagemark.errors import (
    EmptyRangeError,
    OffsetOutOfRange,
    PersistenceError,
    ValidationError,
)
from pagemark.highlights.models import Highlight, HighlightColor, HighlightPatch
from pagemark.highlights.reconciler import PENDING_PREFIX, HighlightReconciler
from pagemark.highlights.store import InMemoryHighlightStore
from tests.unit.conftest import QUICK_FOX_HTML, SAMPLE_BOOKMARK_ID, SAMPLE_OWNER_ID


@pytest.fixture
def changes() -> list:
    """Collects every OverlayResult passed to on_change."""
    return []


@pytest.fixture
def errors() -> list:
    """Collects every PersistenceError passed to on_error."""
    return []


@pytest.fixture
def make_reconciler(settings, changes, errors):
    def _make(store: InMemoryHighlightStore, **kwargs) -> HighlightReconciler:
        return HighlightReconciler(
            store,
            kwargs.pop("settings", settings),
            owner_id=SAMPLE_OWNER_ID,
            on_change=changes.append,
            on_error=errors.append,
            **kwargs,
        )

    return _make


class TestLoad:
    """Loading binds the reconciler to a content version."""

    @pytest.mark.asyncio
    async def test_load_lists_highlights(
        self, make_reconciler, make_content, make_highlight, changes
    ) -> None:
        store = InMemoryHighlightStore(
            [make_highlight("b", 6, 9, minutes=1), make_highlight("a", 0, 3)]
        )
        reconciler = make_reconciler(store)

        listed = await reconciler.load(make_content())

        assert [h.id for h in listed] == ["a", "b"]
        assert store.calls == [("list", SAMPLE_BOOKMARK_ID)]
        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_load_failure_raises_persistence_error(
        self, make_reconciler, make_content, store
    ) -> None:
        store.fail_next()
        reconciler = make_reconciler(store)
        with pytest.raises(PersistenceError):
            await reconciler.load(make_content())

    @pytest.mark.asyncio
    async def test_render_before_load(self, make_reconciler, store) -> None:
        with pytest.raises(RuntimeError):
            make_reconciler(store).render()


class TestCreate:
    """Optimistic create, confirmation and validation."""

    @pytest.mark.asyncio
    async def test_create_is_optimistic_then_confirmed(
        self, make_reconciler, make_content, store, changes
    ) -> None:
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())

        mutation = reconciler.create((4, 9), "green", note="nice")

        # Visible before the store answers
        optimistic = mutation.highlight
        assert optimistic.id.startswith(PENDING_PREFIX)
        assert optimistic.text == "quick"
        assert optimistic.owner_id == SAMPLE_OWNER_ID
        assert [h.id for h in reconciler.list()] == [optimistic.id]
        assert "quick</span>" in changes[-1].to_html()

        stored = await mutation.result()

        assert stored.id.startswith("hl-")
        assert store.get(stored.id) == stored
        assert [h.id for h in reconciler.list()] == [stored.id]
        assert reconciler.get(optimistic.id) == stored
        assert stored.color is HighlightColor.GREEN

    @pytest.mark.asyncio
    async def test_default_color_comes_from_settings(
        self, make_reconciler, make_content, store
    ) -> None:
        settings = Settings(
            _env_file=None,  # type: ignore[call-arg]
            highlights=HighlightConfig(default_color=HighlightColor.BLUE),
        )
        reconciler = make_reconciler(store, settings=settings)
        await reconciler.load(make_content())
        mutation = reconciler.create((0, 3))
        assert mutation.highlight.color is HighlightColor.BLUE
        await reconciler.settle()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("kwargs", "error"),
        [
            ({"range_": (4, 9), "color": "pink"}, ValidationError),
            ({"range_": (4, 9), "note": "x" * 5001}, ValidationError),
            ({"range_": (5, 5)}, EmptyRangeError),
            ({"range_": (9, 4)}, EmptyRangeError),
            ({"range_": (10, 20)}, OffsetOutOfRange),
            ({"range_": (-1, 3)}, OffsetOutOfRange),
            ({"range_": (13, 14)}, OffsetOutOfRange),
        ],
    )
    async def test_rejections_never_reach_the_store(
        self, make_reconciler, make_content, store, kwargs, error
    ) -> None:
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())

        with pytest.raises(error):
            reconciler.create(**kwargs)

        await reconciler.settle()
        assert store.calls == [("list", SAMPLE_BOOKMARK_ID)]
        assert reconciler.list() == []

    @pytest.mark.asyncio
    async def test_create_rejected_when_content_failed_to_parse(
        self, make_reconciler, make_content, store
    ) -> None:
        reconciler = make_reconciler(store)
        content = make_content(b"\xff\xfe<p>broken</p>")
        await reconciler.load(content)

        assert not content.highlighting_enabled
        with pytest.raises(ValidationError):
            reconciler.create((0, 3))

    @pytest.mark.asyncio
    async def test_create_failure_rolls_back(
        self, make_reconciler, make_content, store, errors
    ) -> None:
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())
        store.fail_next()

        mutation = reconciler.create((4, 9))
        assert len(reconciler.list()) == 1

        with pytest.raises(PersistenceError):
            await mutation.result()

        assert reconciler.list() == []
        assert len(errors) == 1
        assert isinstance(errors[0].__cause__, ConnectionError)
        assert "data-highlight" not in reconciler.render().to_html()


class TestUpdateAndDelete:
    """Updates and deletes against known, unknown and vanished ids."""

    @pytest.mark.asyncio
    async def test_update_color(
        self, make_reconciler, make_content, make_highlight
    ) -> None:
        store = InMemoryHighlightStore([make_highlight("a", 0, 3)])
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())

        mutation = reconciler.update("a", {"color": "red"})
        assert reconciler.get("a").color is HighlightColor.RED

        stored = await mutation.result()
        assert stored.color is HighlightColor.RED
        assert store.get("a").color is HighlightColor.RED

    @pytest.mark.asyncio
    async def test_update_validation(
        self, make_reconciler, make_content, make_highlight
    ) -> None:
        store = InMemoryHighlightStore([make_highlight("a", 0, 3)])
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())

        with pytest.raises(ValidationError):
            reconciler.update("a", {"color": "pink"})
        with pytest.raises(ValidationError):
            reconciler.update("a", HighlightPatch(note="x" * 5001))
        assert reconciler.get("a").color is HighlightColor.YELLOW

    @pytest.mark.asyncio
    async def test_update_failure_restores_previous_value(
        self, make_reconciler, make_content, make_highlight, errors
    ) -> None:
        store = InMemoryHighlightStore([make_highlight("a", 0, 3, note="old")])
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())
        store.fail_next()

        mutation = reconciler.update("a", {"note": "new"})
        assert reconciler.get("a").note == "new"

        with pytest.raises(PersistenceError) as exc_info:
            await mutation.result()

        assert exc_info.value.highlight_id == "a"
        assert reconciler.get("a").note == "old"
        assert errors == [exc_info.value]

    @pytest.mark.asyncio
    async def test_update_of_vanished_highlight_drops_it(
        self, make_reconciler, make_content, make_highlight
    ) -> None:
        store = InMemoryHighlightStore([make_highlight("a", 0, 3)])
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())
        store._records.clear()  # deleted elsewhere

        mutation = reconciler.update("a", {"color": "blue"})

        assert await mutation.result() is None
        assert reconciler.list() == []

    @pytest.mark.asyncio
    async def test_unknown_ids_are_no_ops(
        self, make_reconciler, make_content, store
    ) -> None:
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())

        update = reconciler.update("missing", {"color": "red"})
        delete = reconciler.delete("missing")

        assert update.done() and delete.done()
        assert await update.result() is None
        assert await delete.result() is None
        assert store.calls == [("list", SAMPLE_BOOKMARK_ID)]

    @pytest.mark.asyncio
    async def test_delete(
        self, make_reconciler, make_content, make_highlight
    ) -> None:
        store = InMemoryHighlightStore([make_highlight("a", 0, 3)])
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())

        mutation = reconciler.delete("a")
        assert reconciler.list() == []

        assert await mutation.result() is None
        assert store.get("a") is None

    @pytest.mark.asyncio
    async def test_delete_of_vanished_highlight_succeeds(
        self, make_reconciler, make_content, make_highlight, errors
    ) -> None:
        store = InMemoryHighlightStore([make_highlight("a", 0, 3)])
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())
        store._records.clear()

        await reconciler.delete("a").result()

        assert reconciler.list() == []
        assert errors == []

    @pytest.mark.asyncio
    async def test_delete_failure_restores_highlight(
        self, make_reconciler, make_content, make_highlight, errors
    ) -> None:
        store = InMemoryHighlightStore([make_highlight("a", 0, 3)])
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())
        store.fail_next()

        mutation = reconciler.delete("a")
        with pytest.raises(PersistenceError):
            await mutation.result()

        assert [h.id for h in reconciler.list()] == ["a"]
        assert len(errors) == 1


class TestOrdering:
    """Per-highlight chaining and stale-response discard."""

    @pytest.mark.asyncio
    async def test_update_during_create_targets_assigned_id(
        self, make_reconciler, make_content, store
    ) -> None:
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())
        store.delay_next(0.05)

        created = reconciler.create((4, 9))
        pending_id = created.highlight.id
        updated = reconciler.update(pending_id, {"color": "red"})
        assert reconciler.get(pending_id).color is HighlightColor.RED

        stored = await created.result()
        final = await updated.result()

        assert store.calls == [
            ("list", SAMPLE_BOOKMARK_ID),
            ("create", SAMPLE_BOOKMARK_ID),
            ("update", stored.id),
        ]
        assert final.id == stored.id
        assert final.color is HighlightColor.RED
        assert [(h.id, h.color) for h in reconciler.list()] == [
            (stored.id, HighlightColor.RED)
        ]

    @pytest.mark.asyncio
    async def test_delete_during_create(
        self, make_reconciler, make_content, store
    ) -> None:
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())
        store.delay_next(0.05)

        created = reconciler.create((4, 9))
        deleted = reconciler.delete(created.highlight.id)
        assert reconciler.list() == []

        stored = await created.result()
        await deleted.result()

        assert store.calls[-1] == ("delete", stored.id)
        assert store.get(stored.id) is None
        assert reconciler.list() == []

    @pytest.mark.asyncio
    async def test_mutations_on_one_id_run_in_submission_order(
        self, make_reconciler, make_content, make_highlight
    ) -> None:
        store = InMemoryHighlightStore([make_highlight("a", 0, 3)])
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())
        store.delay_next(0.05)  # first update is slow

        reconciler.update("a", {"note": "first"})
        reconciler.update("a", {"note": "second"})
        await reconciler.settle()

        assert store.get("a").note == "second"
        assert reconciler.get("a").note == "second"

    @pytest.mark.asyncio
    async def test_responses_for_old_content_are_discarded(
        self, make_reconciler, make_content, store
    ) -> None:
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())
        store.delay_next(0.05)

        mutation = reconciler.create((4, 9))
        await asyncio.sleep(0)  # request is now in flight
        await reconciler.load(make_content("<p>other</p>", bookmark_id="bm-2"))

        stored = await mutation.result()
        await reconciler.settle()

        assert store.get(stored.id) is not None
        assert reconciler.list() == []
        assert reconciler.get(mutation.highlight.id) is None

    @pytest.mark.asyncio
    async def test_pending_count(self, make_reconciler, make_content, store) -> None:
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())
        store.delay_next(0.05)

        reconciler.create((0, 3))
        assert reconciler.pending == 1
        await reconciler.settle()
        assert reconciler.pending == 0


class TestStaleAndRender:
    """Highlights that no longer fit are kept but not rendered."""

    @pytest.mark.asyncio
    async def test_stale_highlights(
        self, make_reconciler, make_content, make_highlight
    ) -> None:
        store = InMemoryHighlightStore(
            [make_highlight("ok", 0, 2), make_highlight("stale", 3, 13)]
        )
        reconciler = make_reconciler(store)
        await reconciler.load(make_content("<p>Hello</p>"))

        assert [h.id for h in reconciler.stale()] == ["stale"]
        assert [h.id for h in reconciler.list()] == ["ok", "stale"]

        result = reconciler.render()
        assert result.stale_ids == ("stale",)
        assert 'data-highlight-ids="ok"' in result.to_html()

    @pytest.mark.asyncio
    async def test_render_without_highlighting(
        self, make_reconciler, make_content, make_highlight
    ) -> None:
        store = InMemoryHighlightStore([make_highlight("a", 0, 3)])
        reconciler = make_reconciler(store)
        await reconciler.load(make_content(b"\xff<p>x</p>"))

        html = reconciler.render().to_html()
        assert "data-highlight" not in html

    @pytest.mark.asyncio
    async def test_on_change_after_each_state_change(
        self, make_reconciler, make_content, store, changes
    ) -> None:
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())
        mutation = reconciler.create((0, 3))
        stored = await mutation.result()

        # load, optimistic create, confirmation
        assert len(changes) == 3
        assert f'data-highlight-id="{stored.id}"' in changes[-1].to_html()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_mutation(
        self, settings, make_content, store
    ) -> None:
        def _boom(result) -> None:
            raise RuntimeError("listener failed")

        reconciler = HighlightReconciler(store, settings, on_change=_boom)
        await reconciler.load(make_content())
        stored = await reconciler.create((0, 3)).result()
        assert store.get(stored.id) is not None


class TestTimestamps:
    """Records from different sources order and render together."""

    @pytest.mark.asyncio
    async def test_naive_stored_record_with_optimistic_create(
        self, make_reconciler, make_content
    ) -> None:
        naive = Highlight(
            id="old",
            bookmark_id=SAMPLE_BOOKMARK_ID,
            start_offset=0,
            end_offset=3,
            color="red",
            created_at=datetime(2024, 1, 1),
        )
        store = InMemoryHighlightStore([naive])
        reconciler = make_reconciler(store)

        await reconciler.load(make_content())
        mutation = reconciler.create((0, 9), "blue")

        assert [h.id for h in reconciler.list()] == ["old", mutation.highlight.id]
        html = reconciler.render().to_html()
        assert f'data-highlight-id="{mutation.highlight.id}"' in html
        assert 'data-color="red"' not in html
        await mutation.result()

    @pytest.mark.asyncio
    async def test_render_survives_failing_list(
        self, make_reconciler, make_content, make_highlight
    ) -> None:
        store = InMemoryHighlightStore([make_highlight("a", 0, 3)])
        reconciler = make_reconciler(store)
        await reconciler.load(make_content())

        with patch.object(reconciler, "list", side_effect=TypeError("bad record")):
            result = reconciler.render()

        assert result.to_html() == QUICK_FOX_HTML
