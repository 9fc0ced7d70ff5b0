"""Shared fixtures for unit tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from pagemark.config import OverlayConfig, ProjectionConfig, Settings
from pagemark.document.content import ContentVersion
from pagemark.highlights.models import Highlight, HighlightColor
from pagemark.highlights.store import InMemoryHighlightStore

SAMPLE_BOOKMARK_ID = "bm-1"
SAMPLE_OWNER_ID = "user-1"

# Fixed base time so precedence between test highlights is explicit
BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

# "The quick fox": "quick" sits inside <b>, canonical offsets 4..9
QUICK_FOX_HTML = "<p>The <b>quick</b> fox</p>"

# =============================================================================
# Paths into the QUICK_FOX_HTML fragment tree
# =============================================================================
P_PATH = (0,)
THE_PATH = (0, 0)
B_PATH = (0, 1)
QUICK_PATH = (0, 1, 0)
FOX_PATH = (0, 2)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from .env and environment overrides."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        projection=ProjectionConfig(),
        overlay=OverlayConfig(),
    )


@pytest.fixture
def make_content():
    """Factory for ContentVersion instances from HTML."""

    def _make(
        html: str | bytes = QUICK_FOX_HTML,
        *,
        bookmark_id: str = SAMPLE_BOOKMARK_ID,
        version_id: str = "v1",
        policy: ProjectionConfig | None = None,
    ) -> ContentVersion:
        return ContentVersion.from_html(
            bookmark_id, version_id, html, policy or ProjectionConfig()
        )

    return _make


@pytest.fixture
def make_highlight():
    """Factory for Highlight records.

    ``minutes`` offsets created_at from BASE_TIME so tests can order
    highlights for color precedence.
    """

    def _make(
        highlight_id: str,
        start: int,
        end: int,
        color: HighlightColor | str = HighlightColor.YELLOW,
        *,
        minutes: int = 0,
        bookmark_id: str = SAMPLE_BOOKMARK_ID,
        **kwargs,
    ) -> Highlight:
        return Highlight(
            id=highlight_id,
            bookmark_id=bookmark_id,
            start_offset=start,
            end_offset=end,
            color=HighlightColor(color),
            created_at=BASE_TIME + timedelta(minutes=minutes),
            **kwargs,
        )

    return _make


@pytest.fixture
def store() -> InMemoryHighlightStore:
    """Empty in-memory store with no latency."""
    return InMemoryHighlightStore(owner_id=SAMPLE_OWNER_ID)
