"""Tests for content versions and the parse-failure fallback."""

from __future__ import annotations

import pytest

from pagemark.config import ProjectionConfig
from pagemark.document.content import ContentVersion, load_content
from pagemark.errors import ParseError
from tests.unit.conftest import QUICK_FOX_HTML


class _StaticSource:
    """ContentSource returning fixed HTML."""

    def __init__(self, html: str, version_id: str = "v7") -> None:
        self.html = html
        self.version_id = version_id
        self.fetched: list[str] = []

    async def fetch(self, bookmark_id: str) -> tuple[str, str]:
        self.fetched.append(bookmark_id)
        return self.html, self.version_id


class TestContentVersion:
    """Parsing and projection happen once per content version."""

    def test_from_html(self) -> None:
        content = ContentVersion.from_html(
            "bm", "v1", QUICK_FOX_HTML, ProjectionConfig()
        )
        assert content.text == "The quick fox"
        assert content.total_length == 13
        assert content.offset_map is content.projection.offset_map
        assert content.highlighting_enabled
        assert content.parse_error is None

    def test_policy_is_applied(self) -> None:
        content = ContentVersion.from_html(
            "bm", "v1", "<p>a</p><p>b</p>", ProjectionConfig(block_separator="\n")
        )
        assert content.text == "a\nb"

    def test_parse_failure_falls_back_to_text(self) -> None:
        content = ContentVersion.from_html(
            "bm", "v1", b"\xff\xfe<p>broken</p>", ProjectionConfig()
        )
        assert isinstance(content.parse_error, ParseError)
        assert not content.highlighting_enabled
        assert "broken" in content.text
        assert "&lt;p&gt;" in content.tree.to_html()

    def test_content_version_is_immutable(self) -> None:
        content = ContentVersion.from_html(
            "bm", "v1", QUICK_FOX_HTML, ProjectionConfig()
        )
        with pytest.raises(AttributeError):
            content.version_id = "v2"  # type: ignore[misc]


class TestLoadContent:
    """Fetching through a ContentSource."""

    @pytest.mark.asyncio
    async def test_load_content(self) -> None:
        source = _StaticSource(QUICK_FOX_HTML)
        content = await load_content(source, "bm-9", ProjectionConfig())
        assert source.fetched == ["bm-9"]
        assert content.bookmark_id == "bm-9"
        assert content.version_id == "v7"
        assert content.text == "The quick fox"
