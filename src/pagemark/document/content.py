"""Content versions: one parsed and projected snapshot per bookmark content.

Parsing and projection run once when content is fetched. The resulting
ContentVersion is immutable and is shared read-only by every render and
selection against that content.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from pagemark.document.projection import Projection, project
from pagemark.document.tree import DocumentTree, opaque_text_tree, parse_html
from pagemark.errors import ParseError

if TYPE_CHECKING:
    from pagemark.config import ProjectionConfig
    from pagemark.document.projection import OffsetMap

logger = logging.getLogger(__name__)


class ContentSource(Protocol):
    """Supplies sanitised HTML for a bookmark."""

    async def fetch(self, bookmark_id: str) -> tuple[str, str]:
        """Return ``(html, version_id)`` for *bookmark_id*."""
        ...


@dataclass(frozen=True, slots=True)
class ContentVersion:
    """A bookmark's content at one version, parsed and projected.

    Attributes:
        bookmark_id: The bookmark this content belongs to.
        version_id: Identifier of this content snapshot.
        tree: The parsed document (or an opaque text fallback).
        projection: Canonical text and offset map of ``tree``.
        parse_error: Set when parsing failed and the fallback was used.
    """

    bookmark_id: str
    version_id: str
    tree: DocumentTree
    projection: Projection
    parse_error: ParseError | None = None

    @classmethod
    def from_html(
        cls,
        bookmark_id: str,
        version_id: str,
        html: str | bytes,
        policy: ProjectionConfig | None = None,
    ) -> ContentVersion:
        """Parse and project *html*.

        A ParseError is not raised: the content falls back to a single
        opaque text leaf so the document still displays, and highlighting
        is disabled for this version.
        """
        error: ParseError | None = None
        try:
            tree = parse_html(html)
        except ParseError as exc:
            logger.warning(
                "Could not parse content %s@%s, highlighting disabled: %s",
                bookmark_id,
                version_id,
                exc,
            )
            error = exc
            if isinstance(html, bytes):
                html = html.decode("utf-8", errors="replace")
            tree = opaque_text_tree(html if isinstance(html, str) else "")
        return cls(
            bookmark_id=bookmark_id,
            version_id=version_id,
            tree=tree,
            projection=project(tree, policy),
            parse_error=error,
        )

    @property
    def highlighting_enabled(self) -> bool:
        return self.parse_error is None

    @property
    def offset_map(self) -> OffsetMap:
        return self.projection.offset_map

    @property
    def text(self) -> str:
        return self.projection.text

    @property
    def total_length(self) -> int:
        return self.projection.total_length


async def load_content(
    source: ContentSource,
    bookmark_id: str,
    policy: ProjectionConfig | None = None,
) -> ContentVersion:
    """Fetch a bookmark's content from *source* and build its ContentVersion."""
    html, version_id = await source.fetch(bookmark_id)
    return ContentVersion.from_html(bookmark_id, version_id, html, policy)
