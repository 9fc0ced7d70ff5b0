"""Highlight records and their validation.

Records cross the persistence boundary, so they are pydantic models that
accept the camelCase wire names (``startOffset``) as well as the Python
field names.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class HighlightColor(StrEnum):
    """The closed set of highlight colors."""

    YELLOW = "yellow"
    RED = "red"
    GREEN = "green"
    BLUE = "blue"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Highlight(BaseModel):
    """A persistent highlight over a bookmark's canonical text.

    Offsets are UTF-16 code units into the canonical text of the content
    version the highlight was created against.
    """

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    id: str
    bookmark_id: str
    start_offset: int
    end_offset: int
    color: HighlightColor = HighlightColor.YELLOW
    note: str | None = None
    text: str | None = None
    owner_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("created_at")
    @classmethod
    def _aware_utc(cls, value: datetime) -> datetime:
        """Naive timestamps are taken as UTC so all records compare."""
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def fits(self, total_length: int) -> bool:
        """True if the range is valid for text of *total_length* units."""
        return 0 <= self.start_offset < self.end_offset <= total_length

    def precedence(self) -> tuple[datetime, str]:
        """Sort key for color precedence: latest created wins, then id."""
        return (self.created_at, self.id)

    def list_order(self) -> tuple[int, datetime, str]:
        """Sort key for listing: start offset, then creation time."""
        return (self.start_offset, self.created_at, self.id)


class HighlightPatch(BaseModel):
    """Fields an update may change. Unset fields are left alone."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    color: HighlightColor | None = None
    note: str | None = None

    def apply(self, highlight: Highlight) -> Highlight:
        """Return *highlight* with this patch's set fields replaced."""
        changes = self.model_dump(exclude_unset=True)
        if changes.get("color") is None:
            changes.pop("color", None)
        return highlight.model_copy(update=changes)
