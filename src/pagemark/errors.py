"""Error taxonomy for the highlight engine.

Pure computation errors (parse, offsets) are recovered locally with a
degraded rendering. Validation errors are raised before anything reaches
persistence. Persistence errors roll back the optimistic local change.
"""

from __future__ import annotations


class PagemarkError(Exception):
    """Base class for all pagemark errors."""


class ParseError(PagemarkError):
    """Source HTML could not be turned into a document tree."""


class OffsetOutOfRange(PagemarkError):
    """An offset range does not fit the current content's canonical text."""

    def __init__(self, start: int, end: int, total_length: int) -> None:
        self.start = start
        self.end = end
        self.total_length = total_length
        super().__init__(
            f"Range [{start}, {end}) does not fit text of length {total_length}"
        )


class EmptyRangeError(PagemarkError):
    """Zero-length or inverted range passed to create."""

    def __init__(self, start: int, end: int) -> None:
        self.start = start
        self.end = end
        super().__init__(f"Empty or inverted range [{start}, {end})")


class ValidationError(PagemarkError):
    """A highlight field failed local validation (color, note length)."""


class SelectionError(PagemarkError):
    """A selection endpoint does not belong to the document tree."""


class PersistenceError(PagemarkError):
    """The highlight store rejected or failed a mutation."""

    def __init__(self, message: str, highlight_id: str | None = None) -> None:
        self.highlight_id = highlight_id
        super().__init__(message)


class HighlightNotFoundError(PersistenceError):
    """The store has no highlight with the requested id."""

    def __init__(self, highlight_id: str) -> None:
        super().__init__(f"Highlight {highlight_id} not found", highlight_id)
