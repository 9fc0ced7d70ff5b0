"""Highlight records, the persistence protocol and the reconciler."""

from pagemark.highlights.models import Highlight, HighlightColor, HighlightPatch
from pagemark.highlights.store import HighlightStore, InMemoryHighlightStore

__all__ = [
    "Highlight",
    "HighlightColor",
    "HighlightPatch",
    "HighlightStore",
    "InMemoryHighlightStore",
]
