"""Document model: parsing, projection, range resolution, selection capture."""

from pagemark.document.content import ContentSource, ContentVersion, load_content
from pagemark.document.projection import (
    OffsetMap,
    Projection,
    Segment,
    SegmentKind,
    project,
)
from pagemark.document.resolver import LeafSpan, resolve
from pagemark.document.selection import (
    TreePosition,
    capture_selection,
    selected_text,
    selection_for_range,
)
from pagemark.document.tree import (
    DocumentTree,
    Element,
    RawMarkup,
    TextLeaf,
    parse_html,
)

__all__ = [
    "ContentSource",
    "ContentVersion",
    "DocumentTree",
    "Element",
    "LeafSpan",
    "OffsetMap",
    "Projection",
    "RawMarkup",
    "Segment",
    "SegmentKind",
    "TextLeaf",
    "TreePosition",
    "capture_selection",
    "load_content",
    "parse_html",
    "project",
    "resolve",
    "selected_text",
    "selection_for_range",
]
