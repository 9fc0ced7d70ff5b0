"""Attribute names carried by highlight marker elements.

Shared between:
- overlay/compositor.py (building markers)
- overlay/compositor.py ``strip_markers`` and hit-testing (reading them back)
"""

from __future__ import annotations

# Present on every marker; the value is always "true"
MARKER_ATTR = "data-highlight"
# Id of the highlight whose color is shown (precedence winner)
MARKER_ID_ATTR = "data-highlight-id"
# Comma-separated ids of every highlight covering the run, ascending
MARKER_IDS_ATTR = "data-highlight-ids"
MARKER_COLOR_ATTR = "data-color"
MARKER_SELECTOR = f"[{MARKER_ATTR}]"

# Parents whose text must never be wrapped: the HTML parser would move a
# marker out of table structure, and raw-text or RCDATA content would show
# it as text.
NO_MARKER_PARENTS = frozenset(
    (
        "colgroup",
        "iframe",
        "noembed",
        "noframes",
        "option",
        "optgroup",
        "plaintext",
        "script",
        "select",
        "style",
        "table",
        "tbody",
        "textarea",
        "tfoot",
        "thead",
        "tr",
        "xmp",
    )
)
