"""Overlay rendering: interval decomposition and marker composition."""

from pagemark.overlay.compositor import OverlayResult, compose, strip_markers
from pagemark.overlay.regions import OverlaySegment, decompose

__all__ = [
    "OverlayResult",
    "OverlaySegment",
    "compose",
    "decompose",
    "strip_markers",
]
