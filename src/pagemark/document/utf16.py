"""UTF-16 code-unit arithmetic over Python strings.

Offsets are counted in UTF-16 code units so they agree with browser
selection APIs: a character outside the Basic Multilingual Plane (most
emoji) occupies two units. Python indexes by code point, so every place
that slices text by offset goes through these helpers.
"""

from __future__ import annotations

_BMP_MAX = 0xFFFF


def is_astral(char: str) -> bool:
    """True if *char* is encoded as a surrogate pair in UTF-16."""
    return ord(char) > _BMP_MAX


def utf16_len(text: str) -> int:
    """Length of *text* in UTF-16 code units."""
    return len(text) + sum(1 for ch in text if is_astral(ch))


def utf16_to_index(text: str, units: int, *, round_up: bool = False) -> int:
    """Convert a UTF-16 offset into a Python string index.

    An offset that falls between the two halves of a surrogate pair is
    snapped to the start of that character, or past it with ``round_up``.
    Offsets beyond the end clamp to ``len(text)``.
    """
    if units <= 0:
        return 0
    consumed = 0
    for index, ch in enumerate(text):
        width = 2 if is_astral(ch) else 1
        if consumed + width > units:
            if consumed == units or not round_up:
                return index
            return index + 1
        consumed += width
        if consumed == units:
            return index + 1
    return len(text)


def pair_midpoints(text: str) -> frozenset[int]:
    """UTF-16 offsets that fall inside a surrogate pair of *text*."""
    midpoints: set[int] = set()
    offset = 0
    for ch in text:
        if is_astral(ch):
            midpoints.add(offset + 1)
            offset += 2
        else:
            offset += 1
    return frozenset(midpoints)
