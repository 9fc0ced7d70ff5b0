"""Immutable document tree: HTML parsing and serialisation.

HTML is parsed once per content version with selectolax (lexbor) and
converted into frozen dataclasses. Every later stage (projection, overlay
composition, selection capture) works on this value type, so the tree can
be shared read-only across renders and rebuilt overlays can reuse
untouched subtrees by identity.

Nodes are addressed by *path*: the tuple of child indices from the root.
"""

# Pattern: Functional Core (pure functions for parsing and serialising)

from __future__ import annotations

import html as html_module
import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from selectolax.lexbor import LexborHTMLParser

from pagemark.errors import ParseError

logger = logging.getLogger(__name__)

NodePath = tuple[int, ...]

# Elements that never have children or a closing tag
VOID_ELEMENTS = frozenset(
    (
        "area",
        "base",
        "br",
        "col",
        "embed",
        "hr",
        "img",
        "input",
        "link",
        "meta",
        "param",
        "source",
        "track",
        "wbr",
    )
)

# Elements whose text content is emitted without entity escaping
RAW_TEXT_ELEMENTS = frozenset(
    ("iframe", "noembed", "noframes", "plaintext", "script", "style", "xmp")
)

# Leading doctype of a full document, kept verbatim
_DOCTYPE_RE = re.compile(r"\s*(<!doctype[^>]*>)", re.IGNORECASE)

# Synthetic root tag for fragments (serialises as its children only)
FRAGMENT_TAG = ""


@dataclass(frozen=True, slots=True)
class TextLeaf:
    """A text node. ``text`` holds decoded characters, not entities."""

    text: str


@dataclass(frozen=True, slots=True)
class RawMarkup:
    """Markup passed through verbatim (comments, unknown node kinds)."""

    markup: str


@dataclass(frozen=True, slots=True)
class Element:
    """An element node with ordered attributes and children."""

    tag: str
    attrs: tuple[tuple[str, str | None], ...] = ()
    children: tuple[Node, ...] = ()

    def get(self, name: str) -> str | None:
        """Return the value of attribute *name*, or None."""
        for key, value in self.attrs:
            if key == name:
                return value
        return None

    def has_attr(self, name: str) -> bool:
        return any(key == name for key, _ in self.attrs)


Node = Element | TextLeaf | RawMarkup


@dataclass(frozen=True, slots=True)
class DocumentTree:
    """A parsed document.

    Attributes:
        root: The ``<html>`` element for full documents, or a synthetic
            fragment element (tag ``""``) whose children are the body content.
        is_fragment: False when the source was a full document.
    """

    root: Element
    is_fragment: bool = True
    doctype: str = field(default="", compare=False)

    def node_at(self, path: NodePath) -> Node:
        """Return the node at *path*. Raises KeyError for unknown paths."""
        node: Node = self.root
        for index in path:
            if not isinstance(node, Element) or not 0 <= index < len(node.children):
                raise KeyError(path)
            node = node.children[index]
        return node

    def iter_leaves(self) -> Iterator[tuple[NodePath, TextLeaf]]:
        """Yield ``(path, leaf)`` for every text leaf in document order."""
        for path, node in iter_nodes(self.root):
            if isinstance(node, TextLeaf):
                yield path, node

    def to_html(self) -> str:
        """Serialise the tree back to HTML."""
        body = serialize(self.root)
        if self.doctype:
            return f"{self.doctype}{body}"
        return body


def iter_nodes(root: Node, base: NodePath = ()) -> Iterator[tuple[NodePath, Node]]:
    """Depth-first, document-order walk yielding ``(path, node)``."""
    stack: list[tuple[NodePath, Node]] = [(base, root)]
    while stack:
        path, node = stack.pop()
        yield path, node
        if isinstance(node, Element):
            for index in range(len(node.children) - 1, -1, -1):
                stack.append((path + (index,), node.children[index]))


def opaque_text_tree(content: str) -> DocumentTree:
    """Wrap arbitrary content as a fragment holding one text leaf."""
    return DocumentTree(root=Element(FRAGMENT_TAG, children=(TextLeaf(content),)))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _is_full_document(source: str) -> bool:
    """Full documents start with a doctype or an <html> tag."""
    lower = source.lstrip()[:15].lower()
    return lower.startswith("<!doctype") or lower.startswith("<html")


def _convert(node: Any) -> Node | None:
    """Convert a selectolax node into a tree node."""
    tag = node.tag

    # Text node -- selectolax uses "-text" as the tag
    if tag == "-text":
        text = node.text_content
        if not text:
            return None
        return TextLeaf(text)

    if tag == "_comment":
        return RawMarkup(node.html or "")

    # Template content lives in a separate fragment the walk cannot reach
    if tag == "template":
        return RawMarkup(node.html or "")

    if not tag or tag[0] in "-_!":
        logger.debug("Passing through unknown node kind %r", tag)
        return RawMarkup(node.html or "")

    return Element(
        tag=tag.lower(),
        attrs=tuple((key, value) for key, value in node.attributes.items()),
        children=_convert_children(node),
    )


def _convert_children(node: Any) -> tuple[Node, ...]:
    children: list[Node] = []
    child = node.child
    while child is not None:
        converted = _convert(child)
        if converted is not None:
            children.append(converted)
        child = child.next
    return tuple(children)


def parse_html(source: str | bytes) -> DocumentTree:
    """Parse HTML into an immutable document tree.

    Args:
        source: HTML text, or UTF-8 encoded bytes.

    Returns:
        The parsed DocumentTree. Fragments are rooted at a synthetic
        element holding the body's children.

    Raises:
        ParseError: The content is not text, is not valid UTF-8, or the
            parser could not produce a tree.
    """
    if isinstance(source, bytes):
        try:
            source = source.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError("Content is not valid UTF-8") from exc
    if not isinstance(source, str):
        raise ParseError(f"Cannot parse {type(source).__name__} as HTML")

    if not source.strip():
        return DocumentTree(root=Element(FRAGMENT_TAG))

    try:
        parser = LexborHTMLParser(source)
        if _is_full_document(source):
            root_node = parser.root
            if root_node is None:
                raise ParseError("Parser produced no document root")
            root = _convert(root_node)
            if not isinstance(root, Element):
                raise ParseError("Document root is not an element")
            doctype = _DOCTYPE_RE.match(source)
            return DocumentTree(
                root=root,
                is_fragment=False,
                doctype=doctype.group(1) if doctype else "",
            )

        body = parser.body
        container = body if body is not None else parser.root
        if container is None:
            raise ParseError("Parser produced no body")
        return DocumentTree(
            root=Element(FRAGMENT_TAG, children=_convert_children(container))
        )
    except RecursionError as exc:
        raise ParseError("Document nesting is too deep") from exc
    except ParseError:
        raise
    except Exception as exc:
        raise ParseError(f"Could not parse HTML: {exc}") from exc


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _format_attrs(attrs: tuple[tuple[str, str | None], ...]) -> str:
    parts: list[str] = []
    for name, value in attrs:
        if value is None:
            parts.append(f" {name}")
        else:
            parts.append(f' {name}="{html_module.escape(value, quote=True)}"')
    return "".join(parts)


def _serialize_into(node: Node, out: list[str], raw_text: bool) -> None:
    if isinstance(node, TextLeaf):
        text = node.text if raw_text else html_module.escape(node.text, quote=False)
        out.append(text)
        return
    if isinstance(node, RawMarkup):
        out.append(node.markup)
        return

    if node.tag == FRAGMENT_TAG:
        for child in node.children:
            _serialize_into(child, out, raw_text=False)
        return

    out.append(f"<{node.tag}{_format_attrs(node.attrs)}>")
    if node.tag in VOID_ELEMENTS:
        return
    child_raw = node.tag in RAW_TEXT_ELEMENTS
    for child in node.children:
        _serialize_into(child, out, raw_text=child_raw)
    out.append(f"</{node.tag}>")


def serialize(node: Node) -> str:
    """Serialise a node (and its subtree) to HTML."""
    out: list[str] = []
    _serialize_into(node, out, raw_text=False)
    return "".join(out)
