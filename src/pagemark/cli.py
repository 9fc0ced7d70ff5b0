"""Command-line utilities for inspecting projections and overlays.

Reads an HTML file (and optionally a JSON list of highlights) and prints
the canonical text, the overlay segment table, or the rendered overlay.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pydantic
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from pagemark import _setup_logging, get_version_string
from pagemark.config import get_settings
from pagemark.document.content import ContentVersion
from pagemark.errors import PagemarkError
from pagemark.highlights.models import Highlight
from pagemark.overlay.compositor import compose

if TYPE_CHECKING:
    from pagemark.overlay.compositor import OverlayResult

console = Console()


def _load_content(path: Path) -> ContentVersion:
    """Parse and project an HTML file as a content version."""
    return ContentVersion.from_html(
        bookmark_id=path.stem,
        version_id=str(int(path.stat().st_mtime)),
        html=path.read_bytes(),
        policy=get_settings().projection,
    )


def _load_highlights(path: Path, bookmark_id: str) -> list[Highlight]:
    """Read a JSON list of highlight objects (camelCase or snake_case keys)."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        msg = f"{path}: expected a JSON list of highlights"
        raise ValueError(msg)
    highlights = []
    for index, item in enumerate(raw):
        if isinstance(item, dict):
            item = {"bookmarkId": bookmark_id, "id": f"hl-{index}", **item}
        highlights.append(Highlight.model_validate(item))
    return highlights


def _overlay(
    content_path: Path, highlights_path: Path
) -> tuple[ContentVersion, OverlayResult]:
    content = _load_content(content_path)
    highlights = _load_highlights(highlights_path, content.bookmark_id)
    if not content.highlighting_enabled:
        highlights = []
    result = compose(
        content.tree, content.offset_map, highlights, get_settings().overlay
    )
    return content, result


def _cmd_text(path: Path, *, console: Console | None = None) -> None:
    """Print the canonical text of an HTML file."""
    con = console or globals()["console"]
    content = _load_content(path)

    header = Text()
    header.append(f"{path}\n", style="bold")
    header.append(f"Length: {content.total_length} UTF-16 code units\n", style="dim")
    header.append(f"Segments: {len(content.offset_map)}", style="dim")
    if content.parse_error is not None:
        header.append(f"\nParse error: {content.parse_error}", style="red")
    con.print(Panel(header, border_style="blue"))
    con.print(content.text, markup=False, highlight=False)


def _cmd_segments(
    path: Path, highlights_path: Path, *, console: Console | None = None
) -> None:
    """Print the overlay segment table."""
    con = console or globals()["console"]
    content, result = _overlay(path, highlights_path)

    table = Table(title="Overlay segments")
    table.add_column("Start", justify="right")
    table.add_column("End", justify="right")
    table.add_column("Highlights", style="cyan")
    table.add_column("Text")

    for segment in result.segments:
        excerpt = content.offset_map.slice(segment.start, segment.end)
        if len(excerpt) > 40:
            excerpt = excerpt[:37] + "..."
        table.add_row(
            str(segment.start),
            str(segment.end),
            ", ".join(segment.active) or "[dim]-[/]",
            Text(excerpt.replace("\n", "\\n")),
        )

    con.print(table)
    if result.stale_ids:
        con.print(f"[yellow]Stale:[/] {', '.join(result.stale_ids)}")


def _cmd_render(
    path: Path, highlights_path: Path, *, console: Console | None = None
) -> None:
    """Print the overlay HTML."""
    con = console or globals()["console"]
    _, result = _overlay(path, highlights_path)
    con.print(result.to_html(), markup=False, highlight=False, soft_wrap=True)
    if result.stale_ids:
        con.print(f"[yellow]Stale:[/] {', '.join(result.stale_ids)}", style="dim")


def _build_parser() -> argparse.ArgumentParser:
    """Build argparse parser for pagemark subcommands."""
    parser = argparse.ArgumentParser(
        prog="pagemark",
        description="Inspect canonical text and highlight overlays of HTML files.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {get_version_string()}"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # text
    text_p = sub.add_parser("text", help="Print the canonical text")
    text_p.add_argument("file", type=Path, help="HTML file")

    # segments
    seg_p = sub.add_parser("segments", help="Print the overlay segment table")
    seg_p.add_argument("file", type=Path, help="HTML file")
    seg_p.add_argument("highlights", type=Path, help="JSON list of highlights")

    # render
    render_p = sub.add_parser("render", help="Print the overlay HTML")
    render_p.add_argument("file", type=Path, help="HTML file")
    render_p.add_argument("highlights", type=Path, help="JSON list of highlights")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Inspect projections and overlays.

    Usage:
        pagemark <command> [options]

    Commands:
        text <file>                      Canonical text and its length
        segments <file> <highlights>     Overlay segment table
        render <file> <highlights>       Overlay HTML
    """
    parser = _build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)

    _setup_logging(get_settings().app.log_dir)

    try:
        match args.command:
            case "text":
                _cmd_text(args.file)
            case "segments":
                _cmd_segments(args.file, args.highlights)
            case "render":
                _cmd_render(args.file, args.highlights)
    except (OSError, ValueError, pydantic.ValidationError, PagemarkError) as exc:
        console.print(f"[red]Error:[/] {escape(str(exc))}")
        sys.exit(1)


if __name__ == "__main__":
    main()
