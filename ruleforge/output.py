"""
Rich Output Utilities
=====================

Terminal output for the RuleForge CLI: the themed console, message helpers,
tables for rules, clusters and component health, and logging setup.

Status values (rule lifecycle, component health, overall health) each have a
theme style named ``rf.<group>.<value>``, so a value can be rendered with
``styled(value, group)`` wherever it appears.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.status import Status
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text
from rich.theme import Theme


# =============================================================================
# Theme
# =============================================================================

PALETTE = {
    "text": "#E5E7EB",
    "muted": "#9CA3AF",
    "accent": "#A78BFA",
    "frame": "#38BDF8",
    "good": "#34D399",
    "caution": "#FBBF24",
    "bad": "#F87171",
}

# Status value -> palette entry, per status group
STATUS_COLORS = {
    "status": {"active": "good", "pending": "caution", "rejected": "bad", "retired": "muted"},
    "health": {
        "healthy": "good",
        "degraded": "caution",
        "circuit_open": "bad",
        "critical": "bad",
    },
}


def build_theme(palette: dict[str, str] = PALETTE) -> Theme:
    styles = {
        "rf.banner": f"bold {palette['frame']}",
        "rf.subtitle": palette["muted"],
        "rf.border": palette["frame"],
        "rf.accent": f"bold {palette['accent']}",
        "rf.muted": palette["muted"],
        "rf.key": palette["muted"],
        "rf.value": palette["text"],
        "rf.ok": f"bold {palette['good']}",
        "rf.warn": f"bold {palette['caution']}",
        "rf.err": f"bold {palette['bad']}",
        "rf.info": palette["frame"],
        "rf.table.header": f"bold {palette['frame']}",
    }
    for group, colors in STATUS_COLORS.items():
        for value, color in colors.items():
            weight = "" if color == "muted" else "bold "
            styles[f"rf.{group}.{value}"] = f"{weight}{palette[color]}"
    return Theme(styles)


console = Console(theme=build_theme())

# Plain markers for terminals whose encoding cannot show the symbols
_SYMBOLS = {"ok": ("✓", "[OK]"), "err": ("✗", "[X]"), "warn": ("!", "[!]"), "info": ("i", "[i]"),
            "step": ("→", "->"), "dot": ("•", "-")}


def symbol(name: str) -> str:
    fancy, plain = _SYMBOLS.get(name, ("", ""))
    try:
        fancy.encode(console.encoding or "utf-8")
    except (UnicodeEncodeError, LookupError):
        return plain
    return fancy


# =============================================================================
# Messages
# =============================================================================

def _message(kind: str, message: str) -> None:
    console.print(f"[rf.{kind}]{symbol(kind)} {message}[/]")


def print_success(message: str) -> None:
    _message("ok", message)


def print_error(message: str) -> None:
    _message("err", message)


def print_warning(message: str) -> None:
    _message("warn", message)


def print_info(message: str) -> None:
    _message("info", message)


def print_muted(message: str) -> None:
    console.print(message, style="rf.muted")


def print_header(title: str) -> None:
    console.print()
    console.print(Rule(f"[rf.accent]{title}[/]", style="rf.accent"))
    console.print()


def print_subheader(title: str) -> None:
    console.print(f"\n[rf.info]{symbol('step')} {title}[/]")


# =============================================================================
# Structured data
# =============================================================================

def print_key_value_table(data: dict[str, Any], *, title: Optional[str] = None) -> None:
    """Two-column key/value listing, framed in a panel when titled."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="rf.key")
    table.add_column(style="rf.value")
    for key, value in data.items():
        table.add_row(str(key), "-" if value is None else str(value))

    console.print(Panel(table, title=f"[bold]{title}[/]", border_style="rf.border") if title else table)


def print_json_data(data: Any, *, title: Optional[str] = None) -> None:
    """Pretty JSON, for ``--json`` output."""
    syntax = Syntax(json.dumps(data, indent=2, default=str), "json", theme="ansi_dark", background_color="default")
    console.print(Panel(syntax, title=f"[bold]{title}[/]", border_style="rf.border") if title else syntax)


def create_table(*, columns: list[str], title: Optional[str] = None) -> Table:
    table = Table(title=title, header_style="rf.table.header", border_style="rf.border", title_style="rf.accent")
    for column in columns:
        table.add_column(column)
    return table


def print_table(table: Table) -> None:
    if table.row_count:
        console.print(table)
    else:
        print_muted("(no rows)")


def styled(value: str, group: str) -> str:
    """Status value wrapped in its theme style, e.g. styled("active", "status")."""
    if value not in STATUS_COLORS.get(group, {}):
        return value
    return f"[rf.{group}.{value}]{value}[/]"


# =============================================================================
# Progress, banner, logging
# =============================================================================

@contextmanager
def spinner(message: str) -> Iterator[Status]:
    """Spinner shown while a pass runs: ``with spinner("Analyzing..."): ...``"""
    with console.status(f"[rf.accent]{message}[/]", spinner="dots") as status:
        yield status


def print_banner(version: Optional[str] = None) -> None:
    footer = "Rule Evolution Engine"
    if version:
        footer = f"{footer} {symbol('dot')} v{version}"
    console.print(Panel(
        Text.assemble(Text("RuleForge", style="rf.banner"), "\n", Text(footer, style="rf.subtitle")),
        border_style="rf.border",
        padding=(1, 2),
        expand=False,
    ))


def setup_rich_logging(level: int = logging.INFO) -> None:
    """Route logging through Rich on the shared console."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=True)],
        force=True,
    )
