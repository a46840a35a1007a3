"""
Ancestry Console Interface
===========================

Rich-powered console abstraction shared by the Ancestry command-line
tools: section rules, status messages, a spinner and a generic table
helper, all with one palette.

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Generator, Sequence

from rich.console import Console
from rich.table import Table
from rich.theme import Theme

_ANCESTRY_THEME = Theme(
    {
        "ancestry.title": "bold bright_cyan",
        "ancestry.section": "bold bright_magenta",
        "ancestry.success": "bold green",
        "ancestry.warning": "bold yellow",
        "ancestry.error": "bold red",
        "ancestry.info": "bold bright_blue",
        "ancestry.dim": "dim white",
        "ancestry.address": "bright_cyan",
        "ancestry.virtual": "bold yellow",
        "ancestry.abstract": "italic bright_magenta",
    }
)


class AncestryConsole:
    """Unified console interface for the Ancestry tools.

    Usage::

        con = AncestryConsole()
        con.section("Class Hierarchy")
        con.success("Recovered 42 classes")
    """

    def __init__(self, *, quiet: bool = False, record: bool = False) -> None:
        """Initialise the console.

        Args:
            quiet:  Suppress all output (library / test mode).
            record: Enable Rich recording for later export.
        """
        self._console = Console(
            theme=_ANCESTRY_THEME,
            quiet=quiet,
            record=record,
            highlight=False,
        )

    @property
    def rich(self) -> Console:
        """Direct access to the underlying Rich Console instance."""
        return self._console

    # ------------------------------------------------------------------ #
    #  Headers and messages
    # ------------------------------------------------------------------ #

    def title(self, text: str, version: str) -> None:
        """Print the tool title line."""
        self._console.print(
            f"[ancestry.title]{text}[/ancestry.title] "
            f"[ancestry.dim]v{version}[/ancestry.dim]"
        )
        self._console.print()

    def section(self, title: str) -> None:
        """Print a prominent section rule."""
        self._console.rule(f"  {title}  ", style="ancestry.section", characters="─")
        self._console.print()

    def success(self, message: str) -> None:
        self._console.print(f"[ancestry.success][✔] SUCCESS:[/ancestry.success] {message}")

    def warning(self, message: str) -> None:
        self._console.print(f"[ancestry.warning][⚠] WARNING:[/ancestry.warning] {message}")

    def error(self, message: str) -> None:
        self._console.print(f"[ancestry.error][✘] ERROR:[/ancestry.error] {message}")

    def info(self, message: str) -> None:
        self._console.print(f"[ancestry.info][ℹ] INFO:[/ancestry.info] {message}")

    # ------------------------------------------------------------------ #
    #  Tables and spinners
    # ------------------------------------------------------------------ #

    def table(
        self,
        title: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        *,
        caption: str | None = None,
        styles: Sequence[str] | None = None,
    ) -> None:
        """Render a styled Rich table.

        Args:
            title:    Table title.
            columns:  Column header labels.
            rows:     Row tuples; each cell is stringified.
            caption:  Optional footer caption.
            styles:   Optional per-column Rich style strings.
        """
        tbl = Table(
            title=title,
            caption=caption,
            border_style="bright_cyan",
            header_style="bold bright_magenta",
            show_lines=False,
            padding=(0, 1),
        )
        for idx, col_name in enumerate(columns):
            style = styles[idx] if styles and idx < len(styles) else ""
            tbl.add_column(col_name, style=style)
        for row in rows:
            tbl.add_row(*(str(cell) for cell in row))
        self._console.print(tbl)

    @contextmanager
    def status(self, message: str = "Working...") -> Generator[Any, None, None]:
        """Show a spinner with *message* while the block runs."""
        with self._console.status(
            f"[ancestry.info]{message}[/ancestry.info]",
            spinner="dots",
            spinner_style="bright_cyan",
        ) as status_obj:
            yield status_obj

    def print(self, *args: Any, **kwargs: Any) -> None:
        """Proxy to :meth:`rich.console.Console.print`."""
        self._console.print(*args, **kwargs)

    def blank(self, count: int = 1) -> None:
        for _ in range(count):
            self._console.print()

    def divider(self, style: str = "dim") -> None:
        self._console.rule(style=style)
