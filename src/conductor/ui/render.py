"""Output rendering for the conductor CLI.

Purpose
- Thin layer over a ``rich`` console so command handlers never format output
  themselves.
- Respect the ``NO_COLOR`` environment variable and the ``--no-color`` flag.

Functional requirements
- Output written to a non-terminal stream carries no ANSI escapes.
- All public methods must be safe to call in any environment.
"""

from __future__ import annotations

import os
from typing import IO, TYPE_CHECKING

from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from collections.abc import Sequence


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    return not os.environ.get("NO_COLOR", "")


class CLIRenderer:
    """Renders headings, key/value pairs and tables to a ``rich`` console."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        file: IO[str] | None = None,
    ) -> None:
        self.verbose = verbose
        self._console = Console(
            file=file,
            no_color=not _color_allowed(no_color),
            highlight=False,
            soft_wrap=True,
        )

    @property
    def console(self) -> Console:
        return self._console

    def heading(self, text: str) -> None:
        self._console.print(text, style="bold", markup=False)

    def kv(self, key: str, value: object) -> None:
        self._console.print(f"{key}: {value}", markup=False)

    def text(self, line: str) -> None:
        self._console.print(line, markup=False)

    def blank(self) -> None:
        self._console.print()

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self._console.print()
        self._console.print(title, style="bold", markup=False)

    def warning(self, text: str) -> None:
        self._console.print(f"  Warning: {text}", style="yellow", markup=False)

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._console.print(f"  {prefix}{entry}", markup=False)

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a table; nothing is printed when ``rows`` is empty."""

        if not rows:
            return
        table = Table(title=title, title_justify="left", show_edge=False, pad_edge=False)
        for header in headers:
            table.add_column(header, overflow="fold")
        for row in rows:
            cells = [Text(str(cell)) for cell in row]
            cells.extend(Text("") for _ in range(len(headers) - len(cells)))
            table.add_row(*cells[: len(headers)])
        self._console.print(table)

    def ok(self, label: str) -> None:
        self._console.print(f"  OK    {label}", style="green", markup=False)

    def fail(self, label: str) -> None:
        self._console.print(f"  FAIL  {label}", style="red", markup=False)

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._console.print(f"  $ {step}", markup=False)


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, file: IO[str] | None = None
) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose, file=file)


__all__ = ["CLIRenderer", "create_renderer"]
