"""Rendering of merged units and run summaries."""

from __future__ import annotations

import importlib.metadata

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from ..core.models import AgentId, AgentStatus, MergedUnit, StatusKind, StreamTag, UnitKind
from ..core.pool import AgentPool
from .state import console as default_console
from .theme import THEME


def _markup(text: str, color: str) -> str:
    """Wrap text in Rich markup with the given color, escaping special chars."""
    return f"[{color}]{escape(text)}[/{color}]"


def _get_version() -> str:
    """Return the installed package version or 'dev' if not installed."""
    try:
        return importlib.metadata.version("mux")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def label_color(agent_id: AgentId) -> str:
    return THEME.labels[(agent_id - 1) % len(THEME.labels)]


def status_color(status: AgentStatus) -> str:
    if status.succeeded:
        return THEME.success
    if status.kind == StatusKind.COMPLETED:
        return THEME.warning
    if status.kind in (StatusKind.FAILED, StatusKind.TERMINATED):
        return THEME.error
    return THEME.muted


class UnitPrinter:
    """Merger subscriber that writes units to a console.

    ANSI sequences from the children are kept by converting each piece with
    ``Text.from_ansi``. With labels on, every output line starts with the
    agent's label, e.g. ``[n=2] ``, or ``#7`` when the command had no ranges.
    """

    def __init__(self, console: Console | None = None, *, show_labels: bool = True) -> None:
        self.console = console or default_console
        self.show_labels = show_labels
        self._at_line_start: dict[tuple[AgentId, StreamTag | None], bool] = {}

    def __call__(self, unit: MergedUnit) -> None:
        if unit.kind == UnitKind.CHUNK:
            self._print_chunk(unit)
        elif unit.kind == UnitKind.LINE:
            self._print_line(unit, unit.text)
        elif unit.kind == UnitKind.BLOCK:
            self._print_block(unit)
        elif unit.status is not None and unit.status.is_terminal:
            self._print_status(unit, unit.status)

    def _prefix(self, unit: MergedUnit) -> Text:
        if not self.show_labels:
            return Text()
        label = unit.label or f"#{unit.agent_id}"
        color = THEME.error if unit.stream == StreamTag.STDERR else label_color(unit.agent_id)
        return Text(f"{label} ", style=color)

    def _print_line(self, unit: MergedUnit, text: str, end: str = "\n") -> None:
        line = self._prefix(unit)
        line.append_text(Text.from_ansi(text.rstrip("\r"), end=""))
        self.console.print(line, end=end, soft_wrap=True, highlight=False)

    def _print_chunk(self, unit: MergedUnit) -> None:
        key = (unit.agent_id, unit.stream)
        pieces = unit.text.split("\n")
        for i, body in enumerate(pieces):
            terminated = i < len(pieces) - 1
            if not terminated and not body:
                break
            if terminated:
                body = body.rstrip("\r")
            if self._at_line_start.get(key, True):
                self._print_line(unit, body, end="\n" if terminated else "")
            else:
                self.console.print(
                    Text.from_ansi(body, end=""),
                    end="\n" if terminated else "",
                    soft_wrap=True,
                    highlight=False,
                )
            self._at_line_start[key] = terminated

    def _print_block(self, unit: MergedUnit) -> None:
        label = unit.label or f"#{unit.agent_id}"
        status = unit.status.describe() if unit.status else ""
        color = status_color(unit.status) if unit.status else THEME.muted
        self.console.print(
            Rule(
                Text.assemble((label, label_color(unit.agent_id)), " ", (status, color)),
                style=THEME.border,
                align="left",
            )
        )
        segments = unit.segments or ((StreamTag.STDOUT, unit.payload),)
        body = Text()
        for stream, data in segments:
            text = data.decode("utf-8", errors="replace").replace("\r\n", "\n")
            style = THEME.error if stream == StreamTag.STDERR else ""
            body.append_text(Text.from_ansi(text, style=style, end=""))
        if body:
            self.console.print(body, soft_wrap=True, highlight=False)

    def _print_status(self, unit: MergedUnit, status: AgentStatus) -> None:
        for stream in (StreamTag.STDOUT, StreamTag.STDERR):
            if not self._at_line_start.get((unit.agent_id, stream), True):
                self.console.print()
                self._at_line_start[(unit.agent_id, stream)] = True
        if status.succeeded:
            return
        prefix = self._prefix(unit)
        prefix.append(status.describe(), style=status_color(status))
        self.console.print(prefix, highlight=False)


def print_summary(pool: AgentPool, console: Console | None = None) -> None:
    """Print a summary table of every agent the pool has seen."""
    console = console or default_console
    snapshot = pool.status_snapshot()
    if not snapshot:
        return

    table = Table(title="mux summary", title_style=THEME.muted, border_style=THEME.border)
    table.add_column("#", justify="right", style="bold")
    table.add_column("Label")
    table.add_column("Command", overflow="fold")
    table.add_column("Status")
    table.add_column("PID", justify="right")

    counts: dict[str, int] = {}
    for agent_id in sorted(snapshot):
        info = pool.agent_info(agent_id)
        if info is None:
            continue
        counts[info.status.kind.value] = counts.get(info.status.kind.value, 0) + 1
        status_text = info.status.describe()
        if info.force_killed:
            status_text += " (killed)"
        table.add_row(
            str(agent_id),
            _markup(info.label or "-", label_color(agent_id)),
            escape(info.command),
            _markup(status_text, status_color(info.status)),
            str(info.pid) if info.pid else "-",
        )

    console.print(table)
    console.print(
        "[bold]Totals:[/bold] " + ", ".join(f"{kind}={n}" for kind, n in sorted(counts.items()))
    )
