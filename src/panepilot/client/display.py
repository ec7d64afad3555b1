"""Rich console output for the chat pane."""

from __future__ import annotations

from io import StringIO
from threading import Lock
from typing import Any, Sequence

from prompt_toolkit.formatted_text import ANSI  # type: ignore
from prompt_toolkit.shortcuts import clear, print_formatted_text  # type: ignore
from rich.console import Console
from rich.table import Table
from rich.text import Text

from panepilot.agent.manager import InfoReport

_render_buffer = StringIO()
_render_console = Console(
    file=_render_buffer,
    force_terminal=True,
    color_system="standard",
    markup=False,
    highlight=False,
)
_render_lock = Lock()

BAR_WIDTH = 20
KIND_STYLES = {
    "assistant": None,
    "info": "cyan",
    "warning": "yellow",
    "error": "red",
}


def _render_and_print(*args: Any, **kwargs: Any) -> None:
    kwargs.setdefault("end", "\n")
    with _render_lock:
        _render_buffer.seek(0)
        _render_buffer.truncate(0)
        _render_console.print(*args, **kwargs)
        output = _render_buffer.getvalue()
    if output:
        print_formatted_text(ANSI(output), end="")


def usage_style(percent: float) -> str:
    if percent >= 90:
        return "red"
    if percent >= 70:
        return "yellow"
    return "green"


def progress_bar(percent: float, width: int = BAR_WIDTH) -> Text:
    filled = max(0, min(width, round(width * percent / 100)))
    bar = Text("[", style="bold")
    bar.append("█" * filled, style=usage_style(percent))
    bar.append("░" * (width - filled), style="dim")
    bar.append("]", style="bold")
    bar.append(f" {percent:.0f}%")
    return bar


def build_info_table(report: InfoReport) -> Table:
    table = Table(show_header=False, box=None, border_style="cyan")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    status = report.status.value + (" (watch)" if report.watch_mode else "")
    table.add_row("Version", report.version)
    table.add_row("Model", report.model)
    table.add_row("Status", status)
    table.add_row("Capture lines", str(report.max_capture_lines))
    table.add_row("Wait interval", f"{report.wait_interval}s")
    table.add_row("Messages", str(report.message_count))
    table.add_row("Context", f"~{report.context_tokens} / {report.max_context_size} tokens")
    table.add_row("", progress_bar(report.usage_percent))
    table.add_row("MCP servers", ", ".join(report.active_servers) or "none")
    for key, value in report.overrides.items():
        table.add_row(f"Override {key}", str(value))
    return table


def build_panes_table(report: InfoReport) -> Table:
    table = Table(title="Panes", border_style="cyan")
    table.add_column("Pane")
    table.add_column("Role")
    table.add_column("Command")
    table.add_column("Prepared")
    table.add_column("Busy")
    for pane in report.panes:
        marker = "*" if pane.is_active else ""
        table.add_row(
            f"{pane.id}{marker}",
            pane.role,
            pane.current_command,
            "yes" if pane.prepared else "no",
            "yes" if pane.busy else "no",
        )
    return table


class ConsoleUI:
    """Chat-pane output used by the REPL, slash commands and the manager."""

    def notify(self, kind: str, text: str) -> None:
        if kind == "assistant":
            _render_and_print(Text(text))
            return
        _render_and_print(Text(text, style=KIND_STYLES.get(kind) or ""))

    def info(self, text: str) -> None:
        self.notify("info", text)

    def error(self, text: str) -> None:
        self.notify("error", text)

    def show_info(self, report: InfoReport) -> None:
        _render_and_print(build_info_table(report))
        if report.panes:
            _render_and_print(build_panes_table(report))

    def show_servers(self, status: Sequence[tuple[str, int | None]]) -> None:
        if not status:
            self.info("No MCP servers active.")
            return
        for name, count in status:
            tools = f"tools: {count} available" if count is not None else "tools: unavailable"
            _render_and_print(Text(f"{name} ({tools})"))

    def clear_screen(self) -> None:
        clear()
