"""Prompt and banner rendering for the chat pane."""

from __future__ import annotations

from prompt_toolkit.utils import get_cwidth  # type: ignore

from panepilot import __version__
from panepilot.agent.manager import AgentStatus, Manager

STATUS_SYMBOLS = {
    AgentStatus.RUNNING: ("class:status.running", "▶"),
    AgentStatus.WAITING: ("class:status.waiting", "?"),
    AgentStatus.DONE: ("class:status.done", "✓"),
}
WATCH_SYMBOL = ("class:status.watch", "∞")

PROMPT_STYLE = {
    "prompt.name": "ansicyan bold",
    "prompt.arrow": "ansicyan",
    "status.running": "ansiyellow",
    "status.waiting": "ansimagenta",
    "status.done": "ansigreen",
    "status.watch": "ansiblue",
}


def build_prompt(manager: Manager) -> list[tuple[str, str]]:
    parts: list[tuple[str, str]] = [("class:prompt.name", "PanePilot")]
    symbol = WATCH_SYMBOL if manager.watch_mode else STATUS_SYMBOLS.get(manager.status)
    if symbol is not None:
        style, text = symbol
        parts.extend([("", " ["), (style, text), ("", "]")])
    parts.append(("class:prompt.arrow", " » "))
    return parts


def build_welcome_banner(manager: Manager) -> str:
    exec_pane = manager.exec_pane.id if manager.exec_pane else "none"
    lines = [
        f"PanePilot {__version__}",
        "Send /help for help information.",
        "",
        f"Model: {manager.config_get('llm.model')}",
        f"Exec pane: {exec_pane}",
    ]
    width = max(get_cwidth(line) for line in lines) + 2
    cyan = "\x1b[36m"
    reset = "\x1b[0m"
    body = [f"{cyan}│{reset} {line}{' ' * (width - 1 - get_cwidth(line))}{cyan}│{reset}" for line in lines]
    return "\n".join([f"{cyan}┌{'─' * width}┐{reset}", *body, f"{cyan}└{'─' * width}┘{reset}", ""])
