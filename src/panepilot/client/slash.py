"""Slash command registry and dispatch for the chat pane."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, Sequence

from panepilot.agent.manager import InfoReport, Manager
from panepilot.client.select import select_names
from panepilot.config import ALLOWED_OVERRIDE_KEYS
from panepilot.errors import PanePilotError

logger = logging.getLogger(__name__)


class ChatUI(Protocol):
    def notify(self, kind: str, text: str) -> None: ...

    def info(self, text: str) -> None: ...

    def error(self, text: str) -> None: ...

    def show_info(self, report: InfoReport) -> None: ...

    def show_servers(self, status: Sequence[tuple[str, int | None]]) -> None: ...

    def clear_screen(self) -> None: ...


SelectFn = Callable[[Sequence[str], Sequence[str]], Awaitable[list[str] | None]]


@dataclass
class SlashContext:
    manager: Manager
    ui: ChatUI
    select: SelectFn = select_names


SlashHandler = Callable[[SlashContext, str], Awaitable[bool] | bool]


@dataclass
class SlashCommandDef:
    description: str
    hint: str
    handler: SlashHandler


SLASH_HANDLERS: dict[str, SlashCommandDef] = {}


def register_slash_command(name: str, description: str, hint: str) -> Callable[[SlashHandler], SlashHandler]:
    """Decorator to register a slash command."""

    def _decorator(func: SlashHandler) -> SlashHandler:
        SLASH_HANDLERS[name] = SlashCommandDef(description=description, hint=hint, handler=func)
        return func

    return _decorator


def resolve_command(command: str) -> str | None:
    """Exact name first, then the first registered command with that prefix."""

    if command in SLASH_HANDLERS:
        return command
    for name in SLASH_HANDLERS:
        if name.startswith(command):
            return name
    return None


@register_slash_command("/help", description="Show available slash commands.", hint="/help")
def _handle_help(ctx: SlashContext, _argument: str) -> bool:
    lines = ["Available slash commands:"]
    for entry in SLASH_HANDLERS.values():
        lines.append(f"{entry.hint:<28} - {entry.description}")
    ctx.ui.info("\n".join(lines))
    return True


@register_slash_command("/info", description="Show session, context and pane information.", hint="/info")
def _handle_info(ctx: SlashContext, _argument: str) -> bool:
    ctx.ui.show_info(ctx.manager.info())
    return True


@register_slash_command("/prepare", description="Prepare the exec pane for command tracking.", hint="/prepare")
async def _handle_prepare(ctx: SlashContext, _argument: str) -> bool:
    pane = await ctx.manager.prepare_exec_pane()
    ctx.ui.info(f"Exec pane {pane.id} prepared ({len(ctx.manager.exec_history)} commands in history).")
    return True


@register_slash_command("/clear", description="Clear chat history.", hint="/clear")
def _handle_clear(ctx: SlashContext, _argument: str) -> bool:
    ctx.manager.clear_history()
    ctx.ui.clear_screen()
    return True


@register_slash_command("/reset", description="Clear chat history and the exec pane.", hint="/reset")
def _handle_reset(ctx: SlashContext, _argument: str) -> bool:
    ctx.manager.reset()
    ctx.ui.clear_screen()
    return True


@register_slash_command("/exit", description="Exit the application.", hint="/exit")
def _handle_exit(ctx: SlashContext, _argument: str) -> bool:
    ctx.ui.info("[exiting]")
    raise SystemExit(0)


@register_slash_command("/squash", description="Summarize chat history to save context.", hint="/squash")
async def _handle_squash(ctx: SlashContext, _argument: str) -> bool:
    before = len(ctx.manager.history)
    if await ctx.manager.squash():
        ctx.ui.info(f"History squashed: {before} messages -> {len(ctx.manager.history)}.")
    else:
        ctx.ui.info("Nothing to squash.")
    return True


@register_slash_command("/watch", description="Watch the exec pane (no argument stops).", hint="/watch <description>")
def _handle_watch(ctx: SlashContext, argument: str) -> bool:
    manager = ctx.manager
    if not argument:
        if manager.watch_mode:
            manager.stop_watch()
            ctx.ui.info("Watch mode stopped.")
        else:
            ctx.ui.info("Usage: /watch <description>")
        return True
    manager.start_watch(argument)
    ctx.ui.info(f"Watching exec pane every {manager.config_get('wait_interval')}s: {argument}")
    return True


register_slash_command("/w", description="Alias for /watch.", hint="/w <description>")(_handle_watch)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@register_slash_command("/config", description="Show or override session config.", hint="/config get|set <key> [value]")
def _handle_config(ctx: SlashContext, argument: str) -> bool:
    manager = ctx.manager
    try:
        parts = shlex.split(argument)
    except ValueError as exc:
        ctx.ui.error(f"Invalid arguments: {exc}")
        return True
    if not parts:
        lines = [f"{key} = {_format_value(manager.config_get(key))}" for key in ALLOWED_OVERRIDE_KEYS]
        ctx.ui.info("\n".join(lines))
        return True
    action = parts[0]
    if action == "get" and len(parts) == 2:
        ctx.ui.info(f"{parts[1]} = {_format_value(manager.config_get(parts[1]))}")
    elif action == "set" and len(parts) >= 3:
        value = manager.config_set(parts[1], " ".join(parts[2:]))
        ctx.ui.info(f"{parts[1]} = {_format_value(value)} (session only)")
    else:
        ctx.ui.info("Usage: /config get <key> | /config set <key> <value>")
    return True


MCP_HELP = """\
/mcp list     select active MCP servers from the configuration
/mcp current  show active servers and their tool counts
/mcp help     show this help"""


@register_slash_command("/mcp", description="Manage MCP tool servers.", hint="/mcp list|current|help")
async def _handle_mcp(ctx: SlashContext, argument: str) -> bool:
    manager = ctx.manager
    sub = argument.split()[0] if argument.split() else "list"
    if sub == "list":
        candidates = manager.configured_servers
        if not candidates:
            ctx.ui.info("No MCP servers configured.")
            return True
        chosen = await ctx.select(candidates, manager.registry.server_names)
        if chosen is None:
            ctx.ui.info("Selection cancelled.")
            return True
        connected = await manager.select_servers(chosen)
        ctx.ui.info(f"Active MCP servers: {', '.join(connected) or 'none'}")
    elif sub == "current":
        ctx.ui.show_servers(await manager.server_status())
    elif sub == "help":
        ctx.ui.info(MCP_HELP)
    else:
        ctx.ui.error(f"Unknown /mcp subcommand: {sub}")
        ctx.ui.info(MCP_HELP)
    return True


async def handle_slash_command(line: str, ctx: SlashContext) -> bool:
    """Dispatch a slash command, returning True if handled."""

    trimmed = line.strip()
    if not trimmed.startswith("/"):
        return False

    parts = trimmed.split(maxsplit=1)
    command = resolve_command(parts[0])
    argument = parts[1].strip() if len(parts) > 1 else ""
    if command is None:
        return False

    entry = SLASH_HANDLERS[command]
    try:
        result = entry.handler(ctx, argument)
        if asyncio.iscoroutine(result):
            return bool(await result)
        return bool(result)
    except SystemExit:
        raise
    except PanePilotError as exc:
        ctx.ui.error(str(exc))
        return True
    except Exception as exc:  # noqa: BLE001
        logger.error("Slash command failed (%s): %s", command, exc)
        ctx.ui.error(f"{command} failed: {exc}")
        return True
