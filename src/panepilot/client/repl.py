"""Interactive chat-pane REPL."""

from __future__ import annotations

import logging

from prompt_toolkit import PromptSession  # type: ignore
from prompt_toolkit.formatted_text import ANSI  # type: ignore
from prompt_toolkit.patch_stdout import patch_stdout  # type: ignore
from prompt_toolkit.shortcuts import print_formatted_text  # type: ignore
from prompt_toolkit.styles import Style  # type: ignore

from panepilot.agent.manager import Manager
from panepilot.client.slash import SlashContext, handle_slash_command
from panepilot.client.status_box import PROMPT_STYLE, build_prompt, build_welcome_banner

logger = logging.getLogger(__name__)


async def _submit(ctx: SlashContext, text: str) -> None:
    try:
        await ctx.manager.submit(text)
    except Exception as exc:  # noqa: BLE001
        logger.error("Prompt failed: %s", exc)
        ctx.ui.error(f"Request failed: {exc}")


async def interactive_loop(ctx: SlashContext, initial_task: str = "") -> None:
    """Read chat input until exit; slash commands run locally, text goes to the agent."""

    manager = ctx.manager
    session: PromptSession = PromptSession(style=Style.from_dict(PROMPT_STYLE))
    print_formatted_text(ANSI(build_welcome_banner(manager)))

    if initial_task:
        await _submit(ctx, initial_task)

    while True:
        try:
            with patch_stdout():
                line = await session.prompt_async(lambda: build_prompt(manager), refresh_interval=1.0)
        except (EOFError, KeyboardInterrupt):
            break

        line = line.strip()
        if not line:
            continue

        if line.startswith("/"):
            handled = await handle_slash_command(line, ctx)
            if not handled:
                ctx.ui.error(f"Unknown command: {line.split()[0]} (try /help)")
            continue

        await _submit(ctx, line)


async def run_session(manager: Manager, ctx: SlashContext, initial_task: str = "") -> int:
    try:
        await manager.startup()
        await interactive_loop(ctx, initial_task)
        return 0
    except SystemExit as exc:
        return int(exc.code or 0)
    finally:
        await manager.shutdown()
        logger.info("Session closed")
