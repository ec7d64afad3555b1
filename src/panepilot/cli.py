"""Command-line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import sys

from panepilot import __version__
from panepilot.agent.manager import Manager
from panepilot.client.display import ConsoleUI
from panepilot.client.repl import run_session
from panepilot.client.select import confirm_action
from panepilot.client.slash import SlashContext
from panepilot.config import load_config
from panepilot.errors import PanePilotError
from panepilot.log_utils import build_log_config, configure_logging, log_event, set_debug
from panepilot.tmux import TmuxClient

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="panepilot",
        description="AI assistant that watches and drives a tmux pane.",
    )
    parser.add_argument("task", nargs="*", help="Initial task to send to the agent")
    parser.add_argument("--config", type=str, help="Path to config.json")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def bootstrap_session(tmux: TmuxClient, argv: list[str]) -> int:
    """Start a tmux session running this program in its first pane, then attach."""

    pane_id = tmux.create_session()
    command = shlex.join(["panepilot", *argv])
    tmux.send_command(pane_id, command)
    log_event(logger, "cli.bootstrap", pane_id=pane_id)
    tmux.attach(pane_id)
    return 0


async def run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    if args.debug or config.debug:
        set_debug(True)
    ui = ConsoleUI()
    manager = Manager(config, confirm=confirm_action, notify=ui.notify)
    ctx = SlashContext(manager=manager, ui=ui)
    return await run_session(manager, ctx, " ".join(args.task))


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)
    configure_logging(build_log_config(debug=args.debug))

    tmux = TmuxClient()
    try:
        if not tmux.in_session():
            return bootstrap_session(tmux, argv)
        return asyncio.run(run(args))
    except PanePilotError as exc:
        logger.error("Fatal: %s", exc)
        print(f"panepilot: {exc}", file=sys.stderr)
        return 1


def main_entry() -> None:
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        raise SystemExit(130)
