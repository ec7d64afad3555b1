"""Thin synchronous wrapper over the tmux command line.

Every call either succeeds or raises PaneUnavailable; tmux writes are atomic
from our point of view.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import Sequence

from panepilot.errors import PaneUnavailable
from panepilot.log_utils import log_event

logger = logging.getLogger(__name__)

ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
SHELLS = ("bash", "zsh", "fish", "sh")
_PANE_FORMAT = "#{pane_id}\t#{pane_active}\t#{pane_pid}\t#{pane_current_command}\t#{pane_width}\t#{pane_height}"

# Prompt set-up per shell. The marker prompt renders as
# `user@host:cwd[HH:MM][exitcode]» ` which the transcript parser recognises.
PREPARE_COMMANDS = {
    "bash": r"export PS1='\u@\h:\w[\A][$?]» '",
    "sh": r"export PS1='\u@\h:\w[\A][$?]» '",
    "zsh": "export PROMPT='%n@%m:%~[%T][%?]» '",
    "fish": (
        "function fish_prompt; set -l s $status; "
        "printf '%s@%s:%s[%s][%d]» ' $USER (hostname -s) (prompt_pwd) (date +%H:%M) $s; end"
    ),
}


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def prepare_command(shell: str) -> str | None:
    """Return the prompt set-up command for a shell, or None if unsupported."""

    return PREPARE_COMMANDS.get(os.path.basename(shell or "").lstrip("-"))


@dataclass
class PaneDetails:
    id: str
    is_active: bool = False
    current_pid: int = 0
    current_command: str = ""
    width: int = 0
    height: int = 0
    content: str = ""

    @property
    def shell(self) -> str:
        command = os.path.basename(self.current_command).lstrip("-")
        return command if command in SHELLS else ""

    def refresh(self, tmux: "TmuxClient", max_lines: int) -> "PaneDetails":
        self.content = tmux.capture(self.id, max_lines)
        return self


class TmuxClient:
    """Multiplexer control surface used by the agent manager."""

    def __init__(self, binary: str = "tmux") -> None:
        self.binary = binary

    def _run(self, args: Sequence[str], *, input_text: str | None = None) -> str:
        cmd = [self.binary, *args]
        try:
            process = subprocess.run(cmd, input=input_text, text=True, capture_output=True)
        except OSError as exc:
            raise PaneUnavailable(f"failed to run {self.binary}: {exc}") from exc
        if process.returncode != 0:
            log_event(
                logger,
                "tmux.command.failed",
                level=logging.WARNING,
                args=list(args),
                returncode=process.returncode,
                stderr=process.stderr.strip(),
            )
            raise PaneUnavailable(f"tmux {args[0]} failed: {process.stderr.strip() or process.returncode}")
        return process.stdout

    def in_session(self) -> bool:
        return bool(os.getenv("TMUX"))

    def current_pane_id(self) -> str:
        pane = os.getenv("TMUX_PANE")
        if pane:
            return pane
        if not self.in_session():
            raise PaneUnavailable("not running inside a tmux session")
        return self._run(["display-message", "-p", "#{pane_id}"]).strip()

    def create_session(self) -> str:
        return self._run(["new-session", "-d", "-P", "-F", "#{pane_id}"]).strip()

    def create_adjacent_pane(self, pane_id: str) -> str:
        return self._run(["split-window", "-d", "-h", "-t", pane_id, "-P", "-F", "#{pane_id}"]).strip()

    def select_pane(self, pane_id: str) -> None:
        self._run(["select-pane", "-t", pane_id])

    def send_keys(self, pane_id: str, text: str, literal: bool = False) -> None:
        """Send text to a pane; non-literal text is interpreted as key names (C-c, Enter)."""

        args = ["send-keys", "-t", pane_id]
        if literal:
            args.append("-l")
        args.append(text)
        self._run(args)

    def send_command(self, pane_id: str, command: str) -> None:
        self.send_keys(pane_id, command, literal=True)
        self.send_keys(pane_id, "Enter")

    def paste(self, pane_id: str, content: str) -> None:
        self._run(["load-buffer", "-b", "panepilot", "-"], input_text=content)
        self._run(["paste-buffer", "-d", "-b", "panepilot", "-t", pane_id])

    def capture(self, pane_id: str, max_lines: int) -> str:
        out = self._run(["capture-pane", "-p", "-J", "-t", pane_id, "-S", f"-{max(0, max_lines)}"])
        return strip_ansi(out).rstrip("\n")

    def clear(self, pane_id: str) -> None:
        self.send_keys(pane_id, "C-l")
        self._run(["clear-history", "-t", pane_id])

    def attach(self, pane_id: str) -> None:
        try:
            result = subprocess.run([self.binary, "attach-session", "-t", pane_id])
        except OSError as exc:
            raise PaneUnavailable(f"failed to run {self.binary}: {exc}") from exc
        if result.returncode != 0:
            raise PaneUnavailable(f"tmux attach-session failed: {result.returncode}")

    def list_panes(self, pane_id: str) -> list[PaneDetails]:
        """List panes in the window containing `pane_id`."""

        panes: list[PaneDetails] = []
        for line in self._run(["list-panes", "-t", pane_id, "-F", _PANE_FORMAT]).splitlines():
            parts = line.split("\t")
            if len(parts) != 6:
                continue
            pid, width, height = (int(p) if p.isdigit() else 0 for p in (parts[2], parts[4], parts[5]))
            panes.append(
                PaneDetails(
                    id=parts[0],
                    is_active=parts[1] == "1",
                    current_pid=pid,
                    current_command=parts[3],
                    width=width,
                    height=height,
                )
            )
        return panes
