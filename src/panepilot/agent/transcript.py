"""Recover executed-command history from a prepared pane's captured text.

A prepared shell prints `user@host:cwd[HH:MM][status]» ` before every command.
The status shown in a prompt belongs to the command *preceding* it, so a block
is complete only once the next prompt has been printed. The trailing block is
always pending: either the shell is idle at an empty prompt, or a command is
still running.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from panepilot.agent.history_types import CommandExecHistory

PROMPT_RE = re.compile(
    r"^(?P<user>[^@\s]+)@(?P<host>[^:\s]+):(?P<cwd>.*?)"
    r"\[(?P<time>\d{1,2}:\d{2}(?::\d{2})?)\]\[(?P<status>\d+)\]» ?(?P<command>.*)$"
)


@dataclass(frozen=True)
class PromptLine:
    index: int
    status: int
    command: str
    cwd: str


@dataclass
class TranscriptParse:
    records: list[CommandExecHistory] = field(default_factory=list)
    pending: str | None = None
    """Command text of the unterminated trailing block (None when idle)."""

    @property
    def busy(self) -> bool:
        return bool(self.pending)


def match_prompt(line: str) -> re.Match[str] | None:
    return PROMPT_RE.match(line.rstrip())


def is_prepared(text: str) -> bool:
    """Return True when the capture shows at least one marker prompt."""

    return any(match_prompt(line) is not None for line in text.splitlines())


def _prompt_lines(lines: list[str]) -> list[PromptLine]:
    prompts: list[PromptLine] = []
    for idx, line in enumerate(lines):
        match = match_prompt(line)
        if match is None:
            continue
        prompts.append(
            PromptLine(
                index=idx,
                status=int(match.group("status")),
                command=match.group("command").strip(),
                cwd=match.group("cwd"),
            )
        )
    return prompts


def parse_transcript(text: str) -> TranscriptParse:
    """Split captured pane text into completed command records.

    Text before the first prompt is treated as truncated scrollback and
    ignored. Empty commands (bare Enter) yield no record.
    """

    lines = text.splitlines()
    prompts = _prompt_lines(lines)
    result = TranscriptParse()
    if not prompts:
        return result

    for current, following in zip(prompts, prompts[1:]):
        if not current.command:
            continue
        output = "\n".join(lines[current.index + 1 : following.index]).strip("\n")
        result.records.append(
            CommandExecHistory(command=current.command, output=output, exit_code=following.status)
        )

    tail = prompts[-1]
    result.pending = tail.command or None
    return result


def format_exec_history(records: list[CommandExecHistory], *, output_limit: int = 2000) -> str:
    """Render parsed records for inclusion in the model context."""

    blocks: list[str] = []
    for record in records:
        output = record.output
        if len(output) > output_limit:
            output = f"[... truncated]\n{output[-output_limit:]}"
        parts = [f"$ {record.command}"]
        if output:
            parts.append(output)
        parts.append(f"[exit code: {record.exit_code}]")
        blocks.append("\n".join(parts))
    return "\n\n".join(blocks)
