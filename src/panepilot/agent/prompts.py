"""Prompt templates for the pane agent.

Every template can be replaced through the `prompts` section of the config; an
empty value keeps the built-in text below.
"""

from __future__ import annotations

import json
from typing import Mapping, Sequence

from panepilot.agent.mcp_registry import ToolInfo
from panepilot.config import PromptSettings

BASE_SYSTEM_PROMPT = """\
You are PanePilot, an assistant living in a tmux window. You can see the
content of the user's exec pane and act on it. Your replies are shown in the
chat pane; keep them short and concrete.

To act, embed tags in your reply. Text outside tags is shown to the user.

<TmuxSendKeys>keys</TmuxSendKeys>
    Send one tmux key name (C-c, Escape, Enter) or a literal string of
    keystrokes for interactive programs (vim, less, REPLs). One tag per key.
<ExecCommand>command</ExecCommand>
    Run one shell command in the exec pane. Use one tag per command.
<PasteMultilineContent>text</PasteMultilineContent>
    Paste multi-line text into the exec pane (heredocs, editor buffers).
<McpToolCall>{"server_name": "...", "tool_name": "...", "arguments": {...}}</McpToolCall>
    Call a tool on a connected tool server. Results are added to the
    conversation before your next turn.

Status flags, body 1 or true:
<RequestAccomplished>1</RequestAccomplished>  the user's request is complete.
<ExecPaneSeemsBusy>1</ExecPaneSeemsBusy>  a command is still running; do not act on the pane now.
<WaitingForUserResponse>1</WaitingForUserResponse>  you asked the user a question.
<NoComment>1</NoComment>  nothing worth saying (watch mode).

Never run destructive commands unless the user explicitly asked for them.
"""

CHAT_ASSISTANT_PROMPT = """\
The exec pane is a plain terminal. You only see its visible content, so prefer
commands whose output is short, and check the pane before assuming a command
finished.
"""

CHAT_ASSISTANT_PREPARED_PROMPT = """\
The exec pane has been prepared: each shell prompt has the form
`user@host:cwd[HH:MM][exit_code]» `. The exit code shown in a prompt belongs to
the previous command. Parsed command history is provided with each message.
"""

WATCH_PROMPT = (
    "1. Find out if there is new content in the pane based on chat history.\n"
    "2. Comment only considering the new content in this pane output.\n\n"
    "Watch for: "
)

SQUASH_PROMPT = """\
Summarize the conversation below so that another assistant can continue it.
Keep the user's goals and preferences, commands already run and their
outcomes, facts learned about the environment, and the remaining steps.
Reply with the summary text only.
"""

SUMMARY_PREFIX = "Summary of the conversation so far:"


class PromptBook:
    """Resolved prompt templates (built-ins shadowed by config values)."""

    def __init__(self, settings: PromptSettings | None = None) -> None:
        settings = settings or PromptSettings()
        self.base_system = settings.base_system or BASE_SYSTEM_PROMPT
        self.chat_assistant = settings.chat_assistant or CHAT_ASSISTANT_PROMPT
        self.chat_assistant_prepared = settings.chat_assistant_prepared or CHAT_ASSISTANT_PREPARED_PROMPT
        self.watch = settings.watch or WATCH_PROMPT
        self.squash = settings.squash or SQUASH_PROMPT

    def system_prompt(
        self,
        *,
        prepared: bool,
        catalog: Mapping[str, Sequence[ToolInfo]] | None = None,
    ) -> str:
        parts = [self.base_system.strip()]
        parts.append((self.chat_assistant_prepared if prepared else self.chat_assistant).strip())
        tools = render_tool_catalog(catalog or {})
        if tools:
            parts.append(tools)
        return "\n\n".join(parts)

    def watch_instruction(self, description: str) -> str:
        return f"{self.watch}{description}"


def render_tool_catalog(catalog: Mapping[str, Sequence[ToolInfo]]) -> str:
    if not catalog:
        return ""
    lines = ["Available tool servers:"]
    for server, tools in catalog.items():
        lines.append(f"- {server}")
        for tool in tools:
            desc = f": {tool.description.strip()}" if tool.description.strip() else ""
            lines.append(f"  - {tool.name}{desc}")
            if tool.input_schema:
                schema = json.dumps(tool.input_schema.get("properties", {}), ensure_ascii=False)
                lines.append(f"    arguments: {schema}")
    return "\n".join(lines)
