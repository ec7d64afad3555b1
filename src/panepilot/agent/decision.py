"""Model decision schema and the tag protocol used to parse replies.

The model answers in free text with embedded tags, for example::

    Listing the directory first.
    <ExecCommand>ls -la</ExecCommand>
    <McpToolCall>{"server_name": "docs", "tool_name": "search", "arguments": {"q": "tar"}}</McpToolCall>

Text outside tags becomes the decision message. Actions are kept as an ordered
list of variants so the dispatcher can iterate them exhaustively.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from panepilot.log_utils import log_event

logger = logging.getLogger(__name__)

SEND_KEYS_TAG = "TmuxSendKeys"
EXEC_TAG = "ExecCommand"
PASTE_TAG = "PasteMultilineContent"
TOOL_CALL_TAG = "McpToolCall"
FLAG_TAGS = {
    "RequestAccomplished": "request_accomplished",
    "ExecPaneSeemsBusy": "pane_seems_busy",
    "WaitingForUserResponse": "waiting_for_user",
    "NoComment": "no_comment",
}
_ACTION_TAGS = (SEND_KEYS_TAG, EXEC_TAG, PASTE_TAG, TOOL_CALL_TAG)
_ALL_TAGS = "|".join((*_ACTION_TAGS, *FLAG_TAGS))

TAG_RE = re.compile(rf"<(?P<tag>{_ALL_TAGS})>(?P<body>.*?)</(?P=tag)>", re.DOTALL)
EMPTY_FLAG_RE = re.compile(rf"<(?P<tag>{'|'.join(FLAG_TAGS)})\s*/>")
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")
_TRUE_VALUES = {"1", "true", "yes", "on"}


class ToolCall(BaseModel):
    """A tool invocation addressed to a configured server by name."""

    model_config = ConfigDict(frozen=True)

    server_name: str = Field(min_length=1)
    tool_name: str = Field(min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallAction:
    call: ToolCall

    def describe(self) -> str:
        return f"{self.call.server_name}.{self.call.tool_name}"


@dataclass(frozen=True)
class SendKeysAction:
    keys: str

    def describe(self) -> str:
        return self.keys


@dataclass(frozen=True)
class ExecCommandAction:
    command: str

    def describe(self) -> str:
        return self.command


@dataclass(frozen=True)
class PasteAction:
    content: str

    def describe(self) -> str:
        first = self.content.splitlines()[0] if self.content else ""
        extra = self.content.count("\n")
        return f"{first} (+{extra} lines)" if extra else first


Action = Union[ToolCallAction, SendKeysAction, ExecCommandAction, PasteAction]

# Fixed dispatch order: tool calls never touch the pane, so they go first.
ACTION_ORDER: dict[type, int] = {
    ToolCallAction: 0,
    SendKeysAction: 1,
    ExecCommandAction: 2,
    PasteAction: 3,
}
PANE_ACTIONS = (SendKeysAction, ExecCommandAction, PasteAction)


@dataclass
class AgentDecision:
    message: str = ""
    actions: list[Action] = field(default_factory=list)
    request_accomplished: bool = False
    pane_seems_busy: bool = False
    waiting_for_user: bool = False
    no_comment: bool = False
    parse_errors: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.actions = sorted(self.actions, key=lambda action: ACTION_ORDER[type(action)])

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [a.call for a in self.actions if isinstance(a, ToolCallAction)]

    @property
    def send_keys(self) -> list[str]:
        return [a.keys for a in self.actions if isinstance(a, SendKeysAction)]

    @property
    def exec_commands(self) -> list[str]:
        return [a.command for a in self.actions if isinstance(a, ExecCommandAction)]

    @property
    def paste_content(self) -> str:
        return "\n".join(a.content for a in self.actions if isinstance(a, PasteAction))

    @property
    def has_pane_actions(self) -> bool:
        return any(isinstance(a, PANE_ACTIONS) for a in self.actions)


def _parse_tool_call(body: str) -> ToolCall:
    payload = _FENCE_RE.sub("", body.strip())
    return ToolCall.model_validate_json(payload)


def _clean_message(text: str) -> str:
    text = EMPTY_FLAG_RE.sub("", TAG_RE.sub("", text))
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def parse_decision(text: str) -> AgentDecision:
    """Parse a model reply into an AgentDecision; never raises."""

    decision = AgentDecision(message=_clean_message(text or ""))
    actions: list[Action] = []
    for match in TAG_RE.finditer(text or ""):
        tag = match.group("tag")
        body = match.group("body")
        if tag in FLAG_TAGS:
            setattr(decision, FLAG_TAGS[tag], body.strip().lower() in _TRUE_VALUES)
        elif tag == SEND_KEYS_TAG:
            if body.strip():
                actions.append(SendKeysAction(keys=body.strip()))
        elif tag == EXEC_TAG:
            if body.strip():
                actions.append(ExecCommandAction(command=body.strip()))
        elif tag == PASTE_TAG:
            if body.strip():
                actions.append(PasteAction(content=body.strip("\n")))
        elif tag == TOOL_CALL_TAG:
            try:
                actions.append(ToolCallAction(call=_parse_tool_call(body)))
            except ValidationError as exc:
                error = f"invalid tool call: {exc.errors()[0].get('msg', 'validation error')}"
                decision.parse_errors.append(error)
                log_event(logger, "decision.tool_call.invalid", level=logging.WARNING, body=body[:200])
    for match in EMPTY_FLAG_RE.finditer(text or ""):
        setattr(decision, FLAG_TAGS[match.group("tag")], True)

    decision.actions = sorted(actions, key=lambda action: ACTION_ORDER[type(action)])
    return decision
