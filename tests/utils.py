from __future__ import annotations

from typing import Any, Sequence

from panepilot.agent.history_types import ChatMessage
from panepilot.agent.manager import Manager
from panepilot.agent.mcp_registry import ToolClientRegistry, ToolInfo
from panepilot.config import Config, ServerSpec
from panepilot.errors import CompletionServiceError, PaneUnavailable, ToolError
from panepilot.tmux import PaneDetails

CHAT_PANE = "%0"
EXEC_PANE = "%1"


class FakeTmux:
    """In-memory stand-in for TmuxClient that records every write."""

    def __init__(self, contents: dict[str, str] | None = None, *, fail_capture: bool = False) -> None:
        self.contents = contents if contents is not None else {EXEC_PANE: ""}
        self.fail_capture = fail_capture
        self.calls: list[tuple[Any, ...]] = []

    def in_session(self) -> bool:
        return True

    def current_pane_id(self) -> str:
        return CHAT_PANE

    def list_panes(self, pane_id: str) -> list[PaneDetails]:
        panes = [PaneDetails(id=CHAT_PANE, is_active=True, current_command="panepilot")]
        panes += [PaneDetails(id=pid, current_command="bash") for pid in self.contents]
        return panes

    def create_adjacent_pane(self, pane_id: str) -> str:
        self.calls.append(("split", pane_id))
        self.contents["%9"] = ""
        return "%9"

    def capture(self, pane_id: str, max_lines: int) -> str:
        if self.fail_capture:
            raise PaneUnavailable(f"tmux capture-pane failed for {pane_id}")
        return self.contents.get(pane_id, "")

    def send_keys(self, pane_id: str, text: str, literal: bool = False) -> None:
        self.calls.append(("send_keys", pane_id, text, literal))

    def send_command(self, pane_id: str, command: str) -> None:
        self.calls.append(("send_command", pane_id, command))

    def paste(self, pane_id: str, content: str) -> None:
        self.calls.append(("paste", pane_id, content))

    def clear(self, pane_id: str) -> None:
        self.calls.append(("clear", pane_id))

    @property
    def pane_writes(self) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] in {"send_keys", "send_command", "paste"}]


class FakeCompletion:
    """Returns scripted replies in order and records each request."""

    def __init__(self, replies: Sequence[str | Exception] = ()) -> None:
        self.replies = list(replies)
        self.requests: list[list[ChatMessage]] = []
        self.overrides: list[str | None] = []

    async def generate(self, messages: Sequence[ChatMessage], model_override: str | None = None) -> str:
        self.requests.append(list(messages))
        self.overrides.append(model_override)
        if not self.replies:
            raise CompletionServiceError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeConnection:
    def __init__(self, name: str, tools: dict[str, str] | None = None, *, close_error: bool = False) -> None:
        self.name = name
        self.tools = tools if tools is not None else {"echo": "ok"}
        self.close_error = close_error
        self.closed = False
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def list_tools(self) -> list[ToolInfo]:
        return [ToolInfo(name=name, description=f"{name} tool") for name in self.tools]

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> str:
        self.calls.append((tool_name, arguments))
        if tool_name not in self.tools:
            raise ToolError(self.name, f"tool execution error: unknown tool {tool_name}")
        return self.tools[tool_name]

    async def close(self) -> None:
        self.closed = True
        if self.close_error:
            raise RuntimeError(f"{self.name} refused to close")


def make_connector(connections: dict[str, FakeConnection], failing: Sequence[str] = ()):
    attempts: dict[str, int] = {}

    async def _connect(spec: ServerSpec) -> FakeConnection:
        attempts[spec.name] = attempts.get(spec.name, 0) + 1
        if spec.name in failing:
            raise ConnectionError(f"cannot reach {spec.name}")
        return connections[spec.name]

    _connect.attempts = attempts  # type: ignore[attr-defined]
    return _connect


def make_manager(
    *,
    replies: Sequence[str | Exception] = (),
    config: Config | None = None,
    tmux: FakeTmux | None = None,
    registry: ToolClientRegistry | None = None,
    confirm=None,
) -> tuple[Manager, FakeTmux, FakeCompletion, list[tuple[str, str]]]:
    config = config or Config(exec_confirm=False, send_keys_confirm=False, paste_multiline_confirm=False)
    tmux = tmux or FakeTmux()
    completion = FakeCompletion(replies)
    notes: list[tuple[str, str]] = []
    manager = Manager(
        config,
        tmux=tmux,  # type: ignore[arg-type]
        completion=completion,  # type: ignore[arg-type]
        registry=registry or ToolClientRegistry(connector=make_connector({})),
        confirm=confirm,
        notify=lambda kind, text: notes.append((kind, text)),
        chat_pane_id=CHAT_PANE,
    )
    return manager, tmux, completion, notes
