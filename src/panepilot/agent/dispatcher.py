"""Apply a parsed decision to the exec pane and the tool registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from panepilot.agent.decision import (
    Action,
    AgentDecision,
    ExecCommandAction,
    PasteAction,
    SendKeysAction,
    ToolCallAction,
)
from panepilot.agent.mcp_registry import ToolClientRegistry
from panepilot.agent.policy import ConfirmationPolicy
from panepilot.config import SessionOverrides
from panepilot.errors import ToolRegistryError
from panepilot.log_utils import log_context, log_event
from panepilot.tmux import TmuxClient

logger = logging.getLogger(__name__)

# (action kind, human-readable description) -> approved
ConfirmCallback = Callable[[str, str], Awaitable[bool]]

CONFIRM_KEYS = {
    SendKeysAction: ("send_keys", "send_keys_confirm"),
    ExecCommandAction: ("exec", "exec_confirm"),
    PasteAction: ("paste", "paste_multiline_confirm"),
}
TOOL_RESULT_LIMIT = 8000


async def _approve_all(kind: str, description: str) -> bool:
    return True


@dataclass
class DispatchContext:
    tmux: TmuxClient
    registry: ToolClientRegistry
    policy: ConfirmationPolicy
    overrides: SessionOverrides
    exec_pane_id: str
    request_confirmation: ConfirmCallback = _approve_all


@dataclass(frozen=True)
class DispatchOutcome:
    kind: str
    target: str
    status: str
    """One of: done, refused, declined, skipped, failed."""
    detail: str = ""

    def describe(self) -> str:
        label = {
            "done": "Done",
            "refused": "Refused",
            "declined": "Declined",
            "skipped": "Skipped",
            "failed": "Failed",
        }[self.status]
        suffix = f" ({self.detail})" if self.detail and self.status != "done" else ""
        return f"{label} {self.kind}: {self.target}{suffix}"


@dataclass
class DispatchReport:
    outcomes: list[DispatchOutcome] = field(default_factory=list)
    tool_notes: list[str] = field(default_factory=list)

    @property
    def refused(self) -> list[DispatchOutcome]:
        return [o for o in self.outcomes if o.status == "refused"]

    def notable_lines(self) -> list[str]:
        """Lines the user must see: everything that did not simply succeed."""

        return [o.describe() for o in self.outcomes if o.status != "done"]


def _truncate(text: str, limit: int = TOOL_RESULT_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "\n... [truncated]"


class ActionDispatcher:
    """Runs decision actions in order; one failing item never stops the rest.

    While the decision reports the exec pane as busy only tool calls run.
    `PaneUnavailable` from tmux propagates and aborts the cycle.
    """

    def __init__(self, ctx: DispatchContext) -> None:
        self.ctx = ctx

    async def dispatch(self, decision: AgentDecision) -> DispatchReport:
        report = DispatchReport()
        for action in decision.actions:
            if isinstance(action, ToolCallAction):
                await self._call_tool(action, report)
            elif decision.pane_seems_busy:
                kind, _ = CONFIRM_KEYS[type(action)]
                report.outcomes.append(DispatchOutcome(kind, action.describe(), "skipped", "exec pane is busy"))
                log_event(logger, "dispatch.skipped.busy", kind=kind)
            else:
                await self._pane_action(action, report)
        return report

    async def _call_tool(self, action: ToolCallAction, report: DispatchReport) -> None:
        call = action.call
        target = action.describe()
        try:
            result = await self.ctx.registry.call_tool(call.server_name, call.tool_name, call.arguments)
        except ToolRegistryError as exc:
            report.outcomes.append(DispatchOutcome("tool", target, "failed", str(exc)))
            report.tool_notes.append(f"Tool call {target} failed: {exc}")
            return
        report.outcomes.append(DispatchOutcome("tool", target, "done"))
        report.tool_notes.append(f"Tool call {target} returned:\n{_truncate(result)}")

    async def _pane_action(self, action: Action, report: DispatchReport) -> None:
        kind, confirm_key = CONFIRM_KEYS[type(action)]
        text = self._policy_text(action)
        target = action.describe()
        verdict = self.ctx.policy.evaluate(text, confirm=bool(self.ctx.overrides.get(confirm_key)))
        with log_context(kind=kind):
            if verdict.refused:
                log_event(logger, "dispatch.refused", level=logging.WARNING, reason=verdict.reason)
                report.outcomes.append(DispatchOutcome(kind, target, "refused", verdict.reason))
                return
            if verdict.needs_confirmation and not await self.ctx.request_confirmation(kind, text):
                log_event(logger, "dispatch.declined")
                report.outcomes.append(DispatchOutcome(kind, target, "declined", "not confirmed"))
                return
            self._apply(action)
            log_event(logger, "dispatch.applied", verdict=verdict.verdict.value)
        report.outcomes.append(DispatchOutcome(kind, target, "done"))

    @staticmethod
    def _policy_text(action: Action) -> str:
        if isinstance(action, SendKeysAction):
            return action.keys
        if isinstance(action, ExecCommandAction):
            return action.command
        if isinstance(action, PasteAction):
            return action.content
        raise TypeError(f"not a pane action: {action!r}")

    def _apply(self, action: Action) -> None:
        tmux = self.ctx.tmux
        pane = self.ctx.exec_pane_id
        if isinstance(action, SendKeysAction):
            tmux.send_keys(pane, action.keys)
        elif isinstance(action, ExecCommandAction):
            tmux.send_command(pane, action.command)
        elif isinstance(action, PasteAction):
            tmux.paste(pane, action.content)
