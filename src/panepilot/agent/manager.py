"""Agent state machine: owns chat history, status and the exec pane.

One `process_message` call is one decision cycle:

    squash check -> append message -> capture pane -> completion ->
    parse decision -> dispatch actions -> record reply and tool results

Watch mode repeats that cycle on a timer with an implicit instruction until
`stop_watch()` is called. Completion and tmux failures end the current cycle
only; the triggering message stays in history so the next input retries it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from panepilot import __version__
from panepilot.agent.completion import CompletionService
from panepilot.agent.context import ContextBudget
from panepilot.agent.decision import AgentDecision, parse_decision
from panepilot.agent.dispatcher import ActionDispatcher, ConfirmCallback, DispatchContext, DispatchReport
from panepilot.agent.history_types import ChatMessage, CommandExecHistory
from panepilot.agent.mcp_registry import ToolClientRegistry
from panepilot.agent.policy import ConfirmationPolicy
from panepilot.agent.prompts import PromptBook
from panepilot.agent.transcript import format_exec_history, is_prepared, parse_transcript
from panepilot.config import Config, ServerSpec, SessionOverrides
from panepilot.errors import CompletionServiceError, ConfigInvalid, PaneUnavailable, ToolRegistryError
from panepilot.log_utils import log_context, log_event
from panepilot.tmux import PaneDetails, TmuxClient, prepare_command

logger = logging.getLogger(__name__)

# (kind, text); kinds: assistant, info, warning, error
Notifier = Callable[[str, str], None]

PREPARE_SETTLE_S = 0.5


class AgentStatus(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    WAITING = "waiting"
    DONE = "done"


@dataclass
class CycleResult:
    decision: AgentDecision | None = None
    report: DispatchReport | None = None
    error: str | None = None
    squashed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PaneInfo:
    id: str
    current_command: str
    is_active: bool
    role: str
    prepared: bool
    busy: bool


@dataclass
class InfoReport:
    version: str
    model: str
    status: AgentStatus
    watch_mode: bool
    max_capture_lines: int
    wait_interval: int
    message_count: int
    context_tokens: int
    max_context_size: int
    panes: list[PaneInfo] = field(default_factory=list)
    active_servers: list[str] = field(default_factory=list)
    overrides: dict[str, Any] = field(default_factory=dict)

    @property
    def usage_percent(self) -> float:
        if self.max_context_size <= 0:
            return 0.0
        return 100.0 * self.context_tokens / self.max_context_size


async def _decline(kind: str, description: str) -> bool:
    return False


def _log_notifier(kind: str, text: str) -> None:
    level = {"error": logging.ERROR, "warning": logging.WARNING}.get(kind, logging.INFO)
    logger.log(level, "%s", text)


class Manager:
    def __init__(
        self,
        config: Config,
        *,
        tmux: TmuxClient | None = None,
        completion: CompletionService | None = None,
        registry: ToolClientRegistry | None = None,
        confirm: ConfirmCallback | None = None,
        notify: Notifier | None = None,
        chat_pane_id: str = "",
    ) -> None:
        self.config = config
        self.overrides = SessionOverrides(config)
        self.tmux = tmux or TmuxClient()
        self.completion = completion or CompletionService(config.llm)
        self.registry = registry or ToolClientRegistry(
            list_timeout=config.tool_list_timeout,
            call_timeout=config.tool_call_timeout,
        )
        self.policy = ConfirmationPolicy(config.whitelist_patterns, config.blacklist_patterns)
        self.prompts = PromptBook(config.prompts)
        self.confirm: ConfirmCallback = confirm or _decline
        self.notify: Notifier = notify or _log_notifier

        self.status = AgentStatus.IDLE
        self.watch_mode = False
        self.watch_description = ""
        self.history: list[ChatMessage] = []
        self.exec_history: list[CommandExecHistory] = []
        self.pending_command: str | None = None
        self.chat_pane_id = chat_pane_id
        self.exec_pane: PaneDetails | None = None

        self._cycle_lock = asyncio.Lock()
        self._watch_task: asyncio.Task[None] | None = None
        self._watch_stop: asyncio.Event | None = None

    # -- panes ---------------------------------------------------------------

    def init_panes(self) -> PaneDetails:
        """Locate the exec pane next to the chat pane, creating one if needed."""

        if not self.chat_pane_id:
            self.chat_pane_id = self.tmux.current_pane_id()
        for pane in self.tmux.list_panes(self.chat_pane_id):
            if pane.id != self.chat_pane_id:
                self.exec_pane = pane
                break
        else:
            pane_id = self.tmux.create_adjacent_pane(self.chat_pane_id)
            self.exec_pane = PaneDetails(id=pane_id)
            log_event(logger, "pane.exec.created", pane_id=pane_id)
        return self.exec_pane

    def refresh_exec_pane(self) -> PaneDetails:
        pane = self.exec_pane or self.init_panes()
        pane.refresh(self.tmux, int(self.overrides.get("max_capture_lines")))
        if is_prepared(pane.content):
            parsed = parse_transcript(pane.content)
            self.exec_history = parsed.records
            self.pending_command = parsed.pending
        else:
            self.pending_command = None
        return pane

    @property
    def exec_pane_prepared(self) -> bool:
        return self.exec_pane is not None and is_prepared(self.exec_pane.content)

    async def prepare_exec_pane(self) -> PaneDetails:
        """Install the marker prompt in the exec pane and start a fresh history."""

        pane = self.exec_pane or self.init_panes()
        for listed in self.tmux.list_panes(pane.id):
            if listed.id == pane.id:
                pane.current_command = listed.current_command
                pane.current_pid = listed.current_pid
        command = prepare_command(pane.shell or pane.current_command)
        if command is None:
            raise PaneUnavailable(f"cannot prepare pane {pane.id}: unsupported shell '{pane.current_command}'")
        self.tmux.send_command(pane.id, command)
        self.tmux.clear(pane.id)
        await asyncio.sleep(PREPARE_SETTLE_S)
        self.history = []
        self.refresh_exec_pane()
        log_event(logger, "pane.exec.prepared", pane_id=pane.id, shell=pane.shell)
        return pane

    def pane_context(self, pane: PaneDetails) -> str:
        parts = [f"Current exec pane content (pane {pane.id}):\n```\n{pane.content}\n```"]
        if self.exec_pane_prepared:
            history = format_exec_history(self.exec_history)
            if history:
                parts.append(f"Command history:\n{history}")
            if self.pending_command:
                parts.append(f"The exec pane is busy running: {self.pending_command}")
        return "\n\n".join(parts)

    # -- decision cycle ------------------------------------------------------

    def context_budget(self) -> ContextBudget:
        return ContextBudget(
            int(self.overrides.get("max_context_size")),
            bytes_per_token=self.config.bytes_per_token,
            squash_prompt=self.prompts.squash,
        )

    def _model_override(self) -> str | None:
        model = str(self.overrides.get("llm.model"))
        return model if model != self.config.llm.model else None

    async def _generate(self, messages: list[ChatMessage]) -> str:
        return await self.completion.generate(messages, model_override=self._model_override())

    async def squash(self) -> bool:
        """Summarize the current history into one message. Returns True if it changed."""

        if not self.history:
            return False
        squashed = await self.context_budget().squash(self.history, self._generate)
        changed = squashed != self.history
        self.history = squashed
        return changed

    async def _maybe_squash(self) -> bool:
        budget = self.context_budget()
        if not budget.needs_squash(self.history):
            return False
        log_event(
            logger,
            "context.squash.auto",
            tokens=budget.estimate(self.history),
            max_tokens=budget.max_tokens,
        )
        try:
            return await self.squash()
        except CompletionServiceError as exc:
            self.notify("warning", f"Could not squash history: {exc}")
            return False

    async def _build_request(self, pane: PaneDetails) -> list[ChatMessage]:
        catalog = await self.registry.tool_catalog()
        system = ChatMessage.system_note(
            self.prompts.system_prompt(prepared=self.exec_pane_prepared, catalog=catalog),
            source="system",
        )
        *earlier, current = self.history
        merged = ChatMessage.user(f"{self.pane_context(pane)}\n\n{current.content}", source=current.source)
        return [system, *earlier, merged]

    async def submit(self, text: str) -> CycleResult:
        """Handle user input: a new message ends watch mode first."""

        if self.watch_mode:
            self.stop_watch()
            self.notify("info", "Watch mode stopped.")
        return await self.process_message(text)

    async def process_message(self, text: str, *, source: str = "user") -> CycleResult:
        async with self._cycle_lock:
            with log_context(source=source):
                return await self._run_cycle(text, source)

    async def _run_cycle(self, text: str, source: str) -> CycleResult:
        self.status = AgentStatus.RUNNING
        result = CycleResult()
        result.squashed = await self._maybe_squash()
        message = ChatMessage.user(text, source=source)
        self.history.append(message)
        log_event(logger, "cycle.start", messages=len(self.history))
        try:
            pane = self.refresh_exec_pane()
            reply = await self._generate(await self._build_request(pane))
            decision = parse_decision(reply)
            report = await ActionDispatcher(self._dispatch_context(pane.id)).dispatch(decision)
        except (CompletionServiceError, PaneUnavailable, ConfigInvalid) as exc:
            self._abort_cycle(message)
            result.error = str(exc)
            log_event(logger, "cycle.failed", level=logging.WARNING, error=str(exc))
            self.notify("error", str(exc))
            return result
        except Exception:
            self._abort_cycle(message)
            raise

        result.decision = decision
        result.report = report
        self._record(reply, decision, report)
        if decision.request_accomplished:
            self.status = AgentStatus.DONE
        elif decision.waiting_for_user:
            self.status = AgentStatus.WAITING
        else:
            self.status = AgentStatus.IDLE
        log_event(
            logger,
            "cycle.complete",
            status=self.status.value,
            actions=len(decision.actions),
            refused=len(report.refused),
        )
        return result

    def _abort_cycle(self, message: ChatMessage) -> None:
        self.status = AgentStatus.IDLE
        # A user message stays for retry; the watch instruction is regenerated every tick.
        if message.source == "watch" and self.history and self.history[-1] is message:
            self.history.pop()

    def _dispatch_context(self, pane_id: str) -> DispatchContext:
        return DispatchContext(
            tmux=self.tmux,
            registry=self.registry,
            policy=self.policy,
            overrides=self.overrides,
            exec_pane_id=pane_id,
            request_confirmation=self.confirm,
        )

    def _record(self, reply: str, decision: AgentDecision, report: DispatchReport) -> None:
        notes = report.notable_lines() + decision.parse_errors
        content = reply.strip()
        if notes:
            content = f"{content}\n\n" + "\n".join(notes) if content else "\n".join(notes)
        if content:
            self.history.append(ChatMessage.assistant(content))
        for note in report.tool_notes:
            self.history.append(ChatMessage.system_note(note, source="tool"))

        if decision.message and not decision.no_comment:
            self.notify("assistant", decision.message)
        for line in notes:
            self.notify("warning", line)

    # -- watch mode ----------------------------------------------------------

    def start_watch(self, description: str) -> None:
        self.stop_watch()
        self.watch_description = description
        self.watch_mode = True
        stop = asyncio.Event()
        self._watch_stop = stop
        self._watch_task = asyncio.create_task(self._watch_loop(stop))
        log_event(logger, "watch.start", description=description)

    def stop_watch(self) -> None:
        """Signal the watch loop; it exits before its next tick."""

        if self._watch_stop is not None:
            self._watch_stop.set()
        self._watch_stop = None
        self._watch_task = None
        if self.watch_mode:
            log_event(logger, "watch.stop")
        self.watch_mode = False

    async def watch_tick(self) -> CycleResult:
        return await self.process_message(
            self.prompts.watch_instruction(self.watch_description),
            source="watch",
        )

    async def _watch_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.watch_tick()
            except Exception as exc:  # noqa: BLE001
                log_event(logger, "watch.tick.failed", level=logging.ERROR, error=repr(exc))
                self.notify("error", f"Watch mode stopped: {exc}")
                if self._watch_stop is stop:
                    self.stop_watch()
                return
            if stop.is_set():
                break
            if self.status is AgentStatus.WAITING:
                # Suspended until new user input; submit() ends watch mode.
                log_event(logger, "watch.paused.waiting")
                self.notify("info", "Watch mode paused: waiting for your reply.")
                await stop.wait()
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=int(self.overrides.get("wait_interval")))
            except TimeoutError:
                pass

    async def _cancel_watch(self) -> None:
        task = self._watch_task
        self.stop_watch()
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # -- session commands ----------------------------------------------------

    def clear_history(self) -> None:
        self.history = []
        self.exec_history = []
        log_event(logger, "history.cleared")

    def reset(self) -> None:
        self.stop_watch()
        self.clear_history()
        if self.exec_pane is not None:
            self.tmux.clear(self.exec_pane.id)
        self.status = AgentStatus.IDLE

    def config_get(self, key: str) -> Any:
        return self.overrides.get(key)

    def config_set(self, key: str, value: Any) -> Any:
        value = self.overrides.set(key, value)
        log_event(logger, "config.override", key=key)
        return value

    def info(self) -> InfoReport:
        panes: list[PaneInfo] = []
        if self.chat_pane_id:
            max_lines = int(self.overrides.get("max_capture_lines"))
            for pane in self.tmux.list_panes(self.chat_pane_id):
                is_exec = self.exec_pane is not None and pane.id == self.exec_pane.id
                role = "chat" if pane.id == self.chat_pane_id else ("exec" if is_exec else "other")
                prepared = busy = False
                if role != "chat":
                    pane.refresh(self.tmux, max_lines)
                    prepared = is_prepared(pane.content)
                    busy = prepared and parse_transcript(pane.content).busy
                panes.append(
                    PaneInfo(
                        id=pane.id,
                        current_command=pane.current_command,
                        is_active=pane.is_active,
                        role=role,
                        prepared=prepared,
                        busy=busy,
                    )
                )
        return InfoReport(
            version=__version__,
            model=str(self.overrides.get("llm.model")),
            status=self.status,
            watch_mode=self.watch_mode,
            max_capture_lines=int(self.overrides.get("max_capture_lines")),
            wait_interval=int(self.overrides.get("wait_interval")),
            message_count=len(self.history),
            context_tokens=self.context_budget().estimate(self.history),
            max_context_size=int(self.overrides.get("max_context_size")),
            panes=panes,
            active_servers=self.registry.server_names,
            overrides=self.overrides.overridden(),
        )

    # -- tool servers --------------------------------------------------------

    @property
    def configured_servers(self) -> list[str]:
        return [server.name for server in self.config.mcp.servers]

    async def select_servers(self, names: list[str]) -> list[str]:
        """Swap the active tool-server set; returns the names that connected."""

        specs: list[ServerSpec] = []
        for name in names:
            spec = self.config.find_server(name)
            if spec is None:
                self.notify("warning", f"Unknown MCP server: {name}")
                continue
            specs.append(spec)
        connected = await self.registry.replace(specs)
        missing = [spec.name for spec in specs if spec.name not in connected]
        if missing:
            self.notify("warning", f"Failed to connect: {', '.join(missing)}")
        return connected

    async def server_status(self) -> list[tuple[str, int | None]]:
        """Active servers with their tool counts (None when listing fails)."""

        status: list[tuple[str, int | None]] = []
        for name in self.registry.server_names:
            try:
                status.append((name, len(await self.registry.list_tools(name))))
            except ToolRegistryError as exc:
                log_event(logger, "mcp.status.unavailable", level=logging.WARNING, server=name, error=str(exc))
                status.append((name, None))
        return status

    async def startup(self) -> None:
        self.init_panes()
        if self.config.mcp.servers:
            await self.select_servers(self.configured_servers)

    async def shutdown(self) -> None:
        await self._cancel_watch()
        await self.registry.close()

