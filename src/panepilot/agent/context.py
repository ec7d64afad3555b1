"""Token budget tracking and history squashing."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Sequence

from panepilot.agent.history_types import ChatMessage
from panepilot.agent.prompts import SQUASH_PROMPT, SUMMARY_PREFIX
from panepilot.log_utils import log_event

logger = logging.getLogger(__name__)

MESSAGE_OVERHEAD_TOKENS = 4
SQUASH_INPUT_CHARS = 4000

Generate = Callable[[Sequence[ChatMessage]], Awaitable[str]]


def approx_text_tokens(text: str, bytes_per_token: int = 4) -> int:
    """Estimate tokens from UTF-8 byte length.

    This is an approximation, not a tokenizer: real counts vary by model and
    language. It is deterministic and monotonic in text length.
    """

    if not text:
        return 0
    byte_len = len(text.encode("utf-8"))
    return max(1, (byte_len + bytes_per_token - 1) // bytes_per_token)


def estimate_history_tokens(history: Sequence[ChatMessage], bytes_per_token: int = 4) -> int:
    """Approximate token usage of a history (content plus a small per-message overhead)."""

    return sum(approx_text_tokens(msg.content, bytes_per_token) + MESSAGE_OVERHEAD_TOKENS for msg in history)


def summary_rejected(summary: str) -> bool:
    """Detect replies that cannot stand in for the history."""

    if not summary.strip():
        return True
    lowered = summary.lower()
    return any(phrase in lowered for phrase in ("no conversation to summarize", "no earlier conversation"))


def render_for_summary(history: Sequence[ChatMessage]) -> str:
    lines: list[str] = []
    for msg in history:
        text = msg.content.strip()
        if not text:
            continue
        if len(text) > SQUASH_INPUT_CHARS:
            text = text[:SQUASH_INPUT_CHARS].rstrip() + "... [truncated]"
        lines.append(f"[{msg.source}] {text}")
    return "\n\n".join(lines)


def _fallback_summary(history: Sequence[ChatMessage]) -> str:
    last_user = next((m.content for m in reversed(history) if m.from_user), "")
    last_reply = next((m.content for m in reversed(history) if not m.from_user), "")
    parts = []
    if last_user:
        parts.append(f"Latest user request: {last_user[:300]}")
    if last_reply:
        parts.append(f"Latest assistant state: {last_reply[:300]}")
    return "\n".join(parts) or "(no summary available)"


class ContextBudget:
    """Keeps a history under `max_tokens` by summarizing it into one message."""

    def __init__(self, max_tokens: int, *, bytes_per_token: int = 4, squash_prompt: str = SQUASH_PROMPT) -> None:
        self.max_tokens = max_tokens
        self.bytes_per_token = bytes_per_token
        self.squash_prompt = squash_prompt

    def estimate(self, history: Sequence[ChatMessage]) -> int:
        return estimate_history_tokens(history, self.bytes_per_token)

    def usage_percent(self, history: Sequence[ChatMessage]) -> float:
        if self.max_tokens <= 0:
            return 0.0
        return 100.0 * self.estimate(history) / self.max_tokens

    def needs_squash(self, history: Sequence[ChatMessage]) -> bool:
        return self.estimate(history) > self.max_tokens

    async def squash(self, history: Sequence[ChatMessage], generate: Generate) -> list[ChatMessage]:
        """Replace `history` with a single summary message.

        A trailing pending user turn is kept verbatim after the summary. A history
        with at most one message besides that turn is returned unchanged, so
        squashing twice is a no-op. Errors from `generate` propagate and the caller
        keeps its original history.
        """

        if not history:
            return []
        pending: ChatMessage | None = None
        to_summarize = list(history)
        if to_summarize[-1].is_pending_user_turn:
            pending = to_summarize.pop()
        if len(to_summarize) <= 1:
            return list(history)

        before = self.estimate(history)
        request = [
            ChatMessage.system_note(self.squash_prompt, source="system"),
            ChatMessage.user(render_for_summary(to_summarize)),
        ]
        summary = (await generate(request)).strip()
        if summary_rejected(summary):
            log_event(logger, "context.squash.summary_rejected", level=logging.WARNING)
            summary = _fallback_summary(to_summarize)

        squashed = [ChatMessage.system_note(f"{SUMMARY_PREFIX}\n{summary}", source="summary")]
        if pending is not None:
            squashed.append(pending)
        log_event(
            logger,
            "context.squash.complete",
            messages_before=len(history),
            messages_after=len(squashed),
            tokens_before=before,
            tokens_after=self.estimate(squashed),
        )
        return squashed
