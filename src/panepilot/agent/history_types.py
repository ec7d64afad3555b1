"""Chat history and command history records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChatMessage:
    """One conversation entry.

    `source` distinguishes model-visible roles that all map onto the
    user/assistant pair: `user`, `watch` (implicit watch-mode turn), `assistant`,
    `summary` (squash result) and `tool` (tool-call results). `synthetic` marks
    entries the agent wrote on its own behalf.
    """

    content: str
    from_user: bool
    timestamp: datetime = field(default_factory=_now)
    source: str = ""
    synthetic: bool = False

    def __post_init__(self) -> None:
        if not self.source:
            object.__setattr__(self, "source", "user" if self.from_user else "assistant")

    @classmethod
    def user(cls, content: str, *, source: str = "user") -> "ChatMessage":
        return cls(content=content, from_user=True, source=source)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(content=content, from_user=False, source="assistant")

    @classmethod
    def system_note(cls, content: str, *, source: str) -> "ChatMessage":
        return cls(content=content, from_user=False, source=source, synthetic=True)

    @property
    def is_pending_user_turn(self) -> bool:
        return self.from_user and not self.synthetic


@dataclass(frozen=True)
class CommandExecHistory:
    """A completed shell command recovered from a prepared pane."""

    command: str
    output: str
    exit_code: int
