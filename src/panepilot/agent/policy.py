"""Confirmation policy for pane-touching actions.

Decision order for a candidate command:

1. any deny pattern matches -> refuse, regardless of the allow list;
2. any allow pattern matches -> execute without prompting;
3. otherwise prompt when the action kind's confirm flag is set.

Patterns are regular expressions searched anywhere in the command. A pattern
that does not compile is matched as a plain substring.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from panepilot.log_utils import log_event

logger = logging.getLogger(__name__)


class Verdict(enum.Enum):
    DENY = "deny"
    ALLOW = "allow"
    CONFIRM = "confirm"


@dataclass(frozen=True)
class PolicyDecision:
    verdict: Verdict
    reason: str
    pattern: str | None = None

    @property
    def refused(self) -> bool:
        return self.verdict is Verdict.DENY

    @property
    def needs_confirmation(self) -> bool:
        return self.verdict is Verdict.CONFIRM


@dataclass(frozen=True)
class _Pattern:
    source: str
    regex: re.Pattern[str] | None

    def matches(self, command: str) -> bool:
        if self.regex is not None:
            return self.regex.search(command) is not None
        return self.source in command


def _compile(patterns: Iterable[str]) -> tuple[_Pattern, ...]:
    compiled: list[_Pattern] = []
    for source in patterns:
        if not source:
            continue
        try:
            compiled.append(_Pattern(source, re.compile(source)))
        except re.error as exc:
            log_event(logger, "policy.pattern.invalid", level=logging.WARNING, pattern=source, error=str(exc))
            compiled.append(_Pattern(source, None))
    return tuple(compiled)


class ConfirmationPolicy:
    def __init__(self, allow_patterns: Sequence[str] = (), deny_patterns: Sequence[str] = ()) -> None:
        self._allow = _compile(allow_patterns)
        self._deny = _compile(deny_patterns)

    @staticmethod
    def _first_match(patterns: tuple[_Pattern, ...], command: str) -> _Pattern | None:
        for pattern in patterns:
            if pattern.matches(command):
                return pattern
        return None

    def evaluate(self, command: str, *, confirm: bool) -> PolicyDecision:
        denied = self._first_match(self._deny, command)
        if denied is not None:
            return PolicyDecision(
                Verdict.DENY,
                f"matches blacklist pattern '{denied.source}'",
                pattern=denied.source,
            )
        allowed = self._first_match(self._allow, command)
        if allowed is not None:
            return PolicyDecision(
                Verdict.ALLOW,
                f"matches whitelist pattern '{allowed.source}'",
                pattern=allowed.source,
            )
        if confirm:
            return PolicyDecision(Verdict.CONFIRM, "confirmation required")
        return PolicyDecision(Verdict.ALLOW, "confirmation disabled")
