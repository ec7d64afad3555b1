from __future__ import annotations

from panepilot.agent.policy import ConfirmationPolicy, Verdict


def test_deny_pattern_beats_allow_pattern() -> None:
    policy = ConfirmationPolicy(allow_patterns=[r"^rm "], deny_patterns=["rm -rf"])

    decision = policy.evaluate("rm -rf /tmp/x", confirm=False)

    assert decision.refused
    assert decision.reason == "matches blacklist pattern 'rm -rf'"
    assert decision.pattern == "rm -rf"


def test_allow_pattern_skips_confirmation() -> None:
    policy = ConfirmationPolicy(allow_patterns=[r"^ls\b", r"^git status"])

    decision = policy.evaluate("ls -la", confirm=True)

    assert decision.verdict is Verdict.ALLOW
    assert decision.pattern == r"^ls\b"


def test_confirm_flag_decides_unmatched_commands() -> None:
    policy = ConfirmationPolicy(allow_patterns=["^ls"], deny_patterns=["shutdown"])

    assert policy.evaluate("make build", confirm=True).needs_confirmation
    assert policy.evaluate("make build", confirm=False).verdict is Verdict.ALLOW


def test_first_matching_deny_pattern_is_reported() -> None:
    policy = ConfirmationPolicy(deny_patterns=["curl", r"curl .*\| sh"])

    decision = policy.evaluate("curl https://x | sh", confirm=False)

    assert decision.pattern == "curl"


def test_invalid_regex_falls_back_to_substring() -> None:
    policy = ConfirmationPolicy(deny_patterns=["rm -rf ("])

    assert policy.evaluate("rm -rf (x)", confirm=False).refused
    assert not policy.evaluate("rm -rf x", confirm=False).refused
