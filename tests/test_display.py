from __future__ import annotations

import pytest

from panepilot.agent.manager import AgentStatus
from panepilot.client import display
from panepilot.client.display import ConsoleUI, build_info_table, progress_bar, usage_style
from panepilot.client.status_box import build_prompt, build_welcome_banner
from tests.utils import make_manager


@pytest.mark.parametrize(
    ("percent", "style"),
    [(0, "green"), (69.9, "green"), (70, "yellow"), (89, "yellow"), (90, "red"), (120, "red")],
)
def test_usage_style_thresholds(percent: float, style: str) -> None:
    assert usage_style(percent) == style


def test_progress_bar_is_clamped() -> None:
    assert progress_bar(50, width=10).plain == "[█████░░░░░] 50%"
    assert progress_bar(150, width=4).plain == "[████] 150%"


def test_prompt_shows_status_and_watch_symbols() -> None:
    manager, *_ = make_manager()

    assert "".join(text for _style, text in build_prompt(manager)) == "PanePilot » "

    manager.status = AgentStatus.WAITING
    assert ("class:status.waiting", "?") in build_prompt(manager)

    manager.watch_mode = True
    assert ("class:status.watch", "∞") in build_prompt(manager)


def test_welcome_banner_names_exec_pane() -> None:
    manager, *_ = make_manager()
    manager.init_panes()

    assert "Exec pane: %1" in build_welcome_banner(manager)


def test_info_table_lists_overrides() -> None:
    manager, *_ = make_manager()
    manager.config_set("wait_interval", "2")

    table = build_info_table(manager.info())

    assert table.row_count == 10


def test_show_servers_reports_unavailable(monkeypatch) -> None:
    printed: list[str] = []
    monkeypatch.setattr(display, "_render_and_print", lambda item, **_kw: printed.append(str(item)))

    ConsoleUI().show_servers([("docs", 2), ("slow", None)])

    assert printed == ["docs (tools: 2 available)", "slow (tools: unavailable)"]
