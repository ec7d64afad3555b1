from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from panepilot import cli


@pytest.fixture
def tmux(monkeypatch) -> MagicMock:
    client = MagicMock()
    monkeypatch.setattr(cli, "TmuxClient", lambda: client)
    monkeypatch.setattr(cli, "configure_logging", lambda _config: None)
    return client


def test_parser_collects_initial_task() -> None:
    args = cli.build_parser().parse_args(["--debug", "fix", "the", "build"])

    assert args.debug
    assert args.task == ["fix", "the", "build"]


def test_outside_tmux_starts_session_and_attaches(tmux: MagicMock) -> None:
    tmux.in_session.return_value = False
    tmux.create_session.return_value = "%5"

    assert cli.main(["fix the build", "--debug"]) == 0

    tmux.send_command.assert_called_once_with("%5", "panepilot 'fix the build' --debug")
    tmux.attach.assert_called_once_with("%5")


def test_config_error_exits_with_message(tmux: MagicMock, tmp_path, capsys) -> None:
    tmux.in_session.return_value = True

    code = cli.main(["--config", str(tmp_path / "missing.json")])

    assert code == 1
    assert "config file not found" in capsys.readouterr().err


def test_keyboard_interrupt_maps_to_130(monkeypatch) -> None:
    def _interrupt() -> int:
        raise KeyboardInterrupt

    monkeypatch.setattr(cli, "main", _interrupt)

    with pytest.raises(SystemExit) as excinfo:
        cli.main_entry()

    assert excinfo.value.code == 130
