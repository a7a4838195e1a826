"""Unit tests for the process entrypoint's exit-code contract."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from dagforge.config.loader import ConfigLoadError
from dagforge.main import ExitCode, cli_entrypoint
from dagforge.planning.task_graph import CycleDetectedError

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit


def _patch_run_cli(monkeypatch: pytest.MonkeyPatch, outcome: object) -> None:
    def fake_run_cli(_argv: object) -> object:
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    monkeypatch.setattr("dagforge.ui.cli.run_cli", fake_run_cli)


@pytest.mark.parametrize(
    ("outcome", "expected"),
    [
        (0, ExitCode.SUCCESS),
        (None, ExitCode.SUCCESS),
        (1, ExitCode.RUN_FAILED),
        (7, ExitCode.INTERNAL_ERROR),
        (SystemExit(2), ExitCode.CONFIG_ERROR),
        (SystemExit(None), ExitCode.SUCCESS),
    ],
)
def test_return_codes_are_normalized(
    monkeypatch: pytest.MonkeyPatch, outcome: object, expected: ExitCode
) -> None:
    _patch_run_cli(monkeypatch, outcome)

    assert cli_entrypoint([]) == int(expected)


def test_config_and_graph_errors_map_to_exit_two(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    _patch_run_cli(monkeypatch, ConfigLoadError("config file not found: x.toml"))
    assert cli_entrypoint([]) == 2
    assert "config file not found" in capsys.readouterr().err

    _patch_run_cli(monkeypatch, CycleDetectedError([("a", "b", "a")]))
    assert cli_entrypoint([]) == 2


def test_wrapped_config_error_is_found_in_chain(monkeypatch: pytest.MonkeyPatch) -> None:
    try:
        try:
            raise FileNotFoundError("state dir")
        except FileNotFoundError as inner:
            raise RuntimeError("could not open") from inner
    except RuntimeError as outer:
        _patch_run_cli(monkeypatch, outer)

    assert cli_entrypoint([]) == 2


def test_unexpected_errors_print_traceback(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    _patch_run_cli(monkeypatch, KeyError("scheduler"))

    assert cli_entrypoint([]) == 4
    assert "Traceback" in capsys.readouterr().err


def test_string_exit_reason_goes_to_stderr(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    _patch_run_cli(monkeypatch, SystemExit("fatal: bad state"))

    assert cli_entrypoint([]) == 4
    assert capsys.readouterr().err == "fatal: bad state\n"


def test_real_parser_usage_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.chdir(tmp_path)

    assert cli_entrypoint(["explode"]) == 2
    assert "invalid choice" in capsys.readouterr().err
