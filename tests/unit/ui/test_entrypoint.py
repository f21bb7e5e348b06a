"""Unit tests for process exit-code mapping in ``conductor.main``."""

from __future__ import annotations

import pytest

from conductor.config.loader import ConfigLoadError
from conductor.domain.errors import HookToolMissing
from conductor.main import ExitCode, cli_entrypoint


def _raising(exc: BaseException):
    def run_cli(argv: object = None) -> int:
        raise exc

    return run_cli


def _chained() -> RuntimeError:
    try:
        try:
            raise ConfigLoadError("config file not found: /nowhere/conductor.toml")
        except ConfigLoadError as inner:
            raise RuntimeError("startup failed") from inner
    except RuntimeError as outer:
        return outer


@pytest.mark.unit
def test_known_failure_in_cause_chain_selects_exit_code(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("conductor.ui.cli.run_cli", _raising(_chained()))

    assert cli_entrypoint([]) == ExitCode.CONFIG_ERROR
    assert capsys.readouterr().err.strip() == "startup failed"


@pytest.mark.unit
def test_tooling_failure_maps_to_tooling_exit_code(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("conductor.ui.cli.run_cli", _raising(HookToolMissing("lint", "ruff")))
    assert cli_entrypoint([]) == ExitCode.TOOLING_ERROR


@pytest.mark.unit
def test_unexpected_failure_prints_traceback(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("conductor.ui.cli.run_cli", _raising(KeyError("boom")))

    assert cli_entrypoint([]) == ExitCode.INTERNAL_ERROR
    assert "Traceback" in capsys.readouterr().err


@pytest.mark.unit
def test_unknown_return_codes_become_internal_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("conductor.ui.cli.run_cli", lambda argv=None: 17)
    assert cli_entrypoint([]) == ExitCode.INTERNAL_ERROR

    monkeypatch.setattr("conductor.ui.cli.run_cli", lambda argv=None: None)
    assert cli_entrypoint([]) == ExitCode.SUCCESS
