"""Integration tests for the local subprocess executor and real hook runs."""

from __future__ import annotations

import sys
import time
from pathlib import Path

import pytest

from conductor.domain.models import VerdictOutcome, Worker
from conductor.synthesis_plane.roles import WorkerRegistry
from conductor.synthesis_plane.workers import ArtifactDescriptor
from conductor.verification_plane.check_catalog import CheckCatalog, CheckRule
from conductor.verification_plane.executor import CommandSpec, LocalSubprocessExecutor
from conductor.verification_plane.hook_runner import REASON_TIMEOUT, HookRunner


@pytest.mark.integration
@pytest.mark.asyncio
async def test_executor_captures_output_and_exit_code(tmp_path: Path) -> None:
    executor = LocalSubprocessExecutor()
    result = await executor.run(
        CommandSpec(
            argv=(
                sys.executable,
                "-c",
                "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)",
            ),
            cwd=str(tmp_path),
        )
    )

    assert result.exit_code == 3
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert not result.succeeded


@pytest.mark.integration
@pytest.mark.asyncio
async def test_executor_kills_command_on_timeout() -> None:
    executor = LocalSubprocessExecutor()
    result = await executor.run(
        CommandSpec(
            argv=(sys.executable, "-c", "import time; time.sleep(30)"),
            timeout_seconds=0.5,
        )
    )

    assert result.timed_out
    assert result.exit_code is None
    assert result.duration_ms < 10_000


@pytest.mark.integration
@pytest.mark.asyncio
async def test_executor_reports_missing_tool() -> None:
    result = await LocalSubprocessExecutor().run(
        CommandSpec(argv=("conductor-definitely-not-installed",))
    )
    assert result.tool_missing
    assert result.exit_code is None


@pytest.mark.integration
@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
async def test_timeout_kills_children_holding_the_output_pipes() -> None:
    executor = LocalSubprocessExecutor(kill_grace_seconds=0.5)
    started = time.monotonic()

    result = await executor.run(
        CommandSpec(argv=("sh", "-c", "echo started; sleep 30; true"), timeout_seconds=0.5)
    )

    assert time.monotonic() - started < 5
    assert result.timed_out
    assert result.exit_code is None
    assert result.stdout == "started\n"


@pytest.mark.integration
@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="execute permission bits are POSIX only")
async def test_non_executable_tool_is_an_error_not_a_missing_tool(tmp_path: Path) -> None:
    script = tmp_path / "lint.sh"
    script.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    script.chmod(0o644)

    result = await LocalSubprocessExecutor().run(CommandSpec(argv=(str(script),)))

    assert not result.tool_missing
    assert result.error is not None
    assert result.exit_code is None


@pytest.mark.integration
@pytest.mark.asyncio
async def test_hook_runner_against_real_commands(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'demo'\n", encoding="utf-8")
    (tmp_path / "app.py").write_text("VALUE = 1\n", encoding="utf-8")
    registry = WorkerRegistry(
        [
            Worker(
                name="backend",
                capability_tags=frozenset({"backend"}),
                mandatory_checks=("tests",),
                optional_checks=("types",),
            )
        ]
    ).freeze()
    catalog = CheckCatalog(
        [
            CheckRule(
                check_name="tests",
                ecosystem="python",
                manifest="pyproject.toml",
                artifact_globs=("*.py",),
                argv=(sys.executable, "-c", "import app; assert app.VALUE == 1"),
            ),
            CheckRule(
                check_name="types",
                ecosystem="python",
                manifest="pyproject.toml",
                artifact_globs=("*.py",),
                argv=(sys.executable, "-c", "import time; time.sleep(30)"),
                timeout_seconds=0.5,
            ),
        ]
    )
    runner = HookRunner(registry, catalog=catalog, executor=LocalSubprocessExecutor())

    verdicts = await runner.run_checks(
        "backend", ArtifactDescriptor(paths=("app.py",), workdir=tmp_path)
    )

    tests_verdict, types_verdict = verdicts
    assert tests_verdict.outcome is VerdictOutcome.PASS
    assert types_verdict.outcome is VerdictOutcome.FAIL
    assert types_verdict.detail.reason == REASON_TIMEOUT
