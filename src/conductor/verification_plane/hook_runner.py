"""
Hook runner: execute the checks a worker role declares against its artifacts.

Classification contract:
- exit code 0 -> ``pass``
- nonzero exit -> ``fail``
- wall-clock timeout -> ``fail`` with detail reason ``timeout`` (process killed)
- tool not found / not executable -> ``not_available``
- no catalog rule applies to the artifact set -> ``not_available`` (nothing runs)

A ``fail`` is never upgraded. Only evidence needed to act is kept: failing
names and the first few output lines, never the full log.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog

from conductor.domain.errors import HookTimeout, HookToolMissing
from conductor.domain.ids import generate_verdict_id
from conductor.domain.models import Verdict, VerdictDetail, VerdictOutcome, Worker
from conductor.synthesis_plane.roles import WorkerRegistry
from conductor.synthesis_plane.workers import ArtifactDescriptor
from conductor.verification_plane.check_catalog import CheckCatalog, CheckRule
from conductor.verification_plane.executor import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
)

DEFAULT_CHECK_TIMEOUT_SECONDS: Final[float] = 300.0
DEFAULT_EXCERPT_LINES: Final[int] = 20
DEFAULT_MAX_FAILING_NAMES: Final[int] = 25

REASON_TIMEOUT: Final[str] = "timeout"
REASON_TOOL_MISSING: Final[str] = "tool_missing"
REASON_NOT_APPLICABLE: Final[str] = "not_applicable"
REASON_NONZERO_EXIT: Final[str] = "nonzero_exit"
REASON_EXECUTION_ERROR: Final[str] = "execution_error"

_PYTEST_FAILED_RE: Final[re.Pattern[str]] = re.compile(r"^(?:FAILED|ERROR)\s+(?P<name>\S+)")
_PATH_LINE_COL_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<path>[^:\s][^:]*?):(?P<line>\d+):(?P<column>\d+):\s*(?P<message>.+)$"
)
_GO_FAIL_RE: Final[re.Pattern[str]] = re.compile(r"^\s*--- FAIL:\s+(?P<name>\S+)")
_CARGO_FAIL_RE: Final[re.Pattern[str]] = re.compile(r"^test\s+(?P<name>\S+)\s+\.\.\.\s+FAILED$")


@dataclass(frozen=True, slots=True)
class AcceptanceDecision:
    """Whether a worker's output is accepted given its verdicts."""

    accepted: bool
    failing: tuple[Verdict, ...] = ()
    missing_mandatory: tuple[str, ...] = ()

    @property
    def reason(self) -> str | None:
        if self.accepted:
            return None
        if self.failing:
            names = ", ".join(sorted({verdict.check_name for verdict in self.failing}))
            return f"failed checks: {names}"
        return f"mandatory checks not passed: {', '.join(self.missing_mandatory)}"


def assess_verdicts(worker: Worker, verdicts: Sequence[Verdict]) -> AcceptanceDecision:
    """Accept only if nothing failed and every mandatory check passed."""

    failing = tuple(verdict for verdict in verdicts if verdict.failed)
    missing: list[str] = []
    for check_name in worker.mandatory_checks:
        outcomes = [verdict for verdict in verdicts if verdict.check_name == check_name]
        if not outcomes or not all(verdict.passed for verdict in outcomes):
            missing.append(check_name)
    accepted = not failing and not missing
    return AcceptanceDecision(
        accepted=accepted,
        failing=failing,
        missing_mandatory=tuple(missing),
    )


class HookRunner:
    """Runs declared checks through a pluggable ``CommandExecutor``."""

    def __init__(
        self,
        registry: WorkerRegistry,
        *,
        catalog: CheckCatalog | None = None,
        executor: CommandExecutor | None = None,
        timeout_seconds: float = DEFAULT_CHECK_TIMEOUT_SECONDS,
        check_timeouts: Mapping[str, float] | None = None,
        excerpt_lines: int = DEFAULT_EXCERPT_LINES,
        max_failing_names: int = DEFAULT_MAX_FAILING_NAMES,
        logger: Any | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if excerpt_lines <= 0 or max_failing_names <= 0:
            raise ValueError("excerpt_lines and max_failing_names must be > 0")
        self._registry = registry
        self._catalog = catalog if catalog is not None else CheckCatalog.default()
        self._executor = executor if executor is not None else LocalSubprocessExecutor()
        self._timeout_seconds = float(timeout_seconds)
        self._check_timeouts = {
            name.strip().lower(): float(value) for name, value in (check_timeouts or {}).items()
        }
        self._excerpt_lines = excerpt_lines
        self._max_failing_names = max_failing_names
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def catalog(self) -> CheckCatalog:
        return self._catalog

    def plan_checks(
        self, worker_role: str, artifacts: ArtifactDescriptor
    ) -> list[tuple[str, list[CheckRule]]]:
        """Declared checks of the role paired with the catalog rules that would run."""

        worker = self._registry.require(worker_role)
        workdir = _resolve_workdir(artifacts)
        return [
            (check_name, self._catalog.select(check_name, artifacts.paths, workdir))
            for check_name in worker.declared_checks
        ]

    async def run_checks(
        self,
        worker_role: str,
        artifacts: ArtifactDescriptor,
        *,
        task_id: str | None = None,
    ) -> list[Verdict]:
        """Run every applicable declared check and return one verdict per command."""

        workdir = _resolve_workdir(artifacts)
        verdicts: list[Verdict] = []
        for check_name, rules in self.plan_checks(worker_role, artifacts):
            if not rules:
                verdicts.append(
                    Verdict(
                        worker_role=worker_role,
                        check_name=check_name,
                        outcome=VerdictOutcome.NOT_AVAILABLE,
                        verdict_id=generate_verdict_id(),
                        detail=VerdictDetail(reason=REASON_NOT_APPLICABLE),
                        task_id=task_id,
                    )
                )
                continue
            for rule in rules:
                verdicts.append(
                    await self._run_rule(worker_role, rule, workdir, task_id=task_id)
                )

        for verdict in verdicts:
            self._logger.info(
                "hook_verdict",
                worker_role=worker_role,
                task_id=task_id,
                check_name=verdict.check_name,
                outcome=verdict.outcome.value,
                reason=verdict.detail.reason,
                duration_ms=verdict.duration_ms,
            )
        return verdicts

    async def execute(self, rule: CheckRule, workdir: Path) -> CommandResult:
        """Run one rule; raise ``HookTimeout``/``HookToolMissing`` for environment failures."""

        timeout = self._timeout_for(rule)
        result = await self._executor.run(
            CommandSpec(argv=rule.argv, cwd=str(workdir), timeout_seconds=timeout)
        )
        if result.timed_out:
            raise HookTimeout(
                rule.check_name,
                timeout,
                output=_combined_output(result),
                duration_ms=result.duration_ms,
            )
        if result.tool_missing:
            raise HookToolMissing(rule.check_name, rule.argv[0])
        return result

    async def _run_rule(
        self,
        worker_role: str,
        rule: CheckRule,
        workdir: Path,
        *,
        task_id: str | None,
    ) -> Verdict:
        try:
            result = await self.execute(rule, workdir)
        except HookTimeout as exc:
            self._logger.warning("hook_timeout", check_name=rule.check_name, error=str(exc))
            return self._verdict(
                worker_role,
                rule,
                VerdictOutcome.FAIL,
                output=exc.output,
                exit_code=None,
                duration_ms=exc.duration_ms,
                reason=REASON_TIMEOUT,
                task_id=task_id,
            )
        except HookToolMissing as exc:
            self._logger.warning("hook_tool_missing", check_name=rule.check_name, tool=exc.tool)
            return Verdict(
                worker_role=worker_role,
                check_name=rule.check_name,
                outcome=VerdictOutcome.NOT_AVAILABLE,
                verdict_id=generate_verdict_id(),
                detail=VerdictDetail(command=rule.argv, reason=REASON_TOOL_MISSING),
                task_id=task_id,
            )

        if result.error is not None:
            outcome, reason = VerdictOutcome.FAIL, REASON_EXECUTION_ERROR
        elif result.exit_code == 0:
            outcome, reason = VerdictOutcome.PASS, None
        else:
            outcome, reason = VerdictOutcome.FAIL, REASON_NONZERO_EXIT
        return self._verdict(
            worker_role,
            rule,
            outcome,
            output=_combined_output(result),
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            reason=reason,
            task_id=task_id,
        )

    def _verdict(
        self,
        worker_role: str,
        rule: CheckRule,
        outcome: VerdictOutcome,
        *,
        output: str,
        exit_code: int | None,
        duration_ms: int,
        reason: str | None,
        task_id: str | None,
    ) -> Verdict:
        lines = [line for line in output.splitlines() if line.strip()]
        failing_names: tuple[str, ...] = ()
        excerpt: tuple[str, ...] = ()
        if outcome is not VerdictOutcome.PASS:
            all_names = extract_failing_names(lines)
            failing_names = all_names[: self._max_failing_names]
            excerpt = tuple(lines[: self._excerpt_lines])
            counts = {"failing": len(all_names), "output_lines": len(lines)}
        else:
            counts = {"output_lines": len(lines)}
        return Verdict(
            worker_role=worker_role,
            check_name=rule.check_name,
            outcome=outcome,
            verdict_id=generate_verdict_id(),
            detail=VerdictDetail(
                command=rule.argv,
                exit_code=exit_code,
                failing_names=failing_names,
                excerpt=excerpt,
                reason=reason,
                counts=counts,
            ),
            duration_ms=duration_ms,
            task_id=task_id,
        )

    def _timeout_for(self, rule: CheckRule) -> float:
        if rule.timeout_seconds is not None:
            return float(rule.timeout_seconds)
        return self._check_timeouts.get(rule.check_name, self._timeout_seconds)


def extract_failing_names(lines: Iterable[str]) -> tuple[str, ...]:
    """Pull failing test ids and ``path:line:col`` diagnostics out of tool output."""

    names: dict[str, None] = {}
    for line in lines:
        stripped = line.rstrip()
        match = _PYTEST_FAILED_RE.match(stripped)
        if match is not None:
            names[match.group("name")] = None
            continue
        match = _GO_FAIL_RE.match(stripped)
        if match is not None:
            names[match.group("name")] = None
            continue
        match = _CARGO_FAIL_RE.match(stripped)
        if match is not None:
            names[match.group("name")] = None
            continue
        match = _PATH_LINE_COL_RE.match(stripped)
        if match is not None:
            names[f"{match.group('path')}:{match.group('line')}:{match.group('column')}"] = None
    return tuple(names)


def _combined_output(result: CommandResult) -> str:
    return "\n".join(part for part in (result.stdout, result.stderr) if part)


def _resolve_workdir(artifacts: ArtifactDescriptor) -> Path:
    if artifacts.workdir is not None:
        return artifacts.workdir
    return Path.cwd()


__all__ = [
    "DEFAULT_CHECK_TIMEOUT_SECONDS",
    "REASON_EXECUTION_ERROR",
    "REASON_NONZERO_EXIT",
    "REASON_NOT_APPLICABLE",
    "REASON_TIMEOUT",
    "REASON_TOOL_MISSING",
    "AcceptanceDecision",
    "HookRunner",
    "assess_verdicts",
    "extract_failing_names",
]
