"""Bounded, structured evidence for retries and escalations."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Final

from conductor.domain.models import JSONValue, Task, Verdict, VerdictOutcome

DEFAULT_MAX_CHECKS: Final[int] = 8
DEFAULT_MAX_NAMES: Final[int] = 10
DEFAULT_MAX_EXCERPT_LINES: Final[int] = 10
_MAX_LINE_CHARS: Final[int] = 240


def build_rejection_feedback(
    verdicts: Sequence[Verdict],
    *,
    reason: str | None = None,
    max_checks: int = DEFAULT_MAX_CHECKS,
    max_names: int = DEFAULT_MAX_NAMES,
    max_excerpt_lines: int = DEFAULT_MAX_EXCERPT_LINES,
) -> dict[str, JSONValue]:
    """Summarize non-passing verdicts for the worker's next attempt.

    Failing checks come first, then checks that could not run. Names, excerpt
    lines and line lengths are all capped so the payload stays small however
    noisy the tool output was.
    """

    relevant = [verdict for verdict in verdicts if verdict.outcome is not VerdictOutcome.PASS]
    relevant.sort(
        key=lambda verdict: (verdict.outcome is not VerdictOutcome.FAIL, verdict.check_name)
    )
    checks: list[JSONValue] = []
    for verdict in relevant[:max_checks]:
        checks.append(
            {
                "check": verdict.check_name,
                "outcome": verdict.outcome.value,
                "verdict_id": verdict.verdict_id,
                "reason": verdict.detail.reason,
                "exit_code": verdict.detail.exit_code,
                "failing_names": list(verdict.detail.failing_names[:max_names]),
                "excerpt": [
                    _clip(line) for line in verdict.detail.excerpt[:max_excerpt_lines]
                ],
            }
        )
    return {
        "reason": reason,
        "checks": checks,
        "omitted_checks": max(0, len(relevant) - max_checks),
    }


def escalation_evidence(
    task: Task,
    verdict: Verdict | None = None,
    *,
    extra: dict[str, JSONValue] | None = None,
) -> dict[str, JSONValue]:
    """Which task, which verdict, which check: the minimum a caller needs to act."""

    evidence: dict[str, JSONValue] = {
        "task_id": task.id,
        "label": task.label,
        "kind": task.kind.value,
        "worker_role": task.assigned_worker_role,
        "retry_count": task.retry_count,
        "failure_reason": task.failure_reason,
    }
    if verdict is not None:
        evidence["verdict_id"] = verdict.verdict_id
        evidence["check"] = verdict.check_name
        evidence["outcome"] = verdict.outcome.value
        evidence["detail"] = verdict.detail.to_dict()
    if extra:
        evidence.update(extra)
    return evidence


def _clip(line: str) -> str:
    if len(line) <= _MAX_LINE_CHARS:
        return line
    return line[: _MAX_LINE_CHARS - 3] + "..."


__all__ = ["build_rejection_feedback", "escalation_evidence"]
