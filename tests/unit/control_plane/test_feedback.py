"""Unit tests for retry feedback and escalation evidence."""

from __future__ import annotations

import json

from conductor.control_plane.feedback import build_rejection_feedback, escalation_evidence
from conductor.domain.ids import generate_verdict_id
from conductor.domain.models import (
    Task,
    TaskKind,
    TaskStatus,
    Verdict,
    VerdictDetail,
    VerdictOutcome,
)


def _verdict(
    check_name: str,
    outcome: VerdictOutcome,
    *,
    names: tuple[str, ...] = (),
    excerpt: tuple[str, ...] = (),
) -> Verdict:
    return Verdict(
        worker_role="backend",
        check_name=check_name,
        outcome=outcome,
        verdict_id=generate_verdict_id(),
        detail=VerdictDetail(
            reason=None if outcome is VerdictOutcome.PASS else f"{check_name}_reason",
            exit_code=1 if outcome is VerdictOutcome.FAIL else None,
            failing_names=names,
            excerpt=excerpt,
        ),
        task_id="task-1",
    )


def test_feedback_orders_failures_before_unavailable_checks_and_drops_passes() -> None:
    payload = build_rejection_feedback(
        [
            _verdict("types", VerdictOutcome.NOT_AVAILABLE),
            _verdict("tests", VerdictOutcome.FAIL, names=("test_a",)),
            _verdict("build", VerdictOutcome.PASS),
            _verdict("lint", VerdictOutcome.FAIL),
        ],
        reason="mandatory check failed",
    )

    checks = payload["checks"]
    assert isinstance(checks, list)
    assert [check["check"] for check in checks] == ["lint", "tests", "types"]  # type: ignore[index]
    assert checks[1]["failing_names"] == ["test_a"]  # type: ignore[index]
    assert payload["reason"] == "mandatory check failed"
    assert payload["omitted_checks"] == 0
    json.dumps(payload)


def test_feedback_is_bounded() -> None:
    noisy = _verdict(
        "tests",
        VerdictOutcome.FAIL,
        names=tuple(f"test_{index}" for index in range(50)),
        excerpt=("x" * 1000, *(f"line {index}" for index in range(50))),
    )
    extra = [_verdict(f"types_{index}", VerdictOutcome.FAIL) for index in range(3)]

    payload = build_rejection_feedback(
        [noisy, *extra], max_checks=2, max_names=5, max_excerpt_lines=4
    )

    checks = payload["checks"]
    assert isinstance(checks, list)
    assert len(checks) == 2
    assert payload["omitted_checks"] == 2
    tests_entry = next(
        check for check in checks if check["check"] == "tests"  # type: ignore[index]
    )
    assert len(tests_entry["failing_names"]) == 5  # type: ignore[index]
    assert len(tests_entry["excerpt"]) == 4  # type: ignore[index]
    assert tests_entry["excerpt"][0].endswith("...")  # type: ignore[index]
    assert len(tests_entry["excerpt"][0]) == 240  # type: ignore[index]


def test_escalation_evidence_names_task_and_verdict() -> None:
    task = Task(
        id="task-1",
        description="implement login",
        status=TaskStatus.FAILED,
        kind=TaskKind.IMPLEMENT,
        label="implement:backend",
        assigned_worker_role="backend",
        retry_count=2,
        failure_reason="tests_reason",
    )
    verdict = _verdict("tests", VerdictOutcome.FAIL, names=("test_login",))

    evidence = escalation_evidence(task, verdict, extra={"max_retries": 1})

    assert evidence["task_id"] == "task-1"
    assert evidence["label"] == "implement:backend"
    assert evidence["kind"] == "implement"
    assert evidence["retry_count"] == 2
    assert evidence["verdict_id"] == verdict.verdict_id
    assert evidence["check"] == "tests"
    assert evidence["outcome"] == "fail"
    assert evidence["max_retries"] == 1
    assert isinstance(evidence["detail"], dict)

    bare = escalation_evidence(task)
    assert "verdict_id" not in bare
