"""Unit tests for core domain models."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from conductor.domain import ids, models


def _fixed_bytes(size: int) -> bytes:
    return b"\x01" * size


def _id(kind: ids.IdKind, timestamp_ms: int) -> str:
    return ids.generate_prefixed_id(kind, timestamp_ms=timestamp_ms, randbytes=_fixed_bytes)


def _utc_dt() -> datetime:
    return datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def _sample_objects() -> dict[str, models.CanonicalModel]:
    ts = _utc_dt()
    task_id = _id(ids.IdKind.TASK, 100)
    dependency = _id(ids.IdKind.TASK, 101)
    entry = models.MemoryEntry(
        heading="Decision", body="Use SQL", author="conductor", recorded_at=ts
    )
    return {
        "task": models.Task(
            id=task_id,
            description="implement endpoint",
            depends_on=frozenset({dependency}),
            priority=2,
            kind=models.TaskKind.IMPLEMENT,
            domain_tags=frozenset({"backend"}),
            created_seq=3,
        ),
        "verdict": models.Verdict(
            worker_role="backend",
            check_name="tests",
            outcome=models.VerdictOutcome.FAIL,
            verdict_id=_id(ids.IdKind.VERDICT, 102),
            detail=models.VerdictDetail(
                command=("pytest", "-q"),
                exit_code=1,
                failing_names=("test_a",),
                excerpt=("FAILED test_a",),
                counts={"failed": 1},
            ),
            duration_ms=12,
            task_id=task_id,
        ),
        "entry": entry,
        "document": models.MemoryDocument(
            namespace="decisions", owner="conductor", content=(entry,), last_updated=ts, version=4
        ),
        "metadata": models.RequestMetadata(
            file_count_estimate=3, domains=("backend",), confidence=0.8, keywords=("auth",)
        ),
    }


@pytest.mark.unit
def test_models_roundtrip_through_canonical_json() -> None:
    for name, obj in _sample_objects().items():
        encoded = obj.to_json()
        assert json.loads(encoded) == obj.to_dict(), name
        assert type(obj).from_json(encoded) == obj, name


def test_canonical_json_is_key_sorted_and_compact() -> None:
    assert models.canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


def test_task_validation_rules() -> None:
    with pytest.raises(ValueError, match="may not depend on itself"):
        models.Task(id="t1", description="x", depends_on=frozenset({"t1"}))
    with pytest.raises(ValueError, match="required when status is claimed"):
        models.Task(id="t1", description="x", status=models.TaskStatus.CLAIMED)
    with pytest.raises(ValueError, match="only approval-gated"):
        models.Task(
            id="t1",
            description="x",
            status=models.TaskStatus.IN_PROGRESS,
            assigned_worker_role="architect",
            awaiting_approval=True,
        )

    task = models.Task(id="t1", description="x", kind=models.TaskKind.SCAN)
    assert task.label == "scan"
    assert not task.is_terminal


def test_task_from_dict_rejects_unknown_fields() -> None:
    with pytest.raises(ValueError, match="unexpected fields"):
        models.Task.from_dict({"id": "t1", "description": "x", "owner": "nobody"})


def test_worker_normalizes_names_and_rejects_overlapping_checks() -> None:
    worker = models.Worker(name=" Backend ", capability_tags=frozenset({"API"}))
    assert worker.name == "backend"
    assert worker.capability_tags == frozenset({"api"})

    with pytest.raises(ValueError, match="both mandatory and optional"):
        models.Worker(
            name="backend",
            capability_tags=frozenset({"api"}),
            mandatory_checks=("tests",),
            optional_checks=("tests",),
        )
    with pytest.raises(ValueError, match="Worker.cost_tier"):
        models.Worker(name="backend", capability_tags=frozenset(), cost_tier=-1)


def test_message_type_is_open_but_normalized() -> None:
    message = models.Message(type="custom", sender="backend", recipient="ALL", body="  keep  ")
    assert message.type == "CUSTOM"
    assert message.is_broadcast
    assert message.body == "  keep  "

    with pytest.raises(ValueError, match="Message.priority"):
        models.Message(type="BUG", sender="a", recipient="b", priority="URGENT")


def test_request_metadata_normalizes_domains_and_bounds_confidence() -> None:
    metadata = models.RequestMetadata(domains=("Backend", "backend", "UI"), keywords=("Auth",))
    assert metadata.domains == ("backend", "ui")
    assert metadata.keywords == ("auth",)

    with pytest.raises(ValueError, match="must be <= 1.0"):
        models.RequestMetadata(confidence=1.5)
    with pytest.raises(ValueError, match="expected boolean"):
        models.RequestMetadata(irreversible="yes")  # type: ignore[arg-type]


def test_request_outcome_requires_reason_for_terminal_failures() -> None:
    assert not models.RequestOutcome.in_progress().is_final
    assert models.RequestOutcome.done({"tasks": 2}).result == {"tasks": 2}

    with pytest.raises(ValueError, match="required for escalated"):
        models.RequestOutcome(kind=models.OutcomeKind.ESCALATED)

    failed = models.RequestOutcome.failed("aborted: user", {"task": "t1"})
    assert failed.is_final
    assert failed.evidence == {"task": "t1"}


def test_datetimes_must_be_timezone_aware() -> None:
    with pytest.raises(ValueError, match="timezone-aware"):
        models.MemoryEntry(heading="h", body="b", author="a", recorded_at=datetime(2026, 1, 1))

    entry = models.MemoryEntry.from_dict(
        {"heading": "h", "body": "b", "author": "a", "recorded_at": "2026-02-01T12:00:00Z"}
    )
    assert entry.recorded_at == _utc_dt()
