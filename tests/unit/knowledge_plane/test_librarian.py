"""Tests for the librarian's passive monitoring and memory writes."""

from __future__ import annotations

import pytest

from conductor.domain.errors import WriteOwnershipViolation
from conductor.domain.ids import generate_verdict_id
from conductor.domain.models import Message, Verdict, VerdictDetail, VerdictOutcome
from conductor.knowledge_plane.librarian import (
    RISK_AREA_HEADING,
    TOUCHED_AREA_HEADING,
    Librarian,
    mailbox_audit_sink,
)
from conductor.knowledge_plane.memory_store import InMemoryBackend, MemoryStore
from conductor.messaging_plane.bus import MessageBus


def _verdict(outcome: VerdictOutcome, check_name: str = "tests") -> Verdict:
    return Verdict(
        worker_role="backend",
        check_name=check_name,
        outcome=outcome,
        verdict_id=generate_verdict_id(),
        detail=VerdictDetail(
            reason="nonzero_exit" if outcome is VerdictOutcome.FAIL else None,
            failing_names=("tests/test_app.py::test_login",),
            excerpt=("E assert 1 == 2",),
        ),
        task_id="task-1",
    )


def test_risk_areas_are_flagged_and_deduplicated() -> None:
    store = MemoryStore(InMemoryBackend())
    librarian = Librarian(store)
    assert librarian.risk_areas() == ()

    librarian.flag_risk_area("payments", "PCI scope")
    librarian.flag_risk_area("auth")
    librarian.flag_risk_area("payments")

    assert librarian.risk_areas() == ("payments", "auth")
    first = store.read("architecture").find(RISK_AREA_HEADING)[0]
    assert first.body == "payments\nnote: PCI scope"


def test_risk_areas_read_bullet_lines() -> None:
    store = MemoryStore(InMemoryBackend())
    store.append("architecture", "librarian", RISK_AREA_HEADING, "- billing\n* migrations\n")
    assert Librarian(store).risk_areas() == ("billing", "migrations")


def test_record_failures_writes_only_failing_verdicts() -> None:
    store = MemoryStore(InMemoryBackend())
    librarian = Librarian(store)

    written = librarian.record_failures(
        "req-1",
        [_verdict(VerdictOutcome.PASS), _verdict(VerdictOutcome.FAIL, "lint")],
    )

    assert written == 1
    (entry,) = store.read("failures").content
    assert entry.heading.startswith("lint:vd-")
    assert "request: req-1" in entry.body
    assert "failing: tests/test_app.py::test_login" in entry.body
    assert "> E assert 1 == 2" in entry.body
    assert entry.author == "librarian"


def test_record_touched_areas_skips_empty_input() -> None:
    store = MemoryStore(InMemoryBackend())
    librarian = Librarian(store)

    assert not librarian.record_touched_areas("req-1", [" "])
    assert librarian.record_touched_areas("req-1", ["src/b.py", "src/a.py", "src/b.py"])

    (entry,) = store.read("architecture").find(TOUCHED_AREA_HEADING)
    assert entry.body == "request: req-1\n- src/a.py\n- src/b.py"


def test_observe_is_non_consuming_and_records_bug_reports_once() -> None:
    store = MemoryStore(InMemoryBackend())
    librarian = Librarian(store)
    bus = MessageBus(mailboxes=["conductor", "backend", "verifier"])

    bus.send(Message(type="REPORT", sender="backend", recipient="conductor", body="done"))
    bus.send(Message(type="BUG", sender="verifier", recipient="ALL", body="login broken"))

    observed = librarian.observe(bus)

    assert len(observed) == 3
    assert [m.type for m in bus.receive("conductor")] == ["REPORT", "BUG"]
    (entry,) = store.read("failures").content
    assert entry.heading.startswith("bug:msg-")
    assert "from: verifier" in entry.body
    assert librarian.observe(bus) == []


def test_librarian_cannot_write_conductor_namespaces() -> None:
    store = MemoryStore(InMemoryBackend())
    with pytest.raises(WriteOwnershipViolation):
        store.append("decisions", Librarian(store).role, "x", "y")


def test_mailbox_audit_sink_logs_each_delivered_copy() -> None:
    store = MemoryStore(InMemoryBackend())
    bus = MessageBus(mailboxes=["backend", "frontend"], audit=mailbox_audit_sink(store))

    bus.send(
        Message(
            type="HANDOFF",
            sender="conductor",
            recipient="ALL",
            body="schema changed",
            action_needed="rebase",
        )
    )

    backend_log = store.read("logs/backend").content
    assert [entry.heading for entry in backend_log] == ["HANDOFF #1 from conductor"]
    assert backend_log[0].body == "schema changed\n\naction: rebase"
    assert store.read("logs/frontend").version == 1
    assert not store.exists("logs/conductor")
