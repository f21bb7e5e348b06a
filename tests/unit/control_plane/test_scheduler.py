"""Unit tests for the request lifecycle driver."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conductor.control_plane.plan_gate import PlanPolicy
from conductor.control_plane.scheduler import (
    REASON_ADVERSARY_RECONSIDER,
    REASON_ADVERSARY_SEVERITY,
    REASON_CLARIFICATION_REQUIRED,
    REASON_MAX_RETRIES,
    REASON_NO_CAPABLE_WORKER,
    REASON_PLAN_REVISIONS,
    REASON_WORKER_ERROR,
    Scheduler,
    SchedulerLimits,
)
from conductor.domain.errors import EscalationRequired, RequestFailed
from conductor.domain.events import EventType
from conductor.domain.models import (
    ComplexityTier,
    ConcurrencyMode,
    OutcomeKind,
    RequestMetadata,
    RequestState,
    ReviewRating,
    TaskStatus,
    Worker,
)
from conductor.knowledge_plane.librarian import Librarian
from conductor.knowledge_plane.memory_store import InMemoryBackend, MemoryStore
from conductor.planning.task_graph import TaskGraph
from conductor.synthesis_plane.roles import WorkerRegistry
from conductor.synthesis_plane.workers import (
    ArtifactDescriptor,
    Assignment,
    CallableWorker,
    PlanProposal,
    ReviewFinding,
    ScriptedWorker,
    WorkerAgent,
    WorkerReport,
)
from conductor.verification_plane.executor import CommandResult, CommandSpec
from conductor.verification_plane.hook_runner import HookRunner

_ROLES = (
    "explorer",
    "architect",
    "backend",
    "frontend",
    "verifier",
    "reviewer",
    "advocate",
    "adversary",
)
_GOOD_PLAN = WorkerReport(plan=PlanProposal(summary="add endpoint", files_touched=("src/app.py",)))


class _SequenceExecutor:
    """Replays exit codes in order; the last one repeats."""

    def __init__(self, *exit_codes: int) -> None:
        self._exit_codes = list(exit_codes)
        self.specs: list[CommandSpec] = []

    async def run(self, spec: CommandSpec) -> CommandResult:
        self.specs.append(spec)
        code = self._exit_codes.pop(0) if len(self._exit_codes) > 1 else self._exit_codes[0]
        stdout = "FAILED tests/test_app.py::test_login - assert 1 == 2" if code else "1 passed"
        return CommandResult(
            argv=spec.argv, exit_code=code, stdout=stdout, stderr="", duration_ms=3
        )


class _PeakWorker:
    def __init__(self) -> None:
        self.active = 0
        self.peak = 0

    async def perform(self, assignment: Assignment) -> WorkerReport:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.05)
        finally:
            self.active -= 1
        return WorkerReport()


def _bind(**overrides: WorkerAgent) -> dict[str, WorkerAgent]:
    workers: dict[str, WorkerAgent] = {role: ScriptedWorker() for role in _ROLES}
    workers["architect"] = ScriptedWorker(default=_GOOD_PLAN)
    workers.update(overrides)
    return workers


def _scheduler(
    workers: dict[str, WorkerAgent] | None = None,
    *,
    registry: WorkerRegistry | None = None,
    memory: MemoryStore | None = None,
    hook_runner: HookRunner | None = None,
    plan_policy: PlanPolicy | None = None,
    limits: SchedulerLimits | None = None,
    max_retries: int = 1,
) -> Scheduler:
    return Scheduler(
        registry=registry if registry is not None else WorkerRegistry.default(),
        workers=workers if workers is not None else _bind(),
        hook_runner=hook_runner,
        graph=TaskGraph(max_retries=max_retries),
        memory=memory,
        plan_policy=plan_policy,
        limits=limits,
    )


def _checked_registry() -> WorkerRegistry:
    return WorkerRegistry(
        [
            Worker(
                name="explorer",
                capability_tags=frozenset({"exploration"}),
                concurrency_mode=ConcurrencyMode.BACKGROUND,
            ),
            Worker(
                name="backend",
                capability_tags=frozenset({"backend", "general"}),
                mandatory_checks=("tests",),
            ),
            Worker(name="verifier", capability_tags=frozenset({"verification"})),
        ]
    ).freeze()


def _python_artifacts(tmp_path: Path) -> WorkerReport:
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'demo'\n", encoding="utf-8")
    return WorkerReport(artifacts=ArtifactDescriptor(paths=("app.py",), workdir=tmp_path))


def _simple(**kwargs: object) -> RequestMetadata:
    return RequestMetadata(file_count_estimate=2, **kwargs)  # type: ignore[arg-type]


def test_trivial_request_resolves_without_tasks() -> None:
    memory = MemoryStore(InMemoryBackend())
    completed: list[str] = []
    scheduler = _scheduler(memory=memory)

    handle = scheduler.submit(
        "fix typo in README",
        RequestMetadata(file_count_estimate=1),
        on_complete=lambda done: completed.append(done.request_id),
    )

    assert handle.done()
    assert handle.tier is ComplexityTier.TRIVIAL
    assert handle.state is RequestState.CLOSED
    assert handle.result()["tasks"] == {}
    assert handle.task_labels == {}
    assert completed == [handle.request_id]
    (decision,) = memory.read("decisions").content
    assert decision.heading == handle.request_id
    assert "outcome: done" in decision.body
    assert not memory.exists("wip")


def test_ambiguous_request_escalates_for_clarification() -> None:
    scheduler = _scheduler()

    handle = scheduler.submit("improve things", RequestMetadata(confidence=0.2))

    assert handle.done()
    assert handle.status().kind is OutcomeKind.ESCALATED
    with pytest.raises(EscalationRequired) as excinfo:
        handle.result()
    assert excinfo.value.reason == REASON_CLARIFICATION_REQUIRED
    assert scheduler.graph.tasks(handle.request_id) == ()


def test_submit_validates_input() -> None:
    with pytest.raises(ValueError, match="description"):
        _scheduler().submit("   ")
    with pytest.raises(ValueError, match="unknown roles"):
        _scheduler({"ghost": ScriptedWorker()})
    with pytest.raises(KeyError):
        _scheduler().handle("req-missing")


@pytest.mark.asyncio
async def test_simple_request_runs_chain_and_writes_back_memory() -> None:
    memory = MemoryStore(InMemoryBackend())
    backend = ScriptedWorker(
        default=WorkerReport(artifacts=ArtifactDescriptor(paths=("src/auth/login.py",)))
    )
    explorer = ScriptedWorker()
    verifier = ScriptedWorker()
    scheduler = _scheduler(
        _bind(backend=backend, explorer=explorer, verifier=verifier), memory=memory
    )

    handle = scheduler.submit("fix login redirect", _simple(domains=("backend",)))
    assert not handle.done()
    assert handle.status().kind is OutcomeKind.IN_PROGRESS
    assert set(handle.task_labels) == {"scan", "implement", "verify"}

    outcome = await handle.wait(timeout=5)

    assert outcome.kind is OutcomeKind.DONE
    result = handle.result()
    assert result["tier"] == "SIMPLE"
    assert result["tasks"] == {"scan": "done", "implement": "done", "verify": "done"}
    assert result["artifacts"] == {"implement": ["src/auth/login.py"]}
    assert [call.label for call in explorer.calls] == ["scan"]
    assert [call.label for call in backend.calls] == ["implement"]
    assert [call.label for call in verifier.calls] == ["verify"]

    (decision,) = memory.read("decisions").content
    assert "- implement: done" in decision.body
    wip = memory.read("wip")
    assert wip.content == ()
    assert wip.version == 2
    assert Librarian(memory).risk_areas() == ()
    (touched,) = memory.read("architecture").content
    assert touched.body == f"request: {handle.request_id}\n- src/auth"

    replayed = scheduler.events.replay(correlation_id=handle.request_id)
    kinds = [event.event_type for event in replayed]
    assert kinds[0] is EventType.REQUEST_RECEIVED
    assert kinds[-1] is EventType.REQUEST_CLOSED
    assert EventType.REQUEST_RESOLVED in kinds
    assert kinds.count(EventType.TASK_COMPLETED) == 3


@pytest.mark.asyncio
async def test_failed_check_retries_with_feedback(tmp_path: Path) -> None:
    registry = _checked_registry()
    executor = _SequenceExecutor(1, 0)
    backend = CallableWorker(lambda _assignment: _python_artifacts(tmp_path))
    scheduler = _scheduler(
        {"explorer": ScriptedWorker(), "backend": backend, "verifier": ScriptedWorker()},
        registry=registry,
        hook_runner=HookRunner(registry, executor=executor),
    )

    handle = await scheduler.run("fix login", _simple(), timeout=5)

    assert handle.status().kind is OutcomeKind.DONE
    assert [call.attempt for call in backend.calls] == [1, 2]
    assert backend.calls[0].feedback == {}
    retry_feedback = backend.calls[1].feedback
    assert retry_feedback["reason"] == "failed checks: tests"
    checks = retry_feedback["checks"]
    assert isinstance(checks, list)
    assert checks[0]["failing_names"] == ["tests/test_app.py::test_login"]
    assert [message.type for message in backend.calls[1].inbox] == ["FAIL"]
    assert len(executor.specs) == 2


@pytest.mark.asyncio
async def test_retries_exhausted_escalates_with_evidence(tmp_path: Path) -> None:
    registry = _checked_registry()
    memory = MemoryStore(InMemoryBackend())
    scheduler = _scheduler(
        {
            "explorer": ScriptedWorker(),
            "backend": CallableWorker(lambda _assignment: _python_artifacts(tmp_path)),
            "verifier": ScriptedWorker(),
        },
        registry=registry,
        memory=memory,
        hook_runner=HookRunner(registry, executor=_SequenceExecutor(1)),
    )

    handle = await scheduler.run("fix login", _simple(), timeout=5)

    with pytest.raises(EscalationRequired) as excinfo:
        handle.result()
    assert excinfo.value.reason == REASON_MAX_RETRIES
    assert excinfo.value.evidence["check"] == "tests"
    assert excinfo.value.evidence["retry_count"] == 2
    assert excinfo.value.evidence["max_retries"] == 1
    statuses = {task.label: task for task in scheduler.graph.tasks(handle.request_id)}
    assert statuses["implement"].status is TaskStatus.FAILED
    assert statuses["verify"].failure_reason == f"cancelled: {REASON_MAX_RETRIES}"
    assert len(memory.read("failures").content) == 2
    assert "outcome: escalated" in memory.read("decisions").content[0].body


@pytest.mark.asyncio
async def test_worker_exception_is_a_synthetic_failure() -> None:
    def explode(_assignment: Assignment) -> WorkerReport:
        raise RuntimeError("boom")

    scheduler = _scheduler(_bind(backend=CallableWorker(explode)), max_retries=0)

    handle = await scheduler.run("fix login", _simple(), timeout=5)

    outcome = handle.status()
    assert outcome.kind is OutcomeKind.ESCALATED
    detail = outcome.evidence["detail"]
    assert isinstance(detail, dict)
    assert detail["reason"] == REASON_WORKER_ERROR
    assert detail["excerpt"] == ["RuntimeError: boom"]


@pytest.mark.asyncio
async def test_report_not_declared_done_is_retried() -> None:
    backend = ScriptedWorker({"implement": [WorkerReport(declared_done=False), WorkerReport()]})
    scheduler = _scheduler(_bind(backend=backend))

    handle = await scheduler.run("fix login", _simple(), timeout=5)

    assert handle.status().kind is OutcomeKind.DONE
    assert len(backend.calls) == 2
    assert backend.calls[1].feedback["reason"] == "not_declared_done"


@pytest.mark.asyncio
async def test_complex_plan_rejection_then_approval() -> None:
    too_big = WorkerReport(
        plan=PlanProposal(summary="rewrite", files_touched=("a.py", "b.py", "c.py"))
    )
    architect = ScriptedWorker({"plan": [too_big, _GOOD_PLAN]})
    backend = ScriptedWorker()
    scheduler = _scheduler(
        _bind(architect=architect, backend=backend),
        plan_policy=PlanPolicy(max_files_touched=2),
    )

    handle = await scheduler.run(
        "add audit endpoint",
        RequestMetadata(file_count_estimate=6, domains=("backend",)),
        timeout=5,
    )

    assert handle.status().kind is OutcomeKind.DONE
    assert set(handle.result()["tasks"]) == {  # type: ignore[arg-type]
        "scan",
        "plan",
        "implement:backend",
        "verify",
        "review",
    }
    assert len(architect.calls) == 2
    second = architect.calls[1]
    assert second.revision == 1
    assert second.feedback["plan_rejection"] == ["plan touches 3 files, limit is 2"]
    assert "REJECT" in [message.type for message in second.inbox]
    assert backend.calls[0].context["plan_files"] == ["src/app.py"]
    rejected = scheduler.events.replay(event_type=EventType.PLAN_REJECTED)
    assert len(rejected) == 1


@pytest.mark.asyncio
async def test_plan_revisions_are_capped() -> None:
    no_plan = ScriptedWorker(default=WorkerReport())
    scheduler = _scheduler(
        _bind(architect=no_plan), limits=SchedulerLimits(max_plan_revisions=1)
    )

    handle = await scheduler.run(
        "add audit endpoint", RequestMetadata(file_count_estimate=6), timeout=5
    )

    with pytest.raises(EscalationRequired) as excinfo:
        handle.result()
    assert excinfo.value.reason == REASON_PLAN_REVISIONS
    assert excinfo.value.evidence["rejections"] == 2
    assert len(no_plan.calls) == 2


@pytest.mark.asyncio
async def test_plan_resubmission_is_unbounded_by_default() -> None:
    too_big = WorkerReport(
        plan=PlanProposal(summary="rewrite", files_touched=("a.py", "b.py", "c.py"))
    )
    architect = ScriptedWorker({"plan": [too_big, too_big, too_big, too_big, _GOOD_PLAN]})
    scheduler = _scheduler(
        _bind(architect=architect), plan_policy=PlanPolicy(max_files_touched=2)
    )

    handle = await scheduler.run(
        "add audit endpoint", RequestMetadata(file_count_estimate=6), timeout=5
    )

    assert scheduler.limits.max_plan_revisions is None
    assert handle.status().kind is OutcomeKind.DONE
    assert len(architect.calls) == 5
    assert architect.calls[-1].revision == 4
    rejected = scheduler.events.replay(event_type=EventType.PLAN_REJECTED)
    assert [event.payload["cycle"] for event in rejected] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_flagged_risk_area_needs_acknowledged_plan() -> None:
    memory = MemoryStore(InMemoryBackend())
    Librarian(memory).flag_risk_area("src/payments")
    unacknowledged = WorkerReport(
        plan=PlanProposal(summary="refund flow", files_touched=("src/payments/refund.py",))
    )
    acknowledged = WorkerReport(
        plan=PlanProposal(
            summary="refund flow",
            files_touched=("src/payments/refund.py",),
            acknowledged_risks=("src/payments",),
        )
    )
    architect = ScriptedWorker({"plan": [unacknowledged, acknowledged]})
    scheduler = _scheduler(_bind(architect=architect), memory=memory)

    handle = await scheduler.run("add refunds", RequestMetadata(file_count_estimate=5), timeout=5)

    assert handle.status().kind is OutcomeKind.DONE
    assert len(architect.calls) == 2
    (approved,) = scheduler.events.replay(event_type=EventType.PLAN_APPROVED)
    assert approved.payload["risk_hits"] == ["src/payments"]


@pytest.mark.asyncio
async def test_critical_request_escalates_on_adversary_reconsider() -> None:
    adversary = ScriptedWorker(
        default=WorkerReport(
            review=ReviewFinding(ReviewRating.RECONSIDER, "drops data", severity="high")
        )
    )
    backend = ScriptedWorker()
    scheduler = _scheduler(_bind(adversary=adversary, backend=backend))

    handle = await scheduler.run(
        "drop the legacy orders table", RequestMetadata(irreversible=True), timeout=5
    )

    assert handle.tier is ComplexityTier.CRITICAL
    with pytest.raises(EscalationRequired) as excinfo:
        handle.result()
    assert excinfo.value.reason == REASON_ADVERSARY_RECONSIDER
    assert excinfo.value.evidence["review_summary"] == "drops data"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_high_severity_adversary_caution_escalates() -> None:
    adversary = ScriptedWorker(
        default=WorkerReport(
            review=ReviewFinding(ReviewRating.CAUTION, "drops data", severity="high")
        )
    )
    backend = ScriptedWorker()
    scheduler = _scheduler(_bind(adversary=adversary, backend=backend))

    handle = await scheduler.run(
        "drop the legacy orders table", RequestMetadata(irreversible=True), timeout=5
    )

    assert handle.status().kind is OutcomeKind.ESCALATED
    with pytest.raises(EscalationRequired) as excinfo:
        handle.result()
    assert excinfo.value.reason == REASON_ADVERSARY_SEVERITY
    assert excinfo.value.evidence["severity"] == "high"
    assert excinfo.value.evidence["rating"] == "CAUTION"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_adversary_reconsider_escalates_even_when_its_own_verdict_fails() -> None:
    adversary = ScriptedWorker(
        default=WorkerReport(
            declared_done=False,
            review=ReviewFinding(ReviewRating.RECONSIDER, "unsafe migration"),
        )
    )
    scheduler = _scheduler(_bind(adversary=adversary), max_retries=3)

    handle = await scheduler.run(
        "drop the legacy orders table", RequestMetadata(irreversible=True), timeout=5
    )

    with pytest.raises(EscalationRequired) as excinfo:
        handle.result()
    assert excinfo.value.reason == REASON_ADVERSARY_RECONSIDER
    assert excinfo.value.evidence["outcome"] == "fail"
    assert len(adversary.calls) == 1
    assert scheduler.events.replay(event_type=EventType.TASK_RETRIED) == ()


@pytest.mark.asyncio
async def test_critical_request_with_proceed_reviews_resolves() -> None:
    scheduler = _scheduler()

    handle = await scheduler.run(
        "rotate credentials", RequestMetadata(file_count_estimate=2), timeout=5
    )

    assert handle.status().kind is OutcomeKind.DONE
    tasks = handle.result()["tasks"]
    assert isinstance(tasks, dict)
    assert tasks["advocate"] == "done"
    assert tasks["adversary"] == "done"


@pytest.mark.asyncio
async def test_missing_worker_binding_fails_request() -> None:
    scheduler = _scheduler({"explorer": ScriptedWorker()})

    handle = await scheduler.run("fix login", _simple(), timeout=5)

    with pytest.raises(RequestFailed) as excinfo:
        handle.result()
    assert excinfo.value.reason == REASON_NO_CAPABLE_WORKER
    assert excinfo.value.evidence["tags"] == ["general"]


@pytest.mark.asyncio
async def test_abort_stops_dispatch_and_ignores_late_results() -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow(_assignment: Assignment) -> WorkerReport:
        started.set()
        await release.wait()
        return WorkerReport()

    verifier = ScriptedWorker()
    scheduler = _scheduler(_bind(backend=CallableWorker(slow), verifier=verifier))
    handle = scheduler.submit("fix login", _simple())

    await asyncio.wait_for(started.wait(), timeout=5)
    assert scheduler.abort(handle.request_id, "user cancelled")
    outcome = await handle.wait(timeout=5)
    release.set()
    await asyncio.sleep(0)

    assert outcome.kind is OutcomeKind.FAILED
    assert outcome.reason == "aborted: user cancelled"
    assert not scheduler.abort(handle.request_id)
    labels = {task.label: task for task in scheduler.graph.tasks(handle.request_id)}
    assert labels["implement"].failure_reason == "cancelled: user cancelled"
    assert labels["scan"].status is TaskStatus.DONE
    assert verifier.calls == []
    with pytest.raises(RequestFailed):
        handle.result()


@pytest.mark.asyncio
@pytest.mark.parametrize(("slots", "expected_peak"), [(1, 1), (2, 2)])
async def test_foreground_slots_bound_parallel_implementation(
    slots: int, expected_peak: int
) -> None:
    backend = _PeakWorker()
    scheduler = _scheduler(
        _bind(backend=backend),
        limits=SchedulerLimits(max_foreground_in_flight=slots),
    )

    handle = await scheduler.run("fix login", _simple(domains=("backend", "api")), timeout=5)

    assert handle.status().kind is OutcomeKind.DONE
    assert set(handle.task_labels) == {
        "scan:backend",
        "implement:backend",
        "verify:backend",
        "scan:api",
        "implement:api",
        "verify:api",
    }
    assert backend.peak == expected_peak


@pytest.mark.asyncio
async def test_foreground_wait_in_one_request_does_not_stall_another() -> None:
    gate = asyncio.Event()
    held: set[str] = set()

    async def backend(assignment: Assignment) -> WorkerReport:
        if assignment.request_id in held:
            await gate.wait()
        return WorkerReport()

    explorer = _PeakWorker()
    scheduler = _scheduler(
        _bind(backend=CallableWorker(backend), explorer=explorer),
        limits=SchedulerLimits(max_foreground_in_flight=1, max_background_in_flight=1),
    )
    first = scheduler.submit("fix login", _simple())
    held.add(first.request_id)
    second = scheduler.submit("fix logout", _simple())

    outcome = await second.wait(timeout=5)

    assert outcome.kind is OutcomeKind.DONE
    assert not first.done()
    assert explorer.peak == 1
    gate.set()
    assert (await first.wait(timeout=5)).kind is OutcomeKind.DONE


@pytest.mark.asyncio
async def test_join_waits_for_every_request() -> None:
    scheduler = _scheduler()

    first = scheduler.submit("fix login", _simple())
    second = scheduler.submit("fix logout", _simple())
    await asyncio.wait_for(scheduler.join(), timeout=5)

    assert first.done() and second.done()
    assert {handle.request_id for handle in scheduler.handles()} == {
        first.request_id,
        second.request_id,
    }


@pytest.mark.asyncio
async def test_prune_closed_releases_finished_requests() -> None:
    scheduler = _scheduler()
    done = await scheduler.run("fix login", _simple(), timeout=5)
    escalated = await scheduler.run("improve things", RequestMetadata(confidence=0.2), timeout=5)

    pruned = scheduler.prune_closed()

    assert set(pruned) == {done.request_id, escalated.request_id}
    assert len(scheduler.graph) == 0
    assert scheduler.handles() == ()
    assert done.result()["request_id"] == done.request_id
    with pytest.raises(KeyError):
        scheduler.handle(done.request_id)
    assert scheduler.prune_closed() == ()


def test_scheduler_limits_from_mapping() -> None:
    limits = SchedulerLimits.from_mapping({"max_foreground_in_flight": 2, "max_retries": 4})
    assert limits.max_foreground_in_flight == 2
    assert limits.max_background_in_flight == 4
    with pytest.raises(ValueError):
        SchedulerLimits.from_mapping({"max_plan_revisions": "many"})
    with pytest.raises(ValueError):
        SchedulerLimits(max_background_in_flight=0)
