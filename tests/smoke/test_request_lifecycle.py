"""
End-to-end request lifecycle smoke scenarios.

Each scenario wires a full runtime from configuration with scripted workers
and a canned command executor, then drives one request from submission to
close.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from conductor.control_plane.runtime import Runtime, build_runtime
from conductor.domain.events import EventType
from conductor.domain.models import (
    ComplexityTier,
    MessageType,
    OutcomeKind,
    RequestMetadata,
    TaskStatus,
)
from conductor.synthesis_plane.workers import (
    ArtifactDescriptor,
    Assignment,
    CallableWorker,
    PlanProposal,
    ScriptedWorker,
    WorkerAgent,
    WorkerReport,
)
from conductor.verification_plane.executor import CommandResult, CommandSpec

_ROSTER: list[dict[str, Any]] = [
    {"name": "explorer", "capability_tags": ["exploration"], "concurrency_mode": "background"},
    {"name": "architect", "capability_tags": ["planning"], "cost_tier": 3},
    {"name": "backend", "capability_tags": ["backend", "general"], "cost_tier": 2},
    {
        "name": "frontend",
        "capability_tags": ["frontend"],
        "concurrency_mode": "background",
        "cost_tier": 2,
    },
    {"name": "verifier", "capability_tags": ["verification"], "mandatory_checks": ["tests"]},
    {"name": "reviewer", "capability_tags": ["review"], "concurrency_mode": "background"},
    {"name": "advocate", "capability_tags": ["advocate"], "concurrency_mode": "background"},
    {"name": "adversary", "capability_tags": ["adversary"], "concurrency_mode": "background"},
]


class _ExitCodeExecutor:
    def __init__(self, *exit_codes: int) -> None:
        self._exit_codes = list(exit_codes)
        self.calls = 0

    async def run(self, spec: CommandSpec) -> CommandResult:
        index = min(self.calls, len(self._exit_codes) - 1)
        self.calls += 1
        code = self._exit_codes[index]
        return CommandResult(
            argv=spec.argv,
            exit_code=code,
            stdout="FAILED tests/test_app.py::test_flow" if code else "4 passed",
            stderr="",
            duration_ms=1,
        )


def _runtime(
    tmp_path: Path,
    workers: dict[str, WorkerAgent],
    executor: _ExitCodeExecutor | None = None,
) -> Runtime:
    return build_runtime(
        {
            "memory": {"backend": "memory"},
            "workers": {"roster": _ROSTER, "disabled": []},
            "scheduler": {"max_retries": 1},
        },
        workers=workers,
        project_root=tmp_path,
        executor=executor if executor is not None else _ExitCodeExecutor(0),
    )


def _verifier_report(tmp_path: Path) -> WorkerReport:
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'demo'\n", encoding="utf-8")
    return WorkerReport(
        artifacts=ArtifactDescriptor(paths=("tests/test_app.py",), workdir=tmp_path)
    )


def _workers(tmp_path: Path, **overrides: WorkerAgent) -> dict[str, WorkerAgent]:
    workers: dict[str, WorkerAgent] = {
        entry["name"]: ScriptedWorker() for entry in _ROSTER
    }
    workers["architect"] = ScriptedWorker(
        default=WorkerReport(plan=PlanProposal(summary="plan", files_touched=("src/app.py",)))
    )
    workers["verifier"] = ScriptedWorker(default=_verifier_report(tmp_path))
    workers.update(overrides)
    return workers


def _statuses(runtime: Runtime, request_id: str) -> dict[str, TaskStatus]:
    return {task.label: task.status for task in runtime.graph.tasks(request_id)}


@pytest.mark.smoke
@pytest.mark.asyncio
async def test_trivial_request_is_done_without_tasks(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path, _workers(tmp_path))

    handle = runtime.scheduler.submit("fix typo in docs", RequestMetadata(file_count_estimate=1))

    assert handle.done()
    assert handle.status().kind is OutcomeKind.DONE
    assert runtime.graph.tasks(handle.request_id) == ()


@pytest.mark.smoke
@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("exit_codes", "expected"),
    [((1, 0), OutcomeKind.DONE), ((1, 1), OutcomeKind.ESCALATED)],
)
async def test_simple_request_retries_failed_verification_once(
    tmp_path: Path, exit_codes: tuple[int, int], expected: OutcomeKind
) -> None:
    executor = _ExitCodeExecutor(*exit_codes)
    verifier = ScriptedWorker(default=_verifier_report(tmp_path))
    runtime = _runtime(tmp_path, _workers(tmp_path, verifier=verifier), executor)

    handle = await runtime.scheduler.run(
        "fix login redirect", RequestMetadata(file_count_estimate=2), timeout=5
    )

    assert handle.tier is ComplexityTier.SIMPLE
    assert set(handle.task_labels) == {"scan", "implement", "verify"}
    assert len(verifier.calls) == 2
    assert executor.calls == 2
    assert handle.status().kind is expected
    statuses = _statuses(runtime, handle.request_id)
    assert statuses["implement"] is TaskStatus.DONE
    if expected is OutcomeKind.DONE:
        assert statuses["verify"] is TaskStatus.DONE
    else:
        assert statuses["verify"] is TaskStatus.FAILED
        assert handle.status().reason == "max_retries_exceeded"
        assert len(runtime.memory.read("failures").content) == 2


@pytest.mark.smoke
@pytest.mark.asyncio
async def test_critical_plan_rejected_once_then_approved(tmp_path: Path) -> None:
    empty_plan = WorkerReport(plan=PlanProposal(summary=""))
    good_plan = WorkerReport(
        plan=PlanProposal(summary="guard the migration", files_touched=("db/migrate.py",))
    )
    architect = ScriptedWorker({"plan": [empty_plan, good_plan]})
    plan_statuses: list[TaskStatus] = []

    def implement(assignment: Assignment) -> WorkerReport:
        plan_statuses.append(_statuses(runtime, assignment.request_id)["plan"])
        return WorkerReport()

    runtime = _runtime(
        tmp_path, _workers(tmp_path, architect=architect, backend=CallableWorker(implement))
    )

    handle = await runtime.scheduler.run(
        "run the orders migration", RequestMetadata(file_count_estimate=2), timeout=5
    )

    assert handle.tier is ComplexityTier.CRITICAL
    assert handle.status().kind is OutcomeKind.DONE
    rejections = runtime.bus.find(type=MessageType.REJECT.value)
    assert len(rejections) == 1
    assert rejections[0].recipient == "architect"
    assert rejections[0].body == "plan summary is empty"
    assert len(architect.calls) == 2
    assert plan_statuses == [TaskStatus.DONE]
    kinds = [
        event.event_type
        for event in runtime.events.replay(correlation_id=handle.request_id)
        if event.event_type in {EventType.PLAN_REJECTED, EventType.PLAN_APPROVED}
    ]
    assert kinds == [EventType.PLAN_REJECTED, EventType.PLAN_APPROVED]
    assert _statuses(runtime, handle.request_id)["plan"] is TaskStatus.DONE


@pytest.mark.smoke
@pytest.mark.asyncio
async def test_independent_subgraphs_both_finish_before_done(tmp_path: Path) -> None:
    gate = asyncio.Event()

    async def slow_frontend(_assignment: Assignment) -> WorkerReport:
        await gate.wait()
        return WorkerReport()

    runtime = _runtime(tmp_path, _workers(tmp_path, frontend=CallableWorker(slow_frontend)))

    handle = runtime.scheduler.submit(
        "wire settings page",
        RequestMetadata(file_count_estimate=3, domains=("backend", "frontend")),
    )

    async def backend_chain_done() -> None:
        while _statuses(runtime, handle.request_id).get("verify:backend") is not TaskStatus.DONE:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(backend_chain_done(), timeout=5)
    statuses = _statuses(runtime, handle.request_id)
    assert statuses["implement:frontend"] is TaskStatus.IN_PROGRESS
    assert handle.status().kind is OutcomeKind.IN_PROGRESS
    assert not handle.done()

    gate.set()
    outcome = await handle.wait(timeout=5)

    assert outcome.kind is OutcomeKind.DONE
    assert set(_statuses(runtime, handle.request_id).values()) == {TaskStatus.DONE}
