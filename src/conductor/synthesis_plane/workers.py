"""Typed worker boundary: what a worker receives and what it must report back.

How a worker produces its artifact (model call, script, human) is outside the
orchestrator. The scheduler hands a worker an ``Assignment`` and expects a
``WorkerReport``; the hook runner then checks the declared artifacts.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Protocol, TypeVar, runtime_checkable

from conductor.domain.models import FindingSeverity, Message, ReviewRating, TaskKind

_E = TypeVar("_E", bound=StrEnum)

_ESCALATING_SEVERITIES = frozenset({FindingSeverity.HIGH, FindingSeverity.CRITICAL})


@dataclass(frozen=True, slots=True)
class Assignment:
    """A dispatched task as seen by the worker."""

    request_id: str
    task_id: str
    task_kind: TaskKind
    label: str
    description: str
    worker_role: str
    attempt: int = 1
    revision: int = 0
    inbox: tuple[Message, ...] = ()
    feedback: Mapping[str, object] = field(default_factory=dict)
    context: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ArtifactDescriptor:
    """Files a worker declares as its output, relative to ``workdir``."""

    paths: tuple[str, ...] = ()
    workdir: Path | None = None
    summary: str = ""
    manifests: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for path in self.paths:
            if not isinstance(path, str) or not path.strip():
                raise ValueError("ArtifactDescriptor.paths entries must be non-empty strings")
        if self.workdir is not None and not isinstance(self.workdir, Path):
            object.__setattr__(self, "workdir", Path(self.workdir))


@dataclass(frozen=True, slots=True)
class PlanProposal:
    """Plan content submitted for approval, read from a PLAN message or a report."""

    summary: str
    files_touched: tuple[str, ...] = ()
    author: str = ""
    acknowledged_risks: tuple[str, ...] = ()

    @classmethod
    def from_message(cls, message: Message) -> PlanProposal:
        """Parse a PLAN message body.

        Free text forms the summary; a ``files:`` line starts a list of touched
        paths and a ``risks:`` line a list of acknowledged risk areas, one
        ``- item`` per line.
        """

        summary_lines: list[str] = []
        sections: dict[str, list[str]] = {"files": [], "risks": []}
        current: str | None = None
        for raw_line in message.body.splitlines():
            line = raw_line.strip()
            header = line.lower().rstrip(":")
            if line.endswith(":") and header in {"files", "files touched", "risks"}:
                current = "risks" if header == "risks" else "files"
                continue
            if current is not None and line.startswith(("-", "*")):
                sections[current].append(line.lstrip("-* ").strip())
                continue
            if line:
                current = None
                summary_lines.append(line)
        return cls(
            summary="\n".join(summary_lines),
            files_touched=tuple(sections["files"]),
            author=message.sender,
            acknowledged_risks=tuple(sections["risks"]),
        )


@dataclass(frozen=True, slots=True)
class ReviewFinding:
    """Structured outcome of a review, advocate or adversary task.

    ``rating`` and ``severity`` accept their enum values as strings.
    """

    rating: ReviewRating
    summary: str = ""
    severity: FindingSeverity = FindingSeverity.LOW

    def __post_init__(self) -> None:
        object.__setattr__(self, "rating", _member(ReviewRating, self.rating, "rating"))
        severity = self.severity
        if isinstance(severity, str) and not isinstance(severity, FindingSeverity):
            severity = severity.strip().lower()
        object.__setattr__(self, "severity", _member(FindingSeverity, severity, "severity"))

    @property
    def must_escalate(self) -> bool:
        """A RECONSIDER rating or a high/critical severity is never auto-resolved."""

        return self.rating is ReviewRating.RECONSIDER or self.severity in _ESCALATING_SEVERITIES


def _member(enum_type: type[_E], value: object, name: str) -> _E:
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValueError(f"ReviewFinding.{name} must be one of: {allowed}") from None


@dataclass(frozen=True, slots=True)
class WorkerReport:
    """What a worker returns: its artifacts and whether it considers the task done."""

    artifacts: ArtifactDescriptor = field(default_factory=ArtifactDescriptor)
    declared_done: bool = True
    review: ReviewFinding | None = None
    plan: PlanProposal | None = None
    notes: str = ""


@runtime_checkable
class WorkerAgent(Protocol):
    """Worker contract. Implementations may be slow; the scheduler never preempts them."""

    async def perform(self, assignment: Assignment) -> WorkerReport: ...


WorkerFn = Callable[[Assignment], "WorkerReport | Awaitable[WorkerReport]"]


class CallableWorker:
    """Adapt a plain (sync or async) function to ``WorkerAgent``."""

    def __init__(self, fn: WorkerFn, *, name: str | None = None) -> None:
        if not callable(fn):
            raise ValueError("fn must be callable")
        self._fn = fn
        self.name = name or getattr(fn, "__name__", fn.__class__.__name__)
        self.calls: list[Assignment] = []

    async def perform(self, assignment: Assignment) -> WorkerReport:
        self.calls.append(assignment)
        result = self._fn(assignment)
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, WorkerReport):
            raise TypeError(
                f"worker {self.name!r} returned {type(result).__name__}, expected WorkerReport"
            )
        return result


class ScriptedWorker:
    """Replay a fixed sequence of reports per task label; the last one repeats."""

    def __init__(
        self,
        reports: Mapping[str, Sequence[WorkerReport]] | None = None,
        *,
        default: WorkerReport | None = None,
    ) -> None:
        self._reports = {label: list(items) for label, items in (reports or {}).items()}
        self._default = default if default is not None else WorkerReport()
        self.calls: list[Assignment] = []

    async def perform(self, assignment: Assignment) -> WorkerReport:
        self.calls.append(assignment)
        queue = self._reports.get(assignment.label)
        if not queue:
            return self._default
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]


__all__ = [
    "ArtifactDescriptor",
    "Assignment",
    "CallableWorker",
    "PlanProposal",
    "ReviewFinding",
    "ScriptedWorker",
    "WorkerAgent",
    "WorkerFn",
    "WorkerReport",
]
