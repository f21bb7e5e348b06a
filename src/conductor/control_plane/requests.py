"""Request records and the caller-facing ``RequestHandle``."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from conductor.domain.errors import EscalationRequired, RequestFailed
from conductor.domain.models import (
    ComplexityTier,
    OutcomeKind,
    RequestMetadata,
    RequestOutcome,
    RequestState,
    Verdict,
)
from conductor.planning.shapes import PlannedGraph
from conductor.utils.concurrency import BoundedSemaphore, CancellationToken

if TYPE_CHECKING:
    from conductor.domain.models import JSONValue

CompletionCallback = Callable[["RequestHandle"], object]


@dataclass(slots=True)
class RequestRecord:
    """Mutable scheduler-side state for one request."""

    request_id: str
    description: str
    metadata: RequestMetadata
    state: RequestState = RequestState.RECEIVED
    tier: ComplexityTier | None = None
    classification_reasons: tuple[str, ...] = ()
    planned: PlannedGraph | None = None
    outcome: RequestOutcome = field(default_factory=RequestOutcome.in_progress)
    on_complete: CompletionCallback | None = None
    token: CancellationToken = field(default_factory=CancellationToken)
    foreground: BoundedSemaphore | None = None
    closed: asyncio.Event = field(default_factory=asyncio.Event)
    verdicts: list[Verdict] = field(default_factory=list)
    feedback: dict[str, dict[str, JSONValue]] = field(default_factory=dict)
    plan_cursor: dict[str, int] = field(default_factory=dict)
    plan_rejections: dict[str, int] = field(default_factory=dict)
    artifacts: dict[str, tuple[str, ...]] = field(default_factory=dict)
    plan_files: list[str] = field(default_factory=list)
    driver: asyncio.Task[None] | None = None

    @property
    def finished(self) -> bool:
        return self.outcome.is_final


class RequestHandle:
    """Caller view of a submitted request.

    ``status()`` never blocks. ``wait()`` returns once the request is CLOSED,
    i.e. after memory write-back. ``result()`` returns the result of a done
    request or raises the matching error for escalated and failed ones.
    """

    def __init__(self, record: RequestRecord) -> None:
        self._record = record

    @property
    def request_id(self) -> str:
        return self._record.request_id

    @property
    def description(self) -> str:
        return self._record.description

    @property
    def tier(self) -> ComplexityTier | None:
        return self._record.tier

    @property
    def state(self) -> RequestState:
        return self._record.state

    @property
    def task_labels(self) -> Mapping[str, str]:
        planned = self._record.planned
        return dict(planned.labels) if planned is not None else {}

    def status(self) -> RequestOutcome:
        return self._record.outcome

    def done(self) -> bool:
        return self._record.state is RequestState.CLOSED

    async def wait(self, timeout: float | None = None) -> RequestOutcome:
        if timeout is None:
            await self._record.closed.wait()
        else:
            await asyncio.wait_for(self._record.closed.wait(), timeout=timeout)
        return self._record.outcome

    def result(self) -> Mapping[str, object]:
        outcome = self._record.outcome
        if outcome.kind is OutcomeKind.DONE:
            return outcome.result
        if outcome.kind is OutcomeKind.ESCALATED:
            raise EscalationRequired(
                self.request_id, outcome.reason or "escalated", outcome.evidence
            )
        if outcome.kind is OutcomeKind.FAILED:
            raise RequestFailed(self.request_id, outcome.reason or "failed", outcome.evidence)
        raise RuntimeError(f"request {self.request_id} is still in progress")

    def __repr__(self) -> str:
        return (
            f"RequestHandle(request_id={self.request_id!r}, state={self.state.value}, "
            f"outcome={self._record.outcome.kind.value})"
        )


__all__ = ["CompletionCallback", "RequestHandle", "RequestRecord"]
