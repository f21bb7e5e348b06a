"""Plan-approval policy applied to PLAN tasks awaiting approval."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import PurePosixPath
from typing import Final

from conductor.domain.models import MessageType
from conductor.messaging_plane.bus import MessageBus
from conductor.synthesis_plane.workers import PlanProposal, WorkerReport

DEFAULT_MAX_FILES_TOUCHED: Final[int] = 12


@dataclass(frozen=True, slots=True)
class PlanDecision:
    approved: bool
    reasons: tuple[str, ...] = ()
    proposal: PlanProposal | None = None
    risk_hits: tuple[str, ...] = ()

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons) if self.reasons else "approved"


class PlanPolicy:
    """Approve or reject a plan by files-touched budget and flagged risk areas.

    A plan touching a risk area is approved only if it lists that area under
    ``risks:``. ``risk_areas`` is called on every evaluation so newly flagged
    areas apply to the next submission.
    """

    def __init__(
        self,
        *,
        max_files_touched: int = DEFAULT_MAX_FILES_TOUCHED,
        risk_areas: Callable[[], Iterable[str]] | None = None,
        require_risk_acknowledgement: bool = True,
    ) -> None:
        if max_files_touched <= 0:
            raise ValueError("max_files_touched must be > 0")
        self._max_files_touched = max_files_touched
        self._risk_areas = risk_areas
        self._require_ack = require_risk_acknowledgement

    @property
    def max_files_touched(self) -> int:
        return self._max_files_touched

    @classmethod
    def from_mapping(
        cls,
        raw: Mapping[str, object] | None,
        *,
        risk_areas: Callable[[], Iterable[str]] | None = None,
    ) -> PlanPolicy:
        options = dict(raw or {})
        max_files = options.get("max_files_touched", DEFAULT_MAX_FILES_TOUCHED)
        if isinstance(max_files, bool) or not isinstance(max_files, int):
            raise ValueError("plan_gate.max_files_touched must be an integer")
        require_ack = options.get("require_risk_acknowledgement", True)
        if not isinstance(require_ack, bool):
            raise ValueError("plan_gate.require_risk_acknowledgement must be a boolean")
        return cls(
            max_files_touched=max_files,
            risk_areas=risk_areas,
            require_risk_acknowledgement=require_ack,
        )

    def evaluate(self, proposal: PlanProposal | None) -> PlanDecision:
        if proposal is None:
            return PlanDecision(approved=False, reasons=("no plan content submitted",))

        reasons: list[str] = []
        if not proposal.summary.strip():
            reasons.append("plan summary is empty")
        files = tuple(dict.fromkeys(proposal.files_touched))
        if len(files) > self._max_files_touched:
            reasons.append(
                f"plan touches {len(files)} files, limit is {self._max_files_touched}"
            )

        hits = self._risk_hits(files)
        if self._require_ack:
            acknowledged = {item.strip().lower() for item in proposal.acknowledged_risks}
            unacknowledged = [area for area in hits if area.lower() not in acknowledged]
            if unacknowledged:
                reasons.append("unacknowledged risk areas: " + ", ".join(unacknowledged))

        return PlanDecision(
            approved=not reasons,
            reasons=tuple(reasons),
            proposal=proposal,
            risk_hits=hits,
        )

    def _risk_hits(self, files: Iterable[str]) -> tuple[str, ...]:
        if self._risk_areas is None:
            return ()
        areas = [area.strip() for area in self._risk_areas() if area.strip()]
        hits: dict[str, None] = {}
        for raw in files:
            path = PurePosixPath(raw.replace("\\", "/")).as_posix()
            for area in areas:
                if _touches(path, area):
                    hits[area] = None
        return tuple(hits)


def find_plan_proposal(
    bus: MessageBus | None,
    task_id: str,
    report: WorkerReport | None = None,
    *,
    after_global_sequence: int = 0,
) -> PlanProposal | None:
    """Latest PLAN message for ``task_id`` on the bus, else the plan in the worker report.

    Messages at or before ``after_global_sequence`` belong to an earlier
    submission and are skipped.
    """

    if bus is not None:
        messages = [
            message
            for message in bus.find(type=MessageType.PLAN.value, task_id=task_id)
            if message.global_sequence > after_global_sequence
        ]
        if messages:
            latest = max(messages, key=lambda message: message.global_sequence)
            return PlanProposal.from_message(latest)
    if report is not None:
        return report.plan
    return None


def _touches(path: str, area: str) -> bool:
    normalized = area.replace("\\", "/").rstrip("/")
    if any(char in normalized for char in "*?["):
        return fnmatchcase(path, normalized)
    return path == normalized or path.startswith(f"{normalized}/")


__all__ = [
    "DEFAULT_MAX_FILES_TOUCHED",
    "PlanDecision",
    "PlanPolicy",
    "find_plan_proposal",
]
