"""
Request lifecycle driver.

``Scheduler.submit`` classifies a request and, for tiers that need work,
builds its task graph and starts one asyncio driver per request. A driver
dispatches ready tasks to the cheapest capable worker, waits for whichever
in-flight task finishes first, applies the aggregated hook verdict to the
graph and repeats until the request resolves, escalates or is aborted.

Request states: RECEIVED -> CLASSIFIED -> DISPATCHED -> AWAITING_VERDICT ->
(RESOLVED | ESCALATED) -> CLOSED. Failed requests go straight to CLOSED.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

import structlog

from conductor.constants import (
    NAMESPACE_DECISIONS,
    NAMESPACE_WIP,
    ROLE_CONDUCTOR,
    ROLE_LIBRARIAN,
)
from conductor.control_plane.classifier import ClassifierThresholds, classify_request
from conductor.control_plane.feedback import build_rejection_feedback, escalation_evidence
from conductor.control_plane.plan_gate import PlanPolicy, find_plan_proposal
from conductor.control_plane.requests import CompletionCallback, RequestHandle, RequestRecord
from conductor.domain.errors import (
    AlreadyClaimed,
    InvalidTransition,
    MaxRetriesExceeded,
    NoCapableWorker,
    NotReady,
)
from conductor.domain.events import EventType
from conductor.domain.ids import generate_request_id, generate_verdict_id
from conductor.domain.models import (
    ComplexityTier,
    ConcurrencyMode,
    Message,
    MessagePriority,
    MessageType,
    OutcomeKind,
    RequestMetadata,
    RequestOutcome,
    RequestState,
    ReviewRating,
    Task,
    TaskKind,
    TaskStatus,
    Verdict,
    VerdictDetail,
    VerdictOutcome,
    Worker,
)
from conductor.knowledge_plane.librarian import Librarian
from conductor.knowledge_plane.memory_store import MemoryStore
from conductor.messaging_plane.bus import MessageBus
from conductor.observability.events import EventBus
from conductor.planning.shapes import build_graph_for_tier
from conductor.planning.task_graph import TaskGraph
from conductor.synthesis_plane.roles import WorkerRegistry
from conductor.synthesis_plane.workers import Assignment, WorkerAgent, WorkerReport
from conductor.utils.concurrency import BoundedSemaphore
from conductor.verification_plane.hook_runner import HookRunner, assess_verdicts

ACCEPTANCE_CHECK = "acceptance"
REASON_WORKER_ERROR = "worker_error"
REASON_NOT_DECLARED_DONE = "not_declared_done"
REASON_CLARIFICATION_REQUIRED = "clarification_required"
REASON_MAX_RETRIES = "max_retries_exceeded"
REASON_ADVERSARY_RECONSIDER = "adversary_reconsider"
REASON_ADVERSARY_SEVERITY = "adversary_high_severity"
REASON_PLAN_REVISIONS = "plan_revisions_exhausted"
REASON_NO_CAPABLE_WORKER = "no_capable_worker"
REASON_UNSCHEDULABLE = "unschedulable"
REASON_INTERNAL_ERROR = "internal_error"

_REJECT_ACTION = "revise and resubmit plan"


@dataclass(frozen=True, slots=True)
class SchedulerLimits:
    """Dispatch limits. Foreground slots are per request; background slots are shared.

    Plan resubmission is unbounded unless ``max_plan_revisions`` is set.
    """

    max_foreground_in_flight: int = 1
    max_background_in_flight: int = 4
    max_plan_revisions: int | None = None

    def __post_init__(self) -> None:
        if self.max_foreground_in_flight <= 0:
            raise ValueError("max_foreground_in_flight must be > 0")
        if self.max_background_in_flight <= 0:
            raise ValueError("max_background_in_flight must be > 0")
        if self.max_plan_revisions is not None and self.max_plan_revisions < 0:
            raise ValueError("max_plan_revisions must be >= 0")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object] | None) -> SchedulerLimits:
        options = dict(raw or {})
        defaults = cls()
        values: dict[str, int | None] = {}
        for key in ("max_foreground_in_flight", "max_background_in_flight", "max_plan_revisions"):
            value = options.get(key, getattr(defaults, key))
            if value is None and key == "max_plan_revisions":
                values[key] = None
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"scheduler.{key} must be an integer")
            values[key] = value
        return cls(**values)  # type: ignore[arg-type]


@dataclass(slots=True)
class _Attempt:
    report: WorkerReport | None
    verdicts: list[Verdict] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True, slots=True)
class _Dispatch:
    task_id: str
    worker_role: str


class Scheduler:
    """Owns every Task Graph mutation for the requests it drives.

    ``workers`` binds registry roles to implementations; roles without a
    binding are never dispatched. ``submit`` is synchronous but requires a
    running event loop for tiers that dispatch work.

    Closed requests stay queryable through :meth:`handle` and their tasks stay
    in the graph until :meth:`prune_closed` is called.
    """

    def __init__(
        self,
        *,
        registry: WorkerRegistry,
        workers: Mapping[str, WorkerAgent],
        hook_runner: HookRunner | None = None,
        graph: TaskGraph | None = None,
        bus: MessageBus | None = None,
        memory: MemoryStore | None = None,
        librarian: Librarian | None = None,
        plan_policy: PlanPolicy | None = None,
        thresholds: ClassifierThresholds | None = None,
        limits: SchedulerLimits | None = None,
        events: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        unknown = sorted(name for name in workers if name not in registry)
        if unknown:
            raise ValueError(f"worker implementations bound to unknown roles: {unknown}")
        self._registry = registry
        self._workers = dict(workers)
        self._hook_runner = hook_runner
        self._graph = graph if graph is not None else TaskGraph()
        self._events = events if events is not None else EventBus()
        self._bus = bus if bus is not None else MessageBus(events=self._events)
        self._memory = memory
        if librarian is None and memory is not None:
            librarian = Librarian(memory)
        self._librarian = librarian
        if plan_policy is None:
            plan_policy = PlanPolicy(
                risk_areas=librarian.risk_areas if librarian is not None else None
            )
        self._plan_policy = plan_policy
        self._thresholds = thresholds if thresholds is not None else ClassifierThresholds()
        self._limits = limits if limits is not None else SchedulerLimits()
        self._background = BoundedSemaphore(self._limits.max_background_in_flight)
        self._records: dict[str, RequestRecord] = {}
        self._inbox_cursor: dict[str, int] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        for name in (*self._workers, ROLE_CONDUCTOR, ROLE_LIBRARIAN):
            self._bus.register_mailbox(name)

    @property
    def graph(self) -> TaskGraph:
        return self._graph

    @property
    def bus(self) -> MessageBus:
        return self._bus

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def limits(self) -> SchedulerLimits:
        return self._limits

    def handle(self, request_id: str) -> RequestHandle:
        record = self._records.get(request_id)
        if record is None:
            raise KeyError(f"unknown request: {request_id}")
        return RequestHandle(record)

    def handles(self) -> tuple[RequestHandle, ...]:
        return tuple(RequestHandle(record) for record in self._records.values())

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def submit(
        self,
        description: str,
        metadata: RequestMetadata | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> RequestHandle:
        """Classify, plan and start a request; return its handle without waiting."""

        if not isinstance(description, str) or not description.strip():
            raise ValueError("description must be a non-empty string")
        meta = metadata if metadata is not None else RequestMetadata()
        record = RequestRecord(
            request_id=generate_request_id(),
            description=description.strip(),
            metadata=meta,
            on_complete=on_complete,
            foreground=BoundedSemaphore(self._limits.max_foreground_in_flight),
        )
        self._records[record.request_id] = record
        handle = RequestHandle(record)
        self._emit(record, EventType.REQUEST_RECEIVED, {"description": record.description})

        classification = classify_request(record.description, meta, self._thresholds)
        record.tier = classification.tier
        record.classification_reasons = classification.reasons
        record.state = RequestState.CLASSIFIED
        self._emit(
            record,
            EventType.REQUEST_CLASSIFIED,
            {"tier": classification.tier.value, "reasons": list(classification.reasons)},
        )
        self._logger.info(
            "request_classified",
            request_id=record.request_id,
            tier=classification.tier.value,
            reasons=list(classification.reasons),
        )

        if classification.tier is ComplexityTier.TRIVIAL:
            self._resolve(record)
            self._close(record)
            return handle
        if classification.tier is ComplexityTier.AMBIGUOUS:
            self._escalate(
                record,
                REASON_CLARIFICATION_REQUIRED,
                {"reasons": list(classification.reasons)},
            )
            self._close(record)
            return handle

        loop = asyncio.get_running_loop()
        record.planned = build_graph_for_tier(
            self._graph,
            request_id=record.request_id,
            description=record.description,
            tier=classification.tier,
            domains=meta.domains,
        )
        for label, task_id in record.planned.labels.items():
            self._emit(record, EventType.TASK_CREATED, {"task_id": task_id, "label": label})
        self._write_wip(record)
        record.driver = loop.create_task(
            self._drive(record), name=f"conductor-request-{record.request_id}"
        )
        return handle

    async def run(
        self,
        description: str,
        metadata: RequestMetadata | None = None,
        *,
        timeout: float | None = None,
    ) -> RequestHandle:
        """Submit and wait for the request to close."""

        handle = self.submit(description, metadata)
        await handle.wait(timeout)
        return handle

    def abort(self, request_id: str, reason: str = "aborted by caller") -> bool:
        """Stop dispatch for ``request_id`` and fail its unfinished tasks.

        In-flight workers run to completion; their results are ignored.
        Returns ``False`` when the request already has a final outcome.
        """

        record = self._records.get(request_id)
        if record is None:
            raise KeyError(f"unknown request: {request_id}")
        if record.finished:
            return False
        self._fail(record, f"aborted: {reason}", {})
        self._cancel_tasks(record, reason)
        record.token.cancel(reason)
        return True

    async def join(self) -> None:
        """Wait until every submitted request is closed."""

        for record in list(self._records.values()):
            await record.closed.wait()

    def prune_closed(self) -> tuple[str, ...]:
        """Forget closed requests and drop their tasks from the graph.

        Handles already returned to callers keep their outcome. Returns the
        pruned request ids.
        """

        pruned: list[str] = []
        for request_id, record in list(self._records.items()):
            if record.state is not RequestState.CLOSED:
                continue
            self._graph.discard_request(request_id)
            del self._records[request_id]
            pruned.append(request_id)
        if pruned:
            self._logger.info("requests_pruned", request_ids=pruned)
        return tuple(pruned)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _drive(self, record: RequestRecord) -> None:
        in_flight: dict[asyncio.Task[_Attempt], _Dispatch] = {}
        cancelled = asyncio.ensure_future(record.token.wait())
        try:
            while not record.token.is_cancelled:
                blocked = self._dispatch_ready(record, in_flight)
                if record.token.is_cancelled:
                    break
                if not in_flight and not blocked:
                    break
                if record.state is RequestState.DISPATCHED and not self._has_waiting_tasks(
                    record, in_flight
                ):
                    record.state = RequestState.AWAITING_VERDICT

                waiters: set[asyncio.Future[Any]] = {*in_flight, cancelled}
                released: asyncio.Future[None] | None = None
                if blocked:
                    released = asyncio.ensure_future(self._wait_any_release(record))
                    waiters.add(released)
                done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                if released is not None and not released.done():
                    released.cancel()

                for future in [item for item in in_flight if item in done]:
                    dispatch = in_flight.pop(future)
                    self._apply_attempt(record, dispatch, future.result())
            if not record.finished:
                self._finalize(record)
        except NoCapableWorker as exc:
            self._logger.error(
                "no_capable_worker", request_id=record.request_id, task_id=exc.task_id
            )
            self._fail(
                record,
                REASON_NO_CAPABLE_WORKER,
                {"task_id": exc.task_id, "tags": list(exc.tags)},
            )
            self._cancel_tasks(record, REASON_NO_CAPABLE_WORKER)
        except Exception as exc:  # noqa: BLE001
            self._logger.exception("request_driver_failed", request_id=record.request_id)
            if not record.finished:
                self._fail(record, REASON_INTERNAL_ERROR, {"error": str(exc)})
                self._cancel_tasks(record, REASON_INTERNAL_ERROR)
        finally:
            cancelled.cancel()
            for future, dispatch in in_flight.items():
                future.add_done_callback(self._late_result_callback(record, dispatch))
            self._close(record)

    def _dispatch_ready(
        self,
        record: RequestRecord,
        in_flight: dict[asyncio.Task[_Attempt], _Dispatch],
    ) -> bool:
        """Dispatch every ready task a slot is free for; return whether any had to wait."""

        blocked = False
        for task in self._graph.ready_tasks(record.request_id):
            role = self._select_worker(task)
            worker = self._registry.require(role)
            slot = self._slot_for(record, worker)
            if not slot.try_acquire():
                blocked = True
                continue
            try:
                self._graph.claim(task.id, role)
                started = self._graph.start(task.id)
            except (AlreadyClaimed, NotReady, InvalidTransition) as exc:
                slot.release()
                self._logger.warning(
                    "task_dispatch_skipped", task_id=task.id, worker_role=role, error=str(exc)
                )
                continue

            if record.state is RequestState.CLASSIFIED:
                record.state = RequestState.DISPATCHED
                self._emit(record, EventType.REQUEST_DISPATCHED, {})
            self._emit(
                record,
                EventType.TASK_CLAIMED,
                {"task_id": task.id, "label": task.label, "worker_role": role},
            )
            record.plan_cursor[task.id] = self._bus.last_global_sequence
            assignment = self._assignment_for(record, started, role)
            future = asyncio.ensure_future(self._perform(record, started, role, assignment))
            future.add_done_callback(lambda _done, permit=slot: permit.release())
            in_flight[future] = _Dispatch(task_id=task.id, worker_role=role)
            self._logger.info(
                "task_dispatched",
                request_id=record.request_id,
                task_id=task.id,
                label=task.label,
                worker_role=role,
                mode=worker.concurrency_mode.value,
                attempt=assignment.attempt,
            )
        return blocked

    def _select_worker(self, task: Task) -> str:
        for name in self._registry.match(task.domain_tags):
            if name in self._workers:
                return name
        raise NoCapableWorker(task.id, task.domain_tags)

    def _slot_for(self, record: RequestRecord, worker: Worker) -> BoundedSemaphore:
        if worker.concurrency_mode is ConcurrencyMode.BACKGROUND:
            return self._background
        assert record.foreground is not None
        return record.foreground

    async def _wait_any_release(self, record: RequestRecord) -> None:
        assert record.foreground is not None
        waiters = [
            asyncio.ensure_future(self._background.wait_released()),
            asyncio.ensure_future(record.foreground.wait_released()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    def _has_waiting_tasks(
        self,
        record: RequestRecord,
        in_flight: Mapping[asyncio.Task[_Attempt], _Dispatch],
    ) -> bool:
        running = {dispatch.task_id for dispatch in in_flight.values()}
        return any(
            not task.is_terminal and task.id not in running
            for task in self._graph.tasks(record.request_id)
        )

    def _assignment_for(self, record: RequestRecord, task: Task, role: str) -> Assignment:
        cursor = self._inbox_cursor.get(role, 0)
        inbox = self._bus.receive(role, since_sequence=cursor)
        if inbox:
            self._inbox_cursor[role] = inbox[-1].sequence + 1
        context: dict[str, object] = {
            "tier": record.tier.value if record.tier is not None else None,
            "domains": list(record.metadata.domains),
            "touched_files": list(record.metadata.touched_files),
        }
        if task.kind is TaskKind.IMPLEMENT and record.plan_files:
            context["plan_files"] = list(record.plan_files)
        return Assignment(
            request_id=record.request_id,
            task_id=task.id,
            task_kind=task.kind,
            label=task.label,
            description=task.description,
            worker_role=role,
            attempt=task.retry_count + 1,
            revision=task.revision,
            inbox=tuple(inbox),
            feedback=dict(record.feedback.get(task.id, {})),
            context=context,
        )

    async def _perform(
        self,
        record: RequestRecord,
        task: Task,
        role: str,
        assignment: Assignment,
    ) -> _Attempt:
        agent = self._workers[role]
        try:
            report = await agent.perform(assignment)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "worker_failed",
                request_id=record.request_id,
                task_id=task.id,
                worker_role=role,
                error=str(exc),
            )
            return _Attempt(report=None, error=f"{type(exc).__name__}: {exc}")
        if not isinstance(report, WorkerReport):
            return _Attempt(
                report=None, error=f"worker returned {type(report).__name__}, not WorkerReport"
            )
        if not report.declared_done:
            return _Attempt(report=report)
        if self._hook_runner is None or record.token.is_cancelled:
            return _Attempt(report=report)
        verdicts = await self._hook_runner.run_checks(role, report.artifacts, task_id=task.id)
        return _Attempt(report=report, verdicts=verdicts)

    # ------------------------------------------------------------------
    # Verdicts
    # ------------------------------------------------------------------

    def _apply_attempt(self, record: RequestRecord, dispatch: _Dispatch, attempt: _Attempt) -> None:
        task = self._graph.get(dispatch.task_id)
        if record.token.is_cancelled or task.is_terminal:
            self._log_late_result(record, dispatch)
            return

        record.verdicts.extend(attempt.verdicts)
        if attempt.report is not None and attempt.report.artifacts.paths:
            record.artifacts[task.label] = attempt.report.artifacts.paths
        aggregate, primary = self._aggregate(dispatch, attempt)
        if aggregate.failed and not attempt.verdicts:
            record.verdicts.append(aggregate)
        self._send_verdict_message(record, task, aggregate)
        self._emit(
            record,
            EventType.VERDICT_RECORDED,
            {
                "task_id": task.id,
                "verdict_id": aggregate.verdict_id,
                "outcome": aggregate.outcome.value,
                "reason": aggregate.detail.reason,
            },
        )

        review = attempt.report.review if attempt.report is not None else None
        if task.kind is TaskKind.ADVERSARY and review is not None and review.must_escalate:
            reason = (
                REASON_ADVERSARY_RECONSIDER
                if review.rating is ReviewRating.RECONSIDER
                else REASON_ADVERSARY_SEVERITY
            )
            self._escalate(
                record,
                reason,
                escalation_evidence(
                    task,
                    aggregate,
                    extra={
                        "rating": review.rating.value,
                        "review_summary": review.summary,
                        "severity": review.severity.value,
                    },
                ),
            )
            return

        try:
            result = self._graph.complete(task.id, aggregate)
        except MaxRetriesExceeded as exc:
            self._emit(
                record,
                EventType.TASK_FAILED,
                {"task_id": task.id, "retry_count": exc.task.retry_count},
            )
            self._escalate(
                record,
                REASON_MAX_RETRIES,
                escalation_evidence(
                    exc.task,
                    primary if primary is not None else aggregate,
                    extra={"max_retries": exc.max_retries},
                ),
            )
            return
        if not result.applied:
            return

        if aggregate.outcome is VerdictOutcome.FAIL:
            failing = [verdict for verdict in attempt.verdicts if not verdict.passed]
            record.feedback[task.id] = build_rejection_feedback(
                failing or [aggregate], reason=aggregate.detail.reason
            )
            self._emit(
                record,
                EventType.TASK_RETRIED,
                {
                    "task_id": task.id,
                    "retry_count": result.task.retry_count,
                    "reason": aggregate.detail.reason,
                },
            )
            return

        record.feedback.pop(task.id, None)
        if result.awaiting_approval:
            self._review_plan(record, result.task, attempt.report)
            return

        self._emit(
            record,
            EventType.TASK_COMPLETED,
            {"task_id": task.id, "label": task.label, "unlocked": list(result.unlocked)},
        )

    def _aggregate(self, dispatch: _Dispatch, attempt: _Attempt) -> tuple[Verdict, Verdict | None]:
        """Collapse per-check verdicts into the one verdict applied to the graph."""

        role = dispatch.worker_role
        if attempt.error is not None:
            failure = self._synthetic(
                dispatch, VerdictOutcome.FAIL, REASON_WORKER_ERROR, excerpt=(attempt.error,)
            )
            return failure, None
        if attempt.report is not None and not attempt.report.declared_done:
            return self._synthetic(dispatch, VerdictOutcome.FAIL, REASON_NOT_DECLARED_DONE), None
        if self._hook_runner is None:
            return self._synthetic(dispatch, VerdictOutcome.PASS, None), None

        decision = assess_verdicts(self._registry.require(role), attempt.verdicts)
        if decision.accepted:
            return self._synthetic(dispatch, VerdictOutcome.PASS, None), None
        primary = decision.failing[0] if decision.failing else None
        names: list[str] = []
        for verdict in decision.failing:
            names.extend(verdict.detail.failing_names)
        aggregate = self._synthetic(
            dispatch,
            VerdictOutcome.FAIL,
            decision.reason,
            failing_names=tuple(dict.fromkeys(names)),
            excerpt=primary.detail.excerpt if primary is not None else (),
        )
        return aggregate, primary if primary is not None else aggregate

    def _synthetic(
        self,
        dispatch: _Dispatch,
        outcome: VerdictOutcome,
        reason: str | None,
        *,
        failing_names: tuple[str, ...] = (),
        excerpt: tuple[str, ...] = (),
    ) -> Verdict:
        return Verdict(
            worker_role=dispatch.worker_role,
            check_name=ACCEPTANCE_CHECK,
            outcome=outcome,
            verdict_id=generate_verdict_id(),
            detail=VerdictDetail(reason=reason, failing_names=failing_names, excerpt=excerpt),
            task_id=dispatch.task_id,
        )

    def _send_verdict_message(self, record: RequestRecord, task: Task, verdict: Verdict) -> None:
        passed = verdict.outcome is not VerdictOutcome.FAIL
        self._bus.send(
            Message(
                type=MessageType.PASS.value if passed else MessageType.FAIL.value,
                sender=ROLE_CONDUCTOR,
                recipient=verdict.worker_role,
                body=f"{task.label}: {verdict.detail.reason or verdict.outcome.value}",
                priority=MessagePriority.MEDIUM if passed else MessagePriority.HIGH,
                task_id=task.id,
                request_id=record.request_id,
            )
        )

    def _review_plan(
        self,
        record: RequestRecord,
        task: Task,
        report: WorkerReport | None,
    ) -> None:
        proposal = find_plan_proposal(
            self._bus,
            task.id,
            report,
            after_global_sequence=record.plan_cursor.get(task.id, 0),
        )
        decision = self._plan_policy.evaluate(proposal)
        if decision.approved:
            result = self._graph.approve(task.id)
            if proposal is not None:
                record.plan_files.extend(proposal.files_touched)
            self._emit(
                record,
                EventType.PLAN_APPROVED,
                {
                    "task_id": task.id,
                    "revision": task.revision,
                    "risk_hits": list(decision.risk_hits),
                },
            )
            self._emit(
                record,
                EventType.TASK_COMPLETED,
                {"task_id": task.id, "label": task.label, "unlocked": list(result.unlocked)},
            )
            self._logger.info(
                "plan_approved",
                request_id=record.request_id,
                task_id=task.id,
                revision=task.revision,
            )
            return

        author = task.assigned_worker_role or ROLE_CONDUCTOR
        rejected = self._graph.reject(task.id, decision.reason)
        cycles = record.plan_rejections.get(task.id, 0) + 1
        record.plan_rejections[task.id] = cycles
        self._bus.send(
            Message(
                type=MessageType.REJECT.value,
                sender=ROLE_CONDUCTOR,
                recipient=author,
                body=decision.reason,
                priority=MessagePriority.HIGH,
                action_needed=_REJECT_ACTION,
                task_id=task.id,
                request_id=record.request_id,
            )
        )
        record.feedback[task.id] = {
            "reason": decision.reason,
            "plan_rejection": list(decision.reasons),
            "checks": [],
            "omitted_checks": 0,
        }
        self._logger.warning(
            "plan_rejected",
            request_id=record.request_id,
            task_id=task.id,
            author=author,
            cycle=cycles,
            revision=rejected.revision,
            reasons=list(decision.reasons),
        )
        self._emit(
            record,
            EventType.PLAN_REJECTED,
            {"task_id": task.id, "cycle": cycles, "reasons": list(decision.reasons)},
        )
        cap = self._limits.max_plan_revisions
        if cap is not None and cycles > cap:
            self._escalate(
                record,
                REASON_PLAN_REVISIONS,
                escalation_evidence(rejected, extra={"rejections": cycles}),
            )

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _finalize(self, record: RequestRecord) -> None:
        tasks = self._graph.tasks(record.request_id)
        if all(task.status is TaskStatus.DONE for task in tasks):
            self._resolve(record)
            return
        self._fail(
            record,
            REASON_UNSCHEDULABLE,
            {"tasks": {task.label or task.id: task.status.value for task in tasks}},
        )
        self._cancel_tasks(record, REASON_UNSCHEDULABLE)

    def _resolve(self, record: RequestRecord) -> None:
        tasks = self._graph.tasks(record.request_id)
        result: dict[str, object] = {
            "request_id": record.request_id,
            "tier": record.tier.value if record.tier is not None else None,
            "tasks": {task.label or task.id: task.status.value for task in tasks},
            "artifacts": {label: list(paths) for label, paths in record.artifacts.items()},
        }
        record.outcome = RequestOutcome.done(result)
        record.state = RequestState.RESOLVED
        self._emit(record, EventType.REQUEST_RESOLVED, {"tasks": len(tasks)})
        self._logger.info("request_resolved", request_id=record.request_id, tasks=len(tasks))

    def _escalate(
        self,
        record: RequestRecord,
        reason: str,
        evidence: Mapping[str, object],
    ) -> None:
        if record.finished:
            return
        record.outcome = RequestOutcome.escalated(reason, evidence)
        record.state = RequestState.ESCALATED
        self._emit(record, EventType.REQUEST_ESCALATED, {"reason": reason})
        self._logger.warning("request_escalated", request_id=record.request_id, reason=reason)
        self._cancel_tasks(record, reason)
        record.token.cancel(reason)

    def _fail(self, record: RequestRecord, reason: str, evidence: Mapping[str, object]) -> None:
        if record.finished:
            return
        record.outcome = RequestOutcome.failed(reason, evidence)
        self._emit(record, EventType.REQUEST_FAILED, {"reason": reason})
        self._logger.warning("request_failed", request_id=record.request_id, reason=reason)

    def _cancel_tasks(self, record: RequestRecord, reason: str) -> None:
        if record.planned is None:
            return
        for task in self._graph.cancel(record.planned.task_ids, reason):
            self._emit(record, EventType.TASK_CANCELLED, {"task_id": task.id, "label": task.label})

    def _late_result_callback(
        self, record: RequestRecord, dispatch: _Dispatch
    ) -> Callable[[asyncio.Future[_Attempt]], None]:
        def _callback(future: asyncio.Future[_Attempt]) -> None:
            if future.cancelled():
                return
            error = future.exception()
            if error is not None:
                self._logger.warning(
                    "late_worker_error",
                    request_id=record.request_id,
                    task_id=dispatch.task_id,
                    error=str(error),
                )
                return
            self._log_late_result(record, dispatch)

        return _callback

    def _log_late_result(self, record: RequestRecord, dispatch: _Dispatch) -> None:
        self._logger.info(
            "late_result_ignored",
            request_id=record.request_id,
            task_id=dispatch.task_id,
            worker_role=dispatch.worker_role,
            reason=record.token.reason,
        )

    # ------------------------------------------------------------------
    # Close and memory write-back
    # ------------------------------------------------------------------

    def _close(self, record: RequestRecord) -> None:
        if record.state is RequestState.CLOSED:
            return
        if self._memory is not None:
            try:
                self._write_back(record)
            except Exception as exc:  # noqa: BLE001
                self._logger.error(
                    "memory_writeback_failed", request_id=record.request_id, error=str(exc)
                )
        record.state = RequestState.CLOSED
        self._emit(record, EventType.REQUEST_CLOSED, {"outcome": record.outcome.kind.value})
        record.closed.set()
        if record.on_complete is not None:
            try:
                record.on_complete(RequestHandle(record))
            except Exception as exc:  # noqa: BLE001
                self._logger.error(
                    "completion_callback_failed", request_id=record.request_id, error=str(exc)
                )

    def _write_wip(self, record: RequestRecord) -> None:
        if self._memory is None:
            return
        tier = record.tier.value if record.tier is not None else "-"
        self._memory.append(
            NAMESPACE_WIP,
            ROLE_CONDUCTOR,
            record.request_id,
            f"tier: {tier}\n{record.description}",
        )

    def _write_back(self, record: RequestRecord) -> None:
        assert self._memory is not None
        outcome = record.outcome
        lines = [
            f"tier: {record.tier.value if record.tier is not None else '-'}",
            f"outcome: {outcome.kind.value}",
        ]
        if outcome.reason:
            lines.append(f"reason: {outcome.reason}")
        lines.append(f"request: {record.description}")
        for task in self._graph.tasks(record.request_id):
            lines.append(f"- {task.label or task.id}: {task.status.value}")
        self._memory.append(
            NAMESPACE_DECISIONS, ROLE_CONDUCTOR, record.request_id, "\n".join(lines)
        )
        if record.planned is not None and not record.planned.is_empty:
            self._memory.remove_headings(NAMESPACE_WIP, ROLE_CONDUCTOR, [record.request_id])

        if self._librarian is None:
            return
        self._librarian.record_failures(record.request_id, record.verdicts)
        if outcome.kind is OutcomeKind.DONE:
            self._librarian.record_touched_areas(record.request_id, self._touched_areas(record))
        self._librarian.observe(self._bus)

    def _touched_areas(self, record: RequestRecord) -> list[str]:
        paths = [*record.plan_files, *record.metadata.touched_files]
        for artifact_paths in record.artifacts.values():
            paths.extend(artifact_paths)
        areas: list[str] = []
        for raw in paths:
            path = PurePosixPath(raw.replace("\\", "/"))
            parent = path.parent.as_posix()
            areas.append(path.as_posix() if parent == "." else parent)
        return areas

    def _emit(
        self,
        record: RequestRecord,
        event_type: EventType,
        payload: Mapping[str, object],
    ) -> None:
        self._events.emit(event_type, payload, correlation_id=record.request_id)


__all__ = [
    "ACCEPTANCE_CHECK",
    "REASON_ADVERSARY_RECONSIDER",
    "REASON_ADVERSARY_SEVERITY",
    "REASON_CLARIFICATION_REQUIRED",
    "REASON_INTERNAL_ERROR",
    "REASON_MAX_RETRIES",
    "REASON_NO_CAPABLE_WORKER",
    "REASON_NOT_DECLARED_DONE",
    "REASON_PLAN_REVISIONS",
    "REASON_UNSCHEDULABLE",
    "REASON_WORKER_ERROR",
    "Scheduler",
    "SchedulerLimits",
]
