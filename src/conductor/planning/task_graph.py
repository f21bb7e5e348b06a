"""Thread-safe task DAG with claim protocol and incremental readiness propagation."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, replace
from heapq import heapify, heappop, heappush
from typing import Any

import structlog

from conductor.constants import DEFAULT_MAX_RETRIES
from conductor.domain.errors import (
    AlreadyClaimed,
    CycleError,
    InvalidTransition,
    MaxRetriesExceeded,
    NotReady,
)
from conductor.domain.ids import generate_task_id
from conductor.domain.models import Task, TaskKind, TaskStatus, Verdict, VerdictOutcome


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Outcome of applying one verdict to one task."""

    task: Task
    applied: bool
    unlocked: tuple[str, ...] = ()

    @property
    def awaiting_approval(self) -> bool:
        return self.task.awaiting_approval


class TaskGraph:
    """Directed acyclic graph of tasks. Edges point from dependency to dependent.

    Every mutation runs under one re-entrant lock, so concurrent claims on the
    same task are mutually exclusive and the first claimer wins. Each task
    keeps a counter of unmet dependencies; completing a task decrements the
    counters of its direct dependents only.

    Dispatchable tasks are indexed per request and downstream depths are
    raised along ancestors as edges are added, so neither a completion nor a
    ``ready_tasks`` call rescans the graph.
    """

    def __init__(
        self,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        logger: Any | None = None,
    ) -> None:
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ValueError("max_retries must be an integer >= 0")
        self._max_retries = max_retries
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._children: dict[str, set[str]] = {}
        self._unmet: dict[str, int] = {}
        self._depth: dict[str, int] = {}
        self._ready: dict[str | None, set[str]] = {}
        self._applied_verdicts: dict[str, str] = {}
        self._next_seq = 0
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._tasks

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_task(
        self,
        description: str,
        depends_on: Iterable[str] = (),
        priority: int = 0,
        *,
        task_id: str | None = None,
        request_id: str | None = None,
        kind: TaskKind | str = TaskKind.GENERIC,
        label: str = "",
        domain_tags: Iterable[str] = (),
        requires_approval: bool = False,
    ) -> str:
        """Insert a task and return its id.

        Raises ``KeyError`` for unknown dependency ids and ``CycleError`` when
        the new edges would close a cycle. Nothing is committed on failure.
        """

        dependencies = frozenset(depends_on)
        with self._lock:
            new_id = task_id if task_id is not None else generate_task_id()
            if new_id in self._tasks:
                raise ValueError(f"duplicate task id: {new_id}")
            if new_id in dependencies:
                raise CycleError([(new_id, new_id)])
            unknown = sorted(dep for dep in dependencies if dep not in self._tasks)
            if unknown:
                raise KeyError(f"unknown dependency id(s): {', '.join(unknown)}")
            self._assert_no_cycle(new_id, dependencies)

            unmet = sum(
                1 for dep in dependencies if self._tasks[dep].status is not TaskStatus.DONE
            )
            task = Task(
                id=new_id,
                description=description,
                status=TaskStatus.BLOCKED if unmet else TaskStatus.PENDING,
                depends_on=dependencies,
                priority=priority,
                request_id=request_id,
                kind=kind,
                label=label,
                domain_tags=frozenset(domain_tags),
                requires_approval=requires_approval,
                created_seq=self._next_seq,
            )
            self._next_seq += 1
            self._tasks[new_id] = task
            self._children[new_id] = set()
            self._unmet[new_id] = unmet
            self._depth[new_id] = 0
            for dep in dependencies:
                self._children[dep].add(new_id)
                self._raise_depth(dep, 1)
            self._sync_ready(task)

        self._logger.debug(
            "task_added",
            task_id=new_id,
            request_id=request_id,
            kind=task.kind.value,
            status=task.status.value,
            depends_on=sorted(dependencies),
        )
        return new_id

    def add_dependency(self, task_id: str, depends_on: str) -> Task:
        """Add edge ``depends_on -> task_id`` to a task that has not been claimed."""

        with self._lock:
            task = self._require(task_id)
            dependency = self._require(depends_on)
            if task.status not in {TaskStatus.PENDING, TaskStatus.BLOCKED}:
                raise InvalidTransition(task_id, task.status.value, "add a dependency to")
            if depends_on in task.depends_on:
                return task
            if task_id == depends_on:
                raise CycleError([(task_id, task_id)])
            self._assert_no_cycle(task_id, frozenset({depends_on}))

            unmet = self._unmet[task_id]
            if dependency.status is not TaskStatus.DONE:
                unmet += 1
            updated = replace(
                task,
                depends_on=task.depends_on | {depends_on},
                status=TaskStatus.BLOCKED if unmet else TaskStatus.PENDING,
            )
            self._tasks[task_id] = updated
            self._unmet[task_id] = unmet
            self._children[depends_on].add(task_id)
            self._raise_depth(depends_on, self._depth[task_id] + 1)
            self._sync_ready(updated)
            return updated

    # ------------------------------------------------------------------
    # Claim protocol
    # ------------------------------------------------------------------

    def claim(self, task_id: str, worker_role: str) -> Task:
        """Assign ``task_id`` to ``worker_role``. First claimer wins."""

        with self._lock:
            task = self._require(task_id)
            if task.status not in {TaskStatus.PENDING, TaskStatus.BLOCKED}:
                raise AlreadyClaimed(task_id, task.status.value, task.assigned_worker_role)
            if self._unmet[task_id] > 0:
                raise NotReady(task_id, self._unmet_dependencies(task))
            claimed = replace(task, status=TaskStatus.CLAIMED, assigned_worker_role=worker_role)
            self._tasks[task_id] = claimed
            self._sync_ready(claimed)

        self._logger.debug("task_claimed", task_id=task_id, worker_role=worker_role)
        return claimed

    def start(self, task_id: str) -> Task:
        """Move a claimed task to ``in_progress`` after re-checking readiness."""

        with self._lock:
            task = self._require(task_id)
            if task.status is not TaskStatus.CLAIMED:
                raise InvalidTransition(task_id, task.status.value, "start")
            if self._unmet[task_id] > 0:
                raise NotReady(task_id, self._unmet_dependencies(task))
            started = replace(task, status=TaskStatus.IN_PROGRESS)
            self._tasks[task_id] = started
            return started

    def complete(self, task_id: str, verdict: Verdict) -> CompletionResult:
        """Apply an aggregated verdict to a claimed or running task.

        ``pass`` (and ``not_available``) marks the task done, or parks an
        approval-gated task as awaiting approval. ``fail`` returns it to
        ``pending`` with the retry counter incremented; past ``max_retries``
        the task is committed as ``failed`` and ``MaxRetriesExceeded`` raised.
        A verdict id is applied at most once.
        """

        exceeded: Task | None = None
        with self._lock:
            task = self._require(task_id)
            if verdict.verdict_id in self._applied_verdicts:
                self._logger.info(
                    "verdict_duplicate_ignored",
                    task_id=task_id,
                    verdict_id=verdict.verdict_id,
                )
                return CompletionResult(task=task, applied=False)
            if task.is_terminal or task.awaiting_approval:
                self._applied_verdicts[verdict.verdict_id] = task_id
                self._logger.warning(
                    "late_verdict_ignored",
                    task_id=task_id,
                    verdict_id=verdict.verdict_id,
                    status=task.status.value,
                    outcome=verdict.outcome.value,
                )
                return CompletionResult(task=task, applied=False)
            if task.status not in {TaskStatus.CLAIMED, TaskStatus.IN_PROGRESS}:
                raise InvalidTransition(task_id, task.status.value, "complete")

            self._applied_verdicts[verdict.verdict_id] = task_id
            unlocked: tuple[str, ...] = ()
            if verdict.outcome is not VerdictOutcome.FAIL:
                if task.requires_approval:
                    updated = replace(
                        task,
                        status=TaskStatus.IN_PROGRESS,
                        awaiting_approval=True,
                        failure_reason=None,
                    )
                    self._tasks[task_id] = updated
                else:
                    updated, unlocked = self._mark_done(task)
            else:
                reason = verdict.detail.reason or f"check {verdict.check_name} failed"
                retries = task.retry_count + 1
                if retries > self._max_retries:
                    updated = replace(
                        task,
                        status=TaskStatus.FAILED,
                        retry_count=retries,
                        failure_reason=reason,
                    )
                    exceeded = updated
                else:
                    updated = replace(
                        task,
                        status=TaskStatus.PENDING,
                        assigned_worker_role=None,
                        retry_count=retries,
                        failure_reason=reason,
                    )
                self._tasks[task_id] = updated
                self._sync_ready(updated)

        self._logger.info(
            "task_verdict_applied",
            task_id=task_id,
            verdict_id=verdict.verdict_id,
            outcome=verdict.outcome.value,
            status=updated.status.value,
            retry_count=updated.retry_count,
            unlocked=list(unlocked),
        )
        if exceeded is not None:
            raise MaxRetriesExceeded(exceeded, self._max_retries)
        return CompletionResult(task=updated, applied=True, unlocked=unlocked)

    def approve(self, task_id: str) -> CompletionResult:
        """Mark an approval-gated task done."""

        with self._lock:
            task = self._require(task_id)
            if not task.awaiting_approval:
                raise InvalidTransition(task_id, task.status.value, "approve")
            updated, unlocked = self._mark_done(replace(task, awaiting_approval=False))

        self._logger.info("task_approved", task_id=task_id, unlocked=list(unlocked))
        return CompletionResult(task=updated, applied=True, unlocked=unlocked)

    def reject(self, task_id: str, reason: str) -> Task:
        """Return an approval-gated task to ``pending`` for a revised submission."""

        with self._lock:
            task = self._require(task_id)
            if not task.awaiting_approval:
                raise InvalidTransition(task_id, task.status.value, "reject")
            updated = replace(
                task,
                status=TaskStatus.PENDING,
                awaiting_approval=False,
                assigned_worker_role=None,
                revision=task.revision + 1,
                failure_reason=reason,
            )
            self._tasks[task_id] = updated
            self._sync_ready(updated)

        self._logger.info(
            "task_rejected", task_id=task_id, revision=updated.revision, reason=reason
        )
        return updated

    def cancel(self, task_ids: Iterable[str], reason: str) -> tuple[Task, ...]:
        """Fail every listed non-terminal task; returns the tasks actually cancelled."""

        cancelled: list[Task] = []
        with self._lock:
            for task_id in task_ids:
                task = self._require(task_id)
                if task.is_terminal:
                    continue
                updated = replace(
                    task,
                    status=TaskStatus.FAILED,
                    awaiting_approval=False,
                    failure_reason=f"cancelled: {reason}",
                )
                self._tasks[task_id] = updated
                self._sync_ready(updated)
                cancelled.append(updated)

        if cancelled:
            self._logger.info(
                "tasks_cancelled", task_ids=[task.id for task in cancelled], reason=reason
            )
        return tuple(cancelled)

    def discard_request(self, request_id: str) -> tuple[str, ...]:
        """Forget a finished request's tasks and the verdict ids applied to them.

        Raises ``InvalidTransition`` while any of its tasks is still open, and
        ``ValueError`` when a task of another request depends on one of them.
        """

        with self._lock:
            doomed = {
                task_id for task_id, task in self._tasks.items() if task.request_id == request_id
            }
            for task_id in sorted(doomed):
                task = self._tasks[task_id]
                if not task.is_terminal:
                    raise InvalidTransition(task_id, task.status.value, "discard")
                outside = self._children[task_id] - doomed
                if outside:
                    raise ValueError(
                        f"task {task_id} has dependents outside request {request_id}: "
                        f"{', '.join(sorted(outside))}"
                    )
            for task_id in doomed:
                for dep in self._tasks[task_id].depends_on - doomed:
                    self._children[dep].discard(task_id)
                del self._tasks[task_id]
                del self._children[task_id]
                del self._unmet[task_id]
                del self._depth[task_id]
            self._ready.pop(request_id, None)
            self._applied_verdicts = {
                verdict_id: task_id
                for verdict_id, task_id in self._applied_verdicts.items()
                if task_id not in doomed
            }

        self._logger.debug("request_discarded", request_id=request_id, tasks=len(doomed))
        return tuple(sorted(doomed))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, task_id: str) -> Task:
        with self._lock:
            return self._require(task_id)

    def tasks(self, request_id: str | None = None) -> tuple[Task, ...]:
        """All tasks (or one request's tasks) in creation order."""

        with self._lock:
            selected = [
                task
                for task in self._tasks.values()
                if request_id is None or task.request_id == request_id
            ]
        return tuple(sorted(selected, key=lambda task: task.created_seq))

    def ready_tasks(self, request_id: str | None = None) -> tuple[Task, ...]:
        """Pending tasks with every dependency done, in dispatch order.

        Order: higher priority first, then deeper downstream chains, then
        creation order.
        """

        with self._lock:
            if request_id is None:
                ids = [task_id for bucket in self._ready.values() for task_id in bucket]
            else:
                ids = list(self._ready.get(request_id, ()))
            ready = [self._tasks[task_id] for task_id in ids]
            depth = {task.id: self._depth[task.id] for task in ready}
        return tuple(
            sorted(ready, key=lambda task: (-task.priority, -depth[task.id], task.created_seq))
        )

    def unmet_dependencies(self, task_id: str) -> tuple[str, ...]:
        with self._lock:
            return self._unmet_dependencies(self._require(task_id))

    def get_dependencies(self, task_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependencies for ``task_id``."""
        with self._lock:
            task = self._require(task_id)
            if not transitive:
                return tuple(sorted(task.depends_on))
            return self._transitive_closure(task_id, upstream=True)

    def get_dependents(self, task_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependents for ``task_id``."""
        with self._lock:
            self._require(task_id)
            if not transitive:
                return tuple(sorted(self._children[task_id]))
            return self._transitive_closure(task_id, upstream=False)

    def downstream_depth(self, task_id: str) -> int:
        """Length of the longest dependent chain hanging off ``task_id``."""
        with self._lock:
            self._require(task_id)
            return self._depth[task_id]

    def topological_sort(self, request_id: str | None = None) -> tuple[str, ...]:
        """Return a deterministic topological order (creation order breaks ties)."""

        with self._lock:
            selected = {
                task_id
                for task_id, task in self._tasks.items()
                if request_id is None or task.request_id == request_id
            }
            indegree = {
                task_id: sum(1 for dep in self._tasks[task_id].depends_on if dep in selected)
                for task_id in selected
            }
            ready: list[tuple[int, str]] = [
                (self._tasks[task_id].created_seq, task_id)
                for task_id, degree in indegree.items()
                if degree == 0
            ]
            heapify(ready)

            order: list[str] = []
            while ready:
                _, task_id = heappop(ready)
                order.append(task_id)
                for child in self._children[task_id]:
                    if child not in selected:
                        continue
                    indegree[child] -= 1
                    if indegree[child] == 0:
                        heappush(ready, (self._tasks[child].created_seq, child))

            if len(order) != len(selected):
                raise CycleError(self.detect_cycles())
            return tuple(order)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect directed cycles.

        Returns cycle paths as closed paths, e.g. ``("A", "B", "C", "A")``.
        A graph built only through ``add_task`` never has any.
        """
        with self._lock:
            children = {task_id: sorted(kids) for task_id, kids in self._children.items()}

        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in sorted(children):
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = 0
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(children[start]))]

            while frames:
                node, child_iter = frames[-1]
                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(children[child])))
                elif child_state == 1:
                    cycle = tuple(stack[stack_index[child] :] + [child])
                    cycles[_canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))

    def status_counts(self, request_id: str | None = None) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self.tasks(request_id):
            counts[task.status.value] += 1
        return counts

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _require(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise KeyError(f"Unknown task: {task_id}") from None

    def _unmet_dependencies(self, task: Task) -> tuple[str, ...]:
        return tuple(
            sorted(dep for dep in task.depends_on if self._tasks[dep].status is not TaskStatus.DONE)
        )

    def _mark_done(self, task: Task) -> tuple[Task, tuple[str, ...]]:
        done = replace(task, status=TaskStatus.DONE, failure_reason=None)
        self._tasks[task.id] = done
        self._sync_ready(done)

        unlocked: list[str] = []
        for child_id in sorted(self._children[task.id]):
            self._unmet[child_id] -= 1
            child = self._tasks[child_id]
            if self._unmet[child_id] == 0 and child.status is TaskStatus.BLOCKED:
                self._tasks[child_id] = replace(child, status=TaskStatus.PENDING)
                self._sync_ready(self._tasks[child_id])
                unlocked.append(child_id)
        return done, tuple(unlocked)

    def _assert_no_cycle(self, task_id: str, new_dependencies: frozenset[str]) -> None:
        """Depth-first search from ``task_id`` along dependents for any new dependency."""

        if not new_dependencies:
            return
        parents: dict[str, str] = {}
        pending = [task_id]
        seen = {task_id}
        while pending:
            node = pending.pop()
            if node in new_dependencies:
                path = [node]
                while path[-1] != task_id:
                    path.append(parents[path[-1]])
                path.reverse()
                raise CycleError([(*path, task_id)])
            for child in sorted(self._children.get(node, ()), reverse=True):
                if child not in seen:
                    seen.add(child)
                    parents[child] = node
                    pending.append(child)

    def _transitive_closure(self, task_id: str, *, upstream: bool) -> tuple[str, ...]:
        visited: set[str] = set()
        pending: list[str] = list(
            self._tasks[task_id].depends_on if upstream else self._children[task_id]
        )
        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            neighbors = self._tasks[node].depends_on if upstream else self._children[node]
            pending.extend(neighbor for neighbor in neighbors if neighbor not in visited)
        return tuple(sorted(visited))

    def _sync_ready(self, task: Task) -> None:
        bucket = self._ready.setdefault(task.request_id, set())
        if task.status is TaskStatus.PENDING and self._unmet[task.id] == 0:
            bucket.add(task.id)
        else:
            bucket.discard(task.id)

    def _raise_depth(self, task_id: str, depth: int) -> None:
        """Lift ``task_id`` to at least ``depth`` and its ancestors along with it."""

        pending = [(task_id, depth)]
        while pending:
            node, value = pending.pop()
            if value <= self._depth[node]:
                continue
            self._depth[node] = value
            pending.extend((dep, value + 1) for dep in self._tasks[node].depends_on)


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])

    best = core
    for offset in range(1, len(core)):
        rotated = core[offset:] + core[:offset]
        if rotated < best:
            best = rotated
    return best + (best[0],)


__all__ = ["CompletionResult", "TaskGraph"]
