"""Error taxonomy for the orchestration substrate.

Structural errors (cycles, unknown ids, ownership violations) are raised
synchronously at the offending call. Request-level failures surface through
``RequestHandle.result()``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conductor.domain.models import Task


class ConductorError(Exception):
    """Base class for all orchestration errors."""


class CycleError(ConductorError, ValueError):
    """Raised when adding a dependency would close a cycle in the task graph."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "Task graph contains at least one cycle."
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"Task graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class NotReady(ConductorError):
    """Raised when a task is claimed or started before its dependencies are done."""

    def __init__(self, task_id: str, unmet: Iterable[str]) -> None:
        self.task_id = task_id
        self.unmet = tuple(sorted(unmet))
        super().__init__(f"task {task_id} has unmet dependencies: {', '.join(self.unmet)}")


class AlreadyClaimed(ConductorError):
    """Raised when a task is no longer claimable."""

    def __init__(self, task_id: str, status: str, holder: str | None = None) -> None:
        self.task_id = task_id
        self.status = status
        self.holder = holder
        owner = f" by {holder}" if holder else ""
        super().__init__(f"task {task_id} is already {status}{owner}")


class InvalidTransition(ConductorError, ValueError):
    """Raised when a task operation does not apply to the task's current status."""

    def __init__(self, task_id: str, status: str, operation: str) -> None:
        self.task_id = task_id
        self.status = status
        self.operation = operation
        super().__init__(f"cannot {operation} task {task_id} while it is {status}")


class HookTimeout(ConductorError):
    """Raised when a hook command exceeds its wall-clock budget."""

    def __init__(
        self,
        check_name: str,
        timeout_seconds: float,
        *,
        output: str = "",
        duration_ms: int = 0,
    ) -> None:
        self.check_name = check_name
        self.timeout_seconds = timeout_seconds
        self.output = output
        self.duration_ms = duration_ms
        super().__init__(f"check {check_name!r} timed out after {timeout_seconds:g}s")


class HookToolMissing(ConductorError):
    """Raised when a hook command's executable cannot be found."""

    def __init__(self, check_name: str, tool: str) -> None:
        self.check_name = check_name
        self.tool = tool
        super().__init__(f"check {check_name!r} requires missing tool {tool!r}")


class WriteOwnershipViolation(ConductorError, PermissionError):
    """Raised when a role writes a memory namespace it does not own."""

    def __init__(self, namespace: str, role: str, owner: str | None) -> None:
        self.namespace = namespace
        self.role = role
        self.owner = owner
        if owner is None:
            detail = "namespace has no registered owner"
        else:
            detail = f"namespace is owned by {owner!r}"
        super().__init__(f"role {role!r} may not write {namespace!r}: {detail}")


class StaleWriteError(ConductorError):
    """Raised when a compare-and-swap rewrite sees a newer document version."""

    def __init__(self, namespace: str, expected: int, actual: int) -> None:
        self.namespace = namespace
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"stale write to {namespace!r}: expected version {expected}, found {actual}"
        )


class MaxRetriesExceeded(ConductorError):
    """Raised after a task's failure count passes the retry ceiling.

    The task has already been committed as ``failed`` when this is raised.
    """

    def __init__(self, task: Task, max_retries: int) -> None:
        self.task = task
        self.max_retries = max_retries
        super().__init__(
            f"task {task.id} failed {task.retry_count} time(s); max_retries={max_retries}"
        )


class EscalationRequired(ConductorError):
    """Raised from ``RequestHandle.result()`` when a request needs a human decision."""

    def __init__(
        self,
        request_id: str,
        reason: str,
        evidence: Mapping[str, object] | None = None,
    ) -> None:
        self.request_id = request_id
        self.reason = reason
        self.evidence: dict[str, object] = dict(evidence or {})
        super().__init__(f"request {request_id} escalated: {reason}")


class RequestFailed(ConductorError):
    """Raised from ``RequestHandle.result()`` when a request ends without success."""

    def __init__(
        self,
        request_id: str,
        reason: str,
        evidence: Mapping[str, object] | None = None,
    ) -> None:
        self.request_id = request_id
        self.reason = reason
        self.evidence: dict[str, object] = dict(evidence or {})
        super().__init__(f"request {request_id} failed: {reason}")


class NoCapableWorker(ConductorError, LookupError):
    """Raised when no registered worker with a bound implementation matches a task."""

    def __init__(self, task_id: str, tags: Iterable[str]) -> None:
        self.task_id = task_id
        self.tags = tuple(sorted(tags))
        super().__init__(f"no capable worker for task {task_id} (tags: {', '.join(self.tags)})")


__all__ = [
    "AlreadyClaimed",
    "ConductorError",
    "CycleError",
    "EscalationRequired",
    "HookTimeout",
    "HookToolMissing",
    "InvalidTransition",
    "MaxRetriesExceeded",
    "NoCapableWorker",
    "NotReady",
    "RequestFailed",
    "StaleWriteError",
    "WriteOwnershipViolation",
]
