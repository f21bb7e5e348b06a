"""
Domain types shared across planes: Task, Worker, Message, Verdict, MemoryDocument,
request metadata and outcomes, lifecycle events, and the error taxonomy.

The domain layer is free of IO side effects; every model validates itself on
construction and serializes to canonical JSON.
"""

from conductor.domain.errors import (
    AlreadyClaimed,
    ConductorError,
    CycleError,
    EscalationRequired,
    HookTimeout,
    HookToolMissing,
    InvalidTransition,
    MaxRetriesExceeded,
    NoCapableWorker,
    NotReady,
    RequestFailed,
    StaleWriteError,
    WriteOwnershipViolation,
)
from conductor.domain.events import ConductorEvent, EventType
from conductor.domain.models import (
    TERMINAL_TASK_STATUSES,
    ComplexityTier,
    ConcurrencyMode,
    FindingSeverity,
    MemoryDocument,
    MemoryEntry,
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

__all__ = [
    "AlreadyClaimed",
    "ComplexityTier",
    "ConcurrencyMode",
    "ConductorError",
    "ConductorEvent",
    "CycleError",
    "EscalationRequired",
    "EventType",
    "FindingSeverity",
    "HookTimeout",
    "HookToolMissing",
    "InvalidTransition",
    "MaxRetriesExceeded",
    "MemoryDocument",
    "MemoryEntry",
    "Message",
    "MessagePriority",
    "MessageType",
    "NoCapableWorker",
    "NotReady",
    "OutcomeKind",
    "RequestFailed",
    "RequestMetadata",
    "RequestOutcome",
    "RequestState",
    "ReviewRating",
    "StaleWriteError",
    "TERMINAL_TASK_STATUSES",
    "Task",
    "TaskKind",
    "TaskStatus",
    "Verdict",
    "VerdictDetail",
    "VerdictOutcome",
    "Worker",
    "WriteOwnershipViolation",
]
