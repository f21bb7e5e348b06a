"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

from conductor.constants import BROADCAST_RECIPIENT

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 65_536
_MAX_COLLECTION = 512


class TaskStatus(StrEnum):
    PENDING = "pending"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    FAILED = "failed"


TERMINAL_TASK_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.DONE, TaskStatus.FAILED})


class TaskKind(StrEnum):
    SCAN = "scan"
    PLAN = "plan"
    IMPLEMENT = "implement"
    VERIFY = "verify"
    REVIEW = "review"
    ADVOCATE = "advocate"
    ADVERSARY = "adversary"
    GENERIC = "generic"


class ConcurrencyMode(StrEnum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class MessagePriority(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class MessageType(StrEnum):
    """Well-known message tags. ``Message.type`` stays an open string."""

    REPORT = "REPORT"
    HANDOFF = "HANDOFF"
    BUG = "BUG"
    PLAN = "PLAN"
    PASS = "PASS"
    FAIL = "FAIL"
    META = "META"
    REJECT = "REJECT"


class VerdictOutcome(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    NOT_AVAILABLE = "not_available"


class ComplexityTier(StrEnum):
    TRIVIAL = "TRIVIAL"
    SIMPLE = "SIMPLE"
    COMPLEX = "COMPLEX"
    AMBIGUOUS = "AMBIGUOUS"
    CRITICAL = "CRITICAL"


class RequestState(StrEnum):
    RECEIVED = "RECEIVED"
    CLASSIFIED = "CLASSIFIED"
    DISPATCHED = "DISPATCHED"
    AWAITING_VERDICT = "AWAITING_VERDICT"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"
    CLOSED = "CLOSED"


class OutcomeKind(StrEnum):
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ESCALATED = "escalated"
    FAILED = "failed"


class ReviewRating(StrEnum):
    PROCEED = "PROCEED"
    CAUTION = "CAUTION"
    RECONSIDER = "RECONSIDER"


class FindingSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CanonicalModel:
    """Base for models that round-trip through canonical JSON.

    :meth:`to_dict` walks the dataclass fields; each model supplies its own
    :meth:`from_dict` that re-runs the constructor checks.
    """

    def to_dict(self) -> dict[str, JSONValue]:
        name = type(self).__name__
        if not is_dataclass(self):
            _fail(name, "only dataclass models can be serialized")
        return {
            item.name: _serialize_value(getattr(self, item.name), f"{name}.{item.name}")
            for item in fields(self)
        }

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        try:
            parsed = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        raise NotImplementedError(f"{cls.__name__} cannot be built from a dict")


def canonical_json(value: JSONValue) -> str:
    """Sorted keys, no whitespace, UTF-8 kept as is: equal values give equal text."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _type_name(value: object) -> str:
    return type(value).__name__


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    """Shallow copy of a mapping whose keys are exactly ``required`` plus any of ``optional``."""

    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {_type_name(value)}")
    if any(not isinstance(key, str) for key in value):
        _fail(path, "object keys must be strings")
    keys = set(value)
    if extra := keys - required - (optional or set()):
        _fail(path, f"unexpected fields: {sorted(extra)}")
    if missing := required - keys:
        _fail(path, f"missing required fields: {sorted(missing)}")
    return dict(value)


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {_type_name(value)}")
    text = value.strip() if strip else value
    if not min_len <= len(text) <= max_len:
        _fail(path, f"length must be between {min_len} and {max_len} characters")
    return text


def _as_optional_str(value: object, path: str) -> str | None:
    return None if value is None else _as_str(value, path)


def _as_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        _fail(path, f"expected boolean, got {_type_name(value)}")
    return value


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if type(value) is not int:
        _fail(path, f"expected integer, got {_type_name(value)}")
    _check_bounds(value, path, minimum, None)
    return value


def _as_optional_int(value: object, path: str) -> int | None:
    return None if value is None else _as_int(value, path)


def _as_float(
    value: object,
    path: str,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    if type(value) not in (int, float):
        _fail(path, f"expected number, got {_type_name(value)}")
    number = float(cast("float", value))
    if math.isnan(number) or math.isinf(number):
        _fail(path, "must be finite")
    _check_bounds(number, path, minimum, maximum)
    return number


def _check_bounds(
    value: float, path: str, minimum: float | None, maximum: float | None
) -> None:
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    if maximum is not None and value > maximum:
        _fail(path, f"must be <= {maximum}")


def _as_datetime(value: object, path: str) -> datetime:
    """Accept an aware datetime or ISO-8601 text (``Z`` allowed); return it in UTC."""

    if isinstance(value, str):
        text = value.removesuffix("Z") + "+00:00" if value.endswith("Z") else value
        try:
            value = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime {value!r}: {exc}")
    if not isinstance(value, datetime):
        _fail(path, f"expected datetime or ISO-8601 string, got {_type_name(value)}")
    if value.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware")
    return value.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    stamp = _as_datetime(value, "datetime").isoformat(timespec="microseconds")
    return stamp.removesuffix("+00:00") + "Z"


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        choices = ", ".join(sorted(str(member.value) for member in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {choices}")


def _as_str_tuple(value: object, path: str, *, unique: bool = False) -> tuple[str, ...]:
    if isinstance(value, (str, bytes, bytearray)) or not isinstance(value, Iterable):
        _fail(path, f"expected array of strings, got {_type_name(value)}")
    items = tuple(value)
    if len(items) > _MAX_COLLECTION:
        _fail(path, f"at most {_MAX_COLLECTION} items allowed")
    parsed = tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(items))
    if unique and len(set(parsed)) < len(parsed):
        _fail(path, "contains duplicate values")
    return parsed


def _as_str_frozenset(value: object, path: str) -> frozenset[str]:
    return frozenset(_as_str_tuple(value, path))


def _serialize_value(value: object, path: str) -> JSONValue:
    """Lower a model field to JSON: enums to values, sets sorted, datetimes as ``...Z``."""

    match value:
        case Enum():
            return _serialize_value(value.value, path)
        case None | bool() | int() | str():
            return value
        case float():
            if not math.isfinite(value):
                _fail(path, "float values must be finite")
            return value
        case datetime():
            return _datetime_to_iso8601z(value)
        case set() | frozenset():
            return [_serialize_value(item, f"{path}[]") for item in sorted(value)]
        case list() | tuple():
            return [_serialize_value(item, f"{path}[]") for item in value]
        case Mapping():
            if any(not isinstance(key, str) for key in value):
                _fail(path, "dict keys must be strings")
            return {key: _serialize_value(item, f"{path}.{key}") for key, item in value.items()}
    if is_dataclass(value) and not isinstance(value, type):
        return {
            item.name: _serialize_value(getattr(value, item.name), f"{path}.{item.name}")
            for item in fields(value)
        }
    _fail(path, f"cannot serialize value of type {_type_name(value)}")


@dataclass(frozen=True, slots=True)
class Task(CanonicalModel):
    """A unit of work in the task graph. Snapshots are immutable."""

    id: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    depends_on: frozenset[str] = frozenset()
    priority: int = 0
    assigned_worker_role: str | None = None
    request_id: str | None = None
    kind: TaskKind = TaskKind.GENERIC
    label: str = ""
    domain_tags: frozenset[str] = frozenset()
    requires_approval: bool = False
    awaiting_approval: bool = False
    retry_count: int = 0
    revision: int = 0
    failure_reason: str | None = None
    created_seq: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_str(self.id, "Task.id", max_len=256))
        object.__setattr__(self, "description", _as_str(self.description, "Task.description"))
        object.__setattr__(self, "status", _as_enum(TaskStatus, self.status, "Task.status"))
        depends_on = _as_str_frozenset(self.depends_on, "Task.depends_on")
        if self.id in depends_on:
            _fail("Task.depends_on", "task may not depend on itself")
        object.__setattr__(self, "depends_on", depends_on)
        object.__setattr__(self, "priority", _as_int(self.priority, "Task.priority"))
        object.__setattr__(
            self,
            "assigned_worker_role",
            _as_optional_str(self.assigned_worker_role, "Task.assigned_worker_role"),
        )
        object.__setattr__(
            self, "request_id", _as_optional_str(self.request_id, "Task.request_id")
        )
        kind = _as_enum(TaskKind, self.kind, "Task.kind")
        object.__setattr__(self, "kind", kind)
        label = self.label.strip() if isinstance(self.label, str) else self.label
        object.__setattr__(
            self, "label", _as_str(label or kind.value, "Task.label", max_len=128)
        )
        object.__setattr__(
            self, "domain_tags", _as_str_frozenset(self.domain_tags, "Task.domain_tags")
        )
        object.__setattr__(
            self,
            "requires_approval",
            _as_bool(self.requires_approval, "Task.requires_approval"),
        )
        awaiting = _as_bool(self.awaiting_approval, "Task.awaiting_approval")
        if awaiting and not self.requires_approval:
            _fail("Task.awaiting_approval", "only approval-gated tasks can await approval")
        if awaiting and self.status is not TaskStatus.IN_PROGRESS:
            _fail("Task.awaiting_approval", "task awaiting approval must be in_progress")
        object.__setattr__(self, "awaiting_approval", awaiting)
        object.__setattr__(
            self, "retry_count", _as_int(self.retry_count, "Task.retry_count", minimum=0)
        )
        object.__setattr__(self, "revision", _as_int(self.revision, "Task.revision", minimum=0))
        object.__setattr__(
            self, "failure_reason", _as_optional_str(self.failure_reason, "Task.failure_reason")
        )
        object.__setattr__(
            self, "created_seq", _as_int(self.created_seq, "Task.created_seq", minimum=0)
        )
        if self.status in {TaskStatus.CLAIMED, TaskStatus.IN_PROGRESS} and (
            self.assigned_worker_role is None
        ):
            _fail("Task.assigned_worker_role", f"required when status is {self.status.value}")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Task:
        parsed = _expect_object(
            data,
            "Task",
            required={"id", "description"},
            optional={field_.name for field_ in fields(cls)} - {"id", "description"},
        )
        return cls(
            id=_as_str(parsed["id"], "Task.id"),
            description=_as_str(parsed["description"], "Task.description"),
            status=_as_enum(TaskStatus, parsed.get("status", "pending"), "Task.status"),
            depends_on=_as_str_frozenset(parsed.get("depends_on", ()), "Task.depends_on"),
            priority=_as_int(parsed.get("priority", 0), "Task.priority"),
            assigned_worker_role=_as_optional_str(
                parsed.get("assigned_worker_role"), "Task.assigned_worker_role"
            ),
            request_id=_as_optional_str(parsed.get("request_id"), "Task.request_id"),
            kind=_as_enum(TaskKind, parsed.get("kind", "generic"), "Task.kind"),
            label=cast("str", parsed.get("label", "")),
            domain_tags=_as_str_frozenset(parsed.get("domain_tags", ()), "Task.domain_tags"),
            requires_approval=_as_bool(
                parsed.get("requires_approval", False), "Task.requires_approval"
            ),
            awaiting_approval=_as_bool(
                parsed.get("awaiting_approval", False), "Task.awaiting_approval"
            ),
            retry_count=_as_int(parsed.get("retry_count", 0), "Task.retry_count", minimum=0),
            revision=_as_int(parsed.get("revision", 0), "Task.revision", minimum=0),
            failure_reason=_as_optional_str(parsed.get("failure_reason"), "Task.failure_reason"),
            created_seq=_as_int(parsed.get("created_seq", 0), "Task.created_seq", minimum=0),
        )


@dataclass(frozen=True, slots=True)
class Worker(CanonicalModel):
    """A named role bound to capability tags and a concurrency mode."""

    name: str
    capability_tags: frozenset[str]
    concurrency_mode: ConcurrencyMode = ConcurrencyMode.FOREGROUND
    cost_tier: int = 0
    mandatory_checks: tuple[str, ...] = ()
    optional_checks: tuple[str, ...] = ()
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "Worker.name", max_len=128).lower())
        tags = frozenset(
            tag.lower() for tag in _as_str_frozenset(self.capability_tags, "Worker.capability_tags")
        )
        object.__setattr__(self, "capability_tags", tags)
        object.__setattr__(
            self,
            "concurrency_mode",
            _as_enum(ConcurrencyMode, self.concurrency_mode, "Worker.concurrency_mode"),
        )
        object.__setattr__(
            self, "cost_tier", _as_int(self.cost_tier, "Worker.cost_tier", minimum=0)
        )
        mandatory = _as_str_tuple(self.mandatory_checks, "Worker.mandatory_checks", unique=True)
        optional = _as_str_tuple(self.optional_checks, "Worker.optional_checks", unique=True)
        overlap = sorted(set(mandatory) & set(optional))
        if overlap:
            _fail("Worker.optional_checks", f"declared both mandatory and optional: {overlap}")
        object.__setattr__(self, "mandatory_checks", mandatory)
        object.__setattr__(self, "optional_checks", optional)
        if not isinstance(self.description, str):
            _fail("Worker.description", "expected string")

    @property
    def declared_checks(self) -> tuple[str, ...]:
        return self.mandatory_checks + self.optional_checks


@dataclass(frozen=True, slots=True)
class Message(CanonicalModel):
    """A typed, directed communication unit.

    ``sequence`` and ``global_sequence`` are assigned by the bus on delivery;
    values supplied by the sender are overwritten.
    """

    type: str
    sender: str
    recipient: str
    body: str = ""
    priority: MessagePriority = MessagePriority.MEDIUM
    action_needed: str = ""
    timestamp: datetime = field(default_factory=utc_now)
    sequence: int = 0
    global_sequence: int = 0
    message_id: str = ""
    task_id: str | None = None
    request_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", _as_str(self.type, "Message.type", max_len=64).upper())
        object.__setattr__(self, "sender", _as_str(self.sender, "Message.sender", max_len=128))
        object.__setattr__(
            self, "recipient", _as_str(self.recipient, "Message.recipient", max_len=128)
        )
        object.__setattr__(
            self, "body", _as_str(self.body, "Message.body", min_len=0, strip=False)
        )
        object.__setattr__(
            self, "priority", _as_enum(MessagePriority, self.priority, "Message.priority")
        )
        object.__setattr__(
            self,
            "action_needed",
            _as_str(self.action_needed, "Message.action_needed", min_len=0),
        )
        object.__setattr__(self, "timestamp", _as_datetime(self.timestamp, "Message.timestamp"))
        object.__setattr__(self, "sequence", _as_int(self.sequence, "Message.sequence", minimum=0))
        object.__setattr__(
            self,
            "global_sequence",
            _as_int(self.global_sequence, "Message.global_sequence", minimum=0),
        )
        object.__setattr__(
            self, "message_id", _as_str(self.message_id, "Message.message_id", min_len=0)
        )
        object.__setattr__(self, "task_id", _as_optional_str(self.task_id, "Message.task_id"))
        object.__setattr__(
            self, "request_id", _as_optional_str(self.request_id, "Message.request_id")
        )

    @property
    def is_broadcast(self) -> bool:
        return self.recipient == BROADCAST_RECIPIENT


@dataclass(frozen=True, slots=True)
class VerdictDetail(CanonicalModel):
    """Bounded evidence attached to a verdict."""

    command: tuple[str, ...] = ()
    exit_code: int | None = None
    failing_names: tuple[str, ...] = ()
    excerpt: tuple[str, ...] = ()
    reason: str | None = None
    counts: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "command", _as_str_tuple(self.command, "VerdictDetail.command"))
        object.__setattr__(
            self, "exit_code", _as_optional_int(self.exit_code, "VerdictDetail.exit_code")
        )
        object.__setattr__(
            self,
            "failing_names",
            _as_str_tuple(self.failing_names, "VerdictDetail.failing_names"),
        )
        excerpt = self.excerpt
        if isinstance(excerpt, (str, bytes)) or not isinstance(excerpt, Iterable):
            _fail("VerdictDetail.excerpt", "expected array of strings")
        lines = tuple(excerpt)
        for index, line in enumerate(lines):
            if not isinstance(line, str):
                _fail(f"VerdictDetail.excerpt[{index}]", "expected string")
        object.__setattr__(self, "excerpt", lines)
        object.__setattr__(self, "reason", _as_optional_str(self.reason, "VerdictDetail.reason"))
        counts = {
            _as_str(key, "VerdictDetail.counts.<key>"): _as_int(
                value, f"VerdictDetail.counts.{key}", minimum=0
            )
            for key, value in dict(self.counts).items()
        }
        object.__setattr__(self, "counts", counts)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> VerdictDetail:
        parsed = _expect_object(
            data,
            "VerdictDetail",
            required=set(),
            optional={"command", "exit_code", "failing_names", "excerpt", "reason", "counts"},
        )
        counts = parsed.get("counts", {})
        if not isinstance(counts, Mapping):
            _fail("VerdictDetail.counts", "expected object")
        return cls(
            command=_as_str_tuple(parsed.get("command", ()), "VerdictDetail.command"),
            exit_code=_as_optional_int(parsed.get("exit_code"), "VerdictDetail.exit_code"),
            failing_names=_as_str_tuple(
                parsed.get("failing_names", ()), "VerdictDetail.failing_names"
            ),
            excerpt=tuple(cast("Iterable[str]", parsed.get("excerpt", ()))),
            reason=_as_optional_str(parsed.get("reason"), "VerdictDetail.reason"),
            counts=cast("Mapping[str, int]", counts),
        )


@dataclass(frozen=True, slots=True)
class Verdict(CanonicalModel):
    """The result of one hook check, or a synthetic verdict from the scheduler."""

    worker_role: str
    check_name: str
    outcome: VerdictOutcome
    verdict_id: str
    detail: VerdictDetail = field(default_factory=VerdictDetail)
    duration_ms: int = 0
    task_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "worker_role", _as_str(self.worker_role, "Verdict.worker_role", max_len=128)
        )
        object.__setattr__(
            self, "check_name", _as_str(self.check_name, "Verdict.check_name", max_len=128)
        )
        object.__setattr__(
            self, "outcome", _as_enum(VerdictOutcome, self.outcome, "Verdict.outcome")
        )
        object.__setattr__(
            self, "verdict_id", _as_str(self.verdict_id, "Verdict.verdict_id", max_len=128)
        )
        if not isinstance(self.detail, VerdictDetail):
            _fail("Verdict.detail", f"expected VerdictDetail, got {type(self.detail).__name__}")
        object.__setattr__(
            self, "duration_ms", _as_int(self.duration_ms, "Verdict.duration_ms", minimum=0)
        )
        object.__setattr__(self, "task_id", _as_optional_str(self.task_id, "Verdict.task_id"))

    @property
    def passed(self) -> bool:
        return self.outcome is VerdictOutcome.PASS

    @property
    def failed(self) -> bool:
        return self.outcome is VerdictOutcome.FAIL

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Verdict:
        parsed = _expect_object(
            data,
            "Verdict",
            required={"worker_role", "check_name", "outcome", "verdict_id"},
            optional={"detail", "duration_ms", "task_id"},
        )
        raw_detail = parsed.get("detail", {})
        if not isinstance(raw_detail, Mapping):
            _fail("Verdict.detail", "expected object")
        return cls(
            worker_role=_as_str(parsed["worker_role"], "Verdict.worker_role"),
            check_name=_as_str(parsed["check_name"], "Verdict.check_name"),
            outcome=_as_enum(VerdictOutcome, parsed["outcome"], "Verdict.outcome"),
            verdict_id=_as_str(parsed["verdict_id"], "Verdict.verdict_id"),
            detail=VerdictDetail.from_dict(raw_detail),
            duration_ms=_as_int(parsed.get("duration_ms", 0), "Verdict.duration_ms", minimum=0),
            task_id=_as_optional_str(parsed.get("task_id"), "Verdict.task_id"),
        )


@dataclass(frozen=True, slots=True)
class MemoryEntry(CanonicalModel):
    """One structured section of a memory document."""

    heading: str
    body: str
    author: str
    recorded_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "heading", _as_str(self.heading, "MemoryEntry.heading", max_len=256)
        )
        object.__setattr__(
            self, "body", _as_str(self.body, "MemoryEntry.body", min_len=0, strip=False)
        )
        object.__setattr__(self, "author", _as_str(self.author, "MemoryEntry.author", max_len=128))
        object.__setattr__(
            self, "recorded_at", _as_datetime(self.recorded_at, "MemoryEntry.recorded_at")
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> MemoryEntry:
        parsed = _expect_object(
            data,
            "MemoryEntry",
            required={"heading", "body", "author", "recorded_at"},
        )
        return cls(
            heading=_as_str(parsed["heading"], "MemoryEntry.heading"),
            body=_as_str(parsed["body"], "MemoryEntry.body", min_len=0, strip=False),
            author=_as_str(parsed["author"], "MemoryEntry.author"),
            recorded_at=_as_datetime(parsed["recorded_at"], "MemoryEntry.recorded_at"),
        )


@dataclass(frozen=True, slots=True)
class MemoryDocument(CanonicalModel):
    """A namespace of ordered entries with a single destructive-write owner."""

    namespace: str
    owner: str
    content: tuple[MemoryEntry, ...] = ()
    last_updated: datetime = field(default_factory=utc_now)
    version: int = 0
    schema_version: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "namespace", _as_str(self.namespace, "MemoryDocument.namespace", max_len=256)
        )
        object.__setattr__(self, "owner", _as_str(self.owner, "MemoryDocument.owner", max_len=128))
        entries = tuple(self.content)
        for index, entry in enumerate(entries):
            if not isinstance(entry, MemoryEntry):
                _fail(f"MemoryDocument.content[{index}]", "expected MemoryEntry")
        object.__setattr__(self, "content", entries)
        object.__setattr__(
            self, "last_updated", _as_datetime(self.last_updated, "MemoryDocument.last_updated")
        )
        object.__setattr__(
            self, "version", _as_int(self.version, "MemoryDocument.version", minimum=0)
        )
        object.__setattr__(
            self,
            "schema_version",
            _as_int(self.schema_version, "MemoryDocument.schema_version", minimum=1),
        )

    def find(self, heading: str) -> tuple[MemoryEntry, ...]:
        return tuple(entry for entry in self.content if entry.heading == heading)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> MemoryDocument:
        parsed = _expect_object(
            data,
            "MemoryDocument",
            required={"namespace", "owner", "content", "last_updated", "version"},
            optional={"schema_version"},
        )
        raw_content = parsed["content"]
        if not isinstance(raw_content, list):
            _fail("MemoryDocument.content", "expected array")
        return cls(
            namespace=_as_str(parsed["namespace"], "MemoryDocument.namespace"),
            owner=_as_str(parsed["owner"], "MemoryDocument.owner"),
            content=tuple(
                MemoryEntry.from_dict(cast("Mapping[str, object]", item)) for item in raw_content
            ),
            last_updated=_as_datetime(parsed["last_updated"], "MemoryDocument.last_updated"),
            version=_as_int(parsed["version"], "MemoryDocument.version", minimum=0),
            schema_version=_as_int(
                parsed.get("schema_version", 1), "MemoryDocument.schema_version", minimum=1
            ),
        )


@dataclass(frozen=True, slots=True)
class RequestMetadata(CanonicalModel):
    """Caller-supplied signals the classifier uses to pick a tier."""

    file_count_estimate: int = 1
    domains: tuple[str, ...] = ()
    confidence: float = 1.0
    irreversible: bool = False
    overrides_prior_decision: bool = False
    keywords: tuple[str, ...] = ()
    touched_files: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "file_count_estimate",
            _as_int(self.file_count_estimate, "RequestMetadata.file_count_estimate", minimum=0),
        )
        domains: list[str] = []
        for domain in _as_str_tuple(self.domains, "RequestMetadata.domains"):
            lowered = domain.lower()
            if lowered not in domains:
                domains.append(lowered)
        object.__setattr__(self, "domains", tuple(domains))
        object.__setattr__(
            self,
            "confidence",
            _as_float(self.confidence, "RequestMetadata.confidence", minimum=0.0, maximum=1.0),
        )
        object.__setattr__(
            self, "irreversible", _as_bool(self.irreversible, "RequestMetadata.irreversible")
        )
        object.__setattr__(
            self,
            "overrides_prior_decision",
            _as_bool(self.overrides_prior_decision, "RequestMetadata.overrides_prior_decision"),
        )
        object.__setattr__(
            self,
            "keywords",
            tuple(
                word.lower()
                for word in _as_str_tuple(self.keywords, "RequestMetadata.keywords")
            ),
        )
        object.__setattr__(
            self,
            "touched_files",
            _as_str_tuple(self.touched_files, "RequestMetadata.touched_files"),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RequestMetadata:
        parsed = _expect_object(
            data,
            "RequestMetadata",
            required=set(),
            optional={field_.name for field_ in fields(cls)},
        )
        return cls(
            file_count_estimate=_as_int(
                parsed.get("file_count_estimate", 1),
                "RequestMetadata.file_count_estimate",
                minimum=0,
            ),
            domains=_as_str_tuple(parsed.get("domains", ()), "RequestMetadata.domains"),
            confidence=_as_float(parsed.get("confidence", 1.0), "RequestMetadata.confidence"),
            irreversible=_as_bool(
                parsed.get("irreversible", False), "RequestMetadata.irreversible"
            ),
            overrides_prior_decision=_as_bool(
                parsed.get("overrides_prior_decision", False),
                "RequestMetadata.overrides_prior_decision",
            ),
            keywords=_as_str_tuple(parsed.get("keywords", ()), "RequestMetadata.keywords"),
            touched_files=_as_str_tuple(
                parsed.get("touched_files", ()), "RequestMetadata.touched_files"
            ),
        )


@dataclass(frozen=True, slots=True)
class RequestOutcome(CanonicalModel):
    """What a caller polling a request handle observes."""

    kind: OutcomeKind
    reason: str | None = None
    result: Mapping[str, object] = field(default_factory=dict)
    evidence: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        kind = _as_enum(OutcomeKind, self.kind, "RequestOutcome.kind")
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "reason", _as_optional_str(self.reason, "RequestOutcome.reason"))
        if kind in {OutcomeKind.ESCALATED, OutcomeKind.FAILED} and self.reason is None:
            _fail("RequestOutcome.reason", f"required for {kind.value} outcomes")
        object.__setattr__(self, "result", dict(self.result))
        object.__setattr__(self, "evidence", dict(self.evidence))

    @property
    def is_final(self) -> bool:
        return self.kind is not OutcomeKind.IN_PROGRESS

    @classmethod
    def in_progress(cls) -> RequestOutcome:
        return cls(kind=OutcomeKind.IN_PROGRESS)

    @classmethod
    def done(cls, result: Mapping[str, object] | None = None) -> RequestOutcome:
        return cls(kind=OutcomeKind.DONE, result=dict(result or {}))

    @classmethod
    def escalated(
        cls, reason: str, evidence: Mapping[str, object] | None = None
    ) -> RequestOutcome:
        return cls(kind=OutcomeKind.ESCALATED, reason=reason, evidence=dict(evidence or {}))

    @classmethod
    def failed(cls, reason: str, evidence: Mapping[str, object] | None = None) -> RequestOutcome:
        return cls(kind=OutcomeKind.FAILED, reason=reason, evidence=dict(evidence or {}))


__all__ = [
    "CanonicalModel",
    "ComplexityTier",
    "ConcurrencyMode",
    "FindingSeverity",
    "JSONScalar",
    "JSONValue",
    "MemoryDocument",
    "MemoryEntry",
    "Message",
    "MessagePriority",
    "MessageType",
    "OutcomeKind",
    "RequestMetadata",
    "RequestOutcome",
    "RequestState",
    "ReviewRating",
    "TERMINAL_TASK_STATUSES",
    "Task",
    "TaskKind",
    "TaskStatus",
    "Verdict",
    "VerdictDetail",
    "VerdictOutcome",
    "Worker",
    "canonical_json",
    "utc_now",
]
