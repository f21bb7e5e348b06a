"""Lifecycle event definitions and serialization."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum

from conductor.domain import ids
from conductor.domain.models import JSONValue, canonical_json, utc_now

_SENSITIVE_KEY_TERMS = ("secret", "key", "password", "token")
_REDACTED_VALUE = "***REDACTED***"


class EventType(StrEnum):
    """Lifecycle events emitted by the scheduler and its collaborators."""

    REQUEST_RECEIVED = "RequestReceived"
    REQUEST_CLASSIFIED = "RequestClassified"
    REQUEST_DISPATCHED = "RequestDispatched"
    REQUEST_RESOLVED = "RequestResolved"
    REQUEST_ESCALATED = "RequestEscalated"
    REQUEST_FAILED = "RequestFailed"
    REQUEST_CLOSED = "RequestClosed"

    TASK_CREATED = "TaskCreated"
    TASK_CLAIMED = "TaskClaimed"
    TASK_COMPLETED = "TaskCompleted"
    TASK_RETRIED = "TaskRetried"
    TASK_FAILED = "TaskFailed"
    TASK_CANCELLED = "TaskCancelled"

    VERDICT_RECORDED = "VerdictRecorded"
    PLAN_APPROVED = "PlanApproved"
    PLAN_REJECTED = "PlanRejected"

    MAILBOX_OVERFLOW = "MailboxOverflow"
    MEMORY_WRITTEN = "MemoryWritten"


@dataclass(slots=True)
class ConductorEvent:
    """Serializable event envelope; ``correlation_id`` carries the request id."""

    event_type: EventType
    payload: dict[str, JSONValue] = field(default_factory=dict)
    correlation_id: str | None = None
    event_id: str = field(default_factory=ids.generate_event_id)
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        ids.validate_id(self.event_id, ids.IdKind.EVENT)
        if not isinstance(self.event_type, EventType):
            self.event_type = EventType(self.event_type)
        if self.timestamp.tzinfo is None:
            raise ValueError("ConductorEvent.timestamp: datetime must be timezone-aware UTC")
        self.timestamp = self.timestamp.astimezone(UTC)
        if not isinstance(self.payload, Mapping):
            raise ValueError("ConductorEvent.payload: expected object")
        self.payload = dict(self.payload)
        try:
            canonical_json(self.payload)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"ConductorEvent.payload: not JSON-serializable ({exc})") from exc

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(timespec="microseconds").replace("+00:00", "Z"),
            "correlation_id": self.correlation_id,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ConductorEvent:
        raw_ts = data.get("timestamp")
        if not isinstance(raw_ts, str):
            raise ValueError("ConductorEvent.timestamp: expected ISO-8601 string")
        text = raw_ts[:-1] + "+00:00" if raw_ts.endswith("Z") else raw_ts
        payload = data.get("payload", {})
        if not isinstance(payload, dict):
            raise ValueError("ConductorEvent.payload: expected object")
        correlation_id = data.get("correlation_id")
        if correlation_id is not None and not isinstance(correlation_id, str):
            raise ValueError("ConductorEvent.correlation_id: expected string")
        return cls(
            event_id=str(data.get("event_id", "")),
            event_type=EventType(str(data.get("event_type", ""))),
            timestamp=datetime.fromisoformat(text),
            correlation_id=correlation_id,
            payload=payload,
        )

    @classmethod
    def from_json(cls, raw: str) -> ConductorEvent:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"ConductorEvent: invalid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValueError("ConductorEvent: JSON root must be an object")
        return cls.from_dict(parsed)


def redact_sensitive(event: ConductorEvent) -> ConductorEvent:
    """Copy of ``event`` whose payload masks values under secret-looking keys, at any depth."""

    return replace(event, payload=_masked(event.payload))


def _masked(payload: Mapping[str, JSONValue]) -> dict[str, JSONValue]:
    def walk(value: JSONValue) -> JSONValue:
        if isinstance(value, dict):
            return _masked(value)
        if isinstance(value, list):
            return [walk(item) for item in value]
        return value

    return {
        key: _REDACTED_VALUE if any(term in key.lower() for term in _SENSITIVE_KEY_TERMS)
        else walk(value)
        for key, value in payload.items()
    }


__all__ = ["ConductorEvent", "EventType", "redact_sensitive"]
