"""In-process lifecycle event stream.

Every plane publishes :class:`ConductorEvent` records here. The bus keeps a
bounded replay buffer for inspection and tests, and fans events out to
subscribers. A subscriber that raises is recorded as a :class:`DispatchError`
and never interrupts the publisher.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
from collections import deque
from collections.abc import Callable, Coroutine, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from conductor.domain.events import ConductorEvent, EventType, redact_sensitive
from conductor.domain.models import JSONValue

Subscriber = Callable[[ConductorEvent], object]


@dataclass(frozen=True, slots=True)
class DispatchError:
    event_id: str
    target: str
    error_type: str
    message: str


class EventBus:
    """Publish/subscribe hub with a replay buffer of the last ``buffer_size`` events.

    With ``redact`` set, payload values under secret-looking keys are masked
    before an event is buffered or delivered.

    Coroutine subscribers are scheduled on the running loop; use
    :meth:`drain_async` to wait for them.
    """

    def __init__(
        self, *, buffer_size: int = 512, error_buffer_size: int = 1024, redact: bool = False
    ) -> None:
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int) or buffer_size <= 0:
            raise ValueError("buffer_size must be a positive integer")
        self._events: deque[ConductorEvent] = deque(maxlen=buffer_size)
        self._errors: deque[DispatchError] = deque(maxlen=error_buffer_size)
        self._subscribers: dict[int, tuple[EventType | None, Subscriber]] = {}
        self._tokens = itertools.count(1)
        self._pending: set[asyncio.Task[object]] = set()
        self._lock = threading.RLock()
        self._redact = redact

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Register ``callback`` for one event type (``None``: all); return an unsubscribe token."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        wanted = None if event_type is None else _event_type(event_type)
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = (wanted, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def emit(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object] | None = None,
        *,
        correlation_id: str | None = None,
    ) -> ConductorEvent:
        event = ConductorEvent(
            event_type=_event_type(event_type),
            payload={key: _plain(value) for key, value in (payload or {}).items()},
            correlation_id=correlation_id,
        )
        if self._redact:
            event = redact_sensitive(event)
        self._deliver(event)
        return event

    def publish(self, event: ConductorEvent) -> tuple[DispatchError, ...]:
        """Buffer and fan out ``event``; returns the synchronous subscriber failures."""

        return self._deliver(redact_sensitive(event) if self._redact else event)

    def _deliver(self, event: ConductorEvent) -> tuple[DispatchError, ...]:
        with self._lock:
            self._events.append(event)
            targets = [
                callback
                for wanted, callback in self._subscribers.values()
                if wanted is None or wanted is event.event_type
            ]

        errors = []
        for callback in targets:
            try:
                outcome = callback(event)
            except Exception as exc:  # noqa: BLE001
                errors.append(_dispatch_error(event, callback, exc))
                continue
            if inspect.iscoroutine(outcome):
                self._schedule(outcome, event, callback)

        if errors:
            with self._lock:
                self._errors.extend(errors)
        return tuple(errors)

    async def drain_async(self) -> None:
        """Wait for coroutine subscribers scheduled so far."""

        with self._lock:
            pending = list(self._pending)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def replay(
        self,
        *,
        since: datetime | None = None,
        event_type: str | EventType | None = None,
        correlation_id: str | None = None,
        limit: int | None = None,
    ) -> tuple[ConductorEvent, ...]:
        """Buffered events in publish order, optionally filtered; ``limit`` keeps the newest."""

        if since is not None:
            if since.tzinfo is None:
                raise ValueError("since must be timezone-aware")
            since = since.astimezone(UTC)
        wanted = None if event_type is None else _event_type(event_type)
        with self._lock:
            events = list(self._events)

        selected = [
            event
            for event in events
            if (since is None or event.timestamp > since)
            and (wanted is None or event.event_type is wanted)
            and (correlation_id is None or event.correlation_id == correlation_id)
        ]
        if limit is not None:
            selected = selected[-limit:] if limit > 0 else []
        return tuple(selected)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)

    def _schedule(
        self, coro: Coroutine[Any, Any, object], event: ConductorEvent, callback: Subscriber
    ) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        with self._lock:
            self._pending.add(task)

        def done(finished: asyncio.Task[object]) -> None:
            exc = None if finished.cancelled() else finished.exception()
            with self._lock:
                self._pending.discard(finished)
                if isinstance(exc, Exception):
                    self._errors.append(_dispatch_error(event, callback, exc))

        task.add_done_callback(done)


def _event_type(value: str | EventType) -> EventType:
    try:
        return EventType(value)
    except ValueError as exc:
        raise ValueError(f"unknown event type {value!r}") from exc


def _plain(value: object) -> JSONValue:
    """Lower enums, tuples and sets to JSON shapes; anything else is left for validation."""

    if isinstance(value, Enum):
        return _plain(value.value)
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_plain(item) for item in value), key=str)
    return value  # type: ignore[return-value]


def _dispatch_error(event: ConductorEvent, callback: object, exc: Exception) -> DispatchError:
    return DispatchError(
        event_id=event.event_id,
        target=getattr(callback, "__name__", None) or type(callback).__name__,
        error_type=type(exc).__name__,
        message=str(exc),
    )


__all__ = ["DispatchError", "EventBus", "Subscriber"]
