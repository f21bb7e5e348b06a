"""Store-and-forward message bus with one ordered mailbox per worker."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import replace
from typing import Any

import structlog

from conductor.constants import BROADCAST_RECIPIENT, DEFAULT_MAILBOX_SANITY_LIMIT
from conductor.domain.events import EventType
from conductor.domain.ids import generate_message_id
from conductor.domain.models import Message
from conductor.observability.events import EventBus

AuditSink = Callable[[str, Message], object]


class MessageBus:
    """Typed point-to-point and broadcast delivery between named workers.

    ``send`` never blocks and never fails for a well-formed message. Sequence
    numbers increase strictly per recipient mailbox; a broadcast is copied to
    every known mailbox except the sender's under the same lock, so it holds
    one position relative to any concurrent send to each recipient.
    """

    def __init__(
        self,
        *,
        mailboxes: Iterable[str] = (),
        sanity_limit: int = DEFAULT_MAILBOX_SANITY_LIMIT,
        audit: AuditSink | None = None,
        events: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        if isinstance(sanity_limit, bool) or not isinstance(sanity_limit, int) or sanity_limit <= 0:
            raise ValueError("sanity_limit must be a positive integer")
        self._lock = threading.Lock()
        self._mailboxes: dict[str, deque[Message]] = {}
        self._next_sequence: dict[str, int] = {}
        self._global_sequence = 0
        self._sanity_limit = sanity_limit
        self._evicted: dict[str, int] = {}
        self._audit = audit
        self._events = events
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        for name in mailboxes:
            self.register_mailbox(name)

    @property
    def sanity_limit(self) -> int:
        return self._sanity_limit

    @property
    def last_global_sequence(self) -> int:
        with self._lock:
            return self._global_sequence

    def register_mailbox(self, name: str) -> None:
        """Create an empty mailbox so the worker receives broadcasts sent from now on."""

        if not isinstance(name, str) or not name.strip():
            raise ValueError("mailbox name must be a non-empty string")
        if name == BROADCAST_RECIPIENT:
            raise ValueError(f"{BROADCAST_RECIPIENT!r} is reserved for broadcasts")
        with self._lock:
            self._ensure_mailbox(name)

    def mailboxes(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._mailboxes))

    def send(self, message: Message) -> str:
        """Deliver ``message`` and return its message id.

        Bus-assigned fields (``message_id`` when empty, ``sequence``,
        ``global_sequence``) overwrite whatever the sender supplied.
        """

        message_id = message.message_id or generate_message_id()
        delivered: list[tuple[str, Message]] = []
        overflowed: list[tuple[str, int]] = []
        with self._lock:
            self._ensure_mailbox(message.sender)
            if message.recipient == BROADCAST_RECIPIENT:
                recipients = sorted(name for name in self._mailboxes if name != message.sender)
            else:
                self._ensure_mailbox(message.recipient)
                recipients = [message.recipient]

            self._global_sequence += 1
            for recipient in recipients:
                sequence = self._next_sequence[recipient]
                self._next_sequence[recipient] = sequence + 1
                copy = replace(
                    message,
                    message_id=message_id,
                    sequence=sequence,
                    global_sequence=self._global_sequence,
                )
                mailbox = self._mailboxes[recipient]
                mailbox.append(copy)
                delivered.append((recipient, copy))
                if len(mailbox) > self._sanity_limit:
                    excess = len(mailbox) - self._sanity_limit
                    for _ in range(excess):
                        mailbox.popleft()
                    self._evicted[recipient] = self._evicted.get(recipient, 0) + excess
                    overflowed.append((recipient, self._evicted[recipient]))

        for recipient, total in overflowed:
            self._logger.error(
                "mailbox_sanity_limit_exceeded",
                recipient=recipient,
                limit=self._sanity_limit,
                evicted_total=total,
            )
            if self._events is not None:
                self._events.emit(
                    EventType.MAILBOX_OVERFLOW,
                    {"recipient": recipient, "limit": self._sanity_limit, "evicted_total": total},
                )
        self._logger.debug(
            "message_sent",
            message_id=message_id,
            type=message.type,
            sender=message.sender,
            recipient=message.recipient,
            copies=len(delivered),
        )
        if self._audit is not None:
            for recipient, copy in delivered:
                self._record_audit(recipient, copy)
        return message_id

    def receive(self, worker_role: str, since_sequence: int = 0) -> list[Message]:
        """Return the mailbox's messages at or after ``since_sequence`` in FIFO order."""

        if since_sequence < 0:
            raise ValueError("since_sequence must be >= 0")
        with self._lock:
            mailbox = self._mailboxes.get(worker_role)
            if mailbox is None:
                return []
            return [message for message in mailbox if message.sequence >= since_sequence]

    def peek_all(self, worker_role: str = BROADCAST_RECIPIENT) -> list[Message]:
        """Non-consuming view across mailboxes ordered by timestamp then global sequence.

        With the default ``ALL`` every copy in every mailbox is returned, so a
        broadcast appears once per recipient.
        """

        with self._lock:
            if worker_role == BROADCAST_RECIPIENT:
                messages = [message for mailbox in self._mailboxes.values() for message in mailbox]
            else:
                messages = list(self._mailboxes.get(worker_role, ()))
        return sorted(
            messages,
            key=lambda message: (message.timestamp, message.global_sequence, message.recipient),
        )

    def find(
        self,
        *,
        recipient: str | None = None,
        type: str | None = None,
        task_id: str | None = None,
        request_id: str | None = None,
    ) -> list[Message]:
        """Filter ``peek_all`` by any combination of recipient, type and correlation ids."""

        wanted_type = type.upper() if type is not None else None
        return [
            message
            for message in self.peek_all(recipient or BROADCAST_RECIPIENT)
            if (wanted_type is None or message.type == wanted_type)
            and (task_id is None or message.task_id == task_id)
            and (request_id is None or message.request_id == request_id)
        ]

    def evicted_count(self, worker_role: str | None = None) -> int:
        with self._lock:
            if worker_role is None:
                return sum(self._evicted.values())
            return self._evicted.get(worker_role, 0)

    def _ensure_mailbox(self, name: str) -> None:
        if name == BROADCAST_RECIPIENT or name in self._mailboxes:
            return
        self._mailboxes[name] = deque()
        self._next_sequence[name] = 1

    def _record_audit(self, mailbox: str, message: Message) -> None:
        assert self._audit is not None
        try:
            self._audit(mailbox, message)
        except Exception:  # noqa: BLE001
            self._logger.exception(
                "message_audit_failed",
                message_id=message.message_id,
                mailbox=mailbox,
            )


__all__ = ["AuditSink", "MessageBus"]
