"""
Librarian: the passive monitoring role.

The librarian never consumes messages; it reads ``peek_all`` and owns the
``architecture`` and ``failures`` namespaces. Risk areas consulted by the plan
gate live in ``architecture`` under the ``risk-area`` heading, one area per
entry body line; lines starting with ``note:`` are commentary.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, Final

import structlog

from conductor.constants import NAMESPACE_ARCHITECTURE, NAMESPACE_FAILURES, ROLE_LIBRARIAN
from conductor.domain.models import Message, MessageType, Verdict
from conductor.knowledge_plane.memory_store import MemoryStore, log_namespace
from conductor.messaging_plane.bus import AuditSink, MessageBus

RISK_AREA_HEADING: Final[str] = "risk-area"
TOUCHED_AREA_HEADING: Final[str] = "touched-area"
_NOTE_PREFIX: Final[str] = "note:"

_FAILURE_MESSAGE_TYPES = frozenset({MessageType.BUG.value})


class Librarian:
    """Writes failure and architecture knowledge on behalf of the librarian role."""

    def __init__(
        self,
        store: MemoryStore,
        *,
        role: str = ROLE_LIBRARIAN,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._role = role
        self._last_seen = 0
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def role(self) -> str:
        return self._role

    def risk_areas(self) -> tuple[str, ...]:
        document = self._store.read(NAMESPACE_ARCHITECTURE)
        areas: dict[str, None] = {}
        for entry in document.find(RISK_AREA_HEADING):
            for line in entry.body.splitlines():
                area = line.strip().lstrip("-* ").strip()
                if area and not area.lower().startswith(_NOTE_PREFIX):
                    areas[area] = None
        return tuple(areas)

    def flag_risk_area(self, area: str, note: str = "") -> None:
        body = area.strip() if not note else f"{area.strip()}\n{_NOTE_PREFIX} {note.strip()}"
        self._store.append(NAMESPACE_ARCHITECTURE, self._role, RISK_AREA_HEADING, body)

    def record_failures(self, request_id: str, verdicts: Sequence[Verdict]) -> int:
        """Append each failing verdict to the failure registry; return how many were written."""

        written = 0
        for verdict in verdicts:
            if not verdict.failed:
                continue
            lines = [
                f"request: {request_id}",
                f"task: {verdict.task_id or '-'}",
                f"worker: {verdict.worker_role}",
                f"check: {verdict.check_name}",
                f"reason: {verdict.detail.reason or '-'}",
            ]
            if verdict.detail.failing_names:
                lines.append("failing: " + ", ".join(verdict.detail.failing_names))
            lines.extend(f"> {line}" for line in verdict.detail.excerpt)
            self._store.append(
                NAMESPACE_FAILURES,
                self._role,
                f"{verdict.check_name}:{verdict.verdict_id}",
                "\n".join(lines),
            )
            written += 1
        return written

    def record_touched_areas(self, request_id: str, areas: Iterable[str]) -> bool:
        unique = sorted({area.strip() for area in areas if area.strip()})
        if not unique:
            return False
        body = "\n".join([f"request: {request_id}", *(f"- {area}" for area in unique)])
        self._store.append(NAMESPACE_ARCHITECTURE, self._role, TOUCHED_AREA_HEADING, body)
        return True

    def observe(self, bus: MessageBus) -> list[Message]:
        """Read new traffic without consuming it and register BUG reports."""

        fresh = [
            message for message in bus.peek_all() if message.global_sequence > self._last_seen
        ]
        if not fresh:
            return []
        self._last_seen = max(message.global_sequence for message in fresh)

        seen: set[str] = set()
        for message in fresh:
            if message.type not in _FAILURE_MESSAGE_TYPES or message.message_id in seen:
                continue
            seen.add(message.message_id)
            self._store.append(
                NAMESPACE_FAILURES,
                self._role,
                f"{message.type.lower()}:{message.message_id}",
                f"from: {message.sender}\nto: {message.recipient}\n\n{message.body}",
            )
        self._logger.debug("librarian_observed", messages=len(fresh), failures=len(seen))
        return fresh


def mailbox_audit_sink(store: MemoryStore, *, logger: Any | None = None) -> AuditSink:
    """Bus audit hook appending each delivered copy to the recipient's ``logs/<role>``."""

    log = logger if logger is not None else structlog.get_logger(__name__)

    def _sink(mailbox: str, message: Message) -> None:
        namespace = log_namespace(mailbox)
        heading = f"{message.type} #{message.sequence} from {message.sender}"
        body = message.body if not message.action_needed else (
            f"{message.body}\n\naction: {message.action_needed}"
        )
        store.append(namespace, mailbox.strip().lower(), heading, body)
        log.debug("message_audited", mailbox=mailbox, message_id=message.message_id)

    return _sink


__all__ = [
    "RISK_AREA_HEADING",
    "TOUCHED_AREA_HEADING",
    "Librarian",
    "mailbox_audit_sink",
]
