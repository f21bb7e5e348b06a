"""
Single-writer-per-namespace document store for orchestration memory.

Namespaces: ``architecture``, ``decisions``, ``failures``, ``wip`` and one
``logs/<role>`` namespace per worker role. Every write (append or rewrite) is
checked against the ownership map before anything changes, and writes to one
namespace are serialized by a per-namespace lock. ``rewrite`` accepts an
``expected_version`` for compare-and-swap.
"""

from __future__ import annotations

import json
import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any, Final, Protocol, runtime_checkable

import structlog
from jinja2 import Environment, FileSystemLoader, StrictUndefined

from conductor.constants import (
    LOG_NAMESPACE_PREFIX,
    MEMORY_DOCUMENT_SCHEMA_VERSION,
    NAMESPACE_ARCHITECTURE,
    NAMESPACE_DECISIONS,
    NAMESPACE_FAILURES,
    NAMESPACE_WIP,
    ROLE_CONDUCTOR,
    ROLE_LIBRARIAN,
)
from conductor.domain.errors import StaleWriteError, WriteOwnershipViolation
from conductor.domain.events import EventType
from conductor.domain.models import MemoryDocument, MemoryEntry, utc_now
from conductor.observability.events import EventBus
from conductor.utils.fs import atomic_write, ensure_directory, is_within

_NAMESPACE_RE: Final[re.Pattern[str]] = re.compile(
    r"^[a-z0-9][a-z0-9_-]*(?:/[a-z0-9][a-z0-9_-]*)*$"
)
_TEMPLATE_DIR: Final[Path] = Path(__file__).resolve().parent / "templates"
_MARKDOWN_TEMPLATE: Final[str] = "memory_document.md.j2"

DEFAULT_OWNERS: Final[Mapping[str, str]] = {
    NAMESPACE_ARCHITECTURE: ROLE_LIBRARIAN,
    NAMESPACE_FAILURES: ROLE_LIBRARIAN,
    NAMESPACE_DECISIONS: ROLE_CONDUCTOR,
    NAMESPACE_WIP: ROLE_CONDUCTOR,
}


def validate_namespace(namespace: str) -> str:
    if not isinstance(namespace, str):
        raise ValueError("namespace must be a string")
    parsed = namespace.strip()
    if not _NAMESPACE_RE.fullmatch(parsed):
        raise ValueError(f"invalid memory namespace: {namespace!r}")
    return parsed


def log_namespace(role: str) -> str:
    return validate_namespace(f"{LOG_NAMESPACE_PREFIX}{role.strip().lower()}")


class OwnershipMap:
    """Namespace -> owning role. ``logs/<role>`` is always owned by ``<role>``."""

    def __init__(self, owners: Mapping[str, str] | None = None) -> None:
        merged = dict(DEFAULT_OWNERS)
        for namespace, role in (owners or {}).items():
            merged[validate_namespace(namespace)] = role.strip().lower()
        self._owners = merged

    def owner_of(self, namespace: str) -> str | None:
        explicit = self._owners.get(namespace)
        if explicit is not None:
            return explicit
        if namespace.startswith(LOG_NAMESPACE_PREFIX):
            role = namespace[len(LOG_NAMESPACE_PREFIX) :]
            if role and "/" not in role:
                return role
        return None

    def check(self, namespace: str, role: str) -> str:
        """Return the owner, or raise ``WriteOwnershipViolation`` for any other role."""

        owner = self.owner_of(namespace)
        if owner is None or owner != role.strip().lower():
            raise WriteOwnershipViolation(namespace, role, owner)
        return owner

    def as_dict(self) -> dict[str, str]:
        return dict(sorted(self._owners.items()))


@runtime_checkable
class MemoryBackend(Protocol):
    """Persistence contract for memory documents."""

    def load(self, namespace: str) -> MemoryDocument | None: ...

    def save(self, document: MemoryDocument) -> None: ...

    def namespaces(self) -> tuple[str, ...]: ...


class InMemoryBackend:
    """Process-local backend used by tests and dry runs."""

    def __init__(self) -> None:
        self._documents: dict[str, MemoryDocument] = {}
        self._lock = threading.Lock()

    def load(self, namespace: str) -> MemoryDocument | None:
        with self._lock:
            return self._documents.get(namespace)

    def save(self, document: MemoryDocument) -> None:
        with self._lock:
            self._documents[document.namespace] = document

    def namespaces(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._documents))


class FileBackend:
    """One canonical JSON file per namespace plus a rendered markdown mirror.

    ``logs/backend`` is stored as ``<root>/logs/backend.json`` and mirrored to
    ``<root>/logs/backend.md``. The JSON file is the source of truth.
    """

    def __init__(self, root: str | Path, *, render_markdown: bool = True) -> None:
        self._root = Path(root)
        self._render_markdown = render_markdown
        self._environment = Environment(
            loader=FileSystemLoader(str(_TEMPLATE_DIR)),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            newline_sequence="\n",
            keep_trailing_newline=True,
        )

    @property
    def root(self) -> Path:
        return self._root

    def json_path(self, namespace: str) -> Path:
        return self._path_for(namespace, ".json")

    def markdown_path(self, namespace: str) -> Path:
        return self._path_for(namespace, ".md")

    def load(self, namespace: str) -> MemoryDocument | None:
        path = self.json_path(namespace)
        if not path.is_file():
            return None
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, Mapping):
            raise ValueError(f"{path}: expected a JSON object")
        return MemoryDocument.from_dict(payload)

    def save(self, document: MemoryDocument) -> None:
        json_path = self.json_path(document.namespace)
        ensure_directory(json_path.parent)
        atomic_write(json_path, document.to_json() + "\n")
        if self._render_markdown:
            atomic_write(self.markdown_path(document.namespace), self.render(document))

    def render(self, document: MemoryDocument) -> str:
        template = self._environment.get_template(_MARKDOWN_TEMPLATE)
        return template.render(document=document, entries=document.content)

    def namespaces(self) -> tuple[str, ...]:
        if not self._root.is_dir():
            return ()
        found = [
            path.relative_to(self._root).with_suffix("").as_posix()
            for path in self._root.rglob("*.json")
        ]
        return tuple(sorted(found))

    def _path_for(self, namespace: str, suffix: str) -> Path:
        parsed = validate_namespace(namespace)
        path = self._root.joinpath(*parsed.split("/")).with_suffix(suffix)
        if self._root.exists() and not is_within(path, self._root):
            raise ValueError(f"namespace escapes memory root: {namespace!r}")
        return path


class MemoryStore:
    """Ownership-checked, per-namespace serialized access to memory documents."""

    def __init__(
        self,
        backend: MemoryBackend | None = None,
        *,
        ownership: OwnershipMap | None = None,
        events: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._backend = backend if backend is not None else InMemoryBackend()
        self._ownership = ownership if ownership is not None else OwnershipMap()
        self._events = events
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def backend(self) -> MemoryBackend:
        return self._backend

    @property
    def ownership(self) -> OwnershipMap:
        return self._ownership

    def read(self, namespace: str) -> MemoryDocument:
        """Current document, or an empty version-0 document if never written."""

        parsed = validate_namespace(namespace)
        document = self._backend.load(parsed)
        if document is not None:
            return document
        owner = self._ownership.owner_of(parsed)
        if owner is None:
            raise KeyError(f"unknown memory namespace: {parsed}")
        return MemoryDocument(namespace=parsed, owner=owner, content=(), version=0)

    def exists(self, namespace: str) -> bool:
        return self._backend.load(validate_namespace(namespace)) is not None

    def namespaces(self) -> tuple[str, ...]:
        return self._backend.namespaces()

    def append(self, namespace: str, role: str, heading: str, body: str) -> MemoryDocument:
        parsed = validate_namespace(namespace)
        owner = self._ownership.check(parsed, role)
        entry = MemoryEntry(heading=heading, body=body, author=role)
        with self._lock_for(parsed):
            current = self._load_or_empty(parsed, owner)
            updated = replace(
                current,
                content=(*current.content, entry),
                last_updated=entry.recorded_at,
                version=current.version + 1,
            )
            self._backend.save(updated)
        self._record_write(updated, role, operation="append")
        return updated

    def rewrite(
        self,
        namespace: str,
        role: str,
        entries: Iterable[MemoryEntry],
        expected_version: int | None = None,
    ) -> MemoryDocument:
        """Replace the whole document. Only the owner may rewrite."""

        parsed = validate_namespace(namespace)
        owner = self._ownership.check(parsed, role)
        content = tuple(entries)
        with self._lock_for(parsed):
            current = self._load_or_empty(parsed, owner)
            if expected_version is not None and expected_version != current.version:
                raise StaleWriteError(parsed, expected_version, current.version)
            updated = replace(
                current,
                content=content,
                last_updated=utc_now(),
                version=current.version + 1,
            )
            self._backend.save(updated)
        self._record_write(updated, role, operation="rewrite")
        return updated

    def remove_headings(
        self,
        namespace: str,
        role: str,
        headings: Iterable[str],
    ) -> MemoryDocument:
        """Rewrite ``namespace`` without the entries whose heading is in ``headings``."""

        drop = set(headings)
        while True:
            current = self.read(namespace)
            kept = [entry for entry in current.content if entry.heading not in drop]
            if len(kept) == len(current.content):
                return current
            try:
                return self.rewrite(namespace, role, kept, expected_version=current.version)
            except StaleWriteError:
                self._logger.debug("memory_rewrite_retry", namespace=namespace, role=role)

    def _load_or_empty(self, namespace: str, owner: str) -> MemoryDocument:
        document = self._backend.load(namespace)
        if document is not None:
            return document
        return MemoryDocument(
            namespace=namespace,
            owner=owner,
            content=(),
            version=0,
            schema_version=MEMORY_DOCUMENT_SCHEMA_VERSION,
        )

    def _lock_for(self, namespace: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(namespace)
            if lock is None:
                lock = threading.Lock()
                self._locks[namespace] = lock
            return lock

    def _record_write(self, document: MemoryDocument, role: str, *, operation: str) -> None:
        self._logger.debug(
            "memory_written",
            namespace=document.namespace,
            role=role,
            operation=operation,
            version=document.version,
            entries=len(document.content),
        )
        if self._events is not None:
            self._events.emit(
                EventType.MEMORY_WRITTEN,
                {
                    "namespace": document.namespace,
                    "role": role,
                    "operation": operation,
                    "version": document.version,
                },
            )


__all__ = [
    "DEFAULT_OWNERS",
    "FileBackend",
    "InMemoryBackend",
    "MemoryBackend",
    "MemoryStore",
    "OwnershipMap",
    "log_namespace",
    "validate_namespace",
]
