"""Knowledge plane: ownership-checked memory documents and the librarian role."""

from conductor.knowledge_plane.bootstrap import BootstrapReport, bootstrap_memory
from conductor.knowledge_plane.librarian import Librarian, mailbox_audit_sink
from conductor.knowledge_plane.memory_store import (
    FileBackend,
    InMemoryBackend,
    MemoryBackend,
    MemoryStore,
    OwnershipMap,
    log_namespace,
)

__all__ = [
    "BootstrapReport",
    "FileBackend",
    "InMemoryBackend",
    "Librarian",
    "MemoryBackend",
    "MemoryStore",
    "OwnershipMap",
    "bootstrap_memory",
    "log_namespace",
    "mailbox_audit_sink",
]
