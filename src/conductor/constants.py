"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
MEMORY_DOCUMENT_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the project root unless overridden by config).
MEMORY_DIR: Final[PurePosixPath] = PurePosixPath(".conductor/memory")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".conductor/logs")

# Built-in role names.
ROLE_CONDUCTOR: Final[str] = "conductor"
ROLE_LIBRARIAN: Final[str] = "librarian"

# Shared memory namespaces and the per-role log prefix.
NAMESPACE_ARCHITECTURE: Final[str] = "architecture"
NAMESPACE_DECISIONS: Final[str] = "decisions"
NAMESPACE_FAILURES: Final[str] = "failures"
NAMESPACE_WIP: Final[str] = "wip"
LOG_NAMESPACE_PREFIX: Final[str] = "logs/"
SHARED_NAMESPACES: Final[tuple[str, ...]] = (
    NAMESPACE_ARCHITECTURE,
    NAMESPACE_DECISIONS,
    NAMESPACE_FAILURES,
    NAMESPACE_WIP,
)

# Broadcast recipient sentinel.
BROADCAST_RECIPIENT: Final[str] = "ALL"

DEFAULT_MAILBOX_SANITY_LIMIT: Final[int] = 10_000
DEFAULT_MAX_RETRIES: Final[int] = 1

__all__ = [
    "BROADCAST_RECIPIENT",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_MAILBOX_SANITY_LIMIT",
    "DEFAULT_MAX_RETRIES",
    "LOG_DIR",
    "LOG_NAMESPACE_PREFIX",
    "MEMORY_DIR",
    "MEMORY_DOCUMENT_SCHEMA_VERSION",
    "NAMESPACE_ARCHITECTURE",
    "NAMESPACE_DECISIONS",
    "NAMESPACE_FAILURES",
    "NAMESPACE_WIP",
    "ROLE_CONDUCTOR",
    "ROLE_LIBRARIAN",
    "SHARED_NAMESPACES",
]
