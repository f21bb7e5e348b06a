"""Shared utilities: async concurrency primitives and filesystem helpers."""

from conductor.utils.concurrency import BoundedSemaphore, CancellationToken
from conductor.utils.fs import atomic_write, ensure_directory, is_within

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "atomic_write",
    "ensure_directory",
    "is_within",
]
