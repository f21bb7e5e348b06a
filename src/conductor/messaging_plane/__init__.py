"""Messaging plane: per-worker ordered mailboxes with broadcast fan-out."""

from conductor.messaging_plane.bus import AuditSink, MessageBus

__all__ = ["AuditSink", "MessageBus"]
