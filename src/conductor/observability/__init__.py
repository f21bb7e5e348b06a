"""Public observability primitives: structured logging and lifecycle event streaming."""

from conductor.observability.events import DispatchError, EventBus, Subscriber
from conductor.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    configure_logging,
    correlation_scope,
    redact,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "DispatchError",
    "EventBus",
    "LoggingConfig",
    "LoggingHandle",
    "Subscriber",
    "configure_logging",
    "correlation_scope",
    "redact",
    "setup_logging",
    "shutdown_logging",
]
