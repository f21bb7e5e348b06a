"""Structured logging for conductor runs.

Both ``structlog.get_logger(__name__)`` loggers and plain ``logging`` records
under the ``conductor`` namespace are rendered by one structlog processor
chain into a per-run JSON lines file, optionally mirrored to stderr.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

LogFormat = Literal["json", "text"]

REDACTED: Final[str] = "***REDACTED***"
LOGGER_NAME: Final[str] = "conductor"
LOG_FILENAME: Final[str] = "conductor.jsonl"

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)
_INLINE_ASSIGNMENT_RE: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)(\s*[:=]\s*)[^\s,;]+"
)
_BEARER_RE: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[\w.~+/-]+=*")
_PROVIDER_KEY_RE: Final[re.Pattern[str]] = re.compile(r"\bsk-[\w-]{12,}")


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    log_dir: Path | str = Path(".conductor/logs")
    level: int | str = "INFO"
    log_format: LogFormat = "json"
    log_to_stderr: bool = False
    redact_secrets: bool = True
    logger_name: str = LOGGER_NAME


@dataclass(slots=True)
class LoggingHandle:
    """Handlers installed by one :func:`configure_logging` call."""

    run_id: str
    log_path: Path
    logger: logging.Logger
    handlers: tuple[logging.Handler, ...]
    closed: bool = False

    def shutdown(self) -> None:
        if self.closed:
            return
        for handler in self.handlers:
            self.logger.removeHandler(handler)
            handler.flush()
            handler.close()
        self.closed = True


_active: LoggingHandle | None = None


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    log_to_stderr: bool = False,
) -> LoggingHandle:
    """Configure logging from the ``[observability]`` section of ``conductor.toml``."""

    cfg = dict(observability_config or {})
    raw_dir = log_dir if log_dir is not None else cfg.get("log_dir")
    raw_level = cfg.get("log_level", "INFO")
    return configure_logging(
        LoggingConfig(
            run_id=run_id,
            log_dir=raw_dir if isinstance(raw_dir, (Path, str)) else ".conductor/logs",
            level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
            log_format="text" if cfg.get("log_format") == "text" else "json",
            log_to_stderr=log_to_stderr,
            redact_secrets=bool(cfg.get("redact_secrets", True)),
        )
    )


def configure_logging(config: LoggingConfig) -> LoggingHandle:
    """Install file (and optional stderr) handlers and point structlog at them.

    A previous active configuration is shut down first, so repeated calls in
    one process do not duplicate output.
    """

    global _active
    run_id = _require_text(config.run_id, "run_id")
    logger_name = _require_text(config.logger_name, "logger_name")
    level = _parse_level(config.level)

    if _active is not None:
        _active.shutdown()
        _active = None

    run_dir = Path(config.log_dir) / run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    log_path = run_dir / LOG_FILENAME

    shared = _shared_processors(run_id, redact_secrets=config.redact_secrets)
    json_renderer = structlog.processors.JSONRenderer(sort_keys=True)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(_formatter(shared, json_renderer))
    handlers: list[logging.Handler] = [file_handler]
    if config.log_to_stderr:
        stream_handler = logging.StreamHandler()
        renderer: Processor = (
            structlog.dev.ConsoleRenderer(colors=False, event_key="message")
            if config.log_format == "text"
            else json_renderer
        )
        stream_handler.setFormatter(_formatter(shared, renderer))
        handlers.append(stream_handler)

    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.setLevel(level)
    logger.propagate = False
    for handler in handlers:
        handler.setLevel(level)
        logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    _active = LoggingHandle(
        run_id=run_id, log_path=log_path, logger=logger, handlers=tuple(handlers)
    )
    return _active


def shutdown_logging(handle: LoggingHandle | None = None) -> None:
    """Close the handlers of ``handle`` (default: the active configuration)."""

    global _active
    resolved = handle if handle is not None else _active
    if resolved is None:
        return
    resolved.shutdown()
    if resolved is _active:
        _active = None


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation ids (request, task, worker) to every record logged in scope."""

    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def redact(value: Any, *, key: str | None = None) -> Any:
    """Mask secret-looking keys and inline credentials, recursing into containers."""

    if key is not None and _is_sensitive_key(key):
        return REDACTED
    if isinstance(value, str):
        return _redact_text(value)
    if isinstance(value, Mapping):
        return {item_key: redact(item, key=str(item_key)) for item_key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _redact_processor(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    for key in list(event_dict):
        if key.startswith("_"):
            continue
        event_dict[key] = redact(event_dict[key], key=None if key == "event" else key)
    return event_dict


def _shared_processors(run_id: str, *, redact_secrets: bool) -> list[Processor]:
    def add_run_id(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("run_id", run_id)
        return event_dict

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_run_id,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.processors.format_exc_info,
    ]
    if redact_secrets:
        processors.append(_redact_processor)
    processors.append(structlog.processors.EventRenamer("message"))
    return processors


def _formatter(
    shared: list[Processor], renderer: Processor
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=[structlog.stdlib.ExtraAdder(), *shared],
    )


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _redact_text(text: str) -> str:
    text = _INLINE_ASSIGNMENT_RE.sub(lambda match: f"{match[1]}{match[2]}{REDACTED}", text)
    text = _BEARER_RE.sub(f"Bearer {REDACTED}", text)
    return _PROVIDER_KEY_RE.sub(REDACTED, text)


def _require_text(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


def _parse_level(value: int | str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        parsed = logging.getLevelName(value.strip().upper())
        if isinstance(parsed, int):
            return parsed
    raise ValueError(f"unsupported logging level {value!r}")


__all__ = [
    "LOGGER_NAME",
    "LOG_FILENAME",
    "REDACTED",
    "LogFormat",
    "LoggingConfig",
    "LoggingHandle",
    "configure_logging",
    "correlation_scope",
    "redact",
    "setup_logging",
    "shutdown_logging",
]
