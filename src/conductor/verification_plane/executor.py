"""Command execution for verification hooks.

Hooks never shell out directly: they hand a :class:`CommandSpec` to a
:class:`CommandExecutor`. The local executor runs it with asyncio, kills it and
its children at the deadline and reports the outcome as data, never as an
exception.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

DEFAULT_MAX_OUTPUT_CHARS = 200_000
DEFAULT_KILL_GRACE_SECONDS = 2.0
_READ_CHUNK = 64 * 1024


@dataclass(frozen=True, slots=True)
class CommandSpec:
    argv: tuple[str, ...]
    cwd: str | None = None
    timeout_seconds: float | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        argv = tuple(self.argv)
        if not argv or not all(isinstance(item, str) and item for item in argv):
            raise ValueError("CommandSpec.argv must be a non-empty sequence of non-empty strings")
        object.__setattr__(self, "argv", argv)
        if self.timeout_seconds is not None and not self.timeout_seconds > 0:
            raise ValueError("CommandSpec.timeout_seconds must be > 0")


@dataclass(frozen=True, slots=True)
class CommandResult:
    """What happened to one command.

    ``exit_code`` is ``None`` whenever the process did not run to completion:
    it was killed at the deadline (``timed_out``) or could not be started
    (``error``, with ``tool_missing`` only when the executable does not exist).
    """

    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None
    tool_missing: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None


@runtime_checkable
class CommandExecutor(Protocol):
    async def run(self, spec: CommandSpec) -> CommandResult: ...


class LocalSubprocessExecutor:
    """Run commands as local subprocesses, inheriting the current environment.

    Each command leads its own process group. At the deadline the whole group
    is killed, so children of ``sh -c`` or a test runner cannot hold the pipes
    open past it.
    """

    def __init__(
        self,
        *,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ) -> None:
        if max_output_chars <= 0:
            raise ValueError("max_output_chars must be > 0")
        if not kill_grace_seconds > 0:
            raise ValueError("kill_grace_seconds must be > 0")
        self._max_output_chars = max_output_chars
        self._kill_grace_seconds = kill_grace_seconds

    async def run(self, spec: CommandSpec) -> CommandResult:
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env={**os.environ, **spec.env} if spec.env else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Own process group so a timeout can take down the whole tree.
                start_new_session=sys.platform != "win32",
            )
        except OSError as exc:
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_since(started),
                error=str(exc),
                tool_missing=isinstance(exc, FileNotFoundError),
            )

        assert process.stdout is not None
        assert process.stderr is not None
        out, err = bytearray(), bytearray()
        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    _drain(process.stdout, out), _drain(process.stderr, err), process.wait()
                ),
                timeout=spec.timeout_seconds,
            )
        except TimeoutError:
            timed_out = True
            _kill_tree(process)
            await self._settle(process, out, err)
        except asyncio.CancelledError:
            _kill_tree(process)
            await self._settle(process, out, err)
            raise

        return CommandResult(
            argv=spec.argv,
            exit_code=None if timed_out else process.returncode,
            stdout=self._decode(bytes(out)),
            stderr=self._decode(bytes(err)),
            duration_ms=_since(started),
            timed_out=timed_out,
            error=f"command timed out after {spec.timeout_seconds}s" if timed_out else None,
        )

    async def _settle(
        self, process: asyncio.subprocess.Process, out: bytearray, err: bytearray
    ) -> None:
        """Collect what the killed tree already wrote, waiting at most ``kill_grace_seconds``."""

        assert process.stdout is not None
        assert process.stderr is not None
        with suppress(TimeoutError):
            await asyncio.wait_for(
                asyncio.gather(
                    _drain(process.stdout, out), _drain(process.stderr, err), process.wait()
                ),
                timeout=self._kill_grace_seconds,
            )

    def _decode(self, raw: bytes) -> str:
        text = raw.decode("utf-8", errors="replace").replace("\r\n", "\n")
        if len(text) <= self._max_output_chars:
            return text
        dropped = len(text) - self._max_output_chars
        return f"{text[: self._max_output_chars]}\n...[truncated {dropped} chars]"


async def _drain(stream: asyncio.StreamReader, sink: bytearray) -> None:
    while chunk := await stream.read(_READ_CHUNK):
        sink.extend(chunk)


def _kill_tree(process: asyncio.subprocess.Process) -> None:
    if sys.platform == "win32":
        with suppress(ProcessLookupError):
            process.kill()
        return
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)


def _since(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


__all__ = [
    "DEFAULT_KILL_GRACE_SECONDS",
    "DEFAULT_MAX_OUTPUT_CHARS",
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
]
