"""Process entrypoint for ``conductor``: runs the CLI and maps failures to exit codes."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    REQUEST_REJECTED = 1
    CONFIG_ERROR = 2
    TOOLING_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and always return one of the :class:`ExitCode` values.

    Known failure types anywhere in an exception's cause chain choose the code
    and print a one-line message; anything else prints a traceback.
    """

    try:
        from conductor.ui.cli import run_cli

        return _as_exit_code(run_cli(argv))
    except SystemExit as exc:  # pragma: no cover - argparse exits on --help / usage errors.
        return _as_exit_code(exc.code)
    except BaseException as exc:  # noqa: BLE001
        code = _classify(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
        return int(code)


def _as_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in set(ExitCode):
        return raw
    if isinstance(raw, str) and raw.strip():
        print(raw.strip(), file=sys.stderr)
    return int(ExitCode.INTERNAL_ERROR)


def _classify(exc: BaseException) -> ExitCode:
    from conductor.config.loader import ConfigLoadError
    from conductor.config.schema import ConfigValidationError
    from conductor.domain.errors import (
        EscalationRequired,
        HookToolMissing,
        RequestFailed,
        WriteOwnershipViolation,
    )

    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((ConfigLoadError, ConfigValidationError), ExitCode.CONFIG_ERROR),
        ((EscalationRequired, RequestFailed, WriteOwnershipViolation), ExitCode.REQUEST_REJECTED),
        ((HookToolMissing,), ExitCode.TOOLING_ERROR),
        ((FileNotFoundError, NotADirectoryError, PermissionError), ExitCode.CONFIG_ERROR),
    )
    for link in _cause_chain(exc):
        for types, code in routes:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    """``exc`` then its explicit causes, falling back to unsuppressed context."""

    seen: set[int] = set()
    link: BaseException | None = exc
    while link is not None and id(link) not in seen:
        seen.add(id(link))
        yield link
        if link.__cause__ is not None:
            link = link.__cause__
        elif not link.__suppress_context__:
            link = link.__context__
        else:
            link = None


__all__ = ["ExitCode", "cli_entrypoint"]
