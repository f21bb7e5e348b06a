"""Sortable identifiers for requests, tasks, messages, verdicts and events.

Every id is ``<prefix>-<ulid>``: a 48-bit millisecond timestamp followed by 80
random bits, Crockford Base32 encoded. Lexical order follows creation time,
which keeps audit logs and memory documents stable when sorted.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Final

ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

_RANDOM_BITS: Final[int] = 80
_DIGITS: Final[dict[str, int]] = {char: value for value, char in enumerate(ALPHABET)}

RandomBytes = Callable[[int], bytes]


class IdKind(StrEnum):
    REQUEST = "req"
    TASK = "task"
    MESSAGE = "msg"
    VERDICT = "vd"
    EVENT = "evt"
    RUN = "run"


def generate_ulid(
    *, timestamp_ms: int | None = None, randbytes: RandomBytes | None = None
) -> str:
    """Return a new 26-character ULID.

    ``timestamp_ms`` and ``randbytes`` exist for deterministic tests; by default
    the wall clock and :func:`secrets.token_bytes` are used.
    """

    stamp = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(stamp, bool) or not isinstance(stamp, int):
        raise ValueError("timestamp_ms must be an int")
    if not 0 <= stamp <= MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms {stamp} out of range 0..{MAX_TIMESTAMP_MS}")

    noise = bytes((randbytes or secrets.token_bytes)(_RANDOM_BITS // 8))
    if len(noise) != _RANDOM_BITS // 8:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BITS // 8} bytes")

    value = (stamp << _RANDOM_BITS) | int.from_bytes(noise, "big")
    chars = []
    for _ in range(ULID_LENGTH):
        chars.append(ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def decode_ulid(text: str) -> int:
    """Decode a ULID (case-insensitive) to its 128-bit value or raise ``ValueError``."""

    if not isinstance(text, str):
        raise ValueError(f"ulid must be a string, got {type(text).__name__}")
    if len(text) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(text)}")
    value = 0
    for position, char in enumerate(text):
        digit = _DIGITS.get(char.upper())
        if digit is None:
            raise ValueError(f"invalid ULID character {char!r} at index {position}")
        value = (value << 5) | digit
    if value >> 128:
        raise ValueError("ulid overflow: value exceeds 128 bits")
    return value


def validate_ulid(text: str) -> None:
    decode_ulid(text)


def ulid_timestamp_ms(text: str) -> int:
    return decode_ulid(text) >> _RANDOM_BITS


def generate_prefixed_id(
    prefix: str | IdKind,
    *,
    timestamp_ms: int | None = None,
    randbytes: RandomBytes | None = None,
) -> str:
    if not isinstance(prefix, str) or not prefix or "-" in prefix:
        raise ValueError(f"id prefix must be a non-empty string without '-', got {prefix!r}")
    return f"{prefix}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_id(value: str, kind: str | IdKind) -> None:
    """Check that ``value`` is ``<kind>-<ulid>``."""

    if not isinstance(value, str):
        raise ValueError(f"id must be a string, got {type(value).__name__}")
    prefix, sep, ulid = value.partition("-")
    if not sep or prefix != kind:
        raise ValueError(f"expected an id starting with '{kind}-', got {value!r}")
    try:
        decode_ulid(ulid)
    except ValueError as exc:
        raise ValueError(f"malformed {kind} id {value!r}: {exc}") from exc


def generate_request_id() -> str:
    return generate_prefixed_id(IdKind.REQUEST)


def generate_task_id() -> str:
    return generate_prefixed_id(IdKind.TASK)


def generate_message_id() -> str:
    return generate_prefixed_id(IdKind.MESSAGE)


def generate_verdict_id() -> str:
    return generate_prefixed_id(IdKind.VERDICT)


def generate_event_id() -> str:
    return generate_prefixed_id(IdKind.EVENT)


def short_id(value: str) -> str:
    """Last eight characters, for compact CLI tables."""

    if len(value) < 8:
        raise ValueError("id must be at least 8 characters")
    return value[-8:]


__all__ = [
    "ALPHABET",
    "MAX_TIMESTAMP_MS",
    "ULID_LENGTH",
    "IdKind",
    "RandomBytes",
    "decode_ulid",
    "generate_event_id",
    "generate_message_id",
    "generate_prefixed_id",
    "generate_request_id",
    "generate_task_id",
    "generate_ulid",
    "generate_verdict_id",
    "short_id",
    "ulid_timestamp_ms",
    "validate_id",
    "validate_ulid",
]
