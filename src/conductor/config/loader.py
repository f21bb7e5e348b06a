"""
conductor: runtime config loader.

Layers, lowest to highest: built-in defaults, ``conductor.toml``, the selected
profile overlay, ``CONDUCTOR_*`` environment variables, CLI overrides. The
file layer is validated on its own first so a broken file is reported as such
and not blamed on an override.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from conductor.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "conductor.toml"
ENV_PREFIX: Final[str] = "CONDUCTOR_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Settings without a default that can still be set from the environment, each
# with a sample value that selects its parser.
_EXTRA_ENV_FIELDS: Final[tuple[tuple[tuple[str, ...], object], ...]] = (
    (("workers", "roster_file"), ""),
    (("scheduler", "max_plan_revisions"), 0),
)


class ConfigLoadError(ValueError):
    """Config file unreadable, or an override that cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    search_dir: str | Path | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    Without ``config_path`` the optional ``conductor.toml`` is looked up in
    ``search_dir`` (default: the working directory), and relative paths in the
    result resolve against that directory.

    ``cli_overrides`` keys may be dotted (``"scheduler.max_retries"``); the
    special key ``profile`` selects a profile like the ``profile`` argument.
    """

    if config_path is None:
        base = Path.cwd() if search_dir is None else Path(search_dir).expanduser()
        source = (base / DEFAULT_CONFIG_FILE).resolve()
    else:
        source = Path(config_path).expanduser().resolve()
    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})

    config = assert_valid_config(
        merge_config(default_config(), _read_toml(source, required=config_path is not None))
    )
    selected = _select_profile(profile, overrides, env)
    if selected is not None:
        config = apply_profile_overlay(config, selected)
    config = merge_config(config, _env_layer(config, env))
    config = merge_config(config, _cli_layer(overrides))
    config = assert_valid_config(config, active_profile=selected)
    return normalize_paths(config, base_dir=source.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with every path field made absolute against ``base_dir``."""

    result = merge_config({}, config)
    for field in PATH_FIELDS:
        section = result.get(field[0])
        if not isinstance(section, dict):
            continue
        raw = section.get(field[1])
        if isinstance(raw, str):
            path = Path(os.path.expandvars(raw)).expanduser()
            if not path.is_absolute():
                path = base_dir / path
            section[field[1]] = Path(os.path.normpath(path)).as_posix()
    return result


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` that is safe to print or log."""

    return dump_redacted(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None, overrides: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = overrides.get("profile")
    if candidate is None:
        candidate = env.get(f"{ENV_PREFIX}PROFILE")
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ConfigLoadError("profile override must be a string")
    return candidate.strip() or None


def _env_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, parse in _env_fields(config):
        name = _env_name(path)
        raw = env.get(name)
        if raw is None:
            continue
        try:
            value = parse(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)} {exc}") from exc
        _assign(layer, path, value)
    return layer


def _env_fields(
    config: Mapping[str, object],
) -> Iterator[tuple[tuple[str, ...], Callable[[str], object]]]:
    """Every scalar setting that has a default, typed by that default."""

    seen: set[tuple[str, ...]] = set()
    for section, values in sorted(config.items()):
        if section == "profiles" or not isinstance(values, Mapping):
            continue
        for key, value in sorted(values.items()):
            parse = _parser_for(value)
            if parse is not None and "/" not in key:
                seen.add((section, key))
                yield (section, key), parse
    for path, sample in _EXTRA_ENV_FIELDS:
        parse = _parser_for(sample)
        if path not in seen and parse is not None:
            yield path, parse


def _parser_for(default: object) -> Callable[[str], object] | None:
    if isinstance(default, bool):
        return _parse_bool
    if isinstance(default, int):
        return _parse_number(int, "an integer")
    if isinstance(default, float):
        return _parse_number(float, "a number")
    if isinstance(default, str):
        return str
    return None


def _parse_number(kind: Callable[[str], object], label: str) -> Callable[[str], object]:
    def parse(raw: str) -> object:
        try:
            return kind(raw)
        except ValueError:
            raise ValueError(f"must be {label}") from None

    return parse


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key, value in sorted(overrides.items()):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    for part in path[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[path[-1]] = value


def _env_name(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "ConfigLoadError",
    "dump_effective_config",
    "effective_config",
    "load_config",
    "normalize_paths",
]
