"""
conductor: configuration schema and validation.

Defaults, strict validation with path-addressed issues, profile overlays and
redacted dumps for the runtime configuration. Every section is required in
the effective config; files and overlays may supply any subset.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from conductor.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_MAILBOX_SANITY_LIMIT,
    DEFAULT_MAX_RETRIES,
    LOG_DIR,
    MEMORY_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive")

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = (
    ("memory", "root"),
    ("observability", "log_dir"),
    ("workers", "roster_file"),
)

_PROFILE_NAME = re.compile(r"[a-z][a-z0-9_-]*")
_ROLE_NAME = re.compile(r"[a-z0-9][a-z0-9_-]*")
_NAMESPACE = re.compile(r"[a-z0-9][a-z0-9_-]*(?:/[a-z0-9][a-z0-9_-]*)*")
_WORD_SPLIT = re.compile(r"[^a-z0-9]+")
_CAMEL_HUMP = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

# A key is treated as a secret if any of its words is listed here, or if it
# contains one of the compound phrases. ``*_env`` keys name a variable instead.
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "credentials"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = ("api_key", "access_token", "client_secret")
REDACTED_VALUE: Final[str] = "<redacted>"

class MetaConfig(TypedDict):
    schema_version: int


class SchedulerConfig(TypedDict):
    max_foreground_in_flight: int
    max_background_in_flight: int
    max_retries: int
    max_plan_revisions: NotRequired[int]


class ClassifierConfig(TypedDict):
    trivial_max_files: int
    simple_max_files: int
    min_confidence: float
    extra_risk_keywords: list[str]
    risk_keywords: NotRequired[list[str]]


class PlanGateConfig(TypedDict):
    max_files_touched: int
    require_risk_acknowledgement: bool


class HooksConfig(TypedDict):
    timeout_seconds: float
    excerpt_lines: int
    max_failing_names: int
    check_timeouts: dict[str, float]
    checks: list[dict[str, object]]


class MessagingConfig(TypedDict):
    mailbox_sanity_limit: int
    audit_to_memory: bool


class MemoryConfig(TypedDict):
    backend: Literal["file", "memory"]
    root: str
    render_markdown: bool


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    redact_secrets: bool
    event_buffer_size: int


class WorkersConfig(TypedDict):
    roster: list[dict[str, object]]
    disabled: list[str]
    roster_file: NotRequired[str]


class ProfileOverlay(TypedDict, total=False):
    scheduler: dict[str, object]
    classifier: dict[str, object]
    plan_gate: dict[str, object]
    hooks: dict[str, object]
    messaging: dict[str, object]
    memory: dict[str, object]
    observability: dict[str, object]
    workers: dict[str, object]
    ownership: dict[str, object]


class ConductorConfig(TypedDict):
    meta: MetaConfig
    scheduler: SchedulerConfig
    classifier: ClassifierConfig
    plan_gate: PlanGateConfig
    hooks: HooksConfig
    messaging: MessagingConfig
    memory: MemoryConfig
    observability: ObservabilityConfig
    workers: WorkersConfig
    ownership: dict[str, str]
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[ConductorConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "scheduler": {
        "max_foreground_in_flight": 1,
        "max_background_in_flight": 4,
        "max_retries": DEFAULT_MAX_RETRIES,
    },
    "classifier": {
        "trivial_max_files": 1,
        "simple_max_files": 3,
        "min_confidence": 0.6,
        "extra_risk_keywords": [],
    },
    "plan_gate": {
        "max_files_touched": 12,
        "require_risk_acknowledgement": True,
    },
    "hooks": {
        "timeout_seconds": 300.0,
        "excerpt_lines": 20,
        "max_failing_names": 25,
        "check_timeouts": {},
        "checks": [],
    },
    "messaging": {
        "mailbox_sanity_limit": DEFAULT_MAILBOX_SANITY_LIMIT,
        "audit_to_memory": False,
    },
    "memory": {
        "backend": "file",
        "root": MEMORY_DIR.as_posix(),
        "render_markdown": True,
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": LOG_DIR.as_posix(),
        "redact_secrets": True,
        "event_buffer_size": 512,
    },
    "workers": {
        "roster": [],
        "disabled": [],
    },
    "ownership": {
        "architecture": "librarian",
        "decisions": "conductor",
        "failures": "librarian",
        "wip": "conductor",
    },
    "profiles": {
        "strict": {
            "scheduler": {"max_retries": 0, "max_plan_revisions": 3},
            "plan_gate": {"max_files_touched": 6},
        },
        "permissive": {
            "scheduler": {"max_retries": 3},
            "plan_gate": {"max_files_touched": 50, "require_risk_acknowledgement": False},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Strict validation failed; ``issues`` lists every problem found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "- <root>: unknown failure"))


@dataclass(frozen=True, slots=True)
class _Field:
    """How one scalar or list setting is checked and normalized.

    ``kind`` is one of ``int``, ``float``, ``bool``, ``choice``, ``path``,
    ``words`` (list of lowercased strings), ``records`` (list of tables) or
    ``seconds_by_name`` (table of positive timeouts keyed by check name).
    """

    kind: str
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] = ()
    required: bool = True


_SCHEMA: Final[Mapping[str, Mapping[str, _Field]]] = {
    "meta": {"schema_version": _Field("int", minimum=1)},
    "scheduler": {
        "max_foreground_in_flight": _Field("int", minimum=1),
        "max_background_in_flight": _Field("int", minimum=1),
        "max_retries": _Field("int", minimum=0),
        "max_plan_revisions": _Field("int", minimum=0, required=False),
    },
    "classifier": {
        "trivial_max_files": _Field("int", minimum=0),
        "simple_max_files": _Field("int", minimum=0),
        "min_confidence": _Field("float", minimum=0.0, maximum=1.0),
        "extra_risk_keywords": _Field("words"),
        "risk_keywords": _Field("words", required=False),
    },
    "plan_gate": {
        "max_files_touched": _Field("int", minimum=1),
        "require_risk_acknowledgement": _Field("bool"),
    },
    "hooks": {
        "timeout_seconds": _Field("float", minimum=0.001),
        "excerpt_lines": _Field("int", minimum=1),
        "max_failing_names": _Field("int", minimum=1),
        "check_timeouts": _Field("seconds_by_name"),
        "checks": _Field("records"),
    },
    "messaging": {
        "mailbox_sanity_limit": _Field("int", minimum=1),
        "audit_to_memory": _Field("bool"),
    },
    "memory": {
        "backend": _Field("choice", choices=("file", "memory")),
        "root": _Field("path"),
        "render_markdown": _Field("bool"),
    },
    "observability": {
        "log_level": _Field("choice", choices=("DEBUG", "INFO", "WARNING", "ERROR")),
        "log_format": _Field("choice", choices=("json", "text")),
        "log_dir": _Field("path"),
        "redact_secrets": _Field("bool"),
        "event_buffer_size": _Field("int", minimum=1),
    },
    "workers": {
        "roster": _Field("records"),
        "disabled": _Field("words"),
        "roster_file": _Field("path", required=False),
    },
}

# ``ownership`` maps memory namespaces to owner roles and has no fixed keys.
_SECTIONS: Final[tuple[str, ...]] = (*_SCHEMA, "ownership")
_OVERLAY_SECTIONS: Final[tuple[str, ...]] = tuple(s for s in _SECTIONS if s != "meta")


class _Invalid:
    """Marker returned by coercers after an issue was recorded."""


_INVALID: Final = _Invalid()


class _Validator:
    def __init__(self) -> None:
        self.issues: list[ConfigValidationIssue] = []

    def fail(self, path: str, message: str) -> _Invalid:
        self.issues.append(ConfigValidationIssue(path=path, message=message))
        return _INVALID

    def table(self, value: object, path: str) -> dict[str, object] | _Invalid:
        if not isinstance(value, Mapping):
            return self.fail(path, f"expected object, got {type(value).__name__}")
        bad = [key for key in value if not isinstance(key, str)]
        for key in bad:
            self.fail(path, f"object key must be string, got {type(key).__name__}")
        return {key: item for key, item in value.items() if isinstance(key, str)}

    def keys(
        self,
        payload: Mapping[str, object],
        path: str,
        *,
        allowed: Sequence[str],
        required: Sequence[str] = (),
    ) -> None:
        for key in sorted(set(payload) - set(allowed)):
            secret = _is_secret_key(key)
            self.fail(
                _dotted(path, key),
                "embedded secret values are forbidden" if secret else "unknown field",
            )
        for key in sorted(set(required) - set(payload)):
            self.fail(_dotted(path, key), "missing required field")

    def root(
        self, payload: Mapping[str, object], *, partial: bool, path: str = ""
    ) -> dict[str, Any]:
        """Validate the sections of a full config, or of a profile overlay when ``partial``."""

        sections = _OVERLAY_SECTIONS if partial else _SECTIONS
        if partial:
            self.keys(payload, path, allowed=sections)
        else:
            self.keys(payload, path, allowed=(*sections, "profiles"), required=sections)

        out: dict[str, Any] = {}
        for name in sections:
            if payload.get(name) is None:
                continue
            section_path = _dotted(path, name)
            section = self.table(payload[name], section_path)
            if isinstance(section, _Invalid):
                continue
            if name == "ownership":
                out[name] = self.ownership(section, section_path)
            else:
                out[name] = self.section(name, section, section_path, partial=partial)
        if not partial:
            self.cross_checks(out)
        return out

    def section(
        self, name: str, payload: Mapping[str, object], path: str, *, partial: bool
    ) -> dict[str, Any]:
        fields = _SCHEMA[name]
        required = () if partial else [key for key, spec in fields.items() if spec.required]
        self.keys(payload, path, allowed=tuple(fields), required=required)
        out: dict[str, Any] = {}
        for key, spec in fields.items():
            if key not in payload:
                continue
            value = self.coerce(spec, payload[key], _dotted(path, key))
            if not isinstance(value, _Invalid):
                out[key] = value
        meta_version = out.get("schema_version")
        if name == "meta" and meta_version is not None and meta_version != ConfigSchemaVersion:
            self.fail(_dotted(path, "schema_version"), migration_guidance(meta_version))
        return out

    def coerce(self, spec: _Field, value: object, path: str) -> object:
        kind = spec.kind
        if kind == "bool":
            if isinstance(value, bool):
                return value
            return self.fail(path, f"expected boolean, got {type(value).__name__}")
        if kind in ("int", "float"):
            return self.number(spec, value, path)
        if kind in ("choice", "path"):
            text = self.text(value, path)
            if isinstance(text, _Invalid):
                return text
            if kind == "path" and "\x00" in text:
                return self.fail(path, "must not contain NUL bytes")
            if kind == "choice" and text not in spec.choices:
                expected = ", ".join(sorted(spec.choices))
                return self.fail(path, f"invalid value {text!r}; expected one of: {expected}")
            return text
        if kind == "seconds_by_name":
            table = self.table(value, path)
            if isinstance(table, _Invalid):
                return table
            positive = _Field("float", minimum=0.001)
            parsed = {
                name.strip().lower(): self.coerce(positive, item, _dotted(path, name))
                for name, item in sorted(table.items())
            }
            return {name: item for name, item in parsed.items() if not isinstance(item, _Invalid)}
        if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
            noun = "list of strings" if kind == "words" else "list"
            return self.fail(path, f"expected {noun}, got {type(value).__name__}")
        items = []
        for index, item in enumerate(value):
            item_path = f"{path}[{index}]"
            parsed_item = self.text(item, item_path) if kind == "words" else self.table(
                item, item_path
            )
            if isinstance(parsed_item, _Invalid):
                continue
            items.append(
                parsed_item.lower() if isinstance(parsed_item, str) else copy.deepcopy(parsed_item)
            )
        return items

    def number(self, spec: _Field, value: object, path: str) -> object:
        integral = spec.kind == "int"
        number: float
        if isinstance(value, int) and not isinstance(value, bool):
            number = value
        elif isinstance(value, float) and not integral:
            number = value
        else:
            noun = "integer" if integral else "number"
            return self.fail(path, f"expected {noun}, got {type(value).__name__}")
        if not integral:
            number = float(number)
            if not math.isfinite(number):
                return self.fail(path, "must be finite")
        if spec.minimum is not None and number < spec.minimum:
            return self.fail(path, f"must be >= {_bound(spec.minimum, integral)}")
        if spec.maximum is not None and number > spec.maximum:
            return self.fail(path, f"must be <= {_bound(spec.maximum, integral)}")
        return number

    def text(self, value: object, path: str) -> str | _Invalid:
        if not isinstance(value, str):
            return self.fail(path, f"expected string, got {type(value).__name__}")
        stripped = value.strip()
        return stripped or self.fail(path, "must not be empty")

    def ownership(self, payload: Mapping[str, object], path: str) -> dict[str, str]:
        owners: dict[str, str] = {}
        for namespace, raw in sorted(payload.items()):
            entry = _dotted(path, namespace)
            if not _NAMESPACE.fullmatch(namespace):
                self.fail(entry, "namespace must be lowercase path segments")
                continue
            role = self.text(raw, entry)
            if isinstance(role, _Invalid):
                continue
            if not _ROLE_NAME.fullmatch(role.lower()):
                self.fail(entry, "owner must be a worker role name")
                continue
            owners[namespace] = role.lower()
        return owners

    def profiles(self, payload: Mapping[str, object]) -> dict[str, Any]:
        overlays: dict[str, Any] = {}
        for name, raw in sorted(payload.items()):
            path = _dotted("profiles", name)
            if not _PROFILE_NAME.fullmatch(name):
                self.fail(path, "profile name must match ^[a-z][a-z0-9_-]*$")
                continue
            overlay = self.table(raw, path)
            if isinstance(overlay, _Invalid):
                continue
            overlays[name] = self.root(overlay, partial=True, path=path)
        return overlays

    def cross_checks(self, config: Mapping[str, Any]) -> None:
        classifier = config.get("classifier") or {}
        trivial = classifier.get("trivial_max_files")
        simple = classifier.get("simple_max_files")
        if isinstance(trivial, int) and isinstance(simple, int) and simple < trivial:
            self.fail("classifier.simple_max_files", "must be >= trivial_max_files")


def default_config() -> ConductorConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade conductor.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the conductor runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; lists and scalars are replaced."""

    merged: dict[str, Any] = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in overlay.items():
        if isinstance(value, Mapping):
            current = merged.get(key)
            merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile over ``config`` and validate the result."""

    name = (profile or "").strip()
    if not name:
        return merge_config({}, config)
    profiles = config.get("profiles")
    overlay = profiles.get(name) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {name!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=name)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Check a complete config; on success ``result.config`` is the normalized copy."""

    validator = _Validator()
    root = validator.table(config, "<root>")
    if isinstance(root, _Invalid):
        return ConfigValidationResult(config=None, issues=tuple(validator.issues))

    normalized = validator.root(root, partial=False)
    raw_profiles = root.get("profiles")
    if raw_profiles is not None:
        profiles = validator.table(raw_profiles, "profiles")
        if not isinstance(profiles, _Invalid):
            normalized["profiles"] = validator.profiles(profiles)

    selected = (active_profile or "").strip()
    if selected and selected not in normalized.get("profiles", {}):
        validator.fail("profiles", f"profile {selected!r} is not defined")

    if validator.issues:
        return ConfigValidationResult(config=None, issues=tuple(validator.issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with every secret-looking key masked, at any depth."""

    if not isinstance(config, Mapping):
        return {}
    return {
        key: REDACTED_VALUE if _is_secret_key(key) else _redact(value)
        for key, value in sorted(config.items())
    }


def dump_redacted(config: Mapping[str, object] | object) -> dict[str, Any]:
    return redact_config(config)


def _redact(value: object) -> object:
    if isinstance(value, Mapping):
        return redact_config(value)
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


def _is_secret_key(key: str) -> bool:
    normalized = _WORD_SPLIT.sub("_", _CAMEL_HUMP.sub("_", key.strip()).lower()).strip("_")
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SECRET_PHRASES):
        return True
    return not _SECRET_WORDS.isdisjoint(normalized.split("_"))


def _dotted(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _bound(value: float, integral: bool) -> float | int:
    return int(value) if integral else value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConductorConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "REDACTED_VALUE",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
