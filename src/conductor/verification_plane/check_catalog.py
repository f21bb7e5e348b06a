"""
Static mapping from artifact kinds and project manifests to check commands.

A rule applies to an artifact set only when at least one declared artifact
matches one of its globs and the rule's manifest file exists in the working
directory (or is itself among the declared artifacts). The catalog never
guesses: a check with no applicable rule is simply not run.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Final

CHECK_TESTS: Final[str] = "tests"
CHECK_TYPES: Final[str] = "types"
CHECK_LINT: Final[str] = "lint"
CHECK_BUILD: Final[str] = "build"

KNOWN_CHECKS: Final[frozenset[str]] = frozenset({CHECK_TESTS, CHECK_TYPES, CHECK_LINT, CHECK_BUILD})

_RULE_FIELDS = frozenset(
    {"check_name", "ecosystem", "manifest", "artifact_globs", "argv", "timeout_seconds"}
)


@dataclass(frozen=True, slots=True)
class CheckRule:
    """One check command for one ecosystem."""

    check_name: str
    ecosystem: str
    manifest: str
    artifact_globs: tuple[str, ...]
    argv: tuple[str, ...]
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        for name in ("check_name", "ecosystem", "manifest"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"CheckRule.{name} must be a non-empty string")
        object.__setattr__(self, "check_name", self.check_name.strip().lower())
        object.__setattr__(self, "ecosystem", self.ecosystem.strip().lower())
        globs = tuple(self.artifact_globs)
        if not globs or any(not isinstance(item, str) or not item for item in globs):
            raise ValueError("CheckRule.artifact_globs must be non-empty strings")
        object.__setattr__(self, "artifact_globs", globs)
        argv = tuple(self.argv)
        if not argv or any(not isinstance(item, str) or not item for item in argv):
            raise ValueError("CheckRule.argv must be a non-empty sequence of strings")
        object.__setattr__(self, "argv", argv)
        if self.timeout_seconds is not None and (
            isinstance(self.timeout_seconds, bool)
            or not isinstance(self.timeout_seconds, (int, float))
            or self.timeout_seconds <= 0
        ):
            raise ValueError("CheckRule.timeout_seconds must be > 0")

    @property
    def key(self) -> tuple[str, str]:
        return (self.check_name, self.ecosystem)

    def matches_artifacts(self, paths: Iterable[str]) -> bool:
        for raw in paths:
            path = PurePosixPath(raw.replace("\\", "/"))
            if any(path.match(pattern) for pattern in self.artifact_globs):
                return True
        return False

    def manifest_present(self, workdir: Path, paths: Iterable[str]) -> bool:
        declared = {PurePosixPath(raw.replace("\\", "/")).as_posix() for raw in paths}
        if self.manifest in declared:
            return True
        return (workdir / self.manifest).is_file()


class CheckCatalog:
    """Ordered, keyed collection of ``CheckRule`` entries."""

    def __init__(self, rules: Iterable[CheckRule] = ()) -> None:
        self._rules: dict[tuple[str, str], CheckRule] = {}
        for rule in rules:
            self._rules[rule.key] = rule

    def rules(self) -> tuple[CheckRule, ...]:
        return tuple(self._rules.values())

    def check_names(self) -> tuple[str, ...]:
        return tuple(sorted({rule.check_name for rule in self._rules.values()}))

    def select(
        self,
        check_name: str,
        artifact_paths: Sequence[str],
        workdir: Path,
    ) -> list[CheckRule]:
        """Rules for ``check_name`` that apply to the declared artifacts."""

        wanted = check_name.strip().lower()
        return [
            rule
            for rule in self._rules.values()
            if rule.check_name == wanted
            and rule.matches_artifacts(artifact_paths)
            and rule.manifest_present(workdir, artifact_paths)
        ]

    def with_rules(self, rules: Iterable[CheckRule]) -> CheckCatalog:
        """Return a copy where ``rules`` replace entries sharing a check/ecosystem key."""

        merged = dict(self._rules)
        for rule in rules:
            merged[rule.key] = rule
        return CheckCatalog(merged.values())

    def __len__(self) -> int:
        return len(self._rules)

    @classmethod
    def default(cls) -> CheckCatalog:
        return cls(_default_rules())

    @classmethod
    def from_config(cls, raw: object) -> CheckCatalog:
        """Default catalog overlaid with ``hooks.checks`` entries."""

        if raw is None:
            return cls.default()
        if isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
            raise ValueError("hooks.checks must be a list of check rules")
        rules: list[CheckRule] = []
        for index, entry in enumerate(raw):
            path = f"hooks.checks[{index}]"
            if not isinstance(entry, Mapping):
                raise ValueError(f"{path}: expected mapping")
            unknown = sorted(str(key) for key in entry if key not in _RULE_FIELDS)
            if unknown:
                raise ValueError(f"{path}: unknown field(s): {unknown}")
            try:
                rules.append(
                    CheckRule(
                        check_name=entry["check_name"],
                        ecosystem=entry["ecosystem"],
                        manifest=entry["manifest"],
                        artifact_globs=tuple(entry["artifact_globs"]),
                        argv=tuple(entry["argv"]),
                        timeout_seconds=entry.get("timeout_seconds"),
                    )
                )
            except KeyError as exc:
                raise ValueError(f"{path}: missing required field {exc.args[0]!r}") from exc
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{path}: {exc}") from exc
        return cls.default().with_rules(rules)


_PYTHON_GLOBS = ("*.py", "*.pyi")
_NODE_GLOBS = ("*.js", "*.jsx", "*.ts", "*.tsx", "*.mjs", "*.cjs")
_RUST_GLOBS = ("*.rs",)
_GO_GLOBS = ("*.go",)


def _default_rules() -> tuple[CheckRule, ...]:
    table: tuple[tuple[str, str, tuple[str, ...], dict[str, tuple[str, ...]]], ...] = (
        (
            "python",
            "pyproject.toml",
            _PYTHON_GLOBS,
            {
                CHECK_TESTS: ("pytest", "-q"),
                CHECK_TYPES: ("mypy", "."),
                CHECK_LINT: ("ruff", "check", "."),
                CHECK_BUILD: ("python", "-m", "compileall", "-q", "."),
            },
        ),
        (
            "node",
            "package.json",
            _NODE_GLOBS,
            {
                CHECK_TESTS: ("npm", "test", "--silent"),
                CHECK_TYPES: ("npx", "--no-install", "tsc", "--noEmit"),
                CHECK_LINT: ("npx", "--no-install", "eslint", "."),
                CHECK_BUILD: ("npm", "run", "build", "--silent"),
            },
        ),
        (
            "rust",
            "Cargo.toml",
            _RUST_GLOBS,
            {
                CHECK_TESTS: ("cargo", "test", "--quiet"),
                CHECK_TYPES: ("cargo", "check", "--quiet"),
                CHECK_LINT: ("cargo", "clippy", "--quiet", "--", "-D", "warnings"),
                CHECK_BUILD: ("cargo", "build", "--quiet"),
            },
        ),
        (
            "go",
            "go.mod",
            _GO_GLOBS,
            {
                CHECK_TESTS: ("go", "test", "./..."),
                CHECK_TYPES: ("go", "vet", "./..."),
                CHECK_LINT: ("golangci-lint", "run"),
                CHECK_BUILD: ("go", "build", "./..."),
            },
        ),
    )
    return tuple(
        CheckRule(
            check_name=check_name,
            ecosystem=ecosystem,
            manifest=manifest,
            artifact_globs=globs,
            argv=argv,
        )
        for ecosystem, manifest, globs, commands in table
        for check_name, argv in commands.items()
    )


__all__ = [
    "CHECK_BUILD",
    "CHECK_LINT",
    "CHECK_TESTS",
    "CHECK_TYPES",
    "KNOWN_CHECKS",
    "CheckCatalog",
    "CheckRule",
]
