"""
Worker registry: named roles, their capability tags, concurrency mode and cost tier.

The registry is populated once at startup (defaults, config, or a YAML roster)
and frozen; afterwards it is read-only process-wide state. ``match`` is the
routing rule: workers whose tags intersect the task's tags, cheapest first,
ties broken by registration order.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from types import MappingProxyType

import yaml

from conductor.constants import ROLE_CONDUCTOR, ROLE_LIBRARIAN
from conductor.domain.models import ConcurrencyMode, Worker

ROLE_EXPLORER = "explorer"
ROLE_ARCHITECT = "architect"
ROLE_BACKEND = "backend"
ROLE_FRONTEND = "frontend"
ROLE_VERIFIER = "verifier"
ROLE_REVIEWER = "reviewer"
ROLE_ADVOCATE = "advocate"
ROLE_ADVERSARY = "adversary"

_WORKER_FIELDS = frozenset(
    {
        "name",
        "capability_tags",
        "concurrency_mode",
        "cost_tier",
        "mandatory_checks",
        "optional_checks",
        "description",
    }
)


class RegistryFrozenError(RuntimeError):
    """Raised when registering after the registry has been frozen."""


def _normalize_identifier(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    parsed = value.strip().lower()
    if not parsed:
        raise ValueError(f"{field_name} cannot be empty")
    return parsed


class WorkerRegistry:
    """Registration-ordered worker roles with deterministic capability matching."""

    def __init__(self, workers: Iterable[Worker] = ()) -> None:
        self._lock = threading.Lock()
        self._workers: dict[str, Worker] = {}
        self._frozen = False
        for worker in workers:
            self.add(worker)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(
        self,
        worker_role: str,
        capability_tags: Iterable[str],
        concurrency_mode: ConcurrencyMode | str = ConcurrencyMode.FOREGROUND,
        cost_tier: int = 0,
        *,
        mandatory_checks: Sequence[str] = (),
        optional_checks: Sequence[str] = (),
        description: str = "",
    ) -> Worker:
        worker = Worker(
            name=worker_role,
            capability_tags=frozenset(capability_tags),
            concurrency_mode=ConcurrencyMode(concurrency_mode),
            cost_tier=cost_tier,
            mandatory_checks=tuple(mandatory_checks),
            optional_checks=tuple(optional_checks),
            description=description,
        )
        return self.add(worker)

    def add(self, worker: Worker) -> Worker:
        if not isinstance(worker, Worker):
            raise ValueError(f"expected Worker, got {type(worker).__name__}")
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(f"cannot register {worker.name!r}: registry is frozen")
            if worker.name in self._workers:
                raise ValueError(f"duplicate worker name: {worker.name}")
            self._workers[worker.name] = worker
        return worker

    def freeze(self) -> WorkerRegistry:
        with self._lock:
            self._frozen = True
        return self

    def match(self, domain_tags: Iterable[str]) -> list[str]:
        """Names of workers whose tags intersect ``domain_tags``, cheapest first."""

        wanted = {tag.strip().lower() for tag in domain_tags if tag.strip()}
        with self._lock:
            candidates = [
                (worker.cost_tier, index, worker.name)
                for index, worker in enumerate(self._workers.values())
                if worker.capability_tags & wanted
            ]
        return [name for _, _, name in sorted(candidates)]

    def get(self, worker_role: str) -> Worker | None:
        with self._lock:
            return self._workers.get(_normalize_identifier(worker_role, "worker_role"))

    def require(self, worker_role: str) -> Worker:
        worker = self.get(worker_role)
        if worker is None:
            raise KeyError(f"unknown worker role: {worker_role}")
        return worker

    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._workers)

    def workers(self) -> tuple[Worker, ...]:
        with self._lock:
            return tuple(self._workers.values())

    def as_mapping(self) -> Mapping[str, Worker]:
        with self._lock:
            return MappingProxyType(dict(self._workers))

    def __contains__(self, worker_role: object) -> bool:
        if not isinstance(worker_role, str):
            return False
        return self.get(worker_role) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._workers)

    @classmethod
    def default(cls) -> WorkerRegistry:
        return cls(_default_workers()).freeze()

    @classmethod
    def from_config(cls, config: Mapping[str, object] | None) -> WorkerRegistry:
        """Build a frozen registry from the ``workers`` config section.

        Accepts ``{"roster": [...], "disabled": [...], "roster_file": "..."}``.
        An empty or missing roster falls back to the default roster.
        """

        if config is None:
            return cls.default()
        if not isinstance(config, Mapping):
            raise ValueError("workers config must be a mapping")

        roster_raw = config.get("roster")
        roster_file = config.get("roster_file")
        workers: list[Worker]
        if isinstance(roster_file, str) and roster_file:
            workers = list(load_worker_roster(roster_file))
        elif roster_raw:
            workers = parse_worker_roster(roster_raw, source="workers.roster")
        else:
            workers = list(_default_workers())

        disabled_raw = config.get("disabled", ())
        if isinstance(disabled_raw, str) or not isinstance(disabled_raw, Sequence):
            raise ValueError("workers.disabled must be a sequence of names")
        disabled = {_normalize_identifier(str(item), "workers.disabled") for item in disabled_raw}
        unknown = sorted(disabled - {worker.name for worker in workers})
        if unknown:
            raise ValueError(f"workers.disabled references unknown worker(s): {unknown}")

        return cls(worker for worker in workers if worker.name not in disabled).freeze()


def parse_worker_roster(raw: object, *, source: str) -> list[Worker]:
    """Parse a list of worker mappings (from TOML or YAML) into ``Worker`` records."""

    if isinstance(raw, Mapping) and "workers" in raw:
        raw = raw["workers"]
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
        raise ValueError(f"{source}: expected a list of worker entries")

    workers: list[Worker] = []
    for index, entry in enumerate(raw):
        path = f"{source}[{index}]"
        if not isinstance(entry, Mapping):
            raise ValueError(f"{path}: expected mapping, got {type(entry).__name__}")
        unknown = sorted(str(key) for key in entry if key not in _WORKER_FIELDS)
        if unknown:
            raise ValueError(f"{path}: unknown field(s): {unknown}")
        if "name" not in entry:
            raise ValueError(f"{path}: missing required field 'name'")
        try:
            workers.append(
                Worker(
                    name=entry["name"],
                    capability_tags=frozenset(entry.get("capability_tags", ())),
                    concurrency_mode=entry.get("concurrency_mode", ConcurrencyMode.FOREGROUND),
                    cost_tier=entry.get("cost_tier", 0),
                    mandatory_checks=tuple(entry.get("mandatory_checks", ())),
                    optional_checks=tuple(entry.get("optional_checks", ())),
                    description=entry.get("description", ""),
                )
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{path}: {exc}") from exc
    return workers


def load_worker_roster(path: str | Path) -> tuple[Worker, ...]:
    """Load a YAML worker roster file."""

    roster_path = Path(path)
    with roster_path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle)
    if payload is None:
        raise ValueError(f"{roster_path}: roster file is empty")
    return tuple(parse_worker_roster(payload, source=str(roster_path)))


def _default_workers() -> tuple[Worker, ...]:
    foreground = ConcurrencyMode.FOREGROUND
    background = ConcurrencyMode.BACKGROUND
    return (
        Worker(
            name=ROLE_CONDUCTOR,
            capability_tags=frozenset({"coordination"}),
            concurrency_mode=foreground,
            cost_tier=3,
            description="Owns request intake, the decision log and in-flight work.",
        ),
        Worker(
            name=ROLE_LIBRARIAN,
            capability_tags=frozenset({"memory", "documentation"}),
            concurrency_mode=background,
            cost_tier=0,
            description="Passive monitor; owns the architecture map and failure registry.",
        ),
        Worker(
            name=ROLE_EXPLORER,
            capability_tags=frozenset({"exploration", "search"}),
            concurrency_mode=background,
            cost_tier=0,
            description="Read-only codebase scan ahead of planning.",
        ),
        Worker(
            name=ROLE_ARCHITECT,
            capability_tags=frozenset({"planning", "architecture"}),
            concurrency_mode=foreground,
            cost_tier=3,
            description="Produces the plan submitted to the approval gate.",
        ),
        Worker(
            name=ROLE_BACKEND,
            capability_tags=frozenset({"backend", "api", "database", "general"}),
            concurrency_mode=foreground,
            cost_tier=2,
            mandatory_checks=("tests",),
            optional_checks=("types", "lint", "build"),
        ),
        Worker(
            name=ROLE_FRONTEND,
            capability_tags=frozenset({"frontend", "ui"}),
            concurrency_mode=background,
            cost_tier=2,
            mandatory_checks=("tests",),
            optional_checks=("types", "lint", "build"),
        ),
        Worker(
            name=ROLE_VERIFIER,
            capability_tags=frozenset({"verification", "testing"}),
            concurrency_mode=foreground,
            cost_tier=1,
            mandatory_checks=("tests",),
            optional_checks=("types", "lint"),
        ),
        Worker(
            name=ROLE_REVIEWER,
            capability_tags=frozenset({"review"}),
            concurrency_mode=background,
            cost_tier=2,
        ),
        Worker(
            name=ROLE_ADVOCATE,
            capability_tags=frozenset({"advocate"}),
            concurrency_mode=background,
            cost_tier=3,
        ),
        Worker(
            name=ROLE_ADVERSARY,
            capability_tags=frozenset({"adversary"}),
            concurrency_mode=background,
            cost_tier=3,
        ),
    )


__all__ = [
    "ROLE_ADVERSARY",
    "ROLE_ADVOCATE",
    "ROLE_ARCHITECT",
    "ROLE_BACKEND",
    "ROLE_EXPLORER",
    "ROLE_FRONTEND",
    "ROLE_REVIEWER",
    "ROLE_VERIFIER",
    "RegistryFrozenError",
    "WorkerRegistry",
    "load_worker_roster",
    "parse_worker_roster",
]
