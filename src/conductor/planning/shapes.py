"""Tier-specific task graph shapes.

Each complexity tier maps to a fixed graph template:

- TRIVIAL and AMBIGUOUS: no tasks.
- SIMPLE: one independent ``scan -> implement -> verify`` chain per domain.
- COMPLEX: ``scan -> plan -> implement:<domain>...`` fanned out per domain,
  fanned back in to ``verify`` and ``review``. The plan task is approval-gated.
- CRITICAL: COMPLEX plus ``advocate`` and ``adversary`` reviews that follow the
  plan; every implement task waits for both.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final

from conductor.domain.models import ComplexityTier, TaskKind

if TYPE_CHECKING:
    from conductor.planning.task_graph import TaskGraph

DEFAULT_DOMAIN: Final[str] = "general"

# Capability tags a worker must carry to be routed a task of each kind.
# Implement tasks route by their domain instead.
KIND_CAPABILITY_TAGS: Final[Mapping[TaskKind, frozenset[str]]] = {
    TaskKind.SCAN: frozenset({"exploration"}),
    TaskKind.PLAN: frozenset({"planning"}),
    TaskKind.VERIFY: frozenset({"verification"}),
    TaskKind.REVIEW: frozenset({"review"}),
    TaskKind.ADVOCATE: frozenset({"advocate"}),
    TaskKind.ADVERSARY: frozenset({"adversary"}),
}

_PRIORITY: Final[Mapping[TaskKind, int]] = {
    TaskKind.SCAN: 30,
    TaskKind.PLAN: 25,
    TaskKind.ADVOCATE: 20,
    TaskKind.ADVERSARY: 20,
    TaskKind.IMPLEMENT: 10,
    TaskKind.VERIFY: 5,
    TaskKind.REVIEW: 5,
}


@dataclass(frozen=True, slots=True)
class PlannedGraph:
    """Task ids created for one request, addressable by label."""

    request_id: str
    tier: ComplexityTier
    labels: Mapping[str, str] = field(default_factory=dict)

    @property
    def task_ids(self) -> tuple[str, ...]:
        return tuple(self.labels.values())

    @property
    def is_empty(self) -> bool:
        return not self.labels


def build_graph_for_tier(
    graph: TaskGraph,
    *,
    request_id: str,
    description: str,
    tier: ComplexityTier,
    domains: Sequence[str] = (),
) -> PlannedGraph:
    """Insert the tasks for ``tier`` into ``graph`` and return their ids by label."""

    resolved_domains = tuple(dict.fromkeys(domain.lower() for domain in domains)) or (
        DEFAULT_DOMAIN,
    )
    builder = _ShapeBuilder(graph, request_id=request_id, description=description)

    if tier in {ComplexityTier.TRIVIAL, ComplexityTier.AMBIGUOUS}:
        return PlannedGraph(request_id=request_id, tier=tier)

    if tier is ComplexityTier.SIMPLE:
        multi = len(resolved_domains) > 1
        for domain in resolved_domains:
            suffix = f":{domain}" if multi else ""
            scan = builder.add(TaskKind.SCAN, f"scan{suffix}", (), domain=domain if multi else None)
            implement = builder.add(
                TaskKind.IMPLEMENT, f"implement{suffix}", (scan,), domain=domain
            )
            builder.add(
                TaskKind.VERIFY, f"verify{suffix}", (implement,), domain=domain if multi else None
            )
        return PlannedGraph(request_id=request_id, tier=tier, labels=builder.labels)

    scan = builder.add(TaskKind.SCAN, "scan", ())
    plan = builder.add(TaskKind.PLAN, "plan", (scan,), requires_approval=True)
    gate: tuple[str, ...] = (plan,)
    if tier is ComplexityTier.CRITICAL:
        advocate = builder.add(TaskKind.ADVOCATE, "advocate", (plan,))
        adversary = builder.add(TaskKind.ADVERSARY, "adversary", (plan,))
        gate = (plan, advocate, adversary)

    implements = tuple(
        builder.add(TaskKind.IMPLEMENT, f"implement:{domain}", gate, domain=domain)
        for domain in resolved_domains
    )
    builder.add(TaskKind.VERIFY, "verify", implements)
    builder.add(TaskKind.REVIEW, "review", implements)
    return PlannedGraph(request_id=request_id, tier=tier, labels=builder.labels)


def capability_tags_for(kind: TaskKind, domain_tags: frozenset[str]) -> frozenset[str]:
    """Capability tags used to route a task to a worker."""

    if kind is TaskKind.IMPLEMENT or kind is TaskKind.GENERIC:
        return domain_tags
    return KIND_CAPABILITY_TAGS[kind]


class _ShapeBuilder:
    def __init__(self, graph: TaskGraph, *, request_id: str, description: str) -> None:
        self._graph = graph
        self._request_id = request_id
        self._description = description
        self.labels: dict[str, str] = {}

    def add(
        self,
        kind: TaskKind,
        label: str,
        depends_on: tuple[str, ...],
        *,
        domain: str | None = None,
        requires_approval: bool = False,
    ) -> str:
        scope = f" [{domain}]" if domain else ""
        domain_tags = frozenset({domain}) if kind is TaskKind.IMPLEMENT and domain else frozenset()
        task_id = self._graph.add_task(
            f"{kind.value}{scope}: {self._description}",
            depends_on=depends_on,
            priority=_PRIORITY.get(kind, 0),
            request_id=self._request_id,
            kind=kind,
            label=label,
            domain_tags=capability_tags_for(kind, domain_tags),
            requires_approval=requires_approval,
        )
        self.labels[label] = task_id
        return task_id


__all__ = [
    "DEFAULT_DOMAIN",
    "KIND_CAPABILITY_TAGS",
    "PlannedGraph",
    "build_graph_for_tier",
    "capability_tags_for",
]
