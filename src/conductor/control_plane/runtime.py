"""Assemble a scheduler and its planes from an effective config mapping."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conductor.config.schema import assert_valid_config, default_config, merge_config
from conductor.control_plane.classifier import ClassifierThresholds
from conductor.control_plane.plan_gate import PlanPolicy
from conductor.control_plane.scheduler import Scheduler, SchedulerLimits
from conductor.knowledge_plane.librarian import Librarian, mailbox_audit_sink
from conductor.knowledge_plane.memory_store import (
    FileBackend,
    InMemoryBackend,
    MemoryBackend,
    MemoryStore,
    OwnershipMap,
)
from conductor.messaging_plane.bus import MessageBus
from conductor.observability.events import EventBus
from conductor.planning.task_graph import TaskGraph
from conductor.synthesis_plane.roles import WorkerRegistry
from conductor.synthesis_plane.workers import WorkerAgent
from conductor.verification_plane.check_catalog import CheckCatalog
from conductor.verification_plane.executor import CommandExecutor
from conductor.verification_plane.hook_runner import HookRunner


@dataclass(frozen=True, slots=True)
class Runtime:
    """Every long-lived component built for one project."""

    config: Mapping[str, Any]
    registry: WorkerRegistry
    events: EventBus
    bus: MessageBus
    memory: MemoryStore
    librarian: Librarian
    hook_runner: HookRunner
    graph: TaskGraph
    scheduler: Scheduler


def build_runtime(
    config: Mapping[str, Any],
    *,
    workers: Mapping[str, WorkerAgent],
    project_root: str | Path = ".",
    executor: CommandExecutor | None = None,
    logger: Any | None = None,
) -> Runtime:
    """Wire registry, bus, memory, hook runner and scheduler from ``config``.

    ``config`` is overlaid on the defaults and validated, so callers may pass
    a partial hand-built mapping.
    Relative memory roots resolve against ``project_root``.
    """

    effective = assert_valid_config(merge_config(default_config(), config))
    scheduler_cfg = _section(effective, "scheduler")
    hooks_cfg = _section(effective, "hooks")
    messaging_cfg = _section(effective, "messaging")
    observability_cfg = _section(effective, "observability")

    registry = WorkerRegistry.from_config(_section(effective, "workers"))
    events = EventBus(
        buffer_size=int(observability_cfg.get("event_buffer_size", 512)),
        redact=bool(observability_cfg.get("redact_secrets", True)),
    )
    memory = MemoryStore(
        _memory_backend(_section(effective, "memory"), Path(project_root)),
        ownership=OwnershipMap(_section(effective, "ownership")),
        events=events,
        logger=logger,
    )
    librarian = Librarian(memory, logger=logger)

    audit = None
    if messaging_cfg.get("audit_to_memory"):
        audit = mailbox_audit_sink(memory, logger=logger)
    bus = MessageBus(
        sanity_limit=int(messaging_cfg.get("mailbox_sanity_limit", 10_000)),
        audit=audit,
        events=events,
        logger=logger,
    )
    hook_runner = HookRunner(
        registry,
        catalog=CheckCatalog.from_config(hooks_cfg.get("checks") or None),
        executor=executor,
        timeout_seconds=float(hooks_cfg.get("timeout_seconds", 300.0)),
        check_timeouts=hooks_cfg.get("check_timeouts") or None,
        excerpt_lines=int(hooks_cfg.get("excerpt_lines", 20)),
        max_failing_names=int(hooks_cfg.get("max_failing_names", 25)),
        logger=logger,
    )
    graph = TaskGraph(max_retries=int(scheduler_cfg.get("max_retries", 1)), logger=logger)

    scheduler = Scheduler(
        registry=registry,
        workers=workers,
        hook_runner=hook_runner,
        graph=graph,
        bus=bus,
        memory=memory,
        librarian=librarian,
        plan_policy=PlanPolicy.from_mapping(
            _section(effective, "plan_gate"), risk_areas=librarian.risk_areas
        ),
        thresholds=ClassifierThresholds.from_mapping(_section(effective, "classifier")),
        limits=SchedulerLimits.from_mapping(scheduler_cfg),
        events=events,
        logger=logger,
    )
    return Runtime(
        config=effective,
        registry=registry,
        events=events,
        bus=bus,
        memory=memory,
        librarian=librarian,
        hook_runner=hook_runner,
        graph=graph,
        scheduler=scheduler,
    )


def _memory_backend(memory_cfg: Mapping[str, Any], project_root: Path) -> MemoryBackend:
    if memory_cfg.get("backend") == "memory":
        return InMemoryBackend()
    root = Path(str(memory_cfg.get("root", ".conductor/memory")))
    if not root.is_absolute():
        root = project_root / root
    return FileBackend(root, render_markdown=bool(memory_cfg.get("render_markdown", True)))


def _section(config: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = config.get(name)
    return dict(value) if isinstance(value, Mapping) else {}


__all__ = ["Runtime", "build_runtime"]
