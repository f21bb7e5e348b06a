"""Command-line interface router for conductor."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conductor.config import (
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
)
from conductor.control_plane import ClassifierThresholds, build_runtime, classify_request
from conductor.control_plane.runtime import Runtime
from conductor.domain.ids import IdKind, generate_prefixed_id, generate_request_id
from conductor.domain.models import RequestMetadata, Task
from conductor.knowledge_plane.bootstrap import bootstrap_memory
from conductor.knowledge_plane.memory_store import OwnershipMap
from conductor.main import ExitCode
from conductor.observability.logging import setup_logging, shutdown_logging
from conductor.planning.shapes import build_graph_for_tier
from conductor.planning.task_graph import TaskGraph
from conductor.synthesis_plane.roles import WorkerRegistry
from conductor.synthesis_plane.workers import ArtifactDescriptor
from conductor.ui.render import CLIRenderer, create_renderer
from conductor.verification_plane.hook_runner import assess_verdicts


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """A command failed in an expected way; printed as ``error: ...`` without a traceback."""

    message: str
    exit_code: ExitCode = ExitCode.REQUEST_REJECTED

    def __str__(self) -> str:
        return self.message


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conductor",
        description=(
            "conductor - task-dependency orchestration substrate.\n\n"
            "Common workflows:\n"
            "  conductor init                     Seed the shared memory store\n"
            '  conductor classify "add a flag"    Show the complexity tier of a request\n'
            '  conductor plan "migrate auth"      Show the task graph a request would get\n'
            "  conductor hooks backend app.py     Show or run the checks for an artifact\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--project-root",
        default=".",
        help="Project root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to conductor TOML config (default: ./conductor.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument("--json", action="store_true", default=False, help="Emit JSON output.")
    common.add_argument("--verbose", "-v", action="store_true", default=False)
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    request = argparse.ArgumentParser(add_help=False)
    request.add_argument("description", help="Free-text request description.")
    request.add_argument("--files", type=int, default=1, help="Estimated number of files.")
    request.add_argument(
        "--domain", action="append", default=[], dest="domains", help="Affected domain."
    )
    request.add_argument("--confidence", type=float, default=1.0)
    request.add_argument("--irreversible", action="store_true", default=False)
    request.add_argument("--overrides-decision", action="store_true", default=False)
    request.add_argument("--keyword", action="append", default=[], dest="keywords")
    request.add_argument("--touch", action="append", default=[], dest="touched_files")

    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init", parents=[common], help="Seed shared and per-role memory namespaces"
    )
    init_parser.set_defaults(handler=_cmd_init)

    classify_parser = subparsers.add_parser(
        "classify", parents=[common, request], help="Classify a request into a complexity tier"
    )
    classify_parser.set_defaults(handler=_cmd_classify)

    plan_parser = subparsers.add_parser(
        "plan", parents=[common, request], help="Show the task graph a request would receive"
    )
    plan_parser.set_defaults(handler=_cmd_plan)

    workers_parser = subparsers.add_parser(
        "workers", parents=[common], help="List the worker roster"
    )
    workers_parser.set_defaults(handler=_cmd_workers)

    hooks_parser = subparsers.add_parser(
        "hooks",
        parents=[common],
        help="Show or run the verification checks declared by a worker role",
    )
    hooks_parser.add_argument("role", help="Worker role whose declared checks apply.")
    hooks_parser.add_argument("paths", nargs="+", help="Artifact paths relative to --workdir.")
    hooks_parser.add_argument("--workdir", default=None, help="Default: --project-root.")
    hooks_parser.add_argument(
        "--run", action="store_true", default=False, help="Execute the selected checks."
    )
    hooks_parser.set_defaults(handler=_cmd_hooks)

    memory_parser = subparsers.add_parser("memory", help="Inspect the shared memory store")
    memory_sub = memory_parser.add_subparsers(dest="memory_command", required=True)
    memory_show = memory_sub.add_parser(
        "show", parents=[common], help="List namespaces or print one document"
    )
    memory_show.add_argument("namespace", nargs="?", default=None)
    memory_show.set_defaults(handler=_cmd_memory_show)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the effective (redacted) configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Run one command and return its exit code; usage errors still raise ``SystemExit``."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        return int(handler(namespace))
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(exc.exit_code)


def _cmd_init(args: argparse.Namespace) -> ExitCode:
    project_root = _project_root(args)
    config = _load_effective_config(args)
    registry = _registry(config)
    memory_root = Path(str(config["memory"]["root"]))
    if memory_root.is_relative_to(project_root):
        memory_root = memory_root.relative_to(project_root)

    _start_logging(config)
    try:
        report = bootstrap_memory(
            project_root,
            registry.names(),
            memory_dir=memory_root,
            ownership=OwnershipMap(config["ownership"]),
        )
    finally:
        shutdown_logging()

    payload = {
        "command": "init",
        "memory_root": report.memory_root.as_posix(),
        "created": report.created,
        "existing": report.existing,
        "gitignore_updated": report.gitignore_updated,
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return ExitCode.SUCCESS

    renderer = _get_renderer(args)
    renderer.kv("Memory root", payload["memory_root"])
    renderer.kv("Created", len(report.created))
    renderer.kv("Already present", len(report.existing))
    if renderer.verbose and report.created:
        renderer.items(report.created)
    if report.gitignore_updated:
        renderer.text(".gitignore updated")
    return ExitCode.SUCCESS


def _cmd_classify(args: argparse.Namespace) -> ExitCode:
    config = _load_effective_config(args)
    metadata = _request_metadata(args)
    classification = classify_request(
        _description(args), metadata, ClassifierThresholds.from_mapping(config["classifier"])
    )

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "classify",
                "tier": classification.tier.value,
                "reasons": list(classification.reasons),
            }
        )
        return ExitCode.SUCCESS

    renderer = _get_renderer(args)
    renderer.kv("Tier", classification.tier.value)
    if classification.reasons:
        renderer.section("Reasons:")
        renderer.items(list(classification.reasons))
    return ExitCode.SUCCESS


def _cmd_plan(args: argparse.Namespace) -> ExitCode:
    config = _load_effective_config(args)
    registry = _registry(config)
    metadata = _request_metadata(args)
    description = _description(args)
    classification = classify_request(
        description, metadata, ClassifierThresholds.from_mapping(config["classifier"])
    )

    graph = TaskGraph(max_retries=int(config["scheduler"]["max_retries"]))
    planned = build_graph_for_tier(
        graph,
        request_id=generate_request_id(),
        description=description,
        tier=classification.tier,
        domains=metadata.domains,
    )
    label_of = {task_id: label for label, task_id in planned.labels.items()}
    rows = [
        _plan_row(graph.get(task_id), label_of, registry)
        for task_id in graph.topological_sort(planned.request_id)
    ]
    counts = {
        status: count
        for status, count in graph.status_counts(planned.request_id).items()
        if count
    }

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "plan",
                "tier": classification.tier.value,
                "reasons": list(classification.reasons),
                "status_counts": counts,
                "tasks": [
                    {
                        "label": row[0],
                        "kind": row[1],
                        "depends_on": row[2].split(", ") if row[2] else [],
                        "approval": row[3] == "yes",
                        "worker": row[4] or None,
                    }
                    for row in rows
                ],
            }
        )
        return ExitCode.SUCCESS

    renderer = _get_renderer(args)
    renderer.kv("Tier", classification.tier.value)
    if classification.reasons:
        renderer.items(list(classification.reasons))
    if not rows:
        renderer.text("No tasks: the request is resolved or escalated without dispatch.")
        return ExitCode.SUCCESS
    renderer.table(
        ("label", "kind", "depends on", "approval", "worker"), rows, title="Task graph"
    )
    renderer.kv("Status", ", ".join(f"{status}: {count}" for status, count in counts.items()))
    return ExitCode.SUCCESS


def _cmd_workers(args: argparse.Namespace) -> ExitCode:
    config = _load_effective_config(args)
    registry = _registry(config)
    workers = registry.workers()

    if _flag(args, "json"):
        _emit_json({"command": "workers", "workers": [worker.to_dict() for worker in workers]})
        return ExitCode.SUCCESS

    rows = [
        (
            worker.name,
            worker.concurrency_mode.value,
            worker.cost_tier,
            ", ".join(sorted(worker.capability_tags)),
            ", ".join(worker.mandatory_checks),
            ", ".join(worker.optional_checks),
        )
        for worker in workers
    ]
    _get_renderer(args).table(
        ("name", "mode", "cost", "tags", "mandatory", "optional"), rows, title="Workers"
    )
    return ExitCode.SUCCESS


def _cmd_hooks(args: argparse.Namespace) -> ExitCode:
    project_root = _project_root(args)
    config = _load_effective_config(args)
    runtime = _runtime(config, project_root)
    role = str(args.role).strip().lower()
    if runtime.registry.get(role) is None:
        raise CLIError(f"unknown worker role: {role}", exit_code=ExitCode.CONFIG_ERROR)
    workdir = Path(args.workdir).expanduser().resolve() if args.workdir else project_root
    artifacts = ArtifactDescriptor(paths=tuple(args.paths), workdir=workdir)

    if not _flag(args, "run"):
        planned = runtime.hook_runner.plan_checks(role, artifacts)
        if _flag(args, "json"):
            _emit_json(
                {
                    "command": "hooks",
                    "role": role,
                    "checks": {
                        name: [" ".join(rule.argv) for rule in rules] for name, rules in planned
                    },
                }
            )
            return ExitCode.SUCCESS
        rows = [
            (name, rule.ecosystem, " ".join(rule.argv))
            for name, rules in planned
            for rule in rules
        ]
        renderer = _get_renderer(args)
        renderer.table(("check", "ecosystem", "command"), rows, title=f"Checks for {role}")
        skipped = [name for name, rules in planned if not rules]
        if skipped:
            renderer.section("Not applicable:")
            renderer.items(skipped)
        return ExitCode.SUCCESS

    _start_logging(config)
    try:
        verdicts = asyncio.run(runtime.hook_runner.run_checks(role, artifacts))
    finally:
        shutdown_logging()
    decision = assess_verdicts(runtime.registry.require(role), verdicts)
    exit_code = ExitCode.SUCCESS if decision.accepted else ExitCode.REQUEST_REJECTED

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "hooks",
                "role": role,
                "accepted": decision.accepted,
                "reason": decision.reason,
                "verdicts": [verdict.to_dict() for verdict in verdicts],
            }
        )
        return exit_code

    renderer = _get_renderer(args)
    for verdict in verdicts:
        label = f"{verdict.check_name} ({verdict.outcome.value}, {verdict.duration_ms} ms)"
        if verdict.failed:
            renderer.fail(label)
            for line in verdict.detail.excerpt:
                renderer.text(f"      {line}")
        else:
            renderer.ok(label)
    renderer.blank()
    renderer.text("Accepted." if decision.accepted else f"Rejected: {decision.reason}")
    return exit_code


def _cmd_memory_show(args: argparse.Namespace) -> ExitCode:
    project_root = _project_root(args)
    runtime = _runtime(_load_effective_config(args), project_root)
    namespace = getattr(args, "namespace", None)

    if namespace is None:
        namespaces = list(runtime.memory.namespaces())
        if _flag(args, "json"):
            _emit_json({"command": "memory", "namespaces": namespaces})
            return ExitCode.SUCCESS
        renderer = _get_renderer(args)
        if not namespaces:
            renderer.text("Memory store is empty. Run `conductor init` first.")
        renderer.items(namespaces)
        return ExitCode.SUCCESS

    try:
        document = runtime.memory.read(namespace)
    except (KeyError, ValueError) as exc:
        raise CLIError(str(exc).strip("'\""), exit_code=ExitCode.CONFIG_ERROR) from exc

    if _flag(args, "json"):
        _emit_json({"command": "memory", "document": document.to_dict()})
        return ExitCode.SUCCESS

    renderer = _get_renderer(args)
    renderer.heading(f"{document.namespace} (owner: {document.owner}, v{document.version})")
    for entry in document.content:
        renderer.section(f"## {entry.heading}")
        renderer.text(entry.body)
    return ExitCode.SUCCESS


def _cmd_config(args: argparse.Namespace) -> ExitCode:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = effective_config(config)
    payload: dict[str, object] = {
        "command": "config",
        "active_profile": profile,
        "config": redacted,
    }

    if _flag(args, "json"):
        _emit_json(payload)
        return ExitCode.SUCCESS

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return ExitCode.SUCCESS


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _plan_row(
    task: Task, label_of: Mapping[str, str], registry: WorkerRegistry
) -> tuple[str, str, str, str, str]:
    depends = ", ".join(sorted(label_of.get(dep, dep) for dep in task.depends_on))
    candidates = registry.match(task.domain_tags)
    return (
        task.label,
        task.kind.value,
        depends,
        "yes" if task.requires_approval else "",
        candidates[0] if candidates else "",
    )


def _project_root(args: argparse.Namespace) -> Path:
    raw = _optional_str(getattr(args, "project_root", None)) or "."
    candidate = Path(raw).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(
            f"project root is not a directory: {candidate}", exit_code=ExitCode.CONFIG_ERROR
        )
    return candidate


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    search_dir = _project_root(args) if config_path is None else None

    try:
        return load_config(config_path, profile=profile, search_dir=search_dir)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc


def _registry(config: Mapping[str, Any]) -> WorkerRegistry:
    try:
        return WorkerRegistry.from_config(config["workers"])
    except (OSError, ValueError) as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc


def _runtime(config: Mapping[str, Any], project_root: Path) -> Runtime:
    try:
        return build_runtime(config, workers={}, project_root=project_root)
    except (OSError, ValueError) as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc


def _start_logging(config: Mapping[str, Any]) -> None:
    setup_logging(config["observability"], run_id=generate_prefixed_id(IdKind.RUN))


def _request_metadata(args: argparse.Namespace) -> RequestMetadata:
    try:
        return RequestMetadata(
            file_count_estimate=args.files,
            domains=tuple(args.domains),
            confidence=args.confidence,
            irreversible=args.irreversible,
            overrides_prior_decision=args.overrides_decision,
            keywords=tuple(args.keywords),
            touched_files=tuple(args.touched_files),
        )
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc


def _description(args: argparse.Namespace) -> str:
    description = _optional_str(getattr(args, "description", None))
    if description is None:
        raise CLIError("description must not be empty", exit_code=ExitCode.CONFIG_ERROR)
    return description


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
