"""Non-destructive project bootstrap for the memory directory."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from conductor.constants import (
    MEMORY_DIR,
    NAMESPACE_ARCHITECTURE,
    NAMESPACE_DECISIONS,
    NAMESPACE_FAILURES,
    NAMESPACE_WIP,
)
from conductor.knowledge_plane.memory_store import (
    FileBackend,
    MemoryStore,
    OwnershipMap,
    log_namespace,
)
from conductor.utils.fs import atomic_write, ensure_directory

GITIGNORE_COMMENT = "# Conductor memory (local, not shared)"

_SEED_HEADINGS = {
    NAMESPACE_ARCHITECTURE: (
        "overview",
        "Architecture map. Risk areas use the heading `risk-area`.",
    ),
    NAMESPACE_DECISIONS: ("overview", "Decision log, one record per closed request."),
    NAMESPACE_FAILURES: ("overview", "Failure registry of rejected verdicts."),
    NAMESPACE_WIP: ("overview", "Requests currently in flight."),
}


@dataclass(slots=True)
class BootstrapReport:
    memory_root: Path
    created: list[str] = field(default_factory=list)
    existing: list[str] = field(default_factory=list)
    gitignore_updated: bool = False


def bootstrap_memory(
    project_root: str | Path,
    roles: Iterable[str],
    *,
    memory_dir: str | Path = MEMORY_DIR,
    ownership: OwnershipMap | None = None,
    logger: Any | None = None,
) -> BootstrapReport:
    """Seed shared and per-role namespaces that do not exist yet.

    Existing documents are never touched. When the project already has a
    ``.gitignore`` the memory directory is appended to it once.
    """

    log = logger if logger is not None else structlog.get_logger(__name__)
    root = Path(project_root)
    memory_root = ensure_directory(root / Path(memory_dir))
    store = MemoryStore(FileBackend(memory_root), ownership=ownership, logger=log)
    report = BootstrapReport(memory_root=memory_root)

    for namespace, (heading, body) in _SEED_HEADINGS.items():
        _seed(store, namespace, heading, body, report)
    for role in sorted({role.strip().lower() for role in roles if role.strip()}):
        _seed(store, log_namespace(role), "overview", f"Activity log for {role}.", report)

    report.gitignore_updated = _update_gitignore(root, Path(memory_dir))
    log.info(
        "memory_bootstrapped",
        memory_root=str(memory_root),
        created=len(report.created),
        existing=len(report.existing),
        gitignore_updated=report.gitignore_updated,
    )
    return report


def _seed(
    store: MemoryStore,
    namespace: str,
    heading: str,
    body: str,
    report: BootstrapReport,
) -> None:
    if store.exists(namespace):
        report.existing.append(namespace)
        return
    owner = store.ownership.owner_of(namespace)
    if owner is None:
        raise ValueError(f"no owner configured for namespace {namespace!r}")
    store.append(namespace, owner, heading, body)
    report.created.append(namespace)


def _update_gitignore(project_root: Path, memory_dir: Path) -> bool:
    gitignore = project_root / ".gitignore"
    if not gitignore.is_file():
        return False
    entry = f"{memory_dir.as_posix().rstrip('/')}/"
    current = gitignore.read_text(encoding="utf-8")
    if any(line.strip() == entry for line in current.splitlines()):
        return False
    separator = "" if current.endswith("\n") or not current else "\n"
    atomic_write(gitignore, f"{current}{separator}\n{GITIGNORE_COMMENT}\n{entry}\n")
    return True


__all__ = ["GITIGNORE_COMMENT", "BootstrapReport", "bootstrap_memory"]
