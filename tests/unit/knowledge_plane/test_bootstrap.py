"""Tests for non-destructive memory bootstrap."""

from __future__ import annotations

from pathlib import Path

from conductor.knowledge_plane.bootstrap import GITIGNORE_COMMENT, bootstrap_memory
from conductor.knowledge_plane.memory_store import FileBackend, MemoryStore


def test_bootstrap_seeds_shared_and_role_namespaces(tmp_path: Path) -> None:
    report = bootstrap_memory(tmp_path, ["backend", "Frontend", " "])

    assert report.memory_root == (tmp_path / ".conductor" / "memory").resolve()
    assert sorted(report.created) == [
        "architecture",
        "decisions",
        "failures",
        "logs/backend",
        "logs/frontend",
        "wip",
    ]
    assert report.existing == []
    assert not report.gitignore_updated

    store = MemoryStore(FileBackend(report.memory_root))
    assert store.read("architecture").owner == "librarian"
    assert store.read("logs/frontend").content[0].body == "Activity log for frontend."


def test_bootstrap_never_overwrites_existing_documents(tmp_path: Path) -> None:
    first = bootstrap_memory(tmp_path, ["backend"])
    store = MemoryStore(FileBackend(first.memory_root))
    store.append("decisions", "conductor", "req-1", "keep me")

    second = bootstrap_memory(tmp_path, ["backend", "verifier"])

    assert second.created == ["logs/verifier"]
    assert "decisions" in second.existing
    assert [entry.heading for entry in store.read("decisions").content] == ["overview", "req-1"]


def test_bootstrap_appends_gitignore_entry_once(tmp_path: Path) -> None:
    gitignore = tmp_path / ".gitignore"
    gitignore.write_text("__pycache__/", encoding="utf-8")

    assert bootstrap_memory(tmp_path, [], memory_dir="state/memory").gitignore_updated
    assert not bootstrap_memory(tmp_path, [], memory_dir="state/memory").gitignore_updated

    assert gitignore.read_text(encoding="utf-8") == (
        f"__pycache__/\n\n{GITIGNORE_COMMENT}\nstate/memory/\n"
    )
