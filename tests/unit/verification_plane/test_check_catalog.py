"""Unit tests for the check catalog."""

from __future__ import annotations

from pathlib import Path

import pytest

from conductor.verification_plane.check_catalog import (
    CHECK_LINT,
    CHECK_TESTS,
    KNOWN_CHECKS,
    CheckCatalog,
    CheckRule,
)


def test_default_catalog_covers_every_check_for_each_ecosystem() -> None:
    catalog = CheckCatalog.default()

    assert catalog.check_names() == tuple(sorted(KNOWN_CHECKS))
    assert len(catalog) == 16
    assert {rule.ecosystem for rule in catalog.rules()} == {"python", "node", "rust", "go"}


@pytest.mark.unit
def test_select_requires_matching_artifact_and_manifest(tmp_path: Path) -> None:
    catalog = CheckCatalog.default()

    assert catalog.select(CHECK_TESTS, ["app.py"], tmp_path) == []

    (tmp_path / "pyproject.toml").write_text("[project]\nname='x'\n", encoding="utf-8")
    selected = catalog.select("Tests", ["src/app.py"], tmp_path)
    assert [(rule.ecosystem, rule.argv) for rule in selected] == [("python", ("pytest", "-q"))]

    assert catalog.select(CHECK_TESTS, ["README.md"], tmp_path) == []


def test_manifest_declared_as_artifact_counts_as_present(tmp_path: Path) -> None:
    catalog = CheckCatalog.default()
    selected = catalog.select(CHECK_LINT, ["package.json", "web\\index.ts"], tmp_path)
    assert [rule.ecosystem for rule in selected] == ["node"]


def test_mixed_artifacts_select_one_rule_per_ecosystem(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").touch()
    (tmp_path / "go.mod").touch()
    selected = CheckCatalog.default().select(CHECK_TESTS, ["a.py", "b.go", "c.rs"], tmp_path)
    assert [rule.ecosystem for rule in selected] == ["python", "go"]


def test_from_config_overrides_and_extends_default_rules() -> None:
    catalog = CheckCatalog.from_config(
        [
            {
                "check_name": "tests",
                "ecosystem": "python",
                "manifest": "pyproject.toml",
                "artifact_globs": ["*.py"],
                "argv": ["pytest", "-x"],
                "timeout_seconds": 60,
            },
            {
                "check_name": "docs",
                "ecosystem": "markdown",
                "manifest": "mkdocs.yml",
                "artifact_globs": ["*.md"],
                "argv": ["mkdocs", "build", "--strict"],
            },
        ]
    )

    python_tests = [rule for rule in catalog.rules() if rule.key == ("tests", "python")]
    assert python_tests[0].argv == ("pytest", "-x")
    assert python_tests[0].timeout_seconds == 60
    assert "docs" in catalog.check_names()
    assert len(catalog) == 17


def test_from_config_reports_bad_entries() -> None:
    with pytest.raises(ValueError, match="must be a list"):
        CheckCatalog.from_config("pytest")
    with pytest.raises(ValueError, match=r"hooks.checks\[0\]: unknown field"):
        CheckCatalog.from_config([{"check_name": "tests", "shell": True}])
    with pytest.raises(ValueError, match=r"hooks.checks\[0\]: missing required field 'argv'"):
        CheckCatalog.from_config(
            [
                {
                    "check_name": "tests",
                    "ecosystem": "python",
                    "manifest": "pyproject.toml",
                    "artifact_globs": ["*.py"],
                }
            ]
        )


def test_check_rule_validation() -> None:
    with pytest.raises(ValueError, match="argv"):
        CheckRule("tests", "python", "pyproject.toml", ("*.py",), ())
    with pytest.raises(ValueError, match="timeout_seconds"):
        CheckRule("tests", "python", "pyproject.toml", ("*.py",), ("pytest",), 0)
    with pytest.raises(ValueError, match="ecosystem"):
        CheckRule("tests", " ", "pyproject.toml", ("*.py",), ("pytest",))
