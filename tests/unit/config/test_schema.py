"""
conductor: unit tests for config schema

Purpose
- Validate strict schema checks, structured issue paths and profile overlays.
"""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from pathlib import Path

import pytest

from conductor.config.schema import (
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
    migration_guidance,
    validate_config,
)

REPO_ROOT = Path(__file__).resolve().parents[3]


def _load_toml(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        data = tomllib.load(handle)
    assert isinstance(data, dict)
    return data


def _as_object_dict(value: object) -> dict[str, object]:
    assert isinstance(value, Mapping)
    return {str(key): item for key, item in value.items()}


def _issues(config: Mapping[str, object]) -> dict[str, str]:
    result = validate_config(config)
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


def test_defaults_and_repo_conductor_toml_validate_successfully() -> None:
    assert validate_config(default_config()).is_valid

    result = validate_config(_load_toml(REPO_ROOT / "conductor.toml"))

    assert result.is_valid
    assert result.config is not None
    assert result.config["meta"]["schema_version"] == ConfigSchemaVersion
    assert set(result.config["profiles"]) == {"strict", "permissive", "ci"}


def test_unknown_key_rejection_is_explicit() -> None:
    config = default_config()
    scheduler = _as_object_dict(config["scheduler"])
    scheduler["max_parallel"] = 9
    merged = merge_config(config, {"scheduler": scheduler, "telemetry": {}})

    issues = _issues(merged)

    assert issues["scheduler.max_parallel"] == "unknown field"
    assert issues["telemetry"] == "unknown field"


def test_embedded_secret_keys_are_called_out() -> None:
    merged = merge_config(default_config(), {"hooks": {"api_token": "abc"}})
    assert _issues(merged)["hooks.api_token"] == "embedded secret values are forbidden"


def test_type_and_range_violations_report_exact_paths() -> None:
    merged = merge_config(
        default_config(),
        {
            "scheduler": {"max_retries": "three", "max_foreground_in_flight": 0},
            "classifier": {"min_confidence": 1.5},
            "memory": {"backend": "sqlite"},
        },
    )

    issues = _issues(merged)

    assert "expected integer" in issues["scheduler.max_retries"]
    assert issues["scheduler.max_foreground_in_flight"] == "must be >= 1"
    assert issues["classifier.min_confidence"] == "must be <= 1.0"
    assert "expected one of: file, memory" in issues["memory.backend"]


def test_missing_sections_and_fields_are_required() -> None:
    config = _as_object_dict(default_config())
    del config["plan_gate"]
    scheduler = _as_object_dict(config["scheduler"])
    del scheduler["max_retries"]
    config["scheduler"] = scheduler

    issues = _issues(config)

    assert issues["plan_gate"] == "missing required field"
    assert issues["scheduler.max_retries"] == "missing required field"


def test_classifier_cross_field_and_ownership_rules() -> None:
    merged = merge_config(
        default_config(),
        {
            "classifier": {"trivial_max_files": 5, "simple_max_files": 2},
            "ownership": {"Bad Namespace": "conductor", "logs/backend": "Backend"},
        },
    )

    issues = _issues(merged)

    assert issues["classifier.simple_max_files"] == "must be >= trivial_max_files"
    assert issues["ownership.Bad Namespace"] == "namespace must be lowercase path segments"
    assert "ownership.logs/backend" not in issues


def test_schema_version_mismatch_carries_migration_guidance() -> None:
    merged = merge_config(default_config(), {"meta": {"schema_version": 2}})
    assert "newer than supported" in _issues(merged)["meta.schema_version"]
    assert "older than supported" in migration_guidance(0)


def test_profile_overlay_deep_merges_known_sections_and_revalidates() -> None:
    config = _load_toml(REPO_ROOT / "conductor.toml")

    merged = apply_profile_overlay(config, "permissive")

    assert merged["scheduler"]["max_retries"] == 3
    assert merged["scheduler"]["max_foreground_in_flight"] == 1
    assert merged["plan_gate"]["require_risk_acknowledgement"] is False

    with pytest.raises(ConfigValidationError, match="not defined"):
        apply_profile_overlay(config, "missing")


def test_profile_overlay_rejects_unknown_sections() -> None:
    merged = merge_config(default_config(), {"profiles": {"fast": {"meta": {}}}})
    assert _issues(merged)["profiles.fast.meta"] == "unknown field"

    with pytest.raises(ConfigValidationError, match="profile name must match"):
        assert_valid_config(merge_config(default_config(), {"profiles": {"Fast": {}}}))


def test_merge_config_replaces_lists_and_does_not_mutate_inputs() -> None:
    base = default_config()
    merged = merge_config(base, {"classifier": {"extra_risk_keywords": ["billing"]}})

    assert merged["classifier"]["extra_risk_keywords"] == ["billing"]
    assert base["classifier"]["extra_risk_keywords"] == []


def test_dump_redacted_is_recursive_and_preserves_shape() -> None:
    merged = merge_config(
        default_config(),
        {"hooks": {"checks": [{"check_name": "deploy", "nested": {"password": "x"}}]}},
    )

    redacted = dump_redacted(merged)

    assert redacted["hooks"]["checks"][0]["nested"]["password"] == "<redacted>"
    assert redacted["hooks"]["checks"][0]["check_name"] == "deploy"
    assert redacted["scheduler"] == merged["scheduler"]
