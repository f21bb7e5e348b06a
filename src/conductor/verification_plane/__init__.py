"""Verification plane: check catalog, command executor and the hook runner."""

from conductor.verification_plane.check_catalog import CheckCatalog, CheckRule
from conductor.verification_plane.executor import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
)
from conductor.verification_plane.hook_runner import (
    AcceptanceDecision,
    HookRunner,
    assess_verdicts,
    extract_failing_names,
)

__all__ = [
    "AcceptanceDecision",
    "CheckCatalog",
    "CheckRule",
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "HookRunner",
    "LocalSubprocessExecutor",
    "assess_verdicts",
    "extract_failing_names",
]
