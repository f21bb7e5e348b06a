"""Synthesis plane: worker roles and the typed worker boundary."""

from conductor.synthesis_plane.roles import WorkerRegistry, load_worker_roster
from conductor.synthesis_plane.workers import (
    ArtifactDescriptor,
    Assignment,
    CallableWorker,
    PlanProposal,
    ReviewFinding,
    ScriptedWorker,
    WorkerAgent,
    WorkerReport,
)

__all__ = [
    "ArtifactDescriptor",
    "Assignment",
    "CallableWorker",
    "PlanProposal",
    "ReviewFinding",
    "ScriptedWorker",
    "WorkerAgent",
    "WorkerRegistry",
    "WorkerReport",
    "load_worker_roster",
]
