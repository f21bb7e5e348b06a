"""Planning plane: the task dependency graph and the per-tier graph shapes."""

from conductor.planning.shapes import PlannedGraph, build_graph_for_tier, capability_tags_for
from conductor.planning.task_graph import CompletionResult, TaskGraph

__all__ = [
    "CompletionResult",
    "PlannedGraph",
    "TaskGraph",
    "build_graph_for_tier",
    "capability_tags_for",
]
