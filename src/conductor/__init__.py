"""
conductor: task-dependency orchestration substrate

Purpose
- Package root. Assigns heterogeneous workers to a DAG of tasks, routes typed
  messages between them, gates plans and runs mechanical verification hooks.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
