"""
dagforge: single-process DAG task scheduler.

Package root. Keeps the import surface small: graph building, the run
coordinator and the result types. Importing the package has no side effects
(no config loading, no logging setup).
"""

from dagforge.control_plane.coordinator import RunCoordinator, RunResult
from dagforge.domain.models import JoinRule, RetryPolicy, RunStatus, TaskSpec, TaskStatus
from dagforge.planning.builder import GraphBuilder
from dagforge.planning.task_graph import TaskGraph, build_graph

__version__ = "0.3.0"

__all__ = [
    "GraphBuilder",
    "JoinRule",
    "RetryPolicy",
    "RunCoordinator",
    "RunResult",
    "RunStatus",
    "TaskGraph",
    "TaskSpec",
    "TaskStatus",
    "__version__",
    "build_graph",
]
