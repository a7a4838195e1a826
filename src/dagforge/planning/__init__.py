"""Graph model: task graphs, the builder and YAML graph definitions."""

from dagforge.planning.builder import GraphBuilder
from dagforge.planning.loader import GraphDefinitionError, load_graph_file
from dagforge.planning.task_graph import (
    CycleDetectedError,
    DuplicateTaskError,
    GraphError,
    TaskGraph,
    UnknownDependencyError,
    build_graph,
)

__all__ = [
    "CycleDetectedError",
    "DuplicateTaskError",
    "GraphBuilder",
    "GraphDefinitionError",
    "GraphError",
    "TaskGraph",
    "UnknownDependencyError",
    "build_graph",
    "load_graph_file",
]
