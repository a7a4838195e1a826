"""Immutable, deterministic task graph with join-rule evaluation."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence, Set
from heapq import heapify, heappop, heappush

from dagforge.domain.models import (
    FAILURE_STATUSES,
    JoinOutcome,
    JoinRule,
    JSONValue,
    TaskSpec,
    TaskStatus,
)


class GraphError(ValueError):
    """Base class for graph construction failures."""


class CycleDetectedError(GraphError):
    """Raised when a cycle is detected in the task graph."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "Task graph contains at least one cycle."
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"Task graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)

    @property
    def cycle(self) -> tuple[str, ...]:
        """The first offending closed path, e.g. ``("a", "b", "a")``."""
        return self.cycles[0] if self.cycles else ()


class UnknownDependencyError(GraphError):
    """Raised when a dependency references a task id missing from the graph."""

    def __init__(self, task_id: str, missing: str) -> None:
        self.task_id = task_id
        self.missing = missing
        super().__init__(f"Task '{task_id}' depends on unknown task '{missing}'.")


class DuplicateTaskError(GraphError):
    """Raised when two tasks share an identifier."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Duplicate task id '{task_id}'.")


def build_graph(
    tasks: Iterable[TaskSpec],
    edges: Iterable[tuple[str, str]] = (),
    *,
    dag_id: str = "dag",
) -> TaskGraph:
    """
    Validate ``tasks`` and ``edges`` and return an immutable graph.

    Edges are the union of each task's declared upstream ids and the explicit
    ``(parent, child)`` pairs. Raises a :class:`GraphError` subclass on duplicate
    ids, dangling references or cycles; nothing is returned in that case.
    """
    specs: dict[str, TaskSpec] = {}
    for spec in tasks:
        if not isinstance(spec, TaskSpec):
            raise TypeError(f"tasks must contain TaskSpec instances, got {type(spec).__name__}")
        if spec.task_id in specs:
            raise DuplicateTaskError(spec.task_id)
        specs[spec.task_id] = spec

    parents: dict[str, list[str]] = {task_id: [] for task_id in specs}
    for task_id, spec in specs.items():
        for upstream_id in spec.upstream:
            if upstream_id not in specs:
                raise UnknownDependencyError(task_id, upstream_id)
            parents[task_id].append(upstream_id)

    for parent, child in edges:
        if child not in specs:
            raise UnknownDependencyError(parent, child)
        if parent not in specs:
            raise UnknownDependencyError(child, parent)
        if parent not in parents[child]:
            parents[child].append(parent)

    index = {task_id: position for position, task_id in enumerate(specs)}
    children: dict[str, list[str]] = {task_id: [] for task_id in specs}
    for child, upstream_ids in parents.items():
        for parent in upstream_ids:
            children[parent].append(child)

    ordered_parents = {
        task_id: tuple(sorted(upstream_ids, key=index.__getitem__))
        for task_id, upstream_ids in parents.items()
    }
    ordered_children = {
        task_id: tuple(sorted(downstream_ids, key=index.__getitem__))
        for task_id, downstream_ids in children.items()
    }

    order = _kahn_order(specs, ordered_parents, ordered_children, index)
    if len(order) != len(specs):
        raise CycleDetectedError(_detect_cycles(specs, ordered_children))

    return TaskGraph(
        dag_id=dag_id,
        tasks=specs,
        parents=ordered_parents,
        children=ordered_children,
        order=order,
    )


class TaskGraph:
    """
    Read-only DAG of :class:`TaskSpec` nodes.

    Instances are produced by :func:`build_graph`; acyclicity and referential
    integrity are established there once and never re-checked. Every query
    returns ids in declaration order (or topological order where stated).
    """

    __slots__ = ("_dag_id", "_tasks", "_index", "_parents", "_children", "_order")

    def __init__(
        self,
        *,
        dag_id: str,
        tasks: Mapping[str, TaskSpec],
        parents: Mapping[str, tuple[str, ...]],
        children: Mapping[str, tuple[str, ...]],
        order: tuple[str, ...],
    ) -> None:
        self._dag_id = dag_id
        self._tasks: dict[str, TaskSpec] = dict(tasks)
        self._index: dict[str, int] = {task_id: pos for pos, task_id in enumerate(self._tasks)}
        self._parents: dict[str, tuple[str, ...]] = dict(parents)
        self._children: dict[str, tuple[str, ...]] = dict(children)
        self._order = order

    @property
    def dag_id(self) -> str:
        return self._dag_id

    @property
    def task_ids(self) -> tuple[str, ...]:
        """All task ids in declaration order."""
        return tuple(self._tasks)

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        """All edges as ``(parent, child)`` pairs in deterministic order."""
        return tuple(
            (parent, child) for parent in self._tasks for child in self._children[parent]
        )

    @property
    def topological_order(self) -> tuple[str, ...]:
        return self._order

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[TaskSpec]:
        return iter(self._tasks.values())

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def task(self, task_id: str) -> TaskSpec:
        self._assert_task_exists(task_id)
        return self._tasks[task_id]

    def declaration_index(self, task_id: str) -> int:
        self._assert_task_exists(task_id)
        return self._index[task_id]

    def upstream_of(self, task_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Direct (or all transitive) upstream ids of ``task_id``."""
        self._assert_task_exists(task_id)
        if not transitive:
            return self._parents[task_id]
        return self._transitive_closure(task_id, upstream=True)

    def children_of(self, task_id: str) -> tuple[str, ...]:
        self._assert_task_exists(task_id)
        return self._children[task_id]

    def downstream_of(self, task_id: str) -> tuple[str, ...]:
        """Transitive descendants of ``task_id`` in topological order."""
        return self._transitive_closure(task_id, upstream=False)

    def roots(self) -> tuple[str, ...]:
        return tuple(task_id for task_id in self._tasks if not self._parents[task_id])

    def leaves(self) -> tuple[str, ...]:
        return tuple(task_id for task_id in self._tasks if not self._children[task_id])

    def evaluate_join(
        self, task_id: str, statuses: Mapping[str, TaskStatus]
    ) -> JoinOutcome:
        """
        Evaluate ``task_id``'s join rule against upstream statuses.

        Upstreams absent from ``statuses`` count as pending. ``SKIP`` and
        ``UPSTREAM_FAILED`` are final verdicts: the rule can no longer be met.
        """
        spec = self.task(task_id)
        upstream_ids = self._parents[task_id]
        if not upstream_ids:
            return JoinOutcome.READY

        total = len(upstream_ids)
        succeeded = failed = skipped = 0
        for upstream_id in upstream_ids:
            status = statuses.get(upstream_id, TaskStatus.PENDING)
            if status == TaskStatus.SUCCESS:
                succeeded += 1
            elif status in FAILURE_STATUSES:
                failed += 1
            elif status == TaskStatus.SKIPPED:
                skipped += 1
        done = succeeded + failed + skipped

        rule = spec.join_rule
        if rule is JoinRule.ALL_SUCCESS:
            if succeeded == total:
                return JoinOutcome.READY
            if failed:
                return JoinOutcome.UPSTREAM_FAILED
            if skipped:
                return JoinOutcome.SKIP
            return JoinOutcome.WAIT
        if rule is JoinRule.ONE_SUCCESS:
            if succeeded:
                return JoinOutcome.READY
            if done == total:
                return JoinOutcome.UPSTREAM_FAILED if failed else JoinOutcome.SKIP
            return JoinOutcome.WAIT
        if rule is JoinRule.NONE_FAILED:
            if failed:
                return JoinOutcome.UPSTREAM_FAILED
            return JoinOutcome.READY if done == total else JoinOutcome.WAIT
        if rule is JoinRule.ALL_DONE:
            return JoinOutcome.READY if done == total else JoinOutcome.WAIT
        if rule is JoinRule.ONE_FAILED:
            if failed:
                return JoinOutcome.READY
            return JoinOutcome.SKIP if done == total else JoinOutcome.WAIT
        raise ValueError(f"unsupported join rule: {rule!r}")

    def ready_set(
        self,
        completed: Set[str] | Mapping[str, TaskStatus],
        *,
        in_flight: Iterable[str] = (),
    ) -> tuple[str, ...]:
        """
        Return tasks whose join rule is satisfied, in declaration order.

        ``completed`` is either a set of ids treated as ``SUCCESS`` or a mapping
        of id to status. Tasks already in ``completed`` (or, for a mapping, in
        any non-``PENDING`` status) and tasks in ``in_flight`` are excluded.
        The call is pure: identical inputs give identical results.
        """
        if isinstance(completed, Mapping):
            statuses: Mapping[str, TaskStatus] = completed
            excluded = {
                task_id for task_id, status in completed.items() if status != TaskStatus.PENDING
            }
        else:
            statuses = dict.fromkeys(completed, TaskStatus.SUCCESS)
            excluded = set(completed)
        excluded.update(in_flight)

        return tuple(
            task_id
            for task_id in self._tasks
            if task_id not in excluded
            and self.evaluate_join(task_id, statuses) is JoinOutcome.READY
        )

    def serialize(self) -> dict[str, JSONValue]:
        """Serialize graph structure to a stable JSON-friendly mapping."""
        return {
            "dag_id": self._dag_id,
            "tasks": [spec.describe() for spec in self._tasks.values()],
            "edges": [[parent, child] for parent, child in self.edges],
            "topological_order": list(self._order),
        }

    def describe(self) -> dict[str, JSONValue]:
        """Compact summary for display."""
        return {
            "dag_id": self._dag_id,
            "task_count": len(self._tasks),
            "edge_count": len(self.edges),
            "roots": list(self.roots()),
            "leaves": list(self.leaves()),
            "pools": sorted({spec.pool for spec in self._tasks.values() if spec.pool is not None}),
        }

    def _transitive_closure(self, task_id: str, *, upstream: bool) -> tuple[str, ...]:
        self._assert_task_exists(task_id)

        adjacency = self._parents if upstream else self._children
        visited: set[str] = set()
        pending: list[str] = list(adjacency[task_id])

        while pending:
            node = pending.pop()
            if node in visited:
                continue

            visited.add(node)
            for neighbor in adjacency[node]:
                if neighbor not in visited:
                    pending.append(neighbor)

        return tuple(node for node in self._order if node in visited)

    def _assert_task_exists(self, task_id: str) -> None:
        if task_id not in self._tasks:
            raise KeyError(f"Unknown task: {task_id}")


def _kahn_order(
    specs: Mapping[str, TaskSpec],
    parents: Mapping[str, tuple[str, ...]],
    children: Mapping[str, tuple[str, ...]],
    index: Mapping[str, int],
) -> tuple[str, ...]:
    indegree: dict[str, int] = {task_id: len(parents[task_id]) for task_id in specs}
    ready: list[tuple[int, str]] = [
        (index[task_id], task_id) for task_id, degree in indegree.items() if degree == 0
    ]
    heapify(ready)

    order: list[str] = []
    while ready:
        _, node = heappop(ready)
        order.append(node)

        for child in children[node]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heappush(ready, (index[child], child))

    return tuple(order)


def _detect_cycles(
    specs: Mapping[str, TaskSpec],
    children: Mapping[str, tuple[str, ...]],
) -> tuple[tuple[str, ...], ...]:
    """
    Detect directed cycles with an iterative depth-first coloring pass.

    Returns cycle paths as closed paths, e.g. ``("A", "B", "C", "A")``.
    """
    state: dict[str, int] = {}
    stack: list[str] = []
    stack_index: dict[str, int] = {}
    cycles: dict[tuple[str, ...], None] = {}

    for start in specs:
        if state.get(start, 0) != 0:
            continue

        state[start] = 1
        stack.append(start)
        stack_index[start] = len(stack) - 1
        frames: list[tuple[str, Iterator[str]]] = [(start, iter(children[start]))]

        while frames:
            node, child_iter = frames[-1]

            try:
                child = next(child_iter)
            except StopIteration:
                frames.pop()
                state[node] = 2
                stack.pop()
                del stack_index[node]
                continue

            child_state = state.get(child, 0)
            if child_state == 0:
                state[child] = 1
                stack_index[child] = len(stack)
                stack.append(child)
                frames.append((child, iter(children[child])))
                continue

            if child_state == 1:
                start_index = stack_index[child]
                cycle = tuple(stack[start_index:] + [child])
                cycles[_canonicalize_cycle(cycle)] = None

    return tuple(sorted(cycles))


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])

    best = core
    for offset in range(1, len(core)):
        rotated = core[offset:] + core[:offset]
        if rotated < best:
            best = rotated

    return best + (best[0],)


__all__ = [
    "CycleDetectedError",
    "DuplicateTaskError",
    "GraphError",
    "TaskGraph",
    "UnknownDependencyError",
    "build_graph",
]
