"""Fluent graph construction with chaining and flattened task groups."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace

from dagforge.constants import GROUP_SEPARATOR
from dagforge.domain.models import JoinRule, MetadataRef, RetryPolicy, TaskSpec
from dagforge.execution.executor import Executable
from dagforge.planning.task_graph import DuplicateTaskError, TaskGraph, build_graph

TaskRef = str | Sequence[str]


@dataclass(frozen=True, slots=True)
class _Group:
    members: tuple[str, ...]
    roots: tuple[str, ...]
    leaves: tuple[str, ...]


class GraphBuilder:
    """
    Collect task specs and edges, then validate them with :func:`build_graph`.

    Groups are a construction-time convenience only: ``add_group`` copies the
    member tasks into this builder under ``"<group_id>."``-prefixed ids. A group
    id used as an upstream reference resolves to the group's leaf tasks; used as
    a downstream reference it resolves to the group's root tasks.
    """

    def __init__(self, dag_id: str = "dag") -> None:
        self.dag_id = dag_id
        self._specs: dict[str, TaskSpec] = {}
        self._edges: list[tuple[str, str]] = []
        self._groups: dict[str, _Group] = {}

    @property
    def task_ids(self) -> tuple[str, ...]:
        return tuple(self._specs)

    @property
    def group_ids(self) -> tuple[str, ...]:
        return tuple(self._groups)

    def add(self, spec: TaskSpec) -> str:
        """Register a prebuilt spec. Returns its id."""
        if spec.task_id in self._specs or spec.task_id in self._groups:
            raise DuplicateTaskError(spec.task_id)
        self._specs[spec.task_id] = spec
        return spec.task_id

    def add_task(
        self,
        task_id: str,
        executable: Executable,
        *,
        upstream: Iterable[str] = (),
        retry: RetryPolicy | None = None,
        join_rule: JoinRule | str = JoinRule.ALL_SUCCESS,
        priority: int = 0,
        pool: str | None = None,
        inputs: Mapping[str, MetadataRef] | None = None,
        description: str = "",
    ) -> str:
        return self.add(
            TaskSpec(
                task_id=task_id,
                executable=executable,
                upstream=tuple(upstream),
                retry=retry if retry is not None else RetryPolicy(),
                join_rule=JoinRule(join_rule),
                priority=priority,
                pool=pool,
                inputs=dict(inputs or {}),
                description=description,
            )
        )

    def chain(self, *refs: TaskRef) -> GraphBuilder:
        """
        Add edges between consecutive references, ``a >> b >> c`` style.

        A reference is a task id, a group id, or a sequence of them for fan-out
        and fan-in (``chain("extract", ["t1", "t2"], "load")``).
        """
        for upstream, downstream in zip(refs, refs[1:]):
            for parent in _as_ref_list(upstream):
                for child in _as_ref_list(downstream):
                    self._edges.append((parent, child))
        return self

    def add_edge(self, parent: str, child: str) -> GraphBuilder:
        self._edges.append((parent, child))
        return self

    def add_group(
        self,
        group_id: str,
        tasks: GraphBuilder | Iterable[TaskSpec],
        *,
        upstream: Iterable[str] = (),
    ) -> tuple[str, ...]:
        """
        Flatten a named sub-graph into this builder.

        Intra-group references are rewritten to prefixed ids; references to
        tasks outside the group are kept as-is. ``upstream`` is applied to the
        group's root tasks. Returns the prefixed member ids.
        """
        if group_id in self._groups or group_id in self._specs:
            raise DuplicateTaskError(group_id)

        if isinstance(tasks, GraphBuilder):
            inner_specs, inner_edges = tasks._resolved_local()
            inner_groups = tasks._groups
        else:
            inner_specs, inner_edges, inner_groups = list(tasks), [], {}

        local_ids = {spec.task_id for spec in inner_specs}
        prefix = f"{group_id}{GROUP_SEPARATOR}"

        def rename(ref: str) -> str:
            return f"{prefix}{ref}" if ref in local_ids or ref in inner_groups else ref

        renamed_edges = [(rename(parent), rename(child)) for parent, child in inner_edges]
        renamed_specs: list[TaskSpec] = []
        for spec in inner_specs:
            renamed_specs.append(
                replace(
                    spec,
                    task_id=rename(spec.task_id),
                    upstream=tuple(rename(ref) for ref in spec.upstream),
                    inputs={
                        name: MetadataRef(task_id=rename(ref.task_id), key=ref.key)
                        for name, ref in spec.inputs.items()
                    },
                )
            )

        members = tuple(spec.task_id for spec in renamed_specs)
        member_set = set(members)
        internal_parents: dict[str, set[str]] = {member: set() for member in members}
        internal_children: dict[str, set[str]] = {member: set() for member in members}
        for spec in renamed_specs:
            for ref in spec.upstream:
                if ref in member_set:
                    internal_parents[spec.task_id].add(ref)
                    internal_children[ref].add(spec.task_id)
        for parent, child in renamed_edges:
            if parent in member_set and child in member_set:
                internal_parents[child].add(parent)
                internal_children[parent].add(child)

        roots = tuple(member for member in members if not internal_parents[member])
        leaves = tuple(member for member in members if not internal_children[member])

        group_upstream = tuple(upstream)
        for spec in renamed_specs:
            if spec.task_id in roots and group_upstream:
                merged = spec.upstream + tuple(
                    ref for ref in group_upstream if ref not in spec.upstream
                )
                spec = replace(spec, upstream=merged)
            self.add(spec)
        self._edges.extend(renamed_edges)

        for inner_id, inner in inner_groups.items():
            self._groups[rename(inner_id)] = _Group(
                members=tuple(rename(ref) for ref in inner.members),
                roots=tuple(rename(ref) for ref in inner.roots),
                leaves=tuple(rename(ref) for ref in inner.leaves),
            )
        self._groups[group_id] = _Group(members=members, roots=roots, leaves=leaves)
        return members

    def group_members(self, group_id: str) -> tuple[str, ...]:
        try:
            return self._groups[group_id].members
        except KeyError as exc:
            raise KeyError(f"Unknown group: {group_id}") from exc

    def build(self) -> TaskGraph:
        specs, edges = self._resolved_local()
        return build_graph(specs, edges, dag_id=self.dag_id)

    def _resolved_local(self) -> tuple[list[TaskSpec], list[tuple[str, str]]]:
        """Expand references to this builder's groups into concrete task ids."""
        specs: list[TaskSpec] = []
        for spec in self._specs.values():
            expanded: list[str] = []
            for ref in spec.upstream:
                for concrete in self._expand(ref, as_upstream=True):
                    if concrete not in expanded:
                        expanded.append(concrete)
            if tuple(expanded) != spec.upstream:
                spec = replace(spec, upstream=tuple(expanded))
            specs.append(spec)

        edges: list[tuple[str, str]] = []
        for parent_ref, child_ref in self._edges:
            for parent in self._expand(parent_ref, as_upstream=True):
                for child in self._expand(child_ref, as_upstream=False):
                    if (parent, child) not in edges:
                        edges.append((parent, child))
        return specs, edges

    def _expand(self, ref: str, *, as_upstream: bool) -> tuple[str, ...]:
        group = self._groups.get(ref)
        if group is None:
            return (ref,)
        return group.leaves if as_upstream else group.roots


def _as_ref_list(ref: TaskRef) -> tuple[str, ...]:
    if isinstance(ref, str):
        return (ref,)
    return tuple(ref)


__all__ = ["GraphBuilder", "TaskRef"]
