"""Unit tests for planning.task_graph."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from dagforge.domain.models import JoinOutcome, JoinRule, TaskStatus
from dagforge.planning.task_graph import (
    CycleDetectedError,
    DuplicateTaskError,
    UnknownDependencyError,
    build_graph,
)
from tests.helpers import graph_from_edges, spec

pytestmark = pytest.mark.unit

S = TaskStatus


def test_diamond_ready_set_progression() -> None:
    graph = graph_from_edges("abcd", [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")])

    assert graph.ready_set(set()) == ("a",)
    assert graph.ready_set({"a"}) == ("b", "c")
    assert graph.ready_set({"a", "b"}) == ("c",)
    assert graph.ready_set({"a", "b", "c"}) == ("d",)
    assert graph.ready_set({"a", "b", "c", "d"}) == ()


def test_ready_set_excludes_in_flight_tasks() -> None:
    graph = graph_from_edges("abc", [("a", "c")])

    assert graph.ready_set(set(), in_flight={"b"}) == ("a",)


def test_ready_set_accepts_status_mapping() -> None:
    graph = graph_from_edges("abc", [("a", "b"), ("a", "c")])
    statuses = {"a": S.SUCCESS, "b": S.RUNNING, "c": S.PENDING}

    assert graph.ready_set(statuses) == ("c",)


def test_queries_follow_declaration_order() -> None:
    graph = graph_from_edges(
        ["b", "a", "c", "d"],
        [("a", "c"), ("a", "b"), ("b", "d"), ("c", "d")],
    )

    assert graph.task_ids == ("b", "a", "c", "d")
    assert graph.upstream_of("d") == ("b", "c")
    assert graph.upstream_of("d", transitive=True) == ("a", "b", "c")
    assert graph.children_of("a") == ("b", "c")
    assert graph.downstream_of("a") == ("b", "c", "d")
    assert graph.roots() == ("a",)
    assert graph.leaves() == ("d",)
    assert graph.topological_order == ("a", "b", "c", "d")


def test_upstream_declared_on_spec_and_explicit_edges_merge() -> None:
    graph = build_graph(
        [spec("a"), spec("b"), spec("c", upstream=["a"])],
        [("b", "c"), ("a", "c")],
    )

    assert graph.upstream_of("c") == ("a", "b")
    assert graph.edges == (("a", "c"), ("b", "c"))


def test_cycle_is_reported_with_closed_canonical_path() -> None:
    with pytest.raises(CycleDetectedError) as error:
        graph_from_edges("abcd", [("a", "b"), ("b", "c"), ("c", "a"), ("c", "d")])

    assert error.value.cycle == ("a", "b", "c", "a")
    assert "a -> b -> c -> a" in str(error.value)


def test_self_loop_is_a_cycle() -> None:
    with pytest.raises(CycleDetectedError) as error:
        graph_from_edges("ab", [("a", "b"), ("b", "b")])

    assert error.value.cycle == ("b", "b")


def test_unknown_dependency_names_both_tasks() -> None:
    with pytest.raises(UnknownDependencyError) as error:
        build_graph([spec("a"), spec("b", upstream=["ghost"])])

    assert error.value.task_id == "b"
    assert error.value.missing == "ghost"


def test_unknown_edge_endpoint_is_rejected() -> None:
    with pytest.raises(UnknownDependencyError):
        build_graph([spec("a")], [("a", "missing")])


def test_duplicate_task_id_is_rejected() -> None:
    with pytest.raises(DuplicateTaskError):
        build_graph([spec("a"), spec("a")])


def test_empty_graph_is_valid() -> None:
    graph = build_graph([])

    assert len(graph) == 0
    assert graph.ready_set(set()) == ()


def test_unknown_task_lookup_raises_key_error() -> None:
    graph = graph_from_edges("a")

    with pytest.raises(KeyError):
        graph.task("zzz")


@pytest.mark.parametrize(
    ("rule", "upstream", "expected"),
    [
        (JoinRule.ALL_SUCCESS, (S.SUCCESS, S.SUCCESS), JoinOutcome.READY),
        (JoinRule.ALL_SUCCESS, (S.SUCCESS, S.RUNNING), JoinOutcome.WAIT),
        (JoinRule.ALL_SUCCESS, (S.FAILED, S.RUNNING), JoinOutcome.UPSTREAM_FAILED),
        (JoinRule.ALL_SUCCESS, (S.SKIPPED, S.SUCCESS), JoinOutcome.SKIP),
        (JoinRule.ONE_SUCCESS, (S.FAILED, S.SUCCESS), JoinOutcome.READY),
        (JoinRule.ONE_SUCCESS, (S.FAILED, S.RUNNING), JoinOutcome.WAIT),
        (JoinRule.ONE_SUCCESS, (S.FAILED, S.SKIPPED), JoinOutcome.UPSTREAM_FAILED),
        (JoinRule.ONE_SUCCESS, (S.SKIPPED, S.SKIPPED), JoinOutcome.SKIP),
        (JoinRule.NONE_FAILED, (S.SKIPPED, S.SUCCESS), JoinOutcome.READY),
        (JoinRule.NONE_FAILED, (S.UPSTREAM_FAILED, S.PENDING), JoinOutcome.UPSTREAM_FAILED),
        (JoinRule.ALL_DONE, (S.FAILED, S.SKIPPED), JoinOutcome.READY),
        (JoinRule.ALL_DONE, (S.FAILED, S.RETRY_WAIT), JoinOutcome.WAIT),
        (JoinRule.ONE_FAILED, (S.FAILED, S.PENDING), JoinOutcome.READY),
        (JoinRule.ONE_FAILED, (S.SUCCESS, S.SUCCESS), JoinOutcome.SKIP),
    ],
)
def test_join_rule_outcomes(
    rule: JoinRule, upstream: tuple[TaskStatus, TaskStatus], expected: JoinOutcome
) -> None:
    graph = graph_from_edges(
        ["p1", "p2", "child"],
        [("p1", "child"), ("p2", "child")],
        join_rules={"child": rule},
    )
    statuses = {"p1": upstream[0], "p2": upstream[1], "child": S.PENDING}

    assert graph.evaluate_join("child", statuses) is expected


def test_serialize_is_stable() -> None:
    graph = graph_from_edges("ab", [("a", "b")], dag_id="etl")

    first = graph.serialize()
    assert first == graph.serialize()
    assert first["edges"] == [["a", "b"]]
    assert graph.describe()["task_count"] == 2


@st.composite
def _dag_case(draw: st.DrawFn) -> tuple[list[str], list[tuple[str, str]]]:
    node_count = draw(st.integers(min_value=1, max_value=8))
    nodes = [f"t{index}" for index in range(node_count)]
    candidates = [(nodes[i], nodes[j]) for i in range(node_count) for j in range(i + 1, node_count)]
    edges = draw(st.lists(st.sampled_from(candidates), unique=True) if candidates else st.just([]))
    return nodes, edges


@given(case=_dag_case())
@settings(max_examples=60, derandomize=True, deadline=None)
def test_property_repeatedly_completing_the_ready_set_finishes_every_task(
    case: tuple[list[str], list[tuple[str, str]]],
) -> None:
    nodes, edges = case
    graph = graph_from_edges(nodes, edges)
    completed: set[str] = set()

    for _ in range(len(nodes)):
        ready = graph.ready_set(completed)
        assert ready == graph.ready_set(completed)
        if not ready:
            break
        for task_id in ready:
            assert set(graph.upstream_of(task_id)) <= completed
        completed.update(ready)

    assert completed == set(nodes)


@given(case=_dag_case(), data=st.data())
@settings(max_examples=40, derandomize=True, deadline=None)
def test_property_back_edge_always_produces_cycle(
    case: tuple[list[str], list[tuple[str, str]]], data: st.DataObject
) -> None:
    nodes, edges = case
    if not edges:
        return
    parent, child = data.draw(st.sampled_from(edges))

    with pytest.raises(CycleDetectedError) as error:
        graph_from_edges(nodes, [*edges, (child, parent)])

    cycle = error.value.cycle
    assert cycle[0] == cycle[-1]
    assert cycle[0] == min(cycle[:-1])
