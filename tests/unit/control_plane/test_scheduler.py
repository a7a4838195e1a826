"""Unit tests for scheduler selection under concurrency limits."""

from __future__ import annotations

import pytest

from dagforge.control_plane.scheduler import Scheduler, SchedulerLimits
from dagforge.domain.models import TaskStatus
from dagforge.planning.task_graph import build_graph
from tests.helpers import graph_from_edges, spec

pytestmark = pytest.mark.unit

S = TaskStatus


def test_selects_ready_pending_tasks_in_declaration_order() -> None:
    graph = graph_from_edges("abcd", [("a", "d")])

    decision = Scheduler().schedule(graph, {})

    assert decision.selected == ("a", "b", "c")
    assert decision.runnable == ("a", "b", "c")
    assert decision.blocked_by_limits == ()


def test_priority_orders_before_declaration_index() -> None:
    graph = build_graph([spec("low"), spec("high", priority=10), spec("mid", priority=5)])

    decision = Scheduler(limits=SchedulerLimits(max_active_tasks=2)).schedule(graph, {})

    assert decision.runnable == ("high", "mid", "low")
    assert decision.selected == ("high", "mid")
    assert decision.blocked_by_limits == ("low",)


def test_in_flight_tasks_consume_the_global_budget() -> None:
    graph = graph_from_edges("abc")
    limits = SchedulerLimits(max_active_tasks=2)

    decision = Scheduler(limits=limits).schedule(graph, {"a": S.RUNNING})

    assert decision.selected == ("b",)
    assert decision.blocked_by_limits == ("c",)


def test_dispatch_per_tick_cap() -> None:
    graph = graph_from_edges("abcd")
    limits = SchedulerLimits(max_active_tasks=10, max_dispatch_per_tick=3)

    assert Scheduler(limits=limits).schedule(graph, {}).selected == ("a", "b", "c")


def test_pool_limits_are_enforced_including_in_flight_members() -> None:
    graph = build_graph(
        [spec("q1", pool="db"), spec("q2", pool="db"), spec("q3", pool="db"), spec("free")]
    )
    limits = SchedulerLimits(pool_limits={"db": 2})

    decision = Scheduler(limits=limits).schedule(graph, {"q1": S.QUEUED})

    assert decision.selected == ("q2", "free")
    assert decision.blocked_by_limits == ("q3",)


def test_retry_wait_tasks_are_candidates_only_when_due() -> None:
    graph = graph_from_edges("ab")
    statuses = {"a": S.RETRY_WAIT, "b": S.SUCCESS}

    assert Scheduler().schedule(graph, statuses).selected == ()
    assert Scheduler().schedule(graph, statuses, retry_due=["a"]).selected == ("a",)


def test_tasks_waiting_on_upstream_are_not_runnable() -> None:
    graph = graph_from_edges("ab", [("a", "b")])

    decision = Scheduler().schedule(graph, {"a": S.RUNNING})

    assert decision.idle
    assert decision.selected == ()


def test_statuses_accept_strings_and_reject_unknown_ids() -> None:
    graph = graph_from_edges("ab", [("a", "b")])

    assert Scheduler().schedule(graph, {"a": "success"}).selected == ("b",)
    with pytest.raises(ValueError, match="unknown task_id"):
        Scheduler().schedule(graph, {"ghost": S.PENDING})
    with pytest.raises(ValueError, match="must be one of"):
        Scheduler().schedule(graph, {"a": "exploded"})


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_active_tasks": 0},
        {"max_dispatch_per_tick": 0},
        {"pool_limits": {"db": 0}},
        {"pool_limits": {"": 1}},
    ],
)
def test_invalid_limits_are_rejected(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        SchedulerLimits(**kwargs)  # type: ignore[arg-type]
