"""
Unit tests for the observability event bus.

Covers subscriber fan-out order, exception isolation, ring-buffer replay and
the critical-event persistence hook.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

import dagforge.observability as observability_pkg
from dagforge.domain.events import DagEvent, EventType
from dagforge.observability.events import DEFAULT_CRITICAL_EVENT_TYPES, EventBus
from tests.helpers import RecordingLogger

pytestmark = pytest.mark.unit


def test_subscribers_receive_events_in_publish_order() -> None:
    bus = EventBus(buffer_size=10)
    sub_a: list[str] = []
    sub_b: list[str] = []

    bus.subscribe(None, lambda event: sub_a.append(event.event_type.value))
    bus.subscribe(None, lambda event: sub_b.append(event.event_type.value))

    _, errors_1 = bus.emit("RunStarted", {"x": 1})
    _, errors_2 = bus.emit(EventType.RUN_COMPLETED, {"x": 2})

    assert errors_1 == ()
    assert errors_2 == ()
    assert sub_a == ["RunStarted", "RunCompleted"]
    assert sub_b == ["RunStarted", "RunCompleted"]


def test_typed_subscription_and_unsubscribe() -> None:
    bus = EventBus()
    failures: list[DagEvent] = []

    token = bus.subscribe(EventType.TASK_FAILED, failures.append)
    bus.emit(EventType.TASK_QUEUED, {"task_id": "a"})
    bus.emit(EventType.TASK_FAILED, {"task_id": "a"})

    assert [event.payload["task_id"] for event in failures] == ["a"]
    assert bus.unsubscribe(token)
    assert not bus.unsubscribe(token)
    bus.emit(EventType.TASK_FAILED, {"task_id": "b"})
    assert len(failures) == 1


def test_failing_subscriber_is_isolated_and_recorded() -> None:
    logger = RecordingLogger()
    bus = EventBus(logger=logger)
    received: list[str] = []

    def explode(_event: DagEvent) -> None:
        raise RuntimeError("subscriber down")

    bus.subscribe(None, explode)
    bus.subscribe(None, lambda event: received.append(event.event_type.value))

    _, errors = bus.emit(EventType.RUN_STARTED, {})

    assert received == ["RunStarted"]
    assert len(errors) == 1
    assert errors[0].stage == "subscriber"
    assert errors[0].error_type == "RuntimeError"
    assert errors[0].target.endswith("explode")
    assert bus.dispatch_errors() == errors
    assert logger.names("warning") == ["event_dispatch_failed"]


def test_replay_is_bounded_ordered_and_filterable() -> None:
    bus = EventBus(buffer_size=3)
    first, _ = bus.emit(EventType.TASK_QUEUED, {"n": 1}, correlation_id="run-1")
    bus.emit(EventType.TASK_RUNNING, {"n": 2}, correlation_id="run-1")
    bus.emit(EventType.TASK_QUEUED, {"n": 3}, correlation_id="run-2")
    bus.emit(EventType.TASK_QUEUED, {"n": 4}, correlation_id="run-1")

    assert [event.payload["n"] for event in bus.replay()] == [2, 3, 4]
    assert [event.payload["n"] for event in bus.replay(correlation_id="run-1")] == [2, 4]
    assert [event.payload["n"] for event in bus.replay(event_type="TaskQueued")] == [3, 4]
    assert [event.payload["n"] for event in bus.replay(limit=1)] == [4]
    assert bus.replay(limit=0) == ()
    assert len(bus.replay(since=first.timestamp - timedelta(seconds=1))) == 3


def test_only_critical_events_are_persisted() -> None:
    persisted: list[str] = []
    bus = EventBus(persistence_callback=lambda event: persisted.append(event.event_type.value))

    for event_type in (
        EventType.RUN_STARTED,
        EventType.TASK_QUEUED,
        EventType.TASK_FAILED,
        EventType.TASK_SUCCEEDED,
        EventType.RUN_FAILED,
    ):
        bus.emit(event_type, {})

    assert persisted == ["RunStarted", "TaskFailed", "RunFailed"]
    assert EventType.INVARIANT_VIOLATION in DEFAULT_CRITICAL_EVENT_TYPES


def test_custom_critical_types_and_persistence_failures() -> None:
    bus = EventBus(critical_event_types=["TaskSucceeded"], logger=RecordingLogger())
    persisted: list[DagEvent] = []
    bus.set_persistence_callback(persisted.append)

    bus.emit(EventType.RUN_STARTED, {})
    bus.emit(EventType.TASK_SUCCEEDED, {})
    assert [event.event_type for event in persisted] == [EventType.TASK_SUCCEEDED]

    def broken(_event: DagEvent) -> None:
        raise OSError("disk full")

    bus.set_persistence_callback(broken)
    event, errors = bus.emit(EventType.TASK_SUCCEEDED, {})

    assert [error.stage for error in errors] == ["persistence"]
    assert errors[0].event_id == event.event_id
    assert bus.replay()[-1] == event


@pytest.mark.parametrize(
    "kwargs",
    [
        {"buffer_size": 0},
        {"buffer_size": True},
        {"persistence_callback": "not callable"},
        {"critical_event_types": ["NoSuchEvent"]},
    ],
)
def test_invalid_construction_is_rejected(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        EventBus(**kwargs)  # type: ignore[arg-type]


def test_invalid_emit_arguments() -> None:
    bus = EventBus()

    with pytest.raises(ValueError, match="invalid event_type"):
        bus.emit("Exploded", {})
    with pytest.raises(ValueError):
        bus.emit(EventType.RUN_STARTED, {"bad": object()})
    with pytest.raises(ValueError):
        bus.subscribe(None, "not callable")  # type: ignore[arg-type]


def test_package_exports_bus() -> None:
    assert observability_pkg.EventBus is EventBus
