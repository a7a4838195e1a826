"""Unit tests for domain model validation and canonical serialization."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from dagforge.domain import ids
from dagforge.domain.models import (
    ErrorClass,
    JoinRule,
    MetadataRef,
    RetryPolicy,
    Run,
    RunStatus,
    TaskSpec,
    TaskState,
    TaskStatus,
    as_json_value,
    canonical_json,
)
from tests.helpers import Noop

pytestmark = pytest.mark.unit

RUN_ID = ids.generate_run_id(timestamp_ms=1_700_000_000_000, randbytes=lambda n: b"\x02" * n)
T0 = datetime(2026, 3, 1, 8, 30, tzinfo=UTC)


def test_status_classification() -> None:
    terminal = {status for status in TaskStatus if status.is_terminal}
    in_flight = {status for status in TaskStatus if status.is_in_flight}

    assert terminal == {
        TaskStatus.SUCCESS,
        TaskStatus.FAILED,
        TaskStatus.SKIPPED,
        TaskStatus.UPSTREAM_FAILED,
    }
    assert in_flight == {TaskStatus.QUEUED, TaskStatus.RUNNING}
    assert not RunStatus.RUNNING.is_terminal
    assert RunStatus.CANCELLED.is_terminal


def test_retry_policy_attempts_and_backoff() -> None:
    policy = RetryPolicy(
        retries=3, delay_seconds=2.0, backoff_multiplier=3.0, max_delay_seconds=10.0
    )

    assert policy.max_attempts == 4
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 6.0, 10.0]
    with pytest.raises(ValueError):
        policy.delay_for(0)


def test_retry_policy_from_dict_defaults_and_validation() -> None:
    assert RetryPolicy.from_dict({}) == RetryPolicy()
    assert RetryPolicy.from_dict({"retries": 2, "max_delay_seconds": 5}).max_delay_seconds == 5.0

    with pytest.raises(ValueError, match="unexpected"):
        RetryPolicy.from_dict({"retry": 1})
    with pytest.raises(ValueError, match="RetryPolicy.retries"):
        RetryPolicy(retries=-1)
    with pytest.raises(ValueError, match="expected integer"):
        RetryPolicy(retries=True)
    with pytest.raises(ValueError, match="backoff_multiplier"):
        RetryPolicy(backoff_multiplier=0.5)


def test_metadata_ref_defaults_to_return_value() -> None:
    assert MetadataRef(task_id="extract").key == "return_value"
    assert MetadataRef(task_id="extract", key="rows").to_dict() == {
        "task_id": "extract",
        "key": "rows",
    }
    with pytest.raises(ValueError):
        MetadataRef(task_id="bad id")


def test_task_spec_normalizes_and_validates() -> None:
    spec = TaskSpec(
        task_id="load",
        executable=Noop(),
        upstream=["extract"],  # type: ignore[arg-type]
        join_rule="all_done",  # type: ignore[arg-type]
        inputs={"rows": MetadataRef(task_id="extract")},
    )

    assert spec.upstream == ("extract",)
    assert spec.join_rule is JoinRule.ALL_DONE
    assert spec.describe()["inputs"] == {"rows": {"task_id": "extract", "key": "return_value"}}
    assert spec.describe()["executable"] == "Noop"


@pytest.mark.parametrize(
    ("kwargs", "fragment"),
    [
        ({"executable": object()}, "must provide execute"),
        ({"upstream": ("a", "a")}, "duplicate"),
        ({"retry": {"retries": 1}}, "RetryPolicy"),
        ({"join_rule": "sometimes"}, "join_rule"),
        ({"priority": 1.5}, "priority"),
        ({"inputs": {"not-an-identifier": MetadataRef(task_id="a")}}, "parameter name"),
        ({"inputs": {"rows": "a"}}, "MetadataRef"),
    ],
)
def test_task_spec_rejects_invalid_fields(kwargs: dict[str, object], fragment: str) -> None:
    arguments: dict[str, object] = {"task_id": "t", "executable": Noop(), **kwargs}

    with pytest.raises(ValueError, match=fragment):
        TaskSpec(**arguments)  # type: ignore[arg-type]


def test_task_state_round_trip_and_copy() -> None:
    state = TaskState(
        task_id="load",
        status=TaskStatus.RETRY_WAIT,
        attempt=2,
        queued_at=T0,
        started_at=T0 + timedelta(seconds=1),
        ended_at=T0 + timedelta(seconds=2),
        error_message="timeout",
        error_class=ErrorClass.TRANSIENT,
        retry_due_at=T0 + timedelta(seconds=30),
    )

    payload = state.to_dict()
    assert payload["status"] == "retry_wait"
    assert payload["error_class"] == "transient"
    assert payload["queued_at"] == "2026-03-01T08:30:00.000000Z"
    assert TaskState.from_dict(payload) == state
    assert TaskState.from_json(state.to_json()) == state

    clone = state.copy()
    clone.attempt = 3
    assert state.attempt == 2


def test_run_validation_and_round_trip() -> None:
    run = Run(
        id=RUN_ID,
        dag_id="etl",
        status=RunStatus.FAILED,
        started_at=T0,
        finished_at=T0 + timedelta(minutes=1),
        task_states={"a": TaskState(task_id="a", status=TaskStatus.FAILED, attempt=1)},
        root_cause_task_id="a",
        root_cause_error="boom",
    )

    restored = Run.from_dict(run.to_dict())

    assert restored == run
    assert restored.statuses() == {"a": TaskStatus.FAILED}


@pytest.mark.parametrize(
    ("kwargs", "fragment"),
    [
        ({"id": "not-a-run"}, "Run.id"),
        ({"finished_at": T0 - timedelta(seconds=1), "started_at": T0}, "finished_at"),
        ({"task_states": {"a": TaskState(task_id="b")}}, "does not match"),
        ({"started_at": datetime(2026, 1, 1)}, "timezone-aware"),
        ({"status": "exploded"}, "Run.status"),
    ],
)
def test_run_rejects_invalid_fields(kwargs: dict[str, object], fragment: str) -> None:
    arguments: dict[str, object] = {"id": RUN_ID, "dag_id": "etl", **kwargs}

    with pytest.raises(ValueError, match=fragment):
        Run(**arguments)  # type: ignore[arg-type]


def test_non_utc_datetimes_are_normalized_on_serialization() -> None:
    plus_two = timezone(timedelta(hours=2))
    state = TaskState(task_id="a", queued_at=datetime(2026, 3, 1, 10, 30, tzinfo=plus_two))

    assert state.to_dict()["queued_at"] == "2026-03-01T08:30:00.000000Z"


def test_json_values_are_validated_and_canonical() -> None:
    assert as_json_value({"b": (1, 2), "a": None}) == {"b": [1, 2], "a": None}
    assert canonical_json({"b": 1, "a": [True]}) == '{"a":[true],"b":1}'

    with pytest.raises(ValueError, match="finite"):
        as_json_value(float("nan"))
    with pytest.raises(ValueError, match="object key must be string"):
        as_json_value({1: "x"})
    with pytest.raises(ValueError, match="not JSON-serializable"):
        as_json_value({"when": T0})
