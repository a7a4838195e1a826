"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import TYPE_CHECKING, NoReturn, TypeVar, cast

from dagforge.constants import RETURN_VALUE_KEY
from dagforge.domain import ids as domain_ids

if TYPE_CHECKING:
    from dagforge.execution.executor import Executable

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_SCHEMA_VERSION = 1
_MAX_TEXT = 8192
_MAX_JSON_DEPTH = 32


class TaskStatus(StrEnum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    RETRY_WAIT = "retry_wait"
    SKIPPED = "skipped"
    UPSTREAM_FAILED = "upstream_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_in_flight(self) -> bool:
        return self in IN_FLIGHT_STATUSES


TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {
        TaskStatus.SUCCESS,
        TaskStatus.FAILED,
        TaskStatus.SKIPPED,
        TaskStatus.UPSTREAM_FAILED,
    }
)
IN_FLIGHT_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.QUEUED, TaskStatus.RUNNING})
FAILURE_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.FAILED, TaskStatus.UPSTREAM_FAILED}
)


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED}


class JoinRule(StrEnum):
    """When a task's upstream set counts as satisfied."""

    ALL_SUCCESS = "all_success"
    ONE_SUCCESS = "one_success"
    NONE_FAILED = "none_failed"
    ALL_DONE = "all_done"
    ONE_FAILED = "one_failed"


class JoinOutcome(StrEnum):
    READY = "ready"
    WAIT = "wait"
    SKIP = "skip"
    UPSTREAM_FAILED = "upstream_failed"


class ErrorClass(StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


@dataclass(frozen=True, slots=True)
class RetryPolicy(CanonicalModel):
    """
    Retry budget for a task.

    ``retries`` counts re-executions after the first try, so a task runs at most
    ``retries + 1`` times. The delay before retry ``n`` (1-based) is
    ``delay_seconds * backoff_multiplier ** (n - 1)`` capped at ``max_delay_seconds``.
    """

    retries: int = 0
    delay_seconds: float = 0.0
    backoff_multiplier: float = 1.0
    max_delay_seconds: float | None = None

    def __post_init__(self) -> None:
        _as_int(self.retries, "RetryPolicy.retries", minimum=0)
        _as_float(self.delay_seconds, "RetryPolicy.delay_seconds", minimum=0.0)
        _as_float(self.backoff_multiplier, "RetryPolicy.backoff_multiplier", minimum=1.0)
        if self.max_delay_seconds is not None:
            _as_float(self.max_delay_seconds, "RetryPolicy.max_delay_seconds", minimum=0.0)

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def delay_for(self, retry_number: int) -> float:
        if retry_number < 1:
            _fail("RetryPolicy.delay_for", "retry_number must be >= 1")
        delay = self.delay_seconds * (self.backoff_multiplier ** (retry_number - 1))
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RetryPolicy:
        parsed = _expect_object(
            data,
            "RetryPolicy",
            required=set(),
            optional={"retries", "delay_seconds", "backoff_multiplier", "max_delay_seconds"},
        )
        max_delay = parsed.get("max_delay_seconds")
        return cls(
            retries=_as_int(parsed.get("retries", 0), "RetryPolicy.retries", minimum=0),
            delay_seconds=_as_float(
                parsed.get("delay_seconds", 0.0), "RetryPolicy.delay_seconds", minimum=0.0
            ),
            backoff_multiplier=_as_float(
                parsed.get("backoff_multiplier", 1.0),
                "RetryPolicy.backoff_multiplier",
                minimum=1.0,
            ),
            max_delay_seconds=(
                None
                if max_delay is None
                else _as_float(max_delay, "RetryPolicy.max_delay_seconds", minimum=0.0)
            ),
        )


@dataclass(frozen=True, slots=True)
class MetadataRef(CanonicalModel):
    """Reference to a value published by another task of the same run."""

    task_id: str
    key: str = RETURN_VALUE_KEY

    def __post_init__(self) -> None:
        domain_ids.validate_task_id(self.task_id)
        _as_str(self.key, "MetadataRef.key", max_len=256)


@dataclass(frozen=True, slots=True)
class TaskSpec:
    """Immutable task definition inside a graph."""

    task_id: str
    executable: Executable
    upstream: tuple[str, ...] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    join_rule: JoinRule = JoinRule.ALL_SUCCESS
    priority: int = 0
    pool: str | None = None
    inputs: Mapping[str, MetadataRef] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self) -> None:
        domain_ids.validate_task_id(self.task_id)
        if not callable(getattr(self.executable, "execute", None)):
            _fail(f"TaskSpec[{self.task_id}].executable", "must provide execute(context)")
        upstream = tuple(self.upstream)
        if len(set(upstream)) != len(upstream):
            _fail(f"TaskSpec[{self.task_id}].upstream", "contains duplicate ids")
        object.__setattr__(self, "upstream", upstream)
        if not isinstance(self.retry, RetryPolicy):
            _fail(f"TaskSpec[{self.task_id}].retry", "must be RetryPolicy")
        object.__setattr__(
            self,
            "join_rule",
            _as_enum(JoinRule, self.join_rule, f"TaskSpec[{self.task_id}].join_rule"),
        )
        _as_int(self.priority, f"TaskSpec[{self.task_id}].priority")
        if self.pool is not None:
            _as_str(self.pool, f"TaskSpec[{self.task_id}].pool", max_len=128)
        inputs: dict[str, MetadataRef] = {}
        for name, ref in self.inputs.items():
            if not isinstance(name, str) or not name.isidentifier():
                _fail(f"TaskSpec[{self.task_id}].inputs", f"invalid parameter name {name!r}")
            if not isinstance(ref, MetadataRef):
                _fail(f"TaskSpec[{self.task_id}].inputs.{name}", "must be MetadataRef")
            inputs[name] = ref
        object.__setattr__(self, "inputs", inputs)

    def describe(self) -> dict[str, JSONValue]:
        return {
            "task_id": self.task_id,
            "executable": type(self.executable).__name__,
            "upstream": list(self.upstream),
            "join_rule": self.join_rule.value,
            "priority": self.priority,
            "pool": self.pool,
            "retry": self.retry.to_dict(),
            "inputs": {name: ref.to_dict() for name, ref in sorted(self.inputs.items())},
        }


@dataclass(slots=True)
class TaskState(CanonicalModel):
    """Mutable per-run task record. Mutated only through the state machine."""

    task_id: str
    status: TaskStatus = TaskStatus.PENDING
    attempt: int = 0
    queued_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error_message: str | None = None
    error_class: ErrorClass | None = None
    retry_due_at: datetime | None = None

    def __post_init__(self) -> None:
        domain_ids.validate_task_id(self.task_id)
        self.status = _as_enum(TaskStatus, self.status, "TaskState.status")
        self.attempt = _as_int(self.attempt, "TaskState.attempt", minimum=0)
        if self.error_class is not None:
            self.error_class = _as_enum(ErrorClass, self.error_class, "TaskState.error_class")

    def copy(self) -> TaskState:
        return TaskState(
            task_id=self.task_id,
            status=self.status,
            attempt=self.attempt,
            queued_at=self.queued_at,
            started_at=self.started_at,
            ended_at=self.ended_at,
            error_message=self.error_message,
            error_class=self.error_class,
            retry_due_at=self.retry_due_at,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TaskState:
        parsed = _expect_object(
            data,
            "TaskState",
            required={"task_id", "status"},
            optional={
                "attempt",
                "queued_at",
                "started_at",
                "ended_at",
                "error_message",
                "error_class",
                "retry_due_at",
            },
        )
        error_class = parsed.get("error_class")
        return cls(
            task_id=_as_str(parsed["task_id"], "TaskState.task_id"),
            status=_as_enum(TaskStatus, parsed["status"], "TaskState.status"),
            attempt=_as_int(parsed.get("attempt", 0), "TaskState.attempt", minimum=0),
            queued_at=_as_optional_datetime(parsed.get("queued_at"), "TaskState.queued_at"),
            started_at=_as_optional_datetime(parsed.get("started_at"), "TaskState.started_at"),
            ended_at=_as_optional_datetime(parsed.get("ended_at"), "TaskState.ended_at"),
            error_message=_as_optional_str(
                parsed.get("error_message"), "TaskState.error_message"
            ),
            error_class=(
                None
                if error_class is None
                else _as_enum(ErrorClass, error_class, "TaskState.error_class")
            ),
            retry_due_at=_as_optional_datetime(
                parsed.get("retry_due_at"), "TaskState.retry_due_at"
            ),
        )


@dataclass(slots=True)
class Run(CanonicalModel):
    """One execution instance of a graph."""

    id: str
    dag_id: str
    status: RunStatus = RunStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    task_states: dict[str, TaskState] = field(default_factory=dict)
    root_cause_task_id: str | None = None
    root_cause_error: str | None = None
    schema_version: int = _SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = _as_int(self.schema_version, "Run.schema_version", minimum=1)
        try:
            domain_ids.validate_run_id(self.id)
        except ValueError as exc:
            _fail("Run.id", str(exc))
        self.dag_id = _as_str(self.dag_id, "Run.dag_id", max_len=256)
        self.status = _as_enum(RunStatus, self.status, "Run.status")
        if self.started_at is not None:
            self.started_at = _as_datetime(self.started_at, "Run.started_at")
        if self.finished_at is not None:
            self.finished_at = _as_datetime(self.finished_at, "Run.finished_at")
            if self.started_at is not None and self.finished_at < self.started_at:
                _fail("Run.finished_at", "must be >= Run.started_at")
        for task_id, state in self.task_states.items():
            if not isinstance(state, TaskState):
                _fail(f"Run.task_states.{task_id}", "must be TaskState")
            if state.task_id != task_id:
                _fail(f"Run.task_states.{task_id}", "key does not match TaskState.task_id")

    def statuses(self) -> dict[str, TaskStatus]:
        return {task_id: state.status for task_id, state in self.task_states.items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Run:
        parsed = _expect_object(
            data,
            "Run",
            required={"id", "dag_id", "status"},
            optional={
                "started_at",
                "finished_at",
                "task_states",
                "root_cause_task_id",
                "root_cause_error",
                "schema_version",
            },
        )
        states_raw = parsed.get("task_states", {})
        if not isinstance(states_raw, Mapping):
            _fail("Run.task_states", "expected object")
        task_states: dict[str, TaskState] = {}
        for task_id, state_raw in states_raw.items():
            state = (
                state_raw
                if isinstance(state_raw, TaskState)
                else TaskState.from_dict(
                    _expect_object_any(state_raw, f"Run.task_states.{task_id}")
                )
            )
            task_states[str(task_id)] = state

        return cls(
            id=_as_str(parsed["id"], "Run.id"),
            dag_id=_as_str(parsed["dag_id"], "Run.dag_id"),
            status=_as_enum(RunStatus, parsed["status"], "Run.status"),
            started_at=_as_optional_datetime(parsed.get("started_at"), "Run.started_at"),
            finished_at=_as_optional_datetime(parsed.get("finished_at"), "Run.finished_at"),
            task_states=task_states,
            root_cause_task_id=_as_optional_str(
                parsed.get("root_cause_task_id"), "Run.root_cause_task_id"
            ),
            root_cause_error=_as_optional_str(
                parsed.get("root_cause_error"), "Run.root_cause_error"
            ),
            schema_version=_as_int(
                parsed.get("schema_version", _SCHEMA_VERSION), "Run.schema_version", minimum=1
            ),
        )


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_json_value(value: object, path: str = "value") -> JSONValue:
    """Validate that ``value`` is JSON-compatible and return its canonical form."""
    return _as_json_value(value, path)


def canonical_json(value: object) -> str:
    return _canonical_json(_as_json_value(value, "value"))


# ------------------------
# Validation helpers
# ------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    parsed = _expect_object_any(value, path)

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _expect_object_any(value: object, path: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item
    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return _as_datetime(value, path)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")

    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed

    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "FAILURE_STATUSES",
    "IN_FLIGHT_STATUSES",
    "TERMINAL_STATUSES",
    "CanonicalModel",
    "ErrorClass",
    "JSONScalar",
    "JSONValue",
    "JoinOutcome",
    "JoinRule",
    "MetadataRef",
    "RetryPolicy",
    "Run",
    "RunStatus",
    "TaskSpec",
    "TaskState",
    "TaskStatus",
    "as_json_value",
    "canonical_json",
    "utc_now",
]
