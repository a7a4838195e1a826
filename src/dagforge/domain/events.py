"""Domain event definitions, serialization, and payload redaction helpers."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from dagforge.domain import ids
from dagforge.domain.models import JSONValue, TaskStatus, as_json_value

_SENSITIVE_KEY_TERMS = ("secret", "password", "token", "credential")
_REDACTED_VALUE = "***REDACTED***"


class EventType(StrEnum):
    """Lifecycle events emitted by the scheduler core."""

    RUN_STARTED = "RunStarted"
    RUN_COMPLETED = "RunCompleted"
    RUN_FAILED = "RunFailed"
    RUN_CANCELLED = "RunCancelled"

    TASK_QUEUED = "TaskQueued"
    TASK_RUNNING = "TaskRunning"
    TASK_SUCCEEDED = "TaskSucceeded"
    TASK_RETRY_SCHEDULED = "TaskRetryScheduled"
    TASK_FAILED = "TaskFailed"
    TASK_SKIPPED = "TaskSkipped"
    TASK_UPSTREAM_FAILED = "TaskUpstreamFailed"

    INVARIANT_VIOLATION = "InvariantViolation"


_TRANSITION_EVENT_TYPES: dict[TaskStatus, EventType] = {
    TaskStatus.QUEUED: EventType.TASK_QUEUED,
    TaskStatus.RUNNING: EventType.TASK_RUNNING,
    TaskStatus.SUCCESS: EventType.TASK_SUCCEEDED,
    TaskStatus.RETRY_WAIT: EventType.TASK_RETRY_SCHEDULED,
    TaskStatus.FAILED: EventType.TASK_FAILED,
    TaskStatus.SKIPPED: EventType.TASK_SKIPPED,
    TaskStatus.UPSTREAM_FAILED: EventType.TASK_UPSTREAM_FAILED,
}

RUN_TERMINAL_EVENT_TYPES: frozenset[EventType] = frozenset(
    {EventType.RUN_COMPLETED, EventType.RUN_FAILED, EventType.RUN_CANCELLED}
)


def event_type_for_transition(target: TaskStatus) -> EventType:
    """Map the target status of a task transition to its event type."""
    try:
        return _TRANSITION_EVENT_TYPES[target]
    except KeyError as exc:
        raise ValueError(f"no event type for transition into {target.value!r}") from exc


@dataclass(slots=True)
class DagEvent:
    """Serializable event envelope. ``correlation_id`` carries the run id."""

    event_id: str
    event_type: EventType
    timestamp: datetime
    correlation_id: str | None
    payload: dict[str, JSONValue]

    def __post_init__(self) -> None:
        ids.validate_event_id(self.event_id)
        self.event_type = _as_event_type(self.event_type, "DagEvent.event_type")
        self.timestamp = _as_utc_datetime(self.timestamp, "DagEvent.timestamp")
        self.correlation_id = _as_optional_str(self.correlation_id, "DagEvent.correlation_id")
        self.payload = _as_json_object(self.payload, "DagEvent.payload")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": _datetime_to_iso8601z(self.timestamp),
            "correlation_id": self.correlation_id,
            "payload": _as_json_object(self.payload, "DagEvent.payload"),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> DagEvent:
        if not isinstance(data, Mapping):
            raise ValueError(f"DagEvent: expected object, got {type(data).__name__}")
        required = {"event_id", "event_type", "timestamp", "payload"}
        unknown = sorted(key for key in data if key not in required | {"correlation_id"})
        if unknown:
            raise ValueError(f"DagEvent: unexpected fields: {unknown}")
        missing = sorted(key for key in required if key not in data)
        if missing:
            raise ValueError(f"DagEvent: missing required fields: {missing}")
        return cls(
            event_id=_as_str(data["event_id"], "DagEvent.event_id", max_len=128),
            event_type=_as_event_type(data["event_type"], "DagEvent.event_type"),
            timestamp=_as_utc_datetime(data["timestamp"], "DagEvent.timestamp"),
            correlation_id=_as_optional_str(data.get("correlation_id"), "DagEvent.correlation_id"),
            payload=_as_json_object(data["payload"], "DagEvent.payload"),
        )

    @classmethod
    def from_json(cls, raw: str) -> DagEvent:
        if not isinstance(raw, str):
            raise ValueError(f"DagEvent: expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"DagEvent: invalid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValueError("DagEvent: JSON root must be an object")
        return cls.from_dict(parsed)


def redact_sensitive(event: DagEvent) -> DagEvent:
    """Return a new event with sensitive payload keys deeply redacted."""
    redacted_payload = _redact_value(event.payload, key_context=None)
    if not isinstance(redacted_payload, dict):
        raise ValueError("redacted payload must remain a JSON object")
    return DagEvent(
        event_id=event.event_id,
        event_type=event.event_type,
        timestamp=event.timestamp,
        correlation_id=event.correlation_id,
        payload=redacted_payload,
    )


def _as_str(value: object, path: str, *, max_len: int = 4096) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    parsed = value.strip()
    if not parsed:
        raise ValueError(f"{path}: must not be empty")
    if len(parsed) > max_len:
        raise ValueError(f"{path}: must be <= {max_len} characters")
    return parsed


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=256)


def _as_event_type(value: object, path: str) -> EventType:
    if isinstance(value, EventType):
        return value
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string event type, got {type(value).__name__}")
    try:
        return EventType(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in EventType)
        raise ValueError(f"{path}: unsupported event type {value!r}; allowed: {allowed}") from exc


def _as_utc_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise ValueError(f"{path}: invalid ISO-8601 datetime: {value!r}") from exc
    else:
        raise ValueError(
            f"{path}: expected datetime or ISO-8601 string, got {type(value).__name__}"
        )

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise ValueError(f"{path}: datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_utc_datetime(value, "DagEvent.timestamp")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = as_json_value(value, path)
    if not isinstance(parsed, dict):
        raise ValueError(f"{path}: expected object")
    return parsed


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _redact_value(value: JSONValue, key_context: str | None) -> JSONValue:
    if key_context is not None and _is_sensitive_key(key_context):
        return _REDACTED_VALUE

    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]

    if isinstance(value, dict):
        redacted: dict[str, JSONValue] = {}
        for key, item in value.items():
            redacted[key] = _redact_value(item, key_context=key)
        return redacted

    return value


__all__ = [
    "RUN_TERMINAL_EVENT_TYPES",
    "DagEvent",
    "EventType",
    "event_type_for_transition",
    "redact_sensitive",
]
