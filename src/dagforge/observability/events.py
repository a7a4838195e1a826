"""In-process event bus with replay and critical-event persistence hooks."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final

import structlog

from dagforge.domain.events import DagEvent, EventType
from dagforge.domain.ids import generate_event_id
from dagforge.domain.models import as_json_value, utc_now

Subscriber = Callable[[DagEvent], object]
PersistenceCallback = Callable[[DagEvent], object]

_DEFAULT_ERROR_BUFFER: Final[int] = 1024
DEFAULT_CRITICAL_EVENT_TYPES: Final[frozenset[EventType]] = frozenset(
    {
        EventType.RUN_STARTED,
        EventType.RUN_COMPLETED,
        EventType.RUN_FAILED,
        EventType.RUN_CANCELLED,
        EventType.TASK_FAILED,
        EventType.INVARIANT_VIOLATION,
    }
)


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Dispatch/persistence failure captured without interrupting publishers."""

    stage: str
    event_id: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    event_type: EventType | None
    callback: Subscriber


class EventBus:
    """
    Thread-safe event bus with deterministic replay.

    Subscribers run synchronously on the publishing thread, in subscription
    order. A failing subscriber (or persistence callback) never interrupts the
    publisher; its failure is recorded and returned as a :class:`DispatchError`.
    """

    def __init__(
        self,
        *,
        buffer_size: int = 512,
        persistence_callback: PersistenceCallback | None = None,
        critical_event_types: Sequence[str | EventType] | None = None,
        logger: Any | None = None,
    ) -> None:
        if not isinstance(buffer_size, int) or isinstance(buffer_size, bool):
            raise ValueError(f"buffer_size must be an integer, got {type(buffer_size).__name__}")
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")
        if persistence_callback is not None and not callable(persistence_callback):
            raise ValueError("persistence callback must be callable")

        self._buffer = deque[DagEvent](maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()
        self._persist_event = persistence_callback
        self._critical_event_types = (
            DEFAULT_CRITICAL_EVENT_TYPES
            if critical_event_types is None
            else frozenset(_as_event_type(item) for item in critical_event_types)
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def set_persistence_callback(self, callback: PersistenceCallback | None) -> None:
        """Replace persistence callback used for critical events."""
        if callback is not None and not callable(callback):
            raise ValueError("persistence callback must be callable")
        with self._lock:
            self._persist_event = callback

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Subscribe callback to an event type or all events when ``event_type`` is ``None``."""
        if not callable(callback):
            raise ValueError("callback must be callable")

        normalized = None if event_type is None else _as_event_type(event_type)
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(
                token=token, event_type=normalized, callback=callback
            )
        return token

    def unsubscribe(self, token: int) -> bool:
        """Unsubscribe callback token. Returns ``True`` when token existed."""
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def publish(self, event: DagEvent) -> tuple[DispatchError, ...]:
        if not isinstance(event, DagEvent):
            raise ValueError(f"event must be DagEvent, got {type(event).__name__}")
        with self._lock:
            self._buffer.append(event)
            subscriptions = tuple(self._subscriptions.values())
            persistence = self._persist_event

        errors: list[DispatchError] = []
        if event.event_type in self._critical_event_types and persistence is not None:
            error = self._invoke(persistence, event, stage="persistence")
            if error is not None:
                errors.append(error)

        for subscription in subscriptions:
            if subscription.event_type is not None and subscription.event_type != event.event_type:
                continue
            error = self._invoke(subscription.callback, event, stage="subscriber")
            if error is not None:
                errors.append(error)

        if errors:
            with self._lock:
                self._dispatch_errors.extend(errors)
        return tuple(errors)

    def emit(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object],
        *,
        correlation_id: str | None = None,
    ) -> tuple[DagEvent, tuple[DispatchError, ...]]:
        """Create and publish an event."""
        event = DagEvent(
            event_id=generate_event_id(),
            event_type=_as_event_type(event_type),
            timestamp=utc_now(),
            correlation_id=correlation_id,
            payload=_as_json_object(payload),
        )
        return event, self.publish(event)

    def replay(
        self,
        *,
        since: datetime | None = None,
        event_type: str | EventType | None = None,
        correlation_id: str | None = None,
        limit: int | None = None,
    ) -> tuple[DagEvent, ...]:
        """Replay buffered events in publish order."""
        type_filter = None if event_type is None else _as_event_type(event_type)
        with self._lock:
            events = tuple(self._buffer)

        filtered = [
            event
            for event in events
            if (since is None or event.timestamp > since)
            and (type_filter is None or event.event_type == type_filter)
            and (correlation_id is None or event.correlation_id == correlation_id)
        ]
        if limit is not None:
            if limit <= 0:
                return ()
            filtered = filtered[-limit:]
        return tuple(filtered)

    def dispatch_errors(self, *, limit: int | None = None) -> tuple[DispatchError, ...]:
        """Return recorded subscriber/persistence failures."""
        with self._lock:
            errors = tuple(self._dispatch_errors)
        if limit is None:
            return errors
        if limit <= 0:
            return ()
        return errors[-limit:]

    def _invoke(self, callback: Subscriber, event: DagEvent, *, stage: str) -> DispatchError | None:
        try:
            callback(event)
        except Exception as exc:  # noqa: BLE001
            target = _callback_name(callback)
            self._logger.warning(
                "event_dispatch_failed",
                stage=stage,
                target=target,
                event_type=event.event_type.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return DispatchError(
                stage=stage,
                event_id=event.event_id,
                target=target,
                error_type=type(exc).__name__,
                message=str(exc),
            )
        return None


def _as_event_type(value: str | EventType) -> EventType:
    if isinstance(value, EventType):
        return value
    if not isinstance(value, str):
        raise ValueError(f"event_type must be string/EventType, got {type(value).__name__}")
    try:
        return EventType(value.strip())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in EventType)
        raise ValueError(f"invalid event_type {value!r}; allowed: {allowed}") from exc


def _as_json_object(payload: Mapping[str, object]) -> dict[str, Any]:
    parsed = as_json_value(payload, "payload")
    if not isinstance(parsed, dict):
        raise ValueError("payload: expected object")
    return parsed


def _callback_name(callback: object) -> str:
    name = getattr(callback, "__qualname__", None) or getattr(callback, "__name__", None)
    if isinstance(name, str) and name:
        return name
    return callback.__class__.__name__


__all__ = [
    "DEFAULT_CRITICAL_EVENT_TYPES",
    "DispatchError",
    "EventBus",
    "PersistenceCallback",
    "Subscriber",
]
