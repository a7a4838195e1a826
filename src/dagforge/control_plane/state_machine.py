"""
Per-run task state machine.

Every ``TaskState`` mutation of a run goes through :class:`TaskStateMachine`
under its lock. Legal transitions::

    PENDING    -> QUEUED | UPSTREAM_FAILED | SKIPPED
    QUEUED     -> RUNNING | SKIPPED
    RUNNING    -> SUCCESS | RETRY_WAIT | FAILED | SKIPPED
    RETRY_WAIT -> QUEUED | SKIPPED

Terminal states (``SUCCESS``, ``FAILED``, ``SKIPPED``, ``UPSTREAM_FAILED``)
have no outgoing transitions. Entering ``RUNNING`` increments the attempt.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final

import structlog

from dagforge.domain.events import EventType, event_type_for_transition
from dagforge.domain.models import ErrorClass, TaskState, TaskStatus, utc_now

if TYPE_CHECKING:
    from dagforge.observability.events import EventBus

_S = TaskStatus
LEGAL_TRANSITIONS: Final[Mapping[TaskStatus, frozenset[TaskStatus]]] = {
    _S.PENDING: frozenset({_S.QUEUED, _S.UPSTREAM_FAILED, _S.SKIPPED}),
    _S.QUEUED: frozenset({_S.RUNNING, _S.SKIPPED}),
    _S.RUNNING: frozenset({_S.SUCCESS, _S.RETRY_WAIT, _S.FAILED, _S.SKIPPED}),
    _S.RETRY_WAIT: frozenset({_S.QUEUED, _S.SKIPPED}),
    _S.SUCCESS: frozenset(),
    _S.FAILED: frozenset(),
    _S.SKIPPED: frozenset(),
    _S.UPSTREAM_FAILED: frozenset(),
}


class IllegalTransitionError(RuntimeError):
    """Scheduler invariant violation: a transition outside the legal table."""

    def __init__(self, task_id: str, source: TaskStatus, target: TaskStatus) -> None:
        self.task_id = task_id
        self.source = source
        self.target = target
        super().__init__(
            f"illegal transition for task '{task_id}': {source.value} -> {target.value}"
        )


@dataclass(frozen=True, slots=True)
class TransitionRecord:
    task_id: str
    source: TaskStatus
    target: TaskStatus
    attempt: int
    timestamp: datetime


TransitionListener = Callable[[TaskState, TransitionRecord], None]


def is_legal_transition(source: TaskStatus, target: TaskStatus) -> bool:
    return target in LEGAL_TRANSITIONS[source]


class TaskStateMachine:
    """Lock-guarded owner of the task states of one run."""

    def __init__(
        self,
        run_id: str,
        task_ids: Iterable[str],
        *,
        event_bus: EventBus | None = None,
        listener: TransitionListener | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._run_id = run_id
        self._states: dict[str, TaskState] = {}
        for task_id in task_ids:
            if task_id in self._states:
                raise ValueError(f"duplicate task id: {task_id}")
            self._states[task_id] = TaskState(task_id=task_id)
        self._lock = threading.RLock()
        self._event_bus = event_bus
        self._listener = listener
        self._clock = clock
        self._history: list[TransitionRecord] = []
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def status(self, task_id: str) -> TaskStatus:
        with self._lock:
            return self._require(task_id).status

    def state(self, task_id: str) -> TaskState:
        with self._lock:
            return self._require(task_id).copy()

    def statuses(self) -> dict[str, TaskStatus]:
        with self._lock:
            return {task_id: state.status for task_id, state in self._states.items()}

    def snapshot(self) -> dict[str, TaskState]:
        with self._lock:
            return {task_id: state.copy() for task_id, state in self._states.items()}

    def history(self, task_id: str | None = None) -> tuple[TransitionRecord, ...]:
        with self._lock:
            records = tuple(self._history)
        if task_id is None:
            return records
        return tuple(record for record in records if record.task_id == task_id)

    def all_terminal(self) -> bool:
        with self._lock:
            return all(state.status.is_terminal for state in self._states.values())

    def transition(
        self,
        task_id: str,
        target: TaskStatus,
        *,
        error_message: str | None = None,
        error_class: ErrorClass | None = None,
        retry_due_at: datetime | None = None,
        reason: str | None = None,
        at: datetime | None = None,
    ) -> TaskState:
        """Apply one transition and return a detached copy of the new state.

        ``at`` overrides the machine clock for the recorded timestamps.
        """
        with self._lock:
            state = self._require(task_id)
            source = state.status
            if not is_legal_transition(source, target):
                self._report_violation(task_id, source, target)
                raise IllegalTransitionError(task_id, source, target)

            now = at if at is not None else self._clock()
            if target == TaskStatus.QUEUED:
                state.queued_at = now
                state.retry_due_at = None
            elif target == TaskStatus.RUNNING:
                state.attempt += 1
                state.started_at = now
                state.ended_at = None
            elif target == TaskStatus.RETRY_WAIT:
                state.ended_at = now
                state.retry_due_at = retry_due_at
            else:
                state.ended_at = now
            if target in (TaskStatus.RETRY_WAIT, TaskStatus.FAILED):
                state.error_message = error_message
                state.error_class = error_class
            elif target == TaskStatus.SUCCESS:
                state.error_message = None
                state.error_class = None
            elif error_message is not None:
                state.error_message = error_message
            state.status = target

            record = TransitionRecord(
                task_id=task_id,
                source=source,
                target=target,
                attempt=state.attempt,
                timestamp=now,
            )
            self._history.append(record)
            snapshot = state.copy()

            self._logger.debug(
                "task_transition",
                run_id=self._run_id,
                task_id=task_id,
                source=source.value,
                target=target.value,
                attempt=state.attempt,
                reason=reason,
            )
            if self._event_bus is not None:
                payload: dict[str, object] = {
                    "task_id": task_id,
                    "from": source.value,
                    "to": target.value,
                    "attempt": state.attempt,
                }
                if reason is not None:
                    payload["reason"] = reason
                if error_message is not None:
                    payload["error"] = error_message
                self._event_bus.emit(
                    event_type_for_transition(target), payload, correlation_id=self._run_id
                )
            if self._listener is not None:
                self._listener(snapshot, record)
            return snapshot

    def _require(self, task_id: str) -> TaskState:
        try:
            return self._states[task_id]
        except KeyError:
            raise KeyError(f"unknown task id: {task_id}") from None

    def _report_violation(self, task_id: str, source: TaskStatus, target: TaskStatus) -> None:
        self._logger.error(
            "invariant_violation",
            run_id=self._run_id,
            task_id=task_id,
            source=source.value,
            target=target.value,
        )
        if self._event_bus is not None:
            self._event_bus.emit(
                EventType.INVARIANT_VIOLATION,
                {
                    "task_id": task_id,
                    "from": source.value,
                    "to": target.value,
                    "kind": "illegal_transition",
                },
                correlation_id=self._run_id,
            )


__all__ = [
    "IllegalTransitionError",
    "LEGAL_TRANSITIONS",
    "TaskStateMachine",
    "TransitionListener",
    "TransitionRecord",
    "is_legal_transition",
]
