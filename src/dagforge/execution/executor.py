"""
Task execution: the executable contract, task context, and execution backends.

An executable is anything with ``execute(context) -> object``. Backends run a
:class:`ExecutionRequest` and report back through a callback exactly once per
phase: ``STARTED`` when the unit of work begins, ``FINISHED`` with the outcome.
Metadata pushed by the task is only *staged* on the report; the coordinator
publishes it together with the ``SUCCESS`` transition.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

from dagforge.constants import RETURN_VALUE_KEY
from dagforge.domain.models import ErrorClass, JSONValue, MetadataRef, as_json_value, utc_now
from dagforge.persistence.metadata_store import MetadataNotFoundError
from dagforge.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from dagforge.persistence.metadata_store import MetadataView


class TaskExecutionError(RuntimeError):
    """Failure raised from a task's unit of work with an explicit classification."""

    error_class: ErrorClass = ErrorClass.TRANSIENT


class TransientTaskError(TaskExecutionError):
    """Retryable failure."""

    error_class = ErrorClass.TRANSIENT


class PermanentTaskError(TaskExecutionError):
    """Failure that is never retried, whatever attempts remain."""

    error_class = ErrorClass.PERMANENT


def classify_error(exc: BaseException) -> ErrorClass:
    """Unclassified exceptions are treated as transient."""
    if isinstance(exc, TaskExecutionError):
        return exc.error_class
    return ErrorClass.TRANSIENT


@runtime_checkable
class Executable(Protocol):
    def execute(self, context: TaskContext) -> object: ...


class TaskContext:
    """Per-attempt view handed to an executable."""

    __slots__ = (
        "run_id",
        "task_id",
        "attempt",
        "inputs",
        "downstream",
        "log",
        "_readable",
        "_view",
        "_staged",
        "_skip",
        "_cancel_token",
    )

    def __init__(
        self,
        *,
        run_id: str,
        task_id: str,
        attempt: int,
        view: MetadataView,
        inputs: Mapping[str, object] | None = None,
        downstream: Iterable[str] = (),
        readable: Iterable[str] = (),
        cancel_token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        self.run_id = run_id
        self.task_id = task_id
        self.attempt = attempt
        self.inputs: dict[str, object] = dict(inputs or {})
        self.downstream: tuple[str, ...] = tuple(downstream)
        base_logger = logger if logger is not None else structlog.get_logger(__name__)
        self.log = base_logger.bind(run_id=run_id, task_id=task_id, attempt=attempt)
        self._readable = frozenset(readable)
        self._view = view
        self._staged: dict[str, JSONValue] = {}
        self._skip: list[str] = []
        self._cancel_token = cancel_token

    @property
    def cancelled(self) -> bool:
        return self._cancel_token is not None and self._cancel_token.is_cancelled

    @property
    def staged(self) -> dict[str, JSONValue]:
        return dict(self._staged)

    @property
    def skip_requests(self) -> tuple[str, ...]:
        return tuple(self._skip)

    def push(self, key: str, value: object) -> None:
        """Stage ``value`` under ``key``. Visible to others only after success."""
        if not isinstance(key, str) or not key:
            raise PermanentTaskError(f"metadata key must be a non-empty string, got {key!r}")
        try:
            self._staged[key] = as_json_value(value, f"{self.task_id}.{key}")
        except ValueError as exc:
            raise PermanentTaskError(f"metadata value is not JSON-compatible: {exc}") from exc

    def pull(self, task_id: str, key: str = RETURN_VALUE_KEY) -> object:
        """Read a value published by a task that has reached ``SUCCESS``.

        Only upstream tasks and producers named by a declared input are
        readable; anything else is a permanent failure of this task.
        """
        if task_id not in self._readable:
            raise PermanentTaskError(
                f"task '{self.task_id}' cannot read metadata of '{task_id}': "
                "it is neither upstream nor a declared input"
            )
        return self._view.get(task_id, key)

    def skip_downstream(self, task_ids: Iterable[str]) -> None:
        """Mark direct downstream tasks to be skipped once this task succeeds."""
        for task_id in task_ids:
            if task_id not in self.downstream:
                raise PermanentTaskError(
                    f"'{task_id}' is not a direct downstream task of '{self.task_id}'"
                )
            if task_id not in self._skip:
                self._skip.append(task_id)


class ExecutionPhase(StrEnum):
    STARTED = "started"
    FINISHED = "finished"


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    run_id: str
    task_id: str
    attempt: int
    executable: Executable
    view: MetadataView
    input_refs: Mapping[str, MetadataRef] = field(default_factory=dict)
    downstream: tuple[str, ...] = ()
    upstream: tuple[str, ...] = ()
    cancel_token: CancellationToken | None = None


@dataclass(frozen=True, slots=True)
class ExecutionReport:
    """Outcome of one phase of an attempt; ``at`` is when the executor reached it."""

    run_id: str
    task_id: str
    attempt: int
    phase: ExecutionPhase
    success: bool = False
    staged: Mapping[str, JSONValue] = field(default_factory=dict)
    skip_downstream: tuple[str, ...] = ()
    error_message: str | None = None
    error_class: ErrorClass | None = None
    error_type: str | None = None
    duration_seconds: float = 0.0
    at: datetime = field(default_factory=utc_now)


ReportCallback = Callable[[ExecutionReport], None]


def resolve_inputs(request: ExecutionRequest) -> dict[str, object]:
    """Resolve declared inputs through the published-metadata view.

    An input whose producer published nothing under the key resolves to ``None``.
    """
    resolved: dict[str, object] = {}
    for name, ref in request.input_refs.items():
        try:
            resolved[name] = request.view.get(ref.task_id, ref.key)
        except MetadataNotFoundError:
            resolved[name] = None
    return resolved


def readable_tasks(request: ExecutionRequest) -> frozenset[str]:
    """Tasks whose published metadata the attempt may pull."""
    return frozenset(request.upstream) | {ref.task_id for ref in request.input_refs.values()}


def run_request(request: ExecutionRequest, *, logger: Any | None = None) -> ExecutionReport:
    """Run one attempt synchronously and build its ``FINISHED`` report."""
    log = logger if logger is not None else structlog.get_logger(__name__)
    started = time.monotonic()
    context = TaskContext(
        run_id=request.run_id,
        task_id=request.task_id,
        attempt=request.attempt,
        view=request.view,
        inputs=resolve_inputs(request),
        downstream=request.downstream,
        readable=readable_tasks(request),
        cancel_token=request.cancel_token,
        logger=log,
    )
    try:
        value = request.executable.execute(context)
        if value is not None:
            context.push(RETURN_VALUE_KEY, value)
    except Exception as exc:
        error_class = classify_error(exc)
        log.warning(
            "task_execution_failed",
            run_id=request.run_id,
            task_id=request.task_id,
            attempt=request.attempt,
            error_class=error_class.value,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return ExecutionReport(
            run_id=request.run_id,
            task_id=request.task_id,
            attempt=request.attempt,
            phase=ExecutionPhase.FINISHED,
            success=False,
            error_message=str(exc) or type(exc).__name__,
            error_class=error_class,
            error_type=type(exc).__name__,
            duration_seconds=time.monotonic() - started,
        )

    return ExecutionReport(
        run_id=request.run_id,
        task_id=request.task_id,
        attempt=request.attempt,
        phase=ExecutionPhase.FINISHED,
        success=True,
        staged=context.staged,
        skip_downstream=context.skip_requests,
        duration_seconds=time.monotonic() - started,
    )


class ExecutionBackend(Protocol):
    name: str

    def submit(self, request: ExecutionRequest, report: ReportCallback) -> None: ...

    def shutdown(self, *, wait: bool = True) -> None: ...


class InlineBackend:
    """Runs each request on the calling thread. Fully deterministic."""

    name = "inline"

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def submit(self, request: ExecutionRequest, report: ReportCallback) -> None:
        _execute_and_report(request, report, self._logger)

    def shutdown(self, *, wait: bool = True) -> None:
        return None


class ThreadPoolBackend:
    """Runs requests on a ``concurrent.futures`` thread pool."""

    name = "thread"

    def __init__(self, max_workers: int = 4, *, logger: Any | None = None) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        self.max_workers = max_workers
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="dagforge-worker"
        )

    def submit(self, request: ExecutionRequest, report: ReportCallback) -> None:
        self._pool.submit(_execute_and_report, request, report, self._logger)

    def shutdown(self, *, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=not wait)


def create_backend(
    name: str, *, max_workers: int = 4, logger: Any | None = None
) -> ExecutionBackend:
    if name == InlineBackend.name:
        return InlineBackend(logger=logger)
    if name == ThreadPoolBackend.name:
        return ThreadPoolBackend(max_workers, logger=logger)
    raise ValueError(f"unknown execution backend {name!r}; expected 'inline' or 'thread'")


def _execute_and_report(request: ExecutionRequest, report: ReportCallback, logger: Any) -> None:
    report(
        ExecutionReport(
            run_id=request.run_id,
            task_id=request.task_id,
            attempt=request.attempt,
            phase=ExecutionPhase.STARTED,
            at=utc_now(),
        )
    )
    report(run_request(request, logger=logger))


__all__ = [
    "Executable",
    "ExecutionBackend",
    "ExecutionPhase",
    "ExecutionReport",
    "ExecutionRequest",
    "InlineBackend",
    "PermanentTaskError",
    "ReportCallback",
    "TaskContext",
    "TaskExecutionError",
    "ThreadPoolBackend",
    "TransientTaskError",
    "classify_error",
    "create_backend",
    "readable_tasks",
    "resolve_inputs",
    "run_request",
]
