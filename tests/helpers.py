"""Deterministic executables and graph builders shared across the test suite."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from dagforge.domain.models import JoinRule, RetryPolicy, TaskSpec
from dagforge.execution.executor import PermanentTaskError, TaskContext, TransientTaskError
from dagforge.planning.task_graph import TaskGraph, build_graph


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, str, dict[str, object]]] = field(default_factory=list)

    def _record(self, level: str, event: str, **kwargs: object) -> None:
        self.events.append((level, event, dict(kwargs)))

    def debug(self, event: str, **kwargs: object) -> None:
        self._record("debug", event, **kwargs)

    def info(self, event: str, **kwargs: object) -> None:
        self._record("info", event, **kwargs)

    def warning(self, event: str, **kwargs: object) -> None:
        self._record("warning", event, **kwargs)

    def error(self, event: str, **kwargs: object) -> None:
        self._record("error", event, **kwargs)

    def bind(self, **_kwargs: object) -> RecordingLogger:
        return self

    def names(self, level: str | None = None) -> list[str]:
        return [name for lvl, name, _ in self.events if level is None or lvl == level]


class Noop:
    """Executable that does nothing and records how often it ran."""

    def __init__(self) -> None:
        self.calls = 0

    def execute(self, context: TaskContext) -> object:
        self.calls += 1
        return None


class Returns:
    def __init__(self, value: object) -> None:
        self.value = value

    def execute(self, context: TaskContext) -> object:
        return self.value


class Flaky:
    """Fails with a transient error for the first ``failures`` attempts."""

    def __init__(self, failures: int, *, value: object = None) -> None:
        self.failures = failures
        self.value = value
        self.attempts: list[int] = []

    def execute(self, context: TaskContext) -> object:
        self.attempts.append(context.attempt)
        if len(self.attempts) <= self.failures:
            raise TransientTaskError(f"flaky failure #{len(self.attempts)}")
        return self.value


class AlwaysFails:
    def __init__(self, message: str = "boom", *, permanent: bool = False) -> None:
        self.message = message
        self.permanent = permanent
        self.calls = 0

    def execute(self, context: TaskContext) -> object:
        self.calls += 1
        if self.permanent:
            raise PermanentTaskError(self.message)
        raise RuntimeError(self.message)


class Calls:
    """Executable delegating to ``fn(context)``."""

    def __init__(self, fn: Callable[[TaskContext], object]) -> None:
        self.fn = fn

    def execute(self, context: TaskContext) -> object:
        return self.fn(context)


class ConcurrencyTracker:
    """Tracks the peak number of overlapping executions across tasks sharing it."""

    def __init__(self, hold_seconds: float = 0.02) -> None:
        self.hold_seconds = hold_seconds
        self._lock = threading.Lock()
        self._active = 0
        self.peak = 0
        self.order: list[str] = []

    def execute(self, context: TaskContext) -> object:
        with self._lock:
            self._active += 1
            self.peak = max(self.peak, self._active)
            self.order.append(context.task_id)
        try:
            threading.Event().wait(self.hold_seconds)
        finally:
            with self._lock:
                self._active -= 1
        return None


def spec(
    task_id: str,
    executable: object | None = None,
    *,
    upstream: Iterable[str] = (),
    retries: int = 0,
    join_rule: JoinRule | str = JoinRule.ALL_SUCCESS,
    priority: int = 0,
    pool: str | None = None,
    inputs: Mapping[str, object] | None = None,
) -> TaskSpec:
    return TaskSpec(
        task_id=task_id,
        executable=executable if executable is not None else Noop(),  # type: ignore[arg-type]
        upstream=tuple(upstream),
        retry=RetryPolicy(retries=retries),
        join_rule=JoinRule(join_rule),
        priority=priority,
        pool=pool,
        inputs=dict(inputs or {}),  # type: ignore[arg-type]
    )


def graph_from_edges(
    nodes: Iterable[str],
    edges: Iterable[tuple[str, str]] = (),
    *,
    dag_id: str = "test",
    join_rules: Mapping[str, JoinRule] | None = None,
) -> TaskGraph:
    rules = join_rules or {}
    return build_graph(
        [spec(node, join_rule=rules.get(node, JoinRule.ALL_SUCCESS)) for node in nodes],
        edges,
        dag_id=dag_id,
    )


# Plain callables referenced from YAML graph definitions as ``tests.helpers:<name>``.


def extract(limit: int = 3) -> list[int]:
    return list(range(limit))


def double(rows: list[int] | None = None) -> list[int]:
    return [row * 2 for row in rows or []]


def pick_fast_path() -> str:
    return "fast"


def always_ready() -> bool:
    return True


def explode() -> None:
    raise PermanentTaskError("boom")


__all__ = [
    "AlwaysFails",
    "Calls",
    "ConcurrencyTracker",
    "Flaky",
    "Noop",
    "RecordingLogger",
    "Returns",
    "always_ready",
    "double",
    "explode",
    "extract",
    "graph_from_edges",
    "pick_fast_path",
    "spec",
]
