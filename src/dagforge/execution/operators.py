"""Executable variants: plain callables, polling sensors and branch points."""

from __future__ import annotations

import inspect
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from dagforge.execution.executor import PermanentTaskError, TaskContext, TransientTaskError

_CONTEXT_PARAMETER = "context"


class PythonTask:
    """
    Wrap a callable as an executable.

    Keyword arguments are resolved per call: bound ``op_kwargs`` first, then
    declared inputs by parameter name, then the task context for a parameter
    named ``context``. Callables taking ``**kwargs`` receive every input.
    """

    def __init__(
        self,
        fn: Callable[..., object],
        *,
        op_kwargs: Mapping[str, object] | None = None,
    ) -> None:
        if not callable(fn):
            raise TypeError(f"fn must be callable, got {type(fn).__name__}")
        self.fn = fn
        self.op_kwargs: dict[str, object] = dict(op_kwargs or {})
        self._signature = inspect.signature(fn)

    @property
    def name(self) -> str:
        return getattr(self.fn, "__qualname__", type(self.fn).__name__)

    def execute(self, context: TaskContext) -> object:
        return self.fn(**self.resolve_kwargs(context))

    def resolve_kwargs(self, context: TaskContext) -> dict[str, object]:
        kwargs = dict(self.op_kwargs)
        parameters = self._signature.parameters
        accepts_var_kw = any(
            param.kind is inspect.Parameter.VAR_KEYWORD for param in parameters.values()
        )
        for name, value in context.inputs.items():
            if name in parameters or accepts_var_kw:
                kwargs.setdefault(name, value)
        if _CONTEXT_PARAMETER in parameters:
            kwargs[_CONTEXT_PARAMETER] = context
        return kwargs

    def __repr__(self) -> str:
        return f"PythonTask({self.name})"


class SensorTask:
    """
    Poll ``predicate`` until it returns a truthy value.

    A truthy value other than ``True`` becomes the task's return value.
    Exceeding ``timeout_seconds`` raises :class:`TransientTaskError`, so the
    task's retry policy decides whether polling starts over.
    """

    def __init__(
        self,
        predicate: Callable[..., object],
        *,
        poke_interval_seconds: float = 1.0,
        timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if poke_interval_seconds < 0:
            raise ValueError("poke_interval_seconds must be >= 0")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._call = PythonTask(predicate)
        self.poke_interval_seconds = poke_interval_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def execute(self, context: TaskContext) -> object:
        deadline = self._clock() + self.timeout_seconds
        pokes = 0
        while True:
            pokes += 1
            result = self._call.execute(context)
            if result:
                context.log.debug("sensor_satisfied", pokes=pokes)
                return None if result is True else result
            if context.cancelled:
                raise TransientTaskError("sensor cancelled")
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise TransientTaskError(
                    f"sensor timed out after {self.timeout_seconds}s ({pokes} pokes)"
                )
            time.sleep(min(self.poke_interval_seconds, remaining))

    def __repr__(self) -> str:
        return f"SensorTask({self._call.name})"


class BranchTask:
    """
    Choose which direct downstream tasks to follow.

    The callable returns a task id or an iterable of ids (``None`` follows
    nothing). Every other direct downstream task is skipped. The followed ids
    are returned as the task's value.
    """

    def __init__(
        self,
        fn: Callable[..., str | Iterable[str] | None],
        *,
        op_kwargs: Mapping[str, object] | None = None,
    ) -> None:
        self._call = PythonTask(fn, op_kwargs=op_kwargs)

    def execute(self, context: TaskContext) -> list[str]:
        chosen = self._call.execute(context)
        follow = _as_branch_ids(chosen)
        unknown = [task_id for task_id in follow if task_id not in context.downstream]
        if unknown:
            raise PermanentTaskError(
                f"branch selected tasks that are not direct downstream tasks: {unknown}"
            )
        context.skip_downstream(
            task_id for task_id in context.downstream if task_id not in follow
        )
        return [task_id for task_id in context.downstream if task_id in follow]

    def __repr__(self) -> str:
        return f"BranchTask({self._call.name})"


def _as_branch_ids(value: object) -> set[str]:
    if value is None:
        return set()
    if isinstance(value, str):
        return {value}
    if isinstance(value, Iterable):
        ids: set[str] = set()
        for item in value:
            if not isinstance(item, str):
                raise PermanentTaskError(
                    f"branch callable must return task ids, got {type(item).__name__}"
                )
            ids.add(item)
        return ids
    raise PermanentTaskError(
        f"branch callable must return a task id or iterable of ids, got {type(value).__name__}"
    )


def as_executable(value: Any) -> Any:
    """Accept an executable as-is, or wrap a plain callable in :class:`PythonTask`."""
    if callable(getattr(value, "execute", None)):
        return value
    if callable(value):
        return PythonTask(value)
    raise TypeError(f"expected an executable or callable, got {type(value).__name__}")


__all__ = ["BranchTask", "PythonTask", "SensorTask", "as_executable"]
