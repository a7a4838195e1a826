"""Deterministic scheduler selecting runnable tasks for one dispatch tick."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from dagforge.domain.models import IN_FLIGHT_STATUSES, JoinOutcome, TaskStatus
from dagforge.planning.task_graph import TaskGraph


@dataclass(frozen=True, slots=True)
class SchedulerLimits:
    """Concurrency budget: global in-flight cap, per-tick cap, per-pool caps."""

    max_active_tasks: int = 16
    max_dispatch_per_tick: int = 16
    pool_limits: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_active_tasks <= 0:
            raise ValueError("max_active_tasks must be > 0")
        if self.max_dispatch_per_tick <= 0:
            raise ValueError("max_dispatch_per_tick must be > 0")
        for pool, limit in self.pool_limits.items():
            if not isinstance(pool, str) or not pool:
                raise ValueError(f"pool_limits keys must be non-empty strings, got {pool!r}")
            if limit <= 0:
                raise ValueError(f"pool_limits[{pool}] must be > 0")


@dataclass(frozen=True, slots=True)
class ScheduleDecision:
    """Scheduler output for one tick.

    ``runnable`` holds every candidate in dispatch order, ``selected`` the
    prefix-respecting subset that fits the budget and ``blocked_by_limits``
    the remainder.
    """

    selected: tuple[str, ...]
    runnable: tuple[str, ...]
    blocked_by_limits: tuple[str, ...]

    @property
    def idle(self) -> bool:
        return not self.runnable


@dataclass(frozen=True, slots=True)
class _Candidate:
    task_id: str
    priority: int
    declaration_index: int
    pool: str | None


class Scheduler:
    """Priority-first scheduler honoring global and per-pool concurrency limits."""

    __slots__ = ("_limits",)

    def __init__(self, *, limits: SchedulerLimits | None = None) -> None:
        self._limits = limits if limits is not None else SchedulerLimits()

    @property
    def limits(self) -> SchedulerLimits:
        return self._limits

    def schedule(
        self,
        graph: TaskGraph,
        statuses: Mapping[str, TaskStatus | str],
        *,
        retry_due: Iterable[str] = (),
    ) -> ScheduleDecision:
        """
        Select tasks to queue this tick.

        Candidates are ``PENDING`` tasks whose join evaluates ``READY`` plus the
        ``RETRY_WAIT`` tasks listed in ``retry_due`` (their delay has elapsed).
        ``RETRY_WAIT`` tasks hold no slot.
        """
        resolved = _resolve_statuses(graph, statuses)
        due = set(retry_due)
        in_flight_by_pool, total_in_flight = _in_flight_counts(graph, resolved)

        candidates: list[_Candidate] = []
        for task_id in graph.task_ids:
            status = resolved[task_id]
            if status == TaskStatus.PENDING:
                if graph.evaluate_join(task_id, resolved) != JoinOutcome.READY:
                    continue
            elif status == TaskStatus.RETRY_WAIT:
                if task_id not in due:
                    continue
            else:
                continue
            spec = graph.task(task_id)
            candidates.append(
                _Candidate(
                    task_id=task_id,
                    priority=spec.priority,
                    declaration_index=graph.declaration_index(task_id),
                    pool=spec.pool,
                )
            )

        ordered = sorted(candidates, key=_candidate_sort_key)
        runnable = tuple(candidate.task_id for candidate in ordered)

        dispatch_capacity = min(
            self._limits.max_dispatch_per_tick,
            max(0, self._limits.max_active_tasks - total_in_flight),
        )
        selected: list[str] = []
        blocked_by_limits: list[str] = []
        pool_counts = defaultdict(int, in_flight_by_pool)

        for candidate in ordered:
            if len(selected) >= dispatch_capacity:
                blocked_by_limits.append(candidate.task_id)
                continue
            if candidate.pool is not None:
                pool_limit = self._limits.pool_limits.get(
                    candidate.pool, self._limits.max_active_tasks
                )
                if pool_counts[candidate.pool] >= pool_limit:
                    blocked_by_limits.append(candidate.task_id)
                    continue
                pool_counts[candidate.pool] += 1
            selected.append(candidate.task_id)

        return ScheduleDecision(
            selected=tuple(selected),
            runnable=runnable,
            blocked_by_limits=tuple(blocked_by_limits),
        )


def _candidate_sort_key(candidate: _Candidate) -> tuple[int, int]:
    return (-candidate.priority, candidate.declaration_index)


def _resolve_statuses(
    graph: TaskGraph,
    statuses: Mapping[str, TaskStatus | str],
) -> dict[str, TaskStatus]:
    resolved = dict.fromkeys(graph.task_ids, TaskStatus.PENDING)
    for task_id, value in statuses.items():
        if task_id not in resolved:
            raise ValueError(f"statuses contains unknown task_id: {task_id}")
        resolved[task_id] = _coerce_task_status(value, path=f"statuses[{task_id!r}]")
    return resolved


def _in_flight_counts(
    graph: TaskGraph,
    statuses: Mapping[str, TaskStatus],
) -> tuple[dict[str, int], int]:
    per_pool: dict[str, int] = defaultdict(int)
    total_in_flight = 0
    for task_id, status in statuses.items():
        if status not in IN_FLIGHT_STATUSES:
            continue
        total_in_flight += 1
        pool = graph.task(task_id).pool
        if pool is not None:
            per_pool[pool] += 1
    return per_pool, total_in_flight


def _coerce_task_status(value: TaskStatus | str, *, path: str) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    if isinstance(value, str):
        try:
            return TaskStatus(value)
        except ValueError as exc:
            allowed = ", ".join(sorted(status.value for status in TaskStatus))
            raise ValueError(f"{path} must be one of: {allowed}") from exc
    raise ValueError(f"{path} must be TaskStatus or str, got {type(value).__name__}")


__all__ = [
    "ScheduleDecision",
    "Scheduler",
    "SchedulerLimits",
]
