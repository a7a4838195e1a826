"""
Run coordinator: drives one graph execution from ``PENDING`` to a terminal run status.

The coordinator owns a single-threaded tick loop per run:

1. apply executor reports from the report channel (state transitions, metadata
   publication, branch skips),
2. sweep join outcomes in topological order (``UPSTREAM_FAILED``/``SKIPPED``),
3. ask the scheduler for tasks to queue and submit them to the backend,
4. block on the channel until a report arrives, a retry falls due, or the tick
   interval elapses.

Executors only ever talk to the loop through the channel; every state mutation
goes through the run's :class:`TaskStateMachine`.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog

from dagforge.control_plane.retry import RetryController
from dagforge.control_plane.scheduler import Scheduler
from dagforge.control_plane.state_machine import TaskStateMachine, TransitionRecord
from dagforge.domain import ids
from dagforge.domain.events import EventType
from dagforge.domain.models import (
    FAILURE_STATUSES,
    ErrorClass,
    JoinOutcome,
    JoinRule,
    Run,
    RunStatus,
    TaskState,
    TaskStatus,
    utc_now,
)
from dagforge.execution.executor import (
    ExecutionBackend,
    ExecutionPhase,
    ExecutionReport,
    ExecutionRequest,
    InlineBackend,
)
from dagforge.observability.events import EventBus
from dagforge.observability.logging import run_log_context
from dagforge.persistence.metadata_store import (
    InMemoryMetadataStore,
    MetadataStore,
    PublishedMetadataView,
)
from dagforge.persistence.repositories import InMemoryRunRepository, RunRepository
from dagforge.planning.task_graph import TaskGraph
from dagforge.utils.concurrency import CancellationToken, ReportChannel

_DEFAULT_TICK_INTERVAL_SECONDS = 0.05


class SchedulerStalledError(RuntimeError):
    """No task can make progress although the run has non-terminal tasks."""

    def __init__(self, run_id: str, pending: tuple[str, ...]) -> None:
        self.run_id = run_id
        self.pending = pending
        super().__init__(f"run {run_id} stalled with non-terminal tasks: {', '.join(pending)}")


@dataclass(frozen=True, slots=True)
class RootCause:
    task_id: str
    error: str | None


@dataclass(frozen=True, slots=True)
class RunResult:
    """Normalized outcome returned by :meth:`RunCoordinator.run`."""

    run_id: str
    dag_id: str
    status: RunStatus
    task_statuses: Mapping[str, TaskStatus]
    root_cause: RootCause | None
    affected: tuple[str, ...]
    dispatch_batches: tuple[tuple[str, ...], ...]
    attempts: Mapping[str, int]

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def tasks_with_status(self, status: TaskStatus) -> tuple[str, ...]:
        return tuple(task_id for task_id, value in self.task_statuses.items() if value == status)

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "dag_id": self.dag_id,
            "status": self.status.value,
            "task_statuses": {
                task_id: status.value for task_id, status in self.task_statuses.items()
            },
            "root_cause": (
                None
                if self.root_cause is None
                else {"task_id": self.root_cause.task_id, "error": self.root_cause.error}
            ),
            "affected": list(self.affected),
            "dispatch_batches": [list(batch) for batch in self.dispatch_batches],
            "attempts": dict(self.attempts),
        }


class _RunContext:
    """Mutable bookkeeping for one run; touched only by the loop thread."""

    __slots__ = (
        "run",
        "graph",
        "machine",
        "channel",
        "published",
        "view",
        "retry_due",
        "first_failure",
        "affected",
        "dispatch_batches",
    )

    def __init__(
        self,
        *,
        run: Run,
        graph: TaskGraph,
        machine: TaskStateMachine,
        store: MetadataStore,
    ) -> None:
        self.run = run
        self.graph = graph
        self.machine = machine
        self.channel: ReportChannel[ExecutionReport] = ReportChannel()
        self.published: set[str] = set()
        self.view = PublishedMetadataView(store, run.id, self.is_published)
        self.retry_due: dict[str, float] = {}
        self.first_failure: RootCause | None = None
        self.affected: list[str] = []
        self.dispatch_batches: list[tuple[str, ...]] = []

    def is_published(self, task_id: str) -> bool:
        with self.machine.lock:
            return task_id in self.published


class RunCoordinator:
    """
    Execute task graphs.

    One coordinator may run several graphs sequentially. :meth:`cancel` is
    sticky: once cancelled, the active run and any later run end ``cancelled``.
    """

    def __init__(
        self,
        *,
        scheduler: Scheduler | None = None,
        backend: ExecutionBackend | None = None,
        metadata_store: MetadataStore | None = None,
        repository: RunRepository | None = None,
        event_bus: EventBus | None = None,
        retry_controller: RetryController | None = None,
        tick_interval_seconds: float = _DEFAULT_TICK_INTERVAL_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be > 0")
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._scheduler = scheduler if scheduler is not None else Scheduler()
        self._backend = backend if backend is not None else InlineBackend(logger=self._logger)
        self._metadata_store = (
            metadata_store if metadata_store is not None else InMemoryMetadataStore()
        )
        self._repository = repository if repository is not None else InMemoryRunRepository()
        self._event_bus = event_bus if event_bus is not None else EventBus(logger=self._logger)
        self._retry = (
            retry_controller
            if retry_controller is not None
            else RetryController(logger=self._logger)
        )
        self._tick_interval = tick_interval_seconds
        self._monotonic = monotonic
        self._cancel_token = CancellationToken()

    @property
    def metadata_store(self) -> MetadataStore:
        return self._metadata_store

    @property
    def repository(self) -> RunRepository:
        return self._repository

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def cancelled(self) -> bool:
        return self._cancel_token.is_cancelled

    def cancel(self) -> None:
        """Request cooperative cancellation of the active run."""
        self._logger.info("run_cancel_requested")
        self._cancel_token.cancel()

    async def run_async(self, graph: TaskGraph, *, run_id: str | None = None) -> RunResult:
        return await asyncio.to_thread(self.run, graph, run_id=run_id)

    def run(self, graph: TaskGraph, *, run_id: str | None = None) -> RunResult:
        if run_id is None:
            run_id = ids.generate_run_id()
        else:
            ids.validate_run_id(run_id)

        with run_log_context(run_id=run_id, dag_id=graph.dag_id):
            ctx = self._start(graph, run_id)
            try:
                cancelled = self._loop(ctx)
            except Exception as exc:
                self._abort(ctx, exc)
                raise
            return self._finish(ctx, cancelled=cancelled)

    def _start(self, graph: TaskGraph, run_id: str) -> _RunContext:
        run = Run(
            id=run_id,
            dag_id=graph.dag_id,
            status=RunStatus.RUNNING,
            started_at=utc_now(),
            task_states={task_id: TaskState(task_id=task_id) for task_id in graph.task_ids},
        )
        self._repository.save_run(run)

        def persist_transition(state: TaskState, _record: TransitionRecord) -> None:
            run.task_states[state.task_id] = state
            self._repository.save_task_state(run.id, state)

        machine = TaskStateMachine(
            run_id,
            graph.task_ids,
            event_bus=self._event_bus,
            listener=persist_transition,
            logger=self._logger,
        )
        self._logger.info("run_started", task_count=len(graph))
        self._event_bus.emit(
            EventType.RUN_STARTED,
            {"dag_id": graph.dag_id, "task_count": len(graph)},
            correlation_id=run_id,
        )
        return _RunContext(run=run, graph=graph, machine=machine, store=self._metadata_store)

    def _loop(self, ctx: _RunContext) -> bool:
        """Tick until every task is terminal. Returns ``True`` when cancelled."""
        while True:
            if self._cancel_token.is_cancelled:
                self._cancel_all(ctx)
                return True

            for report in ctx.channel.drain():
                self._apply_report(ctx, report)
            self._propagate(ctx)
            if ctx.machine.all_terminal():
                return False

            now = self._monotonic()
            due = tuple(task_id for task_id, due_at in ctx.retry_due.items() if due_at <= now)
            decision = self._scheduler.schedule(
                ctx.graph, ctx.machine.statuses(), retry_due=due
            )
            if decision.selected:
                self._dispatch(ctx, decision.selected)
                continue

            statuses = ctx.machine.statuses()
            in_flight = any(status.is_in_flight for status in statuses.values())
            if not in_flight and not ctx.retry_due and len(ctx.channel) == 0:
                pending = tuple(
                    task_id for task_id, status in statuses.items() if not status.is_terminal
                )
                self._report_stall(ctx, pending)
                raise SchedulerStalledError(ctx.run.id, pending)

            report = ctx.channel.get(timeout=self._wait_timeout(ctx, now))
            if report is not None:
                self._apply_report(ctx, report)

    def _wait_timeout(self, ctx: _RunContext, now: float) -> float:
        """Wait a full tick unless a retry falls due sooner.

        Retries that are already due but held back by the concurrency limits
        are only unblocked by a report, so they do not shorten the wait.
        """
        upcoming = [due_at - now for due_at in ctx.retry_due.values() if due_at > now]
        if not upcoming:
            return self._tick_interval
        return min(self._tick_interval, min(upcoming))

    def _dispatch(self, ctx: _RunContext, selected: tuple[str, ...]) -> None:
        ctx.dispatch_batches.append(selected)
        self._logger.debug("dispatch_batch", task_ids=list(selected))
        for task_id in selected:
            ctx.retry_due.pop(task_id, None)
            state = ctx.machine.transition(task_id, TaskStatus.QUEUED)
            spec = ctx.graph.task(task_id)
            request = ExecutionRequest(
                run_id=ctx.run.id,
                task_id=task_id,
                attempt=state.attempt + 1,
                executable=spec.executable,
                view=ctx.view,
                input_refs=spec.inputs,
                downstream=ctx.graph.children_of(task_id),
                upstream=ctx.graph.upstream_of(task_id, transitive=True),
                cancel_token=self._cancel_token,
            )
            self._backend.submit(request, ctx.channel.put)

    def _apply_report(self, ctx: _RunContext, report: ExecutionReport) -> None:
        if report.run_id != ctx.run.id:
            self._logger.warning("foreign_report_ignored", report_run_id=report.run_id)
            return
        state = ctx.machine.state(report.task_id)
        if state.status.is_terminal:
            self._logger.info(
                "late_report_ignored",
                task_id=report.task_id,
                status=state.status.value,
                phase=report.phase.value,
            )
            return

        if report.phase == ExecutionPhase.STARTED:
            ctx.machine.transition(report.task_id, TaskStatus.RUNNING, at=report.at)
            return

        if report.attempt != state.attempt:
            self._logger.warning(
                "stale_report_ignored",
                task_id=report.task_id,
                report_attempt=report.attempt,
                current_attempt=state.attempt,
            )
            return

        if report.success:
            self._complete(ctx, report)
        else:
            self._fail_attempt(ctx, report, state)

    def _complete(self, ctx: _RunContext, report: ExecutionReport) -> None:
        with ctx.machine.lock:
            if report.staged:
                self._metadata_store.put_many(ctx.run.id, report.task_id, report.staged)
            ctx.machine.transition(report.task_id, TaskStatus.SUCCESS, at=report.at)
            ctx.published.add(report.task_id)
        for child_id in report.skip_downstream:
            if ctx.machine.status(child_id) == TaskStatus.PENDING:
                ctx.machine.transition(
                    child_id, TaskStatus.SKIPPED, reason=f"branch:{report.task_id}"
                )

    def _fail_attempt(self, ctx: _RunContext, report: ExecutionReport, state: TaskState) -> None:
        error_class = report.error_class if report.error_class is not None else ErrorClass.TRANSIENT
        decision = self._retry.decide(
            task_id=report.task_id,
            policy=ctx.graph.task(report.task_id).retry,
            attempt=state.attempt,
            error_class=error_class,
        )
        if decision.should_retry:
            ctx.retry_due[report.task_id] = self._monotonic() + decision.delay_seconds
            ctx.machine.transition(
                report.task_id,
                TaskStatus.RETRY_WAIT,
                error_message=report.error_message,
                error_class=error_class,
                retry_due_at=utc_now() + timedelta(seconds=decision.delay_seconds),
                reason=decision.reason_code,
                at=report.at,
            )
            return

        ctx.machine.transition(
            report.task_id,
            TaskStatus.FAILED,
            error_message=report.error_message,
            error_class=error_class,
            reason=decision.reason_code,
            at=report.at,
        )
        if ctx.first_failure is None:
            ctx.first_failure = RootCause(task_id=report.task_id, error=report.error_message)

    def _propagate(self, ctx: _RunContext) -> None:
        """Resolve unsatisfiable joins in one topological sweep."""
        statuses = ctx.machine.statuses()
        for task_id in ctx.graph.topological_order:
            if statuses[task_id] != TaskStatus.PENDING:
                continue
            outcome = ctx.graph.evaluate_join(task_id, statuses)
            if outcome == JoinOutcome.UPSTREAM_FAILED:
                target = TaskStatus.UPSTREAM_FAILED
            elif outcome == JoinOutcome.SKIP:
                target = TaskStatus.SKIPPED
            else:
                continue
            ctx.machine.transition(task_id, target, reason="join_unsatisfiable")
            statuses[task_id] = target
            ctx.affected.append(task_id)

    def _cancel_all(self, ctx: _RunContext) -> None:
        for task_id, status in ctx.machine.statuses().items():
            if not status.is_terminal:
                ctx.machine.transition(task_id, TaskStatus.SKIPPED, reason="cancelled")
        ctx.retry_due.clear()

    def _finish(self, ctx: _RunContext, *, cancelled: bool) -> RunResult:
        statuses = ctx.machine.statuses()
        root_cause: RootCause | None = None
        if cancelled:
            status = RunStatus.CANCELLED
            event_type = EventType.RUN_CANCELLED
        elif _uncompensated_failures(ctx.graph, statuses):
            status = RunStatus.FAILED
            event_type = EventType.RUN_FAILED
            root_cause = ctx.first_failure
        else:
            status = RunStatus.SUCCESS
            event_type = EventType.RUN_COMPLETED

        run = ctx.run
        run.status = status
        run.finished_at = utc_now()
        run.task_states = ctx.machine.snapshot()
        if root_cause is not None:
            run.root_cause_task_id = root_cause.task_id
            run.root_cause_error = root_cause.error
        self._repository.save_run(run)

        result = RunResult(
            run_id=run.id,
            dag_id=run.dag_id,
            status=status,
            task_statuses=statuses,
            root_cause=root_cause,
            affected=tuple(ctx.affected),
            dispatch_batches=tuple(ctx.dispatch_batches),
            attempts={task_id: state.attempt for task_id, state in run.task_states.items()},
        )
        self._logger.info(
            "run_finished",
            status=status.value,
            root_cause_task_id=None if root_cause is None else root_cause.task_id,
            affected=list(result.affected),
            batches=len(result.dispatch_batches),
        )
        self._event_bus.emit(
            event_type,
            {
                "dag_id": run.dag_id,
                "status": status.value,
                "root_cause_task_id": run.root_cause_task_id,
                "affected": list(result.affected),
            },
            correlation_id=run.id,
        )
        return result

    def _abort(self, ctx: _RunContext, exc: Exception) -> None:
        run = ctx.run
        run.status = RunStatus.FAILED
        run.finished_at = utc_now()
        run.task_states = ctx.machine.snapshot()
        run.root_cause_error = f"{type(exc).__name__}: {exc}"
        self._logger.error("run_aborted", error_type=type(exc).__name__, error=str(exc))
        try:
            self._repository.save_run(run)
        except Exception as save_exc:
            # The original error is re-raised by the caller.
            self._logger.error(
                "run_abort_not_persisted",
                error_type=type(save_exc).__name__,
                error=str(save_exc),
            )
        self._event_bus.emit(
            EventType.RUN_FAILED,
            {"dag_id": run.dag_id, "status": run.status.value, "error": str(exc)},
            correlation_id=run.id,
        )

    def _report_stall(self, ctx: _RunContext, pending: tuple[str, ...]) -> None:
        self._logger.error("invariant_violation", kind="scheduler_stalled", pending=list(pending))
        self._event_bus.emit(
            EventType.INVARIANT_VIOLATION,
            {"kind": "scheduler_stalled", "pending": list(pending)},
            correlation_id=ctx.run.id,
        )


def _uncompensated_failures(
    graph: TaskGraph, statuses: Mapping[str, TaskStatus]
) -> tuple[str, ...]:
    """Failed/upstream-failed tasks without a successful ``one_success`` descendant."""
    uncompensated: list[str] = []
    for task_id in graph.task_ids:
        if statuses[task_id] not in FAILURE_STATUSES:
            continue
        compensated = any(
            statuses[descendant] == TaskStatus.SUCCESS
            and graph.task(descendant).join_rule == JoinRule.ONE_SUCCESS
            for descendant in graph.downstream_of(task_id)
        )
        if not compensated:
            uncompensated.append(task_id)
    return tuple(uncompensated)


__all__ = [
    "RootCause",
    "RunCoordinator",
    "RunResult",
    "SchedulerStalledError",
]
