"""Shared deterministic builders for persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Final

from dagforge.domain import ids
from dagforge.domain.models import ErrorClass, Run, RunStatus, TaskState, TaskStatus

_BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)
_BASE_MS: Final[int] = 1_769_947_200_000


def fixed_now(seed: int) -> datetime:
    return _BASE_TS + timedelta(seconds=seed)


def _randbytes(seed: int):
    byte_value = (seed % 251) + 1

    def _provider(size: int) -> bytes:
        return bytes([byte_value]) * size

    return _provider


def make_run_id(seed: int) -> str:
    return ids.generate_run_id(timestamp_ms=_BASE_MS + seed, randbytes=_randbytes(seed))


def make_run(seed: int, *, status: RunStatus = RunStatus.RUNNING) -> Run:
    started = fixed_now(seed)
    return Run(
        id=make_run_id(seed),
        dag_id=f"dag_{seed}",
        status=status,
        started_at=started,
        task_states={
            "extract": TaskState(
                task_id="extract",
                status=TaskStatus.SUCCESS,
                attempt=1,
                queued_at=started,
                started_at=started,
                ended_at=started + timedelta(seconds=1),
            ),
            "load": TaskState(
                task_id="load",
                status=TaskStatus.RETRY_WAIT,
                attempt=1,
                error_message="connection reset",
                error_class=ErrorClass.TRANSIENT,
                retry_due_at=started + timedelta(seconds=5),
            ),
        },
    )


__all__ = ["fixed_now", "make_run", "make_run_id"]
