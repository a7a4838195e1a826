"""Repository interfaces for reading and writing runs, task states and events."""

from __future__ import annotations

import json
import threading
from collections.abc import Mapping
from typing import TYPE_CHECKING, Final, Protocol

from dagforge.domain import ids
from dagforge.domain.events import DagEvent, redact_sensitive
from dagforge.domain.models import Run, RunStatus, TaskState
from dagforge.persistence.state_db import RowValue, StateDB, canonical_json, utc_now_iso

if TYPE_CHECKING:
    import sqlite3

_MAX_PAGE_SIZE: Final[int] = 1_000


class RunNotFoundError(LookupError):
    """Raised when a run id is unknown to the repository."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"run_id not found: {run_id}")


class RunRepository(Protocol):
    def save_run(self, run: Run) -> Run: ...

    def load_run(self, run_id: str) -> Run: ...

    def save_task_state(self, run_id: str, state: TaskState) -> None: ...

    def list_runs(self, *, status: RunStatus | None = None, limit: int = 100) -> list[Run]: ...


class InMemoryRunRepository:
    """Process-local repository. Stores detached copies so callers cannot alias."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, Run] = {}

    def save_run(self, run: Run) -> Run:
        snapshot = Run.from_dict(run.to_dict())
        with self._lock:
            self._runs[run.id] = snapshot
        return run

    def load_run(self, run_id: str) -> Run:
        with self._lock:
            stored = self._runs.get(run_id)
        if stored is None:
            raise RunNotFoundError(run_id)
        return Run.from_dict(stored.to_dict())

    def save_task_state(self, run_id: str, state: TaskState) -> None:
        snapshot = TaskState.from_dict(state.to_dict())
        with self._lock:
            stored = self._runs.get(run_id)
            if stored is None:
                raise RunNotFoundError(run_id)
            stored.task_states[state.task_id] = snapshot

    def list_runs(self, *, status: RunStatus | None = None, limit: int = 100) -> list[Run]:
        _validate_limit(limit)
        with self._lock:
            runs = [Run.from_dict(run.to_dict()) for run in self._runs.values()]
        if status is not None:
            runs = [run for run in runs if run.status == status]
        # ULID run ids sort by creation time.
        runs.sort(key=lambda run: run.id, reverse=True)
        return runs[:limit]


class SqliteRunRepository:
    """Repository over the ``runs`` and ``task_states`` tables."""

    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    def save_run(self, run: Run) -> Run:
        payload = run.to_dict()
        now = utc_now_iso()
        with self._db.transaction() as tx:
            self._db.execute(
                """
                INSERT INTO runs (
                    id,
                    dag_id,
                    status,
                    started_at,
                    finished_at,
                    root_cause_task_id,
                    root_cause_error,
                    schema_version,
                    created_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    dag_id=excluded.dag_id,
                    status=excluded.status,
                    started_at=excluded.started_at,
                    finished_at=excluded.finished_at,
                    root_cause_task_id=excluded.root_cause_task_id,
                    root_cause_error=excluded.root_cause_error,
                    schema_version=excluded.schema_version,
                    updated_at=excluded.updated_at
                """,
                (
                    run.id,
                    run.dag_id,
                    run.status.value,
                    _as_sql_text(payload.get("started_at")),
                    _as_sql_text(payload.get("finished_at")),
                    run.root_cause_task_id,
                    run.root_cause_error,
                    run.schema_version,
                    now,
                    now,
                ),
                conn=tx,
            )
            for position, state in enumerate(run.task_states.values()):
                self._upsert_task_state(tx, run.id, state, position=position, updated_at=now)
        return run

    def load_run(self, run_id: str) -> Run:
        ids.validate_run_id(run_id)
        with self._db.connection() as conn:
            row = self._db.query_one("SELECT * FROM runs WHERE id = ?", (run_id,), conn=conn)
            if row is None:
                raise RunNotFoundError(run_id)
            state_rows = self._db.query_all(
                "SELECT * FROM task_states WHERE run_id = ? ORDER BY position, task_id",
                (run_id,),
                conn=conn,
            )
        return _run_from_rows(row, state_rows)

    def save_task_state(self, run_id: str, state: TaskState) -> None:
        with self._db.transaction() as tx:
            exists = self._db.query_one(
                "SELECT 1 AS present FROM runs WHERE id = ?", (run_id,), conn=tx
            )
            if exists is None:
                raise RunNotFoundError(run_id)
            self._upsert_task_state(tx, run_id, state, position=None, updated_at=utc_now_iso())

    def list_runs(self, *, status: RunStatus | None = None, limit: int = 100) -> list[Run]:
        _validate_limit(limit)
        sql = "SELECT * FROM runs"
        params: list[str | int] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(RunStatus(status).value)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._db.connection() as conn:
            rows = self._db.query_all(sql, tuple(params), conn=conn)
            runs: list[Run] = []
            for row in rows:
                state_rows = self._db.query_all(
                    "SELECT * FROM task_states WHERE run_id = ? ORDER BY position, task_id",
                    (str(row["id"]),),
                    conn=conn,
                )
                runs.append(_run_from_rows(row, state_rows))
        return runs

    def _upsert_task_state(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        state: TaskState,
        *,
        position: int | None,
        updated_at: str,
    ) -> None:
        payload = state.to_dict()
        self._db.execute(
            """
            INSERT INTO task_states (
                run_id,
                task_id,
                status,
                attempt,
                queued_at,
                started_at,
                ended_at,
                error_message,
                error_class,
                retry_due_at,
                position,
                updated_at
            ) VALUES (
                ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                COALESCE(?, (SELECT COUNT(*) FROM task_states WHERE run_id = ?)),
                ?
            )
            ON CONFLICT(run_id, task_id) DO UPDATE SET
                status=excluded.status,
                attempt=excluded.attempt,
                queued_at=excluded.queued_at,
                started_at=excluded.started_at,
                ended_at=excluded.ended_at,
                error_message=excluded.error_message,
                error_class=excluded.error_class,
                retry_due_at=excluded.retry_due_at,
                updated_at=excluded.updated_at
            """,
            (
                run_id,
                state.task_id,
                state.status.value,
                state.attempt,
                _as_sql_text(payload.get("queued_at")),
                _as_sql_text(payload.get("started_at")),
                _as_sql_text(payload.get("ended_at")),
                state.error_message,
                None if state.error_class is None else state.error_class.value,
                _as_sql_text(payload.get("retry_due_at")),
                position,
                run_id,
                updated_at,
            ),
            conn=conn,
        )


class SqliteEventRepository:
    """Append-only event log over the ``events`` table."""

    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    def append(self, event: DagEvent) -> None:
        redacted = redact_sensitive(event)
        payload = redacted.to_dict()
        self._db.execute(
            """
            INSERT OR IGNORE INTO events (event_id, run_id, event_type, timestamp, payload_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                redacted.event_id,
                redacted.correlation_id,
                redacted.event_type.value,
                str(payload["timestamp"]),
                canonical_json(redacted.payload),
            ),
        )

    def list_for_run(self, run_id: str) -> list[DagEvent]:
        rows = self._db.query_all(
            """
            SELECT event_id, run_id, event_type, timestamp, payload_json
            FROM events
            WHERE run_id = ?
            ORDER BY timestamp, event_id
            """,
            (run_id,),
        )
        return [
            DagEvent.from_dict(
                {
                    "event_id": row["event_id"],
                    "event_type": row["event_type"],
                    "timestamp": row["timestamp"],
                    "correlation_id": row["run_id"],
                    "payload": _decode_json_object(row["payload_json"]),
                }
            )
            for row in rows
        ]


def _run_from_rows(
    row: Mapping[str, RowValue],
    state_rows: list[dict[str, RowValue]],
) -> Run:
    task_states: dict[str, object] = {}
    for state_row in state_rows:
        task_id = str(state_row["task_id"])
        task_states[task_id] = {
            "task_id": task_id,
            "status": state_row["status"],
            "attempt": state_row["attempt"],
            "queued_at": state_row["queued_at"],
            "started_at": state_row["started_at"],
            "ended_at": state_row["ended_at"],
            "error_message": state_row["error_message"],
            "error_class": state_row["error_class"],
            "retry_due_at": state_row["retry_due_at"],
        }
    return Run.from_dict(
        {
            "id": row["id"],
            "dag_id": row["dag_id"],
            "status": row["status"],
            "started_at": row["started_at"],
            "finished_at": row["finished_at"],
            "root_cause_task_id": row["root_cause_task_id"],
            "root_cause_error": row["root_cause_error"],
            "schema_version": row["schema_version"],
            "task_states": task_states,
        }
    )


def _as_sql_text(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"expected serialized text, got {type(value).__name__}")
    return value


def _decode_json_object(raw: RowValue) -> object:
    if not isinstance(raw, str):
        raise ValueError("events.payload_json must be text")
    return json.loads(raw)


def _validate_limit(limit: int) -> None:
    if limit <= 0 or limit > _MAX_PAGE_SIZE:
        raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")


__all__ = [
    "InMemoryRunRepository",
    "RunNotFoundError",
    "RunRepository",
    "SqliteEventRepository",
    "SqliteRunRepository",
]
