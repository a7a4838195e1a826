"""
SQLite state DB for run history: schema migrations, WAL connections and
bounded retries when another connection holds the write lock.

Every helper opens and closes its own connection unless one is passed in, so
a single :class:`StateDB` is shared by the scheduler thread and worker threads.
"""

from __future__ import annotations

import json
import sqlite3
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, TypeVar

from dagforge.constants import STATE_DB_SCHEMA_VERSION
from dagforge.domain.models import ErrorClass, RunStatus, TaskStatus

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_T = TypeVar("_T")


def _sql_enum(values: Iterable[str]) -> str:
    return ",".join(f"'{value}'" for value in sorted(values))


_RUN_STATUS_VALUES: Final[str] = _sql_enum(item.value for item in RunStatus)
_TASK_STATUS_VALUES: Final[str] = _sql_enum(item.value for item in TaskStatus)
_ERROR_CLASS_VALUES: Final[str] = _sql_enum(item.value for item in ErrorClass)

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        dag_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_RUN_STATUS_VALUES})),
        started_at TEXT,
        finished_at TEXT,
        root_cause_task_id TEXT,
        root_cause_error TEXT,
        schema_version INTEGER NOT NULL CHECK (schema_version > 0),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS task_states (
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        task_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_TASK_STATUS_VALUES})),
        attempt INTEGER NOT NULL CHECK (attempt >= 0),
        queued_at TEXT,
        started_at TEXT,
        ended_at TEXT,
        error_message TEXT,
        error_class TEXT CHECK (error_class IS NULL OR error_class IN ({_ERROR_CLASS_VALUES})),
        retry_due_at TEXT,
        position INTEGER NOT NULL CHECK (position >= 0),
        updated_at TEXT NOT NULL,
        PRIMARY KEY (run_id, task_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metadata (
        run_id TEXT NOT NULL,
        task_id TEXT NOT NULL,
        key TEXT NOT NULL,
        value_json TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (run_id, task_id, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        event_id TEXT PRIMARY KEY,
        run_id TEXT,
        event_type TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_created ON runs(created_at DESC, id)",
    "CREATE INDEX IF NOT EXISTS idx_task_states_run_position ON task_states(run_id, position)",
    "CREATE INDEX IF NOT EXISTS idx_events_run_timestamp ON events(run_id, timestamp)",
)


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(1, "initial_run_state_schema", _MIGRATION_0001_STATEMENTS),
)

_LOCKED_MESSAGES: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)


class StateDBError(RuntimeError):
    """A state DB statement failed."""


class StateDBBusyError(StateDBError):
    """The write lock stayed taken through every retry."""


class StateDBMigrationError(StateDBError):
    """The on-disk schema cannot be brought to the version this build expects."""


class StateDB:
    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a WAL-mode connection in autocommit mode, creating parent directories."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_mode = str(conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]).lower()
        if journal_mode != "wal":
            conn.close()
            raise StateDBError(f"{self._path}: journal_mode must be WAL, got {journal_mode!r}")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self, *, conn: sqlite3.Connection | None = None
    ) -> Iterator[sqlite3.Connection]:
        """``BEGIN IMMEDIATE`` ... ``COMMIT``, rolled back if the block raises."""
        if conn is None:
            with self.connection() as owned, self.transaction(conn=owned) as tx:
                yield tx
            return
        if conn.in_transaction:
            raise StateDBError("transactions do not nest")

        self._statement(conn, "BEGIN IMMEDIATE", (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._statement(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        self._statement(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Bring the schema up to ``STATE_DB_SCHEMA_VERSION`` and return the version."""
        with self.connection() as conn:
            self._statement(
                conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions"
            )
            current = self.schema_version(conn=conn)
            if current > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"{self._path} has schema version {current}, newer than the "
                    f"{STATE_DB_SCHEMA_VERSION} this dagforge supports; upgrade dagforge"
                )
            for migration in _MIGRATIONS:
                if migration.version <= current or migration.version > STATE_DB_SCHEMA_VERSION:
                    continue
                operation = f"apply migration {migration.version}"
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._statement(tx, statement, (), operation=operation)
                    self._statement(
                        tx,
                        "INSERT INTO schema_versions (version, name, applied_at) VALUES (?, ?, ?)",
                        (migration.version, migration.name, utc_now_iso()),
                        operation=operation,
                    )
            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        value = None if row is None else row["version"]
        if not isinstance(value, int):
            raise StateDBMigrationError(f"{self._path}: schema_versions.version is not an integer")
        return value

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Run one statement, in its own transaction unless ``conn`` is given."""
        if conn is not None:
            return self._statement(conn, sql, params, operation="execute").rowcount
        with self.transaction() as tx:
            return self._statement(tx, sql, params, operation="execute").rowcount

    def executemany(
        self,
        sql: str,
        params_iter: Iterable[SQLParams],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        rows = [tuple(params) for params in params_iter]
        if conn is not None:
            return self._with_busy_retry(
                lambda: conn.executemany(sql, rows).rowcount, operation="execute many"
            )
        with self.transaction() as tx:
            return self._with_busy_retry(
                lambda: tx.executemany(sql, rows).rowcount, operation="execute many"
            )

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        if conn is not None:
            cursor = self._statement(conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]
        with self.connection() as owned:
            return self.query_all(sql, params, conn=owned)

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        if conn is not None:
            row = self._statement(conn, sql, params, operation="query one").fetchone()
            return None if row is None else _row_to_dict(row)
        with self.connection() as owned:
            return self.query_one(sql, params, conn=owned)

    def _statement(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        values = tuple(params)
        return self._with_busy_retry(lambda: conn.execute(sql, values), operation=operation)

    def _with_busy_retry(self, call: Callable[[], _T], *, operation: str) -> _T:
        """Retry ``call`` with exponential backoff while SQLite reports the DB locked."""
        attempt = 0
        while True:
            try:
                return call()
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if not _is_locked(exc):
                    raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc
                if attempt >= self._busy_retry_limit:
                    raise StateDBBusyError(
                        f"{operation} found {self._path} locked after "
                        f"{attempt + 1} attempt(s): {exc}"
                    ) from exc
                time.sleep(self._busy_retry_backoff_ms / 1000.0 * 2**attempt)
                attempt += 1


def _is_locked(exc: sqlite3.Error) -> bool:
    if getattr(exc, "sqlite_errorcode", None) in (sqlite3.SQLITE_BUSY, sqlite3.SQLITE_LOCKED):
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _LOCKED_MESSAGES)


def _row_to_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    return {str(key): row[key] for key in row.keys()}


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Key-sorted compact JSON, so equal payloads are stored byte-identical."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
    "utc_now_iso",
]
