"""State DB migrations, pragmas, transactions, lock retries and WAL concurrency."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import pytest

from dagforge.constants import STATE_DB_SCHEMA_VERSION
from dagforge.persistence.repositories import SqliteRunRepository
from dagforge.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBError,
    StateDBMigrationError,
)

from . import make_run

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit


def test_migration_idempotence_schema_version_and_pragmas(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "dagforge.sqlite", busy_timeout_ms=4_321)

    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert db.schema_version() == STATE_DB_SCHEMA_VERSION
    [applied] = db.query_all("SELECT version, name FROM schema_versions")
    assert applied == {"version": 1, "name": "initial_run_state_schema"}

    with db.connection() as conn:
        tables = {
            str(row[0])
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
            ).fetchall()
        }
        assert {"schema_versions", "runs", "task_states", "metadata", "events"} <= tables

        pragma_fk = conn.execute("PRAGMA foreign_keys").fetchone()
        pragma_journal = conn.execute("PRAGMA journal_mode").fetchone()
        pragma_busy_timeout = conn.execute("PRAGMA busy_timeout").fetchone()

    assert int(pragma_fk[0]) == 1
    assert str(pragma_journal[0]).lower() == "wal"
    assert int(pragma_busy_timeout[0]) == 4_321


def test_connect_creates_parent_directories(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "deep" / "nested" / "state.sqlite")

    db.migrate()

    assert db.path.exists()
    assert db.query_one("SELECT 1 AS one") == {"one": 1}


def test_newer_schema_is_rejected(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite")
    db.migrate()
    db.execute(
        "INSERT INTO schema_versions (version, name, applied_at) VALUES (?, ?, ?)",
        (99, "future", "2030-01-01T00:00:00Z"),
    )

    with pytest.raises(StateDBMigrationError, match="newer"):
        db.migrate()


def test_transaction_rolls_back_on_error_and_does_not_nest(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite")
    db.migrate()
    db.execute("CREATE TABLE scratch (value INTEGER NOT NULL)")

    with pytest.raises(RuntimeError):
        with db.transaction() as tx:
            db.execute("INSERT INTO scratch (value) VALUES (1)", conn=tx)
            raise RuntimeError("abort")

    with db.transaction() as tx:
        db.execute("INSERT INTO scratch (value) VALUES (2)", conn=tx)
        with pytest.raises(StateDBError, match="do not nest"):
            with db.transaction(conn=tx):
                pass

    rows = db.query_all("SELECT value FROM scratch ORDER BY value")
    assert rows == [{"value": 2}]


def test_statement_errors_are_wrapped(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite")

    with pytest.raises(StateDBError, match="query one failed"):
        db.query_one("SELECT * FROM no_such_table")


@pytest.mark.parametrize(
    "kwargs",
    [{"busy_timeout_ms": -1}, {"busy_retry_limit": -1}, {"busy_retry_backoff_ms": -1}],
)
def test_invalid_busy_settings(tmp_path: Path, kwargs: dict[str, int]) -> None:
    with pytest.raises(ValueError):
        StateDB(tmp_path / "state.sqlite", **kwargs)


def test_locked_database_is_retried_then_reported(tmp_path: Path) -> None:
    db = StateDB(
        tmp_path / "state.sqlite",
        busy_timeout_ms=0,
        busy_retry_limit=2,
        busy_retry_backoff_ms=1,
    )
    SqliteRunRepository(db).save_run(make_run(3_000))
    writer = db.connect()
    writer.execute("BEGIN IMMEDIATE")

    try:
        with pytest.raises(StateDBBusyError, match="locked after 3 attempt"):
            db.execute("UPDATE runs SET dag_id = ?", ("other",))
    finally:
        writer.execute("ROLLBACK")
        writer.close()

    assert db.execute("UPDATE runs SET dag_id = ?", ("other",)) == 1


def test_wal_allows_reader_during_open_writer_transaction(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "dagforge.sqlite")
    run = make_run(2_000)
    SqliteRunRepository(db).save_run(run)

    writer_conn = db.connect()
    reader_conn = db.connect()
    writer_started = threading.Event()
    reader_finished = threading.Event()
    errors: list[str] = []
    reader_count: int | None = None

    def writer() -> None:
        try:
            writer_conn.execute("BEGIN IMMEDIATE")
            writer_conn.execute("UPDATE runs SET status = ? WHERE id = ?", ("failed", run.id))
            writer_started.set()
            if not reader_finished.wait(timeout=2.0):
                errors.append("reader did not finish while writer transaction was open")
            writer_conn.execute("ROLLBACK")
        except Exception as exc:  # noqa: BLE001
            errors.append(f"writer failed: {exc}")

    def reader() -> None:
        nonlocal reader_count
        if not writer_started.wait(timeout=2.0):
            errors.append("writer did not start")
            reader_finished.set()
            return
        try:
            row = reader_conn.execute("SELECT COUNT(*) FROM runs").fetchone()
            reader_count = int(row[0])
        except Exception as exc:  # noqa: BLE001
            errors.append(f"reader failed: {exc}")
        finally:
            reader_finished.set()

    threads = [
        threading.Thread(target=writer, name="state-db-writer", daemon=True),
        threading.Thread(target=reader, name="state-db-reader", daemon=True),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5.0)
    writer_conn.close()
    reader_conn.close()

    assert not errors
    assert reader_count == 1

