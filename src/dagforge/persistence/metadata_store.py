"""
Run-scoped key/value exchange between tasks (XCom equivalent).

Entries are addressed by ``(run_id, task_id, key)``; a later ``put`` silently
overwrites. Values must be JSON-compatible. Stores never share entries across
runs: every read and write names its run explicitly.
"""

from __future__ import annotations

import copy
import json
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol

from dagforge.domain.models import JSONValue, as_json_value
from dagforge.persistence.state_db import StateDB, canonical_json, utc_now_iso


class MetadataNotFoundError(LookupError):
    """Raised when no value is visible for ``(run_id, task_id, key)``."""

    def __init__(self, run_id: str, task_id: str, key: str, *, reason: str = "not found") -> None:
        self.run_id = run_id
        self.task_id = task_id
        self.key = key
        super().__init__(f"metadata {task_id}.{key} in run {run_id}: {reason}")


@dataclass(frozen=True, slots=True)
class MetadataEntry:
    run_id: str
    task_id: str
    key: str
    value: JSONValue


class MetadataStore(Protocol):
    def put(self, run_id: str, task_id: str, key: str, value: object) -> None: ...

    def get(self, run_id: str, task_id: str, key: str) -> JSONValue: ...

    def put_many(self, run_id: str, task_id: str, values: Mapping[str, object]) -> None: ...

    def entries(self, run_id: str) -> list[MetadataEntry]: ...

    def purge(self, run_id: str) -> int: ...


class MetadataView(Protocol):
    """Read-only view bound to one run, as seen by a running task."""

    def get(self, task_id: str, key: str) -> JSONValue: ...


class InMemoryMetadataStore:
    """Thread-safe dictionary-backed store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[tuple[str, str, str], JSONValue] = {}

    def put(self, run_id: str, task_id: str, key: str, value: object) -> None:
        self.put_many(run_id, task_id, {key: value})

    def put_many(self, run_id: str, task_id: str, values: Mapping[str, object]) -> None:
        validated = _validate_values(task_id, values)
        with self._lock:
            for key, value in validated.items():
                self._values[(run_id, task_id, key)] = value

    def get(self, run_id: str, task_id: str, key: str) -> JSONValue:
        with self._lock:
            try:
                value = self._values[(run_id, task_id, key)]
            except KeyError:
                raise MetadataNotFoundError(run_id, task_id, key) from None
        return copy.deepcopy(value)

    def entries(self, run_id: str) -> list[MetadataEntry]:
        with self._lock:
            items = [
                MetadataEntry(run_id=run, task_id=task, key=key, value=copy.deepcopy(value))
                for (run, task, key), value in self._values.items()
                if run == run_id
            ]
        return sorted(items, key=lambda entry: (entry.task_id, entry.key))

    def purge(self, run_id: str) -> int:
        with self._lock:
            doomed = [address for address in self._values if address[0] == run_id]
            for address in doomed:
                del self._values[address]
        return len(doomed)


class SqliteMetadataStore:
    """Store backed by the ``metadata`` table of a :class:`StateDB`."""

    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    def put(self, run_id: str, task_id: str, key: str, value: object) -> None:
        self.put_many(run_id, task_id, {key: value})

    def put_many(self, run_id: str, task_id: str, values: Mapping[str, object]) -> None:
        validated = _validate_values(task_id, values)
        if not validated:
            return
        updated_at = utc_now_iso()
        self._db.executemany(
            """
            INSERT INTO metadata (run_id, task_id, key, value_json, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(run_id, task_id, key) DO UPDATE SET
                value_json=excluded.value_json,
                updated_at=excluded.updated_at
            """,
            [
                (run_id, task_id, key, canonical_json(value), updated_at)
                for key, value in validated.items()
            ],
        )

    def get(self, run_id: str, task_id: str, key: str) -> JSONValue:
        row = self._db.query_one(
            "SELECT value_json FROM metadata WHERE run_id = ? AND task_id = ? AND key = ?",
            (run_id, task_id, key),
        )
        if row is None:
            raise MetadataNotFoundError(run_id, task_id, key)
        return _decode(row["value_json"])

    def entries(self, run_id: str) -> list[MetadataEntry]:
        rows = self._db.query_all(
            """
            SELECT task_id, key, value_json FROM metadata
            WHERE run_id = ?
            ORDER BY task_id, key
            """,
            (run_id,),
        )
        return [
            MetadataEntry(
                run_id=run_id,
                task_id=str(row["task_id"]),
                key=str(row["key"]),
                value=_decode(row["value_json"]),
            )
            for row in rows
        ]

    def purge(self, run_id: str) -> int:
        return self._db.execute("DELETE FROM metadata WHERE run_id = ?", (run_id,))


class PublishedMetadataView:
    """
    Run-scoped view that only exposes values of tasks observed as ``SUCCESS``.

    ``is_published`` is supplied by the coordinator and reports whether the
    producer's ``SUCCESS`` transition (and hence its metadata publication) has
    been applied.
    """

    def __init__(
        self,
        store: MetadataStore,
        run_id: str,
        is_published: Callable[[str], bool],
    ) -> None:
        self._store = store
        self._run_id = run_id
        self._is_published = is_published

    @property
    def run_id(self) -> str:
        return self._run_id

    def get(self, task_id: str, key: str) -> JSONValue:
        if not self._is_published(task_id):
            raise MetadataNotFoundError(
                self._run_id, task_id, key, reason="producer has not succeeded"
            )
        return self._store.get(self._run_id, task_id, key)


def _validate_values(task_id: str, values: Mapping[str, object]) -> dict[str, JSONValue]:
    validated: dict[str, JSONValue] = {}
    for key, value in values.items():
        if not isinstance(key, str) or not key:
            raise ValueError(f"metadata key must be a non-empty string, got {key!r}")
        validated[key] = as_json_value(value, f"{task_id}.{key}")
    return validated


def _decode(raw: object) -> JSONValue:
    if not isinstance(raw, str):
        raise ValueError("metadata.value_json must be text")
    decoded: JSONValue = json.loads(raw)
    return decoded


__all__ = [
    "InMemoryMetadataStore",
    "MetadataEntry",
    "MetadataNotFoundError",
    "MetadataStore",
    "MetadataView",
    "PublishedMetadataView",
    "SqliteMetadataStore",
]
