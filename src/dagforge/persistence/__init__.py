"""Persistence: SQLite state DB, run repositories and the metadata store."""

from dagforge.persistence.metadata_store import (
    InMemoryMetadataStore,
    MetadataNotFoundError,
    MetadataStore,
    SqliteMetadataStore,
)
from dagforge.persistence.repositories import (
    InMemoryRunRepository,
    RunNotFoundError,
    RunRepository,
    SqliteEventRepository,
    SqliteRunRepository,
)
from dagforge.persistence.state_db import StateDB, StateDBError

__all__ = [
    "InMemoryMetadataStore",
    "InMemoryRunRepository",
    "MetadataNotFoundError",
    "MetadataStore",
    "RunNotFoundError",
    "RunRepository",
    "SqliteEventRepository",
    "SqliteMetadataStore",
    "SqliteRunRepository",
    "StateDB",
    "StateDBError",
]
