"""Stable constants shared across dagforge modules."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1
GRAPH_FILE_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file location unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
DEFAULT_STATE_DB: Final[PurePosixPath] = STATE_DIR / "dagforge.sqlite"

# Metadata key under which a task's return value is published.
RETURN_VALUE_KEY: Final[str] = "return_value"

# Separator between a task group id and the ids of its member tasks.
GROUP_SEPARATOR: Final[str] = "."

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_STATE_DB",
    "GRAPH_FILE_SCHEMA_VERSION",
    "GROUP_SEPARATOR",
    "RETURN_VALUE_KEY",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
]
