"""Domain types shared across the scheduler core. Free of IO side effects."""

from dagforge.domain.events import DagEvent, EventType
from dagforge.domain.models import (
    ErrorClass,
    JoinOutcome,
    JoinRule,
    MetadataRef,
    RetryPolicy,
    Run,
    RunStatus,
    TaskSpec,
    TaskState,
    TaskStatus,
)

__all__ = [
    "DagEvent",
    "ErrorClass",
    "EventType",
    "JoinOutcome",
    "JoinRule",
    "MetadataRef",
    "RetryPolicy",
    "Run",
    "RunStatus",
    "TaskSpec",
    "TaskState",
    "TaskStatus",
]
