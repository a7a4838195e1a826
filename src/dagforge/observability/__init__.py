"""Observability: structured logging and the in-process event bus."""

from dagforge.observability.events import DispatchError, EventBus
from dagforge.observability.logging import configure_logging, run_log_context

__all__ = [
    "DispatchError",
    "EventBus",
    "configure_logging",
    "run_log_context",
]
