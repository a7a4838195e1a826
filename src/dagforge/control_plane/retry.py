"""
Deterministic retry decisions for failed task attempts.

A decision maps ``(policy, attempt, error class)`` to one of:
- `retry`: move the task to ``RETRY_WAIT`` for ``delay_seconds``
- `fail`: move the task to ``FAILED``

Permanent errors never retry. Transient errors retry while
``attempt <= policy.retries``; ``attempt`` is the 1-based try that just failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from dagforge.domain.models import ErrorClass, RetryPolicy


class RetryAction(StrEnum):
    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True, slots=True)
class RetryDecision:
    """Outcome of evaluating a retry policy against a failed attempt."""

    action: RetryAction
    reason_code: str
    task_id: str
    attempt: int
    max_attempts: int
    delay_seconds: float

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "reason_code": self.reason_code,
            "task_id": self.task_id,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "delay_seconds": self.delay_seconds,
        }


class RetryController:
    """Evaluate retry policies and log every decision."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def decide(
        self,
        *,
        task_id: str,
        policy: RetryPolicy,
        attempt: int,
        error_class: ErrorClass,
    ) -> RetryDecision:
        if attempt <= 0:
            raise ValueError("attempt must be > 0")

        if error_class == ErrorClass.PERMANENT:
            action, reason, delay = RetryAction.FAIL, "permanent_error", 0.0
        elif attempt > policy.retries:
            action, reason, delay = RetryAction.FAIL, "retries_exhausted", 0.0
        else:
            action, reason = RetryAction.RETRY, "transient_error"
            delay = policy.delay_for(attempt)

        decision = RetryDecision(
            action=action,
            reason_code=reason,
            task_id=task_id,
            attempt=attempt,
            max_attempts=policy.max_attempts,
            delay_seconds=delay,
        )
        self._logger.info("retry_decision", **decision.to_dict())
        return decision


__all__ = [
    "RetryAction",
    "RetryController",
    "RetryDecision",
]
