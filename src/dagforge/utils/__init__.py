"""Shared utilities."""

from dagforge.utils.concurrency import CancellationToken, OperationCancelledError, ReportChannel

__all__ = ["CancellationToken", "OperationCancelledError", "ReportChannel"]
