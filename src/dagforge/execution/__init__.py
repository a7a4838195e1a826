"""Task execution: executables, contexts and execution backends."""

from dagforge.execution.executor import (
    Executable,
    ExecutionBackend,
    ExecutionReport,
    ExecutionRequest,
    InlineBackend,
    PermanentTaskError,
    TaskContext,
    TaskExecutionError,
    ThreadPoolBackend,
    TransientTaskError,
)
from dagforge.execution.operators import BranchTask, PythonTask, SensorTask

__all__ = [
    "BranchTask",
    "Executable",
    "ExecutionBackend",
    "ExecutionReport",
    "ExecutionRequest",
    "InlineBackend",
    "PermanentTaskError",
    "PythonTask",
    "SensorTask",
    "TaskContext",
    "TaskExecutionError",
    "ThreadPoolBackend",
    "TransientTaskError",
]
