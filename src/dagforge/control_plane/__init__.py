"""Control plane: state machine, retry decisions, scheduling and run coordination."""

from dagforge.control_plane.coordinator import RootCause, RunCoordinator, RunResult
from dagforge.control_plane.retry import RetryAction, RetryController, RetryDecision
from dagforge.control_plane.scheduler import ScheduleDecision, Scheduler, SchedulerLimits
from dagforge.control_plane.state_machine import IllegalTransitionError, TaskStateMachine

__all__ = [
    "IllegalTransitionError",
    "RetryAction",
    "RetryController",
    "RetryDecision",
    "RootCause",
    "RunCoordinator",
    "RunResult",
    "ScheduleDecision",
    "Scheduler",
    "SchedulerLimits",
    "TaskStateMachine",
]
