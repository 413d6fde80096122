"""Ticket workflow coordination against the process engine."""

from .coordinator import (
    PROCESS_TICKET_ACTIVITY,
    InvalidTransition,
    MalformedTask,
    UnsupportedActivity,
    WorkflowCoordinator,
    WorkflowError,
)

__all__ = [
    "PROCESS_TICKET_ACTIVITY",
    "InvalidTransition",
    "MalformedTask",
    "UnsupportedActivity",
    "WorkflowCoordinator",
    "WorkflowError",
]
