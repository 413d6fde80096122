"""Client for the external process engine."""

from .client import (
    DecodeError,
    EngineClient,
    EngineError,
    EngineRejected,
    EngineUnavailable,
    TaskNotOwned,
)
from .models import ExternalTask, ProcessVariables, TaskVariable, wrap_variables

__all__ = [
    "DecodeError",
    "EngineClient",
    "EngineError",
    "EngineRejected",
    "EngineUnavailable",
    "ExternalTask",
    "ProcessVariables",
    "TaskNotOwned",
    "TaskVariable",
    "wrap_variables",
]
