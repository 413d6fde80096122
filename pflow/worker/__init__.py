"""Background worker for external tasks."""

from .poller import PollResult, TaskPoller

__all__ = ["PollResult", "TaskPoller"]
