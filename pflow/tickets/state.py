from __future__ import annotations

from enum import Enum


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"


class TicketStateMachine:
    """Validate ticket lifecycle transitions.

    ``processing -> processing`` is an explicit edge so that a redelivered
    external task can be re-applied. ``completed`` is reached through
    ``CompleteProcessing``, which does not consult this table.
    """

    _TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
        TicketStatus.DRAFT: frozenset({TicketStatus.SUBMITTED}),
        TicketStatus.SUBMITTED: frozenset(
            {TicketStatus.APPROVED, TicketStatus.REJECTED, TicketStatus.PROCESSING}
        ),
        TicketStatus.PROCESSING: frozenset(
            {
                TicketStatus.PROCESSING,
                TicketStatus.APPROVED,
                TicketStatus.REJECTED,
                TicketStatus.COMPLETED,
            }
        ),
        TicketStatus.REJECTED: frozenset({TicketStatus.SUBMITTED}),
        TicketStatus.APPROVED: frozenset(),
        TicketStatus.COMPLETED: frozenset(),
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.DRAFT

    @classmethod
    def is_terminal(cls, status: TicketStatus) -> bool:
        return status == TicketStatus.COMPLETED

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        return new in cls._TRANSITIONS.get(current, frozenset())

    @classmethod
    def sources_for(cls, new: TicketStatus) -> frozenset[TicketStatus]:
        """Return every status from which ``new`` may be entered."""

        return frozenset(current for current, targets in cls._TRANSITIONS.items() if new in targets)

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus) -> None:
        if not cls.can_transition(current, new):
            raise ValueError(f"Invalid ticket status transition: {current.value} -> {new.value}")
