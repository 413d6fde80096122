"""Ticket domain models and persistence."""

from .models import Ticket
from .repository import LockedTicket, PersistenceError, TicketNotFoundError, TicketRepository
from .state import TicketStateMachine, TicketStatus

__all__ = [
    "LockedTicket",
    "PersistenceError",
    "Ticket",
    "TicketNotFoundError",
    "TicketRepository",
    "TicketStateMachine",
    "TicketStatus",
]
