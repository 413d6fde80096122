"""Ticket workflow service coordinating a ticket store, a process engine and a message bus."""

__version__ = "0.1.0"
