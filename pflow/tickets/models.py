from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from .state import TicketStatus


@dataclass(slots=True)
class Ticket:
    """Work order persisted locally and mirrored by a process instance in the engine."""

    id: UUID
    title: str
    description: str
    requester: str
    assignee: str | None
    status: TicketStatus
    process_instance_id: str
    created_at: datetime
    updated_at: datetime
