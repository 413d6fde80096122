from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pflow.tickets.models import Ticket


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class DomainEvent:
    """Unpersisted description of a ticket state change."""

    name: str
    ticket: Ticket
    occurred_at: datetime = field(default_factory=_utcnow)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def routing_key(self) -> str:
        return self.name

    def to_payload(self) -> dict[str, Any]:
        occurred = self.occurred_at.astimezone(timezone.utc).replace(microsecond=0)
        payload: dict[str, Any] = {
            "event": self.name,
            "ticketId": str(self.ticket.id),
            "status": self.ticket.status.value,
            "processId": self.ticket.process_instance_id,
            "title": self.ticket.title,
            "requester": self.ticket.requester,
            "assignee": self.ticket.assignee or "",
            "occurredAt": occurred.isoformat().replace("+00:00", "Z"),
        }
        payload.update(self.extra)
        return payload
