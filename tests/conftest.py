from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest

from pflow.engine.client import EngineClient
from pflow.events.publisher import PublishError
from pflow.tickets.models import Ticket
from pflow.tickets.repository import PersistenceError, TicketNotFoundError
from pflow.tickets.state import TicketStatus
from pflow.workflow.coordinator import WorkflowCoordinator

PROCESS_KEY = "ticket_approval"


def make_ticket(*, status: TicketStatus = TicketStatus.DRAFT, **overrides: Any) -> Ticket:
    now = datetime.now(timezone.utc)
    values: dict[str, Any] = {
        "id": uuid4(),
        "title": "T",
        "description": "",
        "requester": "R",
        "assignee": None,
        "status": status,
        "process_instance_id": "",
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return Ticket(**values)


class InMemoryLockedTicket:
    def __init__(self, repository: InMemoryTicketRepository, ticket: Ticket) -> None:
        self._repository = repository
        self.ticket = ticket
        self.pending: Ticket | None = None

    async def save(self, ticket: Ticket) -> Ticket:
        if self._repository.write_delay:
            await asyncio.sleep(self._repository.write_delay)
        if self._repository.fail_writes:
            raise PersistenceError("write failed")
        self.pending = replace(ticket, updated_at=self._repository.tick())
        self.ticket = self.pending
        return self.pending


class InMemoryTicketRepository:
    """Store double with per-ticket locking and commit-on-exit semantics."""

    def __init__(self) -> None:
        self.tickets: dict[UUID, Ticket] = {}
        self.fail_writes = False
        self.write_delay = 0.0
        self.writes = 0
        self._locks: dict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def add(self, ticket: Ticket) -> Ticket:
        self.tickets[ticket.id] = ticket
        return ticket

    async def create(self, *, ticket_id, title, description, requester, assignee, status) -> Ticket:
        if self.fail_writes:
            raise PersistenceError("insert failed")
        now = self.tick()
        ticket = Ticket(
            id=ticket_id,
            title=title,
            description=description,
            requester=requester,
            assignee=assignee,
            status=status,
            process_instance_id="",
            created_at=now,
            updated_at=now,
        )
        self.tickets[ticket_id] = ticket
        return ticket

    async def find_by_id(self, ticket_id: UUID) -> Ticket | None:
        return self.tickets.get(ticket_id)

    async def list_tickets(self, limit: int = 50) -> list[Ticket]:
        ordered = sorted(self.tickets.values(), key=lambda ticket: ticket.created_at, reverse=True)
        return ordered[: limit if limit > 0 else 50]

    @asynccontextmanager
    async def locked(self, ticket_id: UUID):
        async with self._locks[ticket_id]:
            ticket = self.tickets.get(ticket_id)
            if ticket is None:
                raise TicketNotFoundError(ticket_id)
            handle = InMemoryLockedTicket(self, ticket)
            yield handle
            if handle.pending is not None:
                self.tickets[ticket_id] = handle.pending
                self.writes += 1


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, Mapping[str, Any]]] = []

    async def publish(self, routing_key: str, payload: Mapping[str, Any]) -> None:
        self.events.append((routing_key, dict(payload)))

    async def close(self) -> None:
        return None

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class FailingPublisher(RecordingPublisher):
    async def publish(self, routing_key: str, payload: Mapping[str, Any]) -> None:
        raise PublishError("broker down")


@pytest.fixture
def repository() -> InMemoryTicketRepository:
    return InMemoryTicketRepository()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def engine() -> AsyncMock:
    engine = AsyncMock(spec=EngineClient)
    engine.start_instance.return_value = "proc-1"
    engine.fetch_and_lock.return_value = []
    return engine


@pytest.fixture
def coordinator(repository, engine, publisher) -> WorkflowCoordinator:
    return WorkflowCoordinator(repository, engine, publisher, process_key=PROCESS_KEY)


@pytest.fixture
def ticket_factory():
    return make_ticket


@pytest.fixture
def failing_publisher() -> FailingPublisher:
    return FailingPublisher()
