from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from uuid import UUID

import asyncpg

from .models import Ticket
from .state import TicketStatus

DEFAULT_LIST_LIMIT = 50

_DATABASE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PersistenceError(RuntimeError):
    """Raised when the ticket store cannot complete a read or write."""


class TicketNotFoundError(LookupError):
    """Raised when a ticket could not be located."""

    def __init__(self, ticket_id: UUID) -> None:
        super().__init__(f"Ticket {ticket_id} not found")
        self.ticket_id = ticket_id


class LockedTicket:
    """Row-locked ticket bound to an open store transaction."""

    def __init__(self, repository: TicketRepository, connection: Any, ticket: Ticket) -> None:
        self._repository = repository
        self._connection = connection
        self.ticket = ticket

    async def save(self, ticket: Ticket) -> Ticket:
        if ticket.id != self.ticket.id:
            raise ValueError(f"Locked ticket is {self.ticket.id}, refusing to save {ticket.id}")
        self.ticket = await self._repository._write(self._connection, ticket)
        return self.ticket


class TicketRepository:
    """Data access layer for ticket records.

    Every call runs a fresh query against the pool; nothing is cached in
    process.
    """

    _COLUMNS = (
        "id, title, description, requester, assignee, status, process_instance_id, created_at, updated_at"
    )

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id UUID PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        requester TEXT NOT NULL,
        assignee TEXT NULL,
        status TEXT NOT NULL,
        process_instance_id TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _CREATE_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS tickets_created_at_idx ON tickets (created_at DESC)
    """

    _INSERT_TICKET_SQL = f"""
    INSERT INTO tickets (id, title, description, requester, assignee, status, process_instance_id)
    VALUES ($1, $2, $3, $4, $5, $6, '')
    RETURNING {_COLUMNS}
    """

    _UPDATE_TICKET_SQL = f"""
    UPDATE tickets
    SET title = $2,
        description = $3,
        requester = $4,
        assignee = $5,
        status = $6,
        process_instance_id = $7,
        updated_at = CURRENT_TIMESTAMP
    WHERE id = $1
    RETURNING {_COLUMNS}
    """

    _SELECT_TICKET_SQL = f"""
    SELECT {_COLUMNS}
    FROM tickets
    WHERE id = $1
    """

    _SELECT_TICKET_FOR_UPDATE_SQL = f"""
    SELECT {_COLUMNS}
    FROM tickets
    WHERE id = $1
    FOR UPDATE
    """

    _LIST_TICKETS_SQL = f"""
    SELECT {_COLUMNS}
    FROM tickets
    ORDER BY created_at DESC
    LIMIT $1
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        try:
            async with self._pool.acquire() as connection:
                await connection.execute(self._CREATE_TICKETS_SQL)
                await connection.execute(self._CREATE_INDEX_SQL)
        except _DATABASE_ERRORS as exc:
            raise PersistenceError(f"Failed to prepare ticket schema: {exc}") from exc

    async def create(
        self,
        *,
        ticket_id: UUID,
        title: str,
        description: str,
        requester: str,
        assignee: str | None,
        status: TicketStatus,
    ) -> Ticket:
        try:
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(
                    self._INSERT_TICKET_SQL,
                    ticket_id,
                    title,
                    description,
                    requester,
                    assignee,
                    status.value,
                )
        except _DATABASE_ERRORS as exc:
            raise PersistenceError(f"Failed to insert ticket {ticket_id}: {exc}") from exc
        if row is None:
            raise PersistenceError(f"Failed to insert ticket {ticket_id}")
        return self._row_to_ticket(row)

    async def update(self, ticket: Ticket) -> Ticket:
        try:
            async with self._pool.acquire() as connection:
                return await self._write(connection, ticket)
        except _DATABASE_ERRORS as exc:
            raise PersistenceError(f"Failed to update ticket {ticket.id}: {exc}") from exc

    async def find_by_id(self, ticket_id: UUID) -> Ticket | None:
        try:
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
        except _DATABASE_ERRORS as exc:
            raise PersistenceError(f"Failed to load ticket {ticket_id}: {exc}") from exc
        if row is None:
            return None
        return self._row_to_ticket(row)

    async def list_tickets(self, limit: int = DEFAULT_LIST_LIMIT) -> list[Ticket]:
        if limit <= 0:
            limit = DEFAULT_LIST_LIMIT
        try:
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(self._LIST_TICKETS_SQL, limit)
        except _DATABASE_ERRORS as exc:
            raise PersistenceError(f"Failed to list tickets: {exc}") from exc
        return [self._row_to_ticket(row) for row in rows]

    @asynccontextmanager
    async def locked(self, ticket_id: UUID) -> AsyncIterator[LockedTicket]:
        """Hold a row lock on ``ticket_id`` for the duration of the block.

        The transaction commits when the block exits normally and rolls back
        when it raises, so a concurrent caller blocks on the ``FOR UPDATE``
        read until this one finishes and then observes the committed status.
        """

        try:
            async with self._pool.acquire() as connection:
                async with connection.transaction():
                    row = await connection.fetchrow(self._SELECT_TICKET_FOR_UPDATE_SQL, ticket_id)
                    if row is None:
                        raise TicketNotFoundError(ticket_id)
                    yield LockedTicket(self, connection, self._row_to_ticket(row))
        except _DATABASE_ERRORS as exc:
            raise PersistenceError(f"Failed to update ticket {ticket_id}: {exc}") from exc

    async def _write(self, connection: Any, ticket: Ticket) -> Ticket:
        row = await connection.fetchrow(
            self._UPDATE_TICKET_SQL,
            ticket.id,
            ticket.title,
            ticket.description,
            ticket.requester,
            ticket.assignee,
            ticket.status.value,
            ticket.process_instance_id,
        )
        if row is None:
            raise TicketNotFoundError(ticket.id)
        return self._row_to_ticket(row)

    @staticmethod
    def _row_to_ticket(row: Any) -> Ticket:
        assignee = row["assignee"]
        return Ticket(
            id=_to_uuid(row["id"]),
            title=str(row["title"]),
            description=str(row["description"] or ""),
            requester=str(row["requester"]),
            assignee=str(assignee) if assignee else None,
            status=TicketStatus(str(row["status"])),
            process_instance_id=str(row["process_instance_id"] or ""),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _to_uuid(value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    return UUID(str(value))
