from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Iterable
from uuid import UUID, uuid4

from pflow.engine.client import EngineClient, EngineError
from pflow.engine.models import ExternalTask, ProcessVariables
from pflow.events.models import DomainEvent
from pflow.events.publisher import EventPublisher, NullPublisher
from pflow.metrics import metrics_registry
from pflow.tickets.models import Ticket
from pflow.tickets.repository import PersistenceError, TicketNotFoundError, TicketRepository
from pflow.tickets.state import TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)

PROCESS_TICKET_ACTIVITY = "ServiceTask_ProcessTicket"

TICKET_CREATED = "ticket.created"
TICKET_SUBMITTED = "ticket.submitted"
TICKET_DECISION = "ticket.decision"
TICKET_PROCESSING = "ticket.processing"
TICKET_COMPLETED = "ticket.completed"


class WorkflowError(RuntimeError):
    """Base error for ticket workflow coordination."""


class InvalidTransition(WorkflowError):
    """Raised when a ticket's current status does not allow the requested action."""

    def __init__(
        self,
        ticket_id: UUID,
        status: TicketStatus,
        action: str,
        *,
        allowed: Iterable[TicketStatus] = (),
    ) -> None:
        message = f"Ticket {ticket_id} cannot be {action} from status {status.value}"
        self.allowed = tuple(sorted(allowed, key=lambda item: item.value))
        if self.allowed:
            message += f" (allowed from: {', '.join(item.value for item in self.allowed)})"
        super().__init__(message)
        self.ticket_id = ticket_id
        self.status = status
        self.action = action


class MalformedTask(WorkflowError):
    """Raised when an external task cannot be mapped to a ticket."""


class UnsupportedActivity(WorkflowError):
    """Raised when an external task belongs to an activity this service does not handle."""

    def __init__(self, activity_id: str) -> None:
        super().__init__(f"Unsupported activity {activity_id!r}")
        self.activity_id = activity_id


class WorkflowCoordinator:
    """Own the ticket state machine and keep it in step with the process engine.

    Every status change runs inside a row-locked store transaction. Events are
    emitted only after the transaction commits and a publish failure never
    changes the outcome of the operation that triggered it.
    """

    def __init__(
        self,
        repository: TicketRepository,
        engine: EngineClient,
        publisher: EventPublisher | None = None,
        *,
        process_key: str,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._publisher: EventPublisher = publisher or NullPublisher()
        self._process_key = process_key
        self._activity_handlers: dict[str, Callable[[ExternalTask], Awaitable[Ticket]]] = {
            PROCESS_TICKET_ACTIVITY: self._process_ticket,
        }

    async def create_ticket(
        self,
        *,
        title: str,
        requester: str,
        description: str = "",
        assignee: str | None = None,
        ticket_id: UUID | None = None,
    ) -> Ticket:
        ticket = await self._repository.create(
            ticket_id=ticket_id or uuid4(),
            title=title,
            description=description,
            requester=requester,
            assignee=assignee or None,
            status=TicketStateMachine.initial_state(),
        )
        logger.info("Created ticket %s", ticket.id)
        await self._emit(TICKET_CREATED, ticket)
        return ticket

    async def get_ticket(self, ticket_id: UUID) -> Ticket:
        ticket = await self._repository.find_by_id(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    async def list_tickets(self, *, limit: int = 0) -> list[Ticket]:
        return await self._repository.list_tickets(limit)

    async def submit_ticket(self, ticket_id: UUID) -> Ticket:
        """Start a process instance for the ticket and mark it submitted.

        The engine call happens while the row lock is held, so of two racing
        submissions only the first reaches the engine; the second observes the
        committed ``submitted`` status and fails with ``InvalidTransition``.
        """

        instance_id: str | None = None
        try:
            async with self._repository.locked(ticket_id) as locked:
                current = locked.ticket
                self._check_transition(current, TicketStatus.SUBMITTED, "submitted")
                instance_id = await self._engine.start_instance(
                    self._process_key,
                    str(current.id),
                    ProcessVariables(requester=current.requester, title=current.title),
                )
                ticket = await locked.save(
                    replace(current, status=TicketStatus.SUBMITTED, process_instance_id=instance_id)
                )
        except (PersistenceError, asyncio.CancelledError):
            if instance_id is not None:
                await self._discard_instance(ticket_id, instance_id)
            raise

        logger.info("Submitted ticket %s as process instance %s", ticket.id, instance_id)
        await self._emit(TICKET_SUBMITTED, ticket)
        return ticket

    async def record_decision(self, ticket_id: UUID, *, approved: bool, comment: str = "") -> Ticket:
        target = TicketStatus.APPROVED if approved else TicketStatus.REJECTED
        ticket = await self._transition(ticket_id, target, "decided")
        logger.info("Recorded decision %s for ticket %s", target.value, ticket_id)
        extra = {"comment": comment} if comment else {}
        await self._emit(TICKET_DECISION, ticket, **extra)
        return ticket

    async def complete_processing(self, ticket_id: UUID) -> Ticket:
        async with self._repository.locked(ticket_id) as locked:
            if TicketStateMachine.is_terminal(locked.ticket.status):
                logger.warning("Ticket %s is already completed, completing it again", ticket_id)
            ticket = await locked.save(replace(locked.ticket, status=TicketStatus.COMPLETED))
        logger.info("Completed ticket %s", ticket_id)
        await self._emit(TICKET_COMPLETED, ticket)
        return ticket

    async def handle_external_task(self, task: ExternalTask) -> Ticket:
        handler = self._activity_handlers.get(task.activity_id)
        if handler is None:
            raise UnsupportedActivity(task.activity_id)
        return await handler(task)

    async def _process_ticket(self, task: ExternalTask) -> Ticket:
        try:
            ticket_id = UUID(task.business_key)
        except ValueError as exc:
            raise MalformedTask(
                f"External task {task.id} has invalid business key {task.business_key!r}"
            ) from exc

        logger.info("Processing external task %s for ticket %s", task.id, ticket_id)
        ticket = await self._transition(ticket_id, TicketStatus.PROCESSING, "processed")
        await self._emit(TICKET_PROCESSING, ticket, activity=task.activity_id)
        return ticket

    async def _transition(self, ticket_id: UUID, target: TicketStatus, action: str) -> Ticket:
        async with self._repository.locked(ticket_id) as locked:
            current = locked.ticket
            self._check_transition(current, target, action)
            if current.status == target:
                return current
            return await locked.save(replace(current, status=target))

    @staticmethod
    def _check_transition(ticket: Ticket, target: TicketStatus, action: str) -> None:
        try:
            TicketStateMachine.assert_transition(ticket.status, target)
        except ValueError as exc:
            raise InvalidTransition(
                ticket.id, ticket.status, action, allowed=TicketStateMachine.sources_for(target)
            ) from exc

    async def _discard_instance(self, ticket_id: UUID, instance_id: str) -> None:
        logger.warning(
            "Ticket %s was not persisted, cancelling process instance %s", ticket_id, instance_id
        )
        try:
            await self._engine.delete_instance(instance_id)
        except EngineError:
            logger.exception("Process instance %s for ticket %s is orphaned", instance_id, ticket_id)

    async def _emit(self, name: str, ticket: Ticket, **extra: Any) -> None:
        metrics_registry.counter("tickets_transitions_total").inc(labels={"event": name})
        event = DomainEvent(name=name, ticket=ticket, extra=extra)
        try:
            await self._publisher.publish(event.routing_key, event.to_payload())
        except Exception:  # events are best-effort
            metrics_registry.counter("event_publish_failures_total").inc(labels={"event": name})
            logger.exception("Publishing %s for ticket %s failed", name, ticket.id)
