from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from pflow.dependencies.tickets import CoordinatorDep
from pflow.tickets.models import Ticket
from pflow.tickets.repository import TicketNotFoundError
from pflow.tickets.state import TicketStatus
from pflow.workflow.coordinator import InvalidTransition

router = APIRouter(prefix="/api/tickets", tags=["tickets"])


class TicketCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="")
    requester: str = Field(..., min_length=1, max_length=255)
    assignee: str | None = Field(default=None, max_length=255)


class TicketDecisionRequest(BaseModel):
    approved: bool
    comment: str = Field(default="", max_length=2000)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: UUID
    title: str
    description: str
    requester: str
    assignee: str | None
    status: TicketStatus
    process_instance_id: str
    created_at: datetime
    updated_at: datetime


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(payload: TicketCreateRequest, coordinator: CoordinatorDep) -> TicketResponse:
    ticket = await coordinator.create_ticket(
        title=payload.title,
        description=payload.description,
        requester=payload.requester,
        assignee=payload.assignee,
    )
    return _to_response(ticket)


@router.get("", response_model=list[TicketResponse])
async def list_tickets(
    coordinator: CoordinatorDep,
    limit: int = Query(default=100, ge=1, le=500),
) -> list[TicketResponse]:
    tickets = await coordinator.list_tickets(limit=limit)
    return [_to_response(ticket) for ticket in tickets]


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: UUID, coordinator: CoordinatorDep) -> TicketResponse:
    try:
        ticket = await coordinator.get_ticket(ticket_id)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _to_response(ticket)


@router.post("/{ticket_id}/submit", status_code=status.HTTP_204_NO_CONTENT)
async def submit_ticket(ticket_id: UUID, coordinator: CoordinatorDep) -> Response:
    try:
        await coordinator.submit_ticket(ticket_id)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{ticket_id}/decision", status_code=status.HTTP_204_NO_CONTENT)
async def record_decision(
    ticket_id: UUID,
    payload: TicketDecisionRequest,
    coordinator: CoordinatorDep,
) -> Response:
    try:
        await coordinator.record_decision(ticket_id, approved=payload.approved, comment=payload.comment)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{ticket_id}/complete", status_code=status.HTTP_204_NO_CONTENT)
async def complete_ticket(ticket_id: UUID, coordinator: CoordinatorDep) -> Response:
    try:
        await coordinator.complete_processing(ticket_id)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
