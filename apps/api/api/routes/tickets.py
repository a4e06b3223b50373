from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from apps.api.dependencies.tickets import AgentUser, CustomerUser, TicketServiceDep
from apps.api.tickets.errors import TicketLifecycleError
from apps.api.tickets.models import RefundRequest, Ticket, TicketHistoryEntry
from apps.api.tickets.state import HistoryAction, RefundStatus, TicketPriority, TicketStatus, TicketType

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketCreateRequest(BaseModel):
    subject: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    priority: TicketPriority = TicketPriority.MEDIUM


class TicketImportRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    number: str | None = Field(default=None, min_length=1, max_length=64)
    subject: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    ticket_type: TicketType
    price: float = Field(..., ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    priority: TicketPriority = TicketPriority.MEDIUM


class TicketStatusUpdateRequest(BaseModel):
    status: str = Field(..., min_length=1)
    description: str = Field(default="", max_length=1000)


class TicketCancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class RefundStatusUpdateRequest(BaseModel):
    status: RefundStatus
    processed_by: str = Field(..., min_length=1)
    notes: str | None = Field(default=None, max_length=2000)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    number: str
    owner_id: str
    subject: str
    description: str
    priority: TicketPriority
    status: TicketStatus
    ticket_type: TicketType | None
    price: float
    currency: str
    refund_status: RefundStatus | None
    refund_amount: float | None
    refund_processed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class RefundRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_number: str
    requested_by: str
    reason: str
    status: RefundStatus
    amount: float
    currency: str
    processed_by: str | None
    processed_at: datetime | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class TicketHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_id: str
    action: HistoryAction
    description: str
    actor_id: str
    created_at: datetime


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def _to_refund_response(refund: RefundRequest) -> RefundRequestResponse:
    return RefundRequestResponse.model_validate(refund)


def _to_history_response(entry: TicketHistoryEntry) -> TicketHistoryResponse:
    return TicketHistoryResponse.model_validate(entry)


def _http_error(exc: TicketLifecycleError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: TicketServiceDep,
    user: CustomerUser,
) -> TicketResponse:
    try:
        ticket = await service.create_ticket(
            owner_id=user.id,
            subject=payload.subject,
            description=payload.description,
            priority=payload.priority,
        )
    except TicketLifecycleError as exc:
        raise _http_error(exc) from exc
    return _to_response(ticket)


@router.post("/import", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def import_ticket(
    payload: TicketImportRequest,
    service: TicketServiceDep,
    user: AgentUser,
) -> TicketResponse:
    try:
        ticket = await service.import_ticket(
            owner_id=payload.owner_id,
            number=payload.number,
            subject=payload.subject,
            description=payload.description,
            ticket_type=payload.ticket_type,
            price=payload.price,
            currency=payload.currency,
            priority=payload.priority,
            actor_id=user.id,
        )
    except TicketLifecycleError as exc:
        raise _http_error(exc) from exc
    return _to_response(ticket)


@router.get("", response_model=list[TicketResponse])
async def list_tickets(service: TicketServiceDep, user: CustomerUser) -> list[TicketResponse]:
    try:
        tickets = await service.list_tickets_for_owner(user.id)
    except TicketLifecycleError as exc:
        raise _http_error(exc) from exc
    return [_to_response(ticket) for ticket in tickets]


@router.get("/number/{ticket_number}", response_model=TicketResponse)
async def get_ticket_by_number(
    ticket_number: str, service: TicketServiceDep, _: CustomerUser
) -> TicketResponse:
    try:
        ticket = await service.get_ticket_by_number(ticket_number)
    except TicketLifecycleError as exc:
        raise _http_error(exc) from exc
    return _to_response(ticket)


@router.post("/number/{ticket_number}/cancel", response_model=RefundRequestResponse)
async def cancel_ticket(
    ticket_number: str,
    payload: TicketCancelRequest,
    service: TicketServiceDep,
    user: CustomerUser,
) -> RefundRequestResponse:
    try:
        refund = await service.cancel_by_number(ticket_number, reason=payload.reason, requested_by=user.id)
    except TicketLifecycleError as exc:
        raise _http_error(exc) from exc
    return _to_refund_response(refund)


@router.get("/number/{ticket_number}/refund-status", response_model=RefundRequestResponse)
async def get_refund_status(
    ticket_number: str, service: TicketServiceDep, _: CustomerUser
) -> RefundRequestResponse:
    try:
        refund = await service.get_refund_status_by_number(ticket_number)
    except TicketLifecycleError as exc:
        raise _http_error(exc) from exc
    return _to_refund_response(refund)


@router.get("/number/{ticket_number}/refunds", response_model=list[RefundRequestResponse])
async def list_refund_requests(
    ticket_number: str, service: TicketServiceDep, _: CustomerUser
) -> list[RefundRequestResponse]:
    try:
        refunds = await service.list_refund_requests_by_number(ticket_number)
    except TicketLifecycleError as exc:
        raise _http_error(exc) from exc
    return [_to_refund_response(refund) for refund in refunds]


@router.put("/number/{ticket_number}/refund-status", response_model=RefundRequestResponse)
async def update_refund_status(
    ticket_number: str,
    payload: RefundStatusUpdateRequest,
    service: TicketServiceDep,
    _: AgentUser,
) -> RefundRequestResponse:
    try:
        refund = await service.update_refund_status_by_number(
            ticket_number,
            status=payload.status,
            processed_by=payload.processed_by,
            notes=payload.notes,
        )
    except TicketLifecycleError as exc:
        raise _http_error(exc) from exc
    return _to_refund_response(refund)


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: str, service: TicketServiceDep, user: CustomerUser) -> TicketResponse:
    try:
        ticket = await service.get_ticket(ticket_id, user.id)
    except TicketLifecycleError as exc:
        raise _http_error(exc) from exc
    return _to_response(ticket)


@router.put("/{ticket_id}/status", response_model=TicketResponse)
async def update_ticket_status(
    ticket_id: str,
    payload: TicketStatusUpdateRequest,
    service: TicketServiceDep,
    user: CustomerUser,
) -> TicketResponse:
    try:
        ticket = await service.update_status(
            ticket_id,
            owner_id=user.id,
            new_status=payload.status,
            description=payload.description,
        )
    except TicketLifecycleError as exc:
        raise _http_error(exc) from exc
    return _to_response(ticket)


@router.get("/{ticket_id}/history", response_model=list[TicketHistoryResponse])
async def get_ticket_history(
    ticket_id: str, service: TicketServiceDep, user: CustomerUser
) -> list[TicketHistoryResponse]:
    try:
        entries = await service.get_history(ticket_id, user.id)
    except TicketLifecycleError as exc:
        raise _http_error(exc) from exc
    return [_to_history_response(entry) for entry in entries]
