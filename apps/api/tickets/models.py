from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .state import HistoryAction, RefundStatus, TicketPriority, TicketStatus, TicketType


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support or booking ticket."""

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


@dataclass(slots=True)
class RefundRequest:
    """Money owed back for a cancelled ticket, joined to it by ticket number."""

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


@dataclass(slots=True)
class TicketHistoryEntry:
    """Write-once history entry describing an action taken on a ticket."""

    id: int
    ticket_id: str
    action: HistoryAction
    description: str
    actor_id: str
    created_at: datetime
