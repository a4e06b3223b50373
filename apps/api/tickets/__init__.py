"""Ticket lifecycle and refund domain."""

from .errors import (
    DuplicateTicketNumberError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    TicketLifecycleError,
    ValidationError,
)
from .models import RefundRequest, Ticket, TicketHistoryEntry
from .policy import calculate_refund_amount
from .service import TicketLifecycleService
from .state import HistoryAction, RefundStatus, TicketPriority, TicketStateMachine, TicketStatus, TicketType

__all__ = [
    "DuplicateTicketNumberError",
    "HistoryAction",
    "InvalidStateError",
    "NotFoundError",
    "PersistenceError",
    "RefundRequest",
    "RefundStatus",
    "Ticket",
    "TicketHistoryEntry",
    "TicketLifecycleError",
    "TicketLifecycleService",
    "TicketPriority",
    "TicketStateMachine",
    "TicketStatus",
    "TicketType",
    "ValidationError",
    "calculate_refund_amount",
]
