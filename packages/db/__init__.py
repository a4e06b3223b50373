"""Database models and utilities."""

from .models import RefundRequestTable, TicketHistoryTable, TicketTable

__all__ = [
    "RefundRequestTable",
    "TicketHistoryTable",
    "TicketTable",
]
