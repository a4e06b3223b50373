"""SQLModel table definitions for the callcenter data layer."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class TicketTable(SQLModel, table=True):
    """Support and booking tickets together with their mirrored refund state."""

    __tablename__ = "tickets"

    id: str = Field(primary_key=True, index=True)
    number: str = Field(sa_column=Column(String(64), nullable=False, unique=True, index=True))
    owner_id: str = Field(sa_column=Column(String(255), nullable=False, index=True))
    subject: str = Field(sa_column=Column(String(255), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    priority: str = Field(sa_column=Column(String(20), nullable=False))
    status: str = Field(sa_column=Column(String(50), nullable=False))
    ticket_type: str | None = Field(default=None, sa_column=Column(String(50), nullable=True))
    price: float = Field(default=0.0, sa_column=Column(Float, nullable=False))
    currency: str = Field(sa_column=Column(String(3), nullable=False))
    refund_status: str | None = Field(default=None, sa_column=Column(String(50), nullable=True))
    refund_amount: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    refund_processed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class RefundRequestTable(SQLModel, table=True):
    """Refund requests keyed by the external ticket number."""

    __tablename__ = "refund_requests"

    id: int | None = Field(default=None, sa_column=Column(Integer, primary_key=True, autoincrement=True))
    ticket_number: str = Field(
        sa_column=Column(String(64), ForeignKey("tickets.number"), nullable=False, index=True)
    )
    requested_by: str = Field(sa_column=Column(String(255), nullable=False))
    reason: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(sa_column=Column(String(50), nullable=False))
    amount: float = Field(sa_column=Column(Float, nullable=False))
    currency: str = Field(sa_column=Column(String(3), nullable=False))
    processed_by: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    notes: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketHistoryTable(SQLModel, table=True):
    """Append-only trail of actions taken against a ticket."""

    __tablename__ = "ticket_history"

    id: int | None = Field(default=None, sa_column=Column(Integer, primary_key=True, autoincrement=True))
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    action: str = Field(sa_column=Column(String(100), nullable=False))
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    actor_id: str = Field(sa_column=Column(String(255), nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
