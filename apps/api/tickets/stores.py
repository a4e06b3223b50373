"""Session-bound stores for tickets, refund requests and the history log.

Every store wraps the ``AsyncSession`` of the caller's unit of work and never
commits on its own; the lifecycle service owns transaction boundaries.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from packages.db.models import RefundRequestTable, TicketHistoryTable, TicketTable

from .errors import DuplicateTicketNumberError
from .models import RefundRequest, Ticket, TicketHistoryEntry
from .state import HistoryAction, RefundStatus, TicketPriority, TicketStatus, TicketType


class TicketStore:
    """Data access for `tickets` rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, ticket: Ticket) -> Ticket:
        if await self._number_taken(ticket.number):
            raise DuplicateTicketNumberError(f"ticket number already exists: {ticket.number}")
        self._session.add(
            TicketTable(
                id=ticket.id,
                number=ticket.number,
                owner_id=ticket.owner_id,
                subject=ticket.subject,
                description=ticket.description,
                priority=ticket.priority.value,
                status=ticket.status.value,
                ticket_type=ticket.ticket_type.value if ticket.ticket_type else None,
                price=ticket.price,
                currency=ticket.currency,
                refund_status=ticket.refund_status.value if ticket.refund_status else None,
                refund_amount=ticket.refund_amount,
                refund_processed_at=ticket.refund_processed_at,
                created_at=ticket.created_at,
                updated_at=ticket.updated_at,
            )
        )
        try:
            await self._session.flush()
        except IntegrityError as exc:
            # A concurrent insert can still win between the check and the flush.
            if _is_number_conflict(exc):
                raise DuplicateTicketNumberError(f"ticket number already exists: {ticket.number}") from exc
            raise
        return ticket

    async def _number_taken(self, number: str) -> bool:
        result = await self._session.execute(select(TicketTable.id).where(TicketTable.number == number))
        return result.first() is not None

    async def get(self, ticket_id: str) -> Ticket | None:
        row = await self._session.get(TicketTable, ticket_id)
        return None if row is None else self._table_to_ticket(row)

    async def get_for_owner(self, ticket_id: str, owner_id: str, *, for_update: bool = False) -> Ticket | None:
        statement = select(TicketTable).where(TicketTable.id == ticket_id, TicketTable.owner_id == owner_id)
        if for_update:
            statement = statement.with_for_update()
        result = await self._session.execute(statement)
        row = result.scalars().first()
        return None if row is None else self._table_to_ticket(row)

    async def get_by_number(self, number: str, *, for_update: bool = False) -> Ticket | None:
        statement = select(TicketTable).where(TicketTable.number == number)
        if for_update:
            statement = statement.with_for_update()
        result = await self._session.execute(statement)
        row = result.scalars().first()
        return None if row is None else self._table_to_ticket(row)

    async def list_for_owner(self, owner_id: str) -> list[Ticket]:
        result = await self._session.execute(
            select(TicketTable)
            .where(TicketTable.owner_id == owner_id)
            .order_by(TicketTable.created_at.desc())
        )
        return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def set_status(
        self,
        ticket_id: str,
        status: TicketStatus,
        updated_at: datetime,
        *,
        expected: TicketStatus,
    ) -> bool:
        """Move the ticket from ``expected`` to ``status``; returns False if it was no longer ``expected``."""

        result = await self._session.execute(
            update(TicketTable)
            .where(TicketTable.id == ticket_id, TicketTable.status == expected.value)
            .values(status=status.value, updated_at=updated_at)
        )
        return result.rowcount == 1

    async def mark_cancelled(
        self,
        ticket_id: str,
        *,
        refund_status: RefundStatus,
        refund_amount: float,
        updated_at: datetime,
    ) -> bool:
        """Flip an ``active`` ticket to ``cancelled``; returns False if it was no longer active."""

        result = await self._session.execute(
            update(TicketTable)
            .where(TicketTable.id == ticket_id, TicketTable.status == TicketStatus.ACTIVE.value)
            .values(
                status=TicketStatus.CANCELLED.value,
                refund_status=refund_status.value,
                refund_amount=refund_amount,
                updated_at=updated_at,
            )
        )
        return result.rowcount == 1

    async def set_refund_status(
        self,
        ticket_id: str,
        *,
        refund_status: RefundStatus,
        processed_at: datetime | None,
        updated_at: datetime,
    ) -> bool:
        values: dict[str, object] = {"refund_status": refund_status.value, "updated_at": updated_at}
        if processed_at is not None:
            values["refund_processed_at"] = processed_at
        result = await self._session.execute(
            update(TicketTable).where(TicketTable.id == ticket_id).values(**values)
        )
        return result.rowcount == 1

    @staticmethod
    def _table_to_ticket(row: TicketTable) -> Ticket:
        return Ticket(
            id=row.id,
            number=row.number,
            owner_id=row.owner_id,
            subject=row.subject,
            description=row.description,
            priority=TicketPriority(row.priority),
            status=TicketStatus(row.status),
            ticket_type=TicketType(row.ticket_type) if row.ticket_type else None,
            price=float(row.price),
            currency=row.currency,
            refund_status=RefundStatus(row.refund_status) if row.refund_status else None,
            refund_amount=float(row.refund_amount) if row.refund_amount is not None else None,
            refund_processed_at=_ensure_optional_datetime(row.refund_processed_at),
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
        )


class RefundRequestStore:
    """Data access for `refund_requests` rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(
        self,
        *,
        ticket_number: str,
        requested_by: str,
        reason: str,
        amount: float,
        currency: str,
        created_at: datetime,
    ) -> RefundRequest:
        row = RefundRequestTable(
            ticket_number=ticket_number,
            requested_by=requested_by,
            reason=reason,
            status=RefundStatus.PENDING.value,
            amount=amount,
            currency=currency,
            created_at=created_at,
            updated_at=created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return self._table_to_refund(row)

    async def latest_for_ticket(self, ticket_number: str, *, for_update: bool = False) -> RefundRequest | None:
        statement = (
            select(RefundRequestTable)
            .where(RefundRequestTable.ticket_number == ticket_number)
            .order_by(RefundRequestTable.created_at.desc(), RefundRequestTable.id.desc())
            .limit(1)
        )
        if for_update:
            statement = statement.with_for_update()
        result = await self._session.execute(statement)
        row = result.scalars().first()
        return None if row is None else self._table_to_refund(row)

    async def list_for_ticket(self, ticket_number: str) -> list[RefundRequest]:
        result = await self._session.execute(
            select(RefundRequestTable)
            .where(RefundRequestTable.ticket_number == ticket_number)
            .order_by(RefundRequestTable.created_at.asc(), RefundRequestTable.id.asc())
        )
        return [self._table_to_refund(row) for row in result.scalars().all()]

    async def resolve(
        self,
        refund_id: int,
        *,
        status: RefundStatus,
        processed_by: str,
        processed_at: datetime,
        notes: str | None = None,
    ) -> RefundRequest | None:
        row = await self._session.get(RefundRequestTable, refund_id)
        if row is None:
            return None
        row.status = status.value
        row.processed_by = processed_by
        row.processed_at = processed_at
        row.updated_at = processed_at
        if notes is not None:
            row.notes = notes
        await self._session.flush()
        return self._table_to_refund(row)

    @staticmethod
    def _table_to_refund(row: RefundRequestTable) -> RefundRequest:
        return RefundRequest(
            id=int(row.id) if row.id is not None else 0,
            ticket_number=row.ticket_number,
            requested_by=row.requested_by,
            reason=row.reason,
            status=RefundStatus(row.status),
            amount=float(row.amount),
            currency=row.currency,
            processed_by=row.processed_by,
            processed_at=_ensure_optional_datetime(row.processed_at),
            notes=row.notes,
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
        )


class TicketHistoryLog:
    """Append-only access to `ticket_history`."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        ticket_id: str,
        action: HistoryAction,
        description: str,
        actor_id: str,
        *,
        created_at: datetime | None = None,
    ) -> TicketHistoryEntry:
        row = TicketHistoryTable(
            ticket_id=ticket_id,
            action=action.value,
            description=description,
            actor_id=actor_id,
            created_at=created_at or datetime.now(timezone.utc),
        )
        self._session.add(row)
        await self._session.flush()
        return self._table_to_entry(row)

    async def list_for_ticket(self, ticket_id: str) -> Sequence[TicketHistoryEntry]:
        result = await self._session.execute(
            select(TicketHistoryTable)
            .where(TicketHistoryTable.ticket_id == ticket_id)
            .order_by(TicketHistoryTable.created_at.asc(), TicketHistoryTable.id.asc())
        )
        return [self._table_to_entry(row) for row in result.scalars().all()]

    @staticmethod
    def _table_to_entry(row: TicketHistoryTable) -> TicketHistoryEntry:
        return TicketHistoryEntry(
            id=int(row.id) if row.id is not None else 0,
            ticket_id=row.ticket_id,
            action=HistoryAction(row.action),
            description=row.description,
            actor_id=row.actor_id,
            created_at=_ensure_datetime(row.created_at),
        )


def _is_number_conflict(exc: IntegrityError) -> bool:
    """True when the violated constraint is the unique ticket number.

    PostgreSQL reports the index name, SQLite the ``table.column`` pair.
    """

    message = str(exc.orig)
    return "ix_tickets_number" in message or "tickets.number" in message


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def _ensure_optional_datetime(value: datetime | None) -> datetime | None:
    return None if value is None else _ensure_datetime(value)
