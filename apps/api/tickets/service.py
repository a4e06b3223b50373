from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Sequence

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

from .errors import (
    DuplicateTicketNumberError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .models import RefundRequest, Ticket, TicketHistoryEntry
from .policy import calculate_refund_amount
from .state import (
    HistoryAction,
    RefundStatus,
    TicketPriority,
    TicketStateMachine,
    TicketStatus,
    TicketType,
    parse_enum,
)
from .stores import RefundRequestStore, TicketHistoryLog, TicketStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SYSTEM_ACTOR = "system"


def generate_ticket_number(prefix: str = "TKT-") -> str:
    return f"{prefix}{uuid.uuid4().hex[:8]}"


@dataclass(slots=True)
class _UnitOfWork:
    """Stores sharing one session and therefore one transaction."""

    session: AsyncSession
    tickets: TicketStore
    refunds: RefundRequestStore
    history: TicketHistoryLog


class TicketLifecycleService:
    """High level orchestration for ticket creation, cancellation and refunds.

    Each public operation runs in its own transaction. Multi-row writes
    (cancel, refund resolution) either commit completely or roll back.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        number_generator: Callable[[], str] | None = None,
        number_attempts: int = 3,
        default_currency: str = "USD",
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._number_generator = number_generator or generate_ticket_number
        self._number_attempts = max(1, number_attempts)
        self._default_currency = default_currency

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[_UnitOfWork]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield _UnitOfWork(
                        session=session,
                        tickets=TicketStore(session),
                        refunds=RefundRequestStore(session),
                        history=TicketHistoryLog(session),
                    )
        except SQLAlchemyError as exc:
            logger.exception("Ticket storage operation failed")
            raise PersistenceError(f"storage failure: {exc.__class__.__name__}") from exc

    async def create_ticket(
        self,
        *,
        owner_id: str,
        subject: str,
        description: str,
        priority: TicketPriority | str = TicketPriority.MEDIUM,
        ticket_type: TicketType | str | None = None,
        price: float = 0.0,
        currency: str | None = None,
    ) -> Ticket:
        parsed_priority = parse_enum(TicketPriority, priority, "priority")
        parsed_type = parse_enum(TicketType, ticket_type, "ticket type") if ticket_type is not None else None
        _validate_price(price)

        with tracer.start_as_current_span("tickets.create"):
            attempt = 0
            while True:
                attempt += 1
                ticket = self._new_ticket(
                    number=self._number_generator(),
                    owner_id=owner_id,
                    subject=subject,
                    description=description,
                    priority=parsed_priority,
                    status=TicketStateMachine.initial_state(),
                    ticket_type=parsed_type,
                    price=price,
                    currency=currency,
                )
                try:
                    async with self._unit_of_work() as uow:
                        await uow.tickets.add(ticket)
                        await uow.history.append(
                            ticket.id,
                            HistoryAction.CREATED,
                            "Ticket created",
                            owner_id,
                            created_at=ticket.created_at,
                        )
                except DuplicateTicketNumberError:
                    if attempt >= self._number_attempts:
                        raise
                    logger.warning("Generated ticket number %s collided; retrying", ticket.number)
                    continue
                logger.info("Created ticket %s for owner %s", ticket.number, owner_id)
                return ticket

    async def import_ticket(
        self,
        *,
        owner_id: str,
        subject: str,
        ticket_type: TicketType | str,
        price: float,
        number: str | None = None,
        description: str = "",
        priority: TicketPriority | str = TicketPriority.MEDIUM,
        currency: str | None = None,
        actor_id: str | None = None,
    ) -> Ticket:
        """Register a ticket sold elsewhere; it starts ``active`` and can be cancelled."""

        parsed_priority = parse_enum(TicketPriority, priority, "priority")
        parsed_type = parse_enum(TicketType, ticket_type, "ticket type")
        _validate_price(price)

        ticket = self._new_ticket(
            number=number or self._number_generator(),
            owner_id=owner_id,
            subject=subject,
            description=description,
            priority=parsed_priority,
            status=TicketStateMachine.initial_state(imported=True),
            ticket_type=parsed_type,
            price=price,
            currency=currency,
        )
        with tracer.start_as_current_span("tickets.import") as span:
            span.set_attribute("ticket.number", ticket.number)
            async with self._unit_of_work() as uow:
                await uow.tickets.add(ticket)
                await uow.history.append(
                    ticket.id,
                    HistoryAction.IMPORTED,
                    "Ticket imported",
                    actor_id or owner_id,
                    created_at=ticket.created_at,
                )
        logger.info("Imported ticket %s (%s, %.2f %s)", ticket.number, parsed_type.value, price, ticket.currency)
        return ticket

    async def list_tickets_for_owner(self, owner_id: str) -> Sequence[Ticket]:
        async with self._unit_of_work() as uow:
            return await uow.tickets.list_for_owner(owner_id)

    async def get_ticket(self, ticket_id: str, owner_id: str) -> Ticket:
        async with self._unit_of_work() as uow:
            ticket = await uow.tickets.get_for_owner(ticket_id, owner_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def get_ticket_by_number(self, ticket_number: str) -> Ticket:
        async with self._unit_of_work() as uow:
            ticket = await uow.tickets.get_by_number(ticket_number)
        if ticket is None:
            raise NotFoundError(f"ticket not found: {ticket_number}")
        return ticket

    async def update_status(
        self,
        ticket_id: str,
        *,
        owner_id: str,
        new_status: TicketStatus | str,
        description: str = "",
    ) -> Ticket:
        with tracer.start_as_current_span("tickets.update_status"):
            async with self._unit_of_work() as uow:
                ticket = await uow.tickets.get_for_owner(ticket_id, owner_id, for_update=True)
                if ticket is None:
                    raise NotFoundError(f"Ticket {ticket_id} not found")

                target = TicketStateMachine.assert_status_update(ticket.status, new_status)
                now = datetime.now(timezone.utc)
                if not await uow.tickets.set_status(ticket_id, target, now, expected=ticket.status):
                    raise InvalidStateError("ticket status cannot change: status changed concurrently")
                await uow.history.append(
                    ticket_id,
                    HistoryAction.STATUS_UPDATED,
                    description,
                    owner_id,
                    created_at=now,
                )
        logger.info("Ticket %s status %s -> %s", ticket.number, ticket.status.value, target.value)
        return replace(ticket, status=target, updated_at=now)

    async def get_history(self, ticket_id: str, owner_id: str) -> Sequence[TicketHistoryEntry]:
        async with self._unit_of_work() as uow:
            ticket = await uow.tickets.get_for_owner(ticket_id, owner_id)
            if ticket is None:
                raise NotFoundError(f"Ticket {ticket_id} not found")
            return await uow.history.list_for_ticket(ticket_id)

    async def cancel_by_number(
        self,
        ticket_number: str,
        *,
        reason: str,
        requested_by: str = SYSTEM_ACTOR,
    ) -> RefundRequest:
        """Cancel an active ticket and open a pending refund request for it."""

        with tracer.start_as_current_span("tickets.cancel") as span:
            span.set_attribute("ticket.number", ticket_number)
            async with self._unit_of_work() as uow:
                ticket = await uow.tickets.get_by_number(ticket_number, for_update=True)
                if ticket is None:
                    raise NotFoundError(f"ticket not found: {ticket_number}")

                TicketStateMachine.assert_cancellable(ticket.status)
                amount = calculate_refund_amount(ticket.price, ticket.ticket_type)

                now = datetime.now(timezone.utc)
                refund = await uow.refunds.add(
                    ticket_number=ticket_number,
                    requested_by=requested_by,
                    reason=reason,
                    amount=amount,
                    currency=ticket.currency,
                    created_at=now,
                )
                cancelled = await uow.tickets.mark_cancelled(
                    ticket.id,
                    refund_status=RefundStatus.PENDING,
                    refund_amount=amount,
                    updated_at=now,
                )
                if not cancelled:
                    raise InvalidStateError("ticket cannot be cancelled: status changed concurrently")
                await uow.history.append(
                    ticket.id,
                    HistoryAction.CANCELLED,
                    reason,
                    requested_by,
                    created_at=now,
                )
        logger.info(
            "Cancelled ticket %s; refund %.2f %s pending", ticket_number, refund.amount, refund.currency
        )
        return refund

    async def get_refund_status_by_number(self, ticket_number: str) -> RefundRequest:
        async with self._unit_of_work() as uow:
            refund = await uow.refunds.latest_for_ticket(ticket_number)
        if refund is None:
            raise NotFoundError(f"no refund request found for ticket: {ticket_number}")
        return refund

    async def list_refund_requests_by_number(self, ticket_number: str) -> Sequence[RefundRequest]:
        async with self._unit_of_work() as uow:
            return await uow.refunds.list_for_ticket(ticket_number)

    async def update_refund_status_by_number(
        self,
        ticket_number: str,
        *,
        status: RefundStatus | str,
        processed_by: str,
        notes: str | None = None,
    ) -> RefundRequest:
        """Resolve the latest refund request and mirror its status onto the ticket."""

        new_status = parse_enum(RefundStatus, status, "refund status")
        with tracer.start_as_current_span("tickets.update_refund_status") as span:
            span.set_attribute("ticket.number", ticket_number)
            async with self._unit_of_work() as uow:
                latest = await uow.refunds.latest_for_ticket(ticket_number, for_update=True)
                if latest is None:
                    raise NotFoundError(f"no refund request found for ticket: {ticket_number}")

                now = datetime.now(timezone.utc)
                refund = await uow.refunds.resolve(
                    latest.id,
                    status=new_status,
                    processed_by=processed_by,
                    processed_at=now,
                    notes=notes,
                )
                if refund is None:
                    raise NotFoundError(f"no refund request found for ticket: {ticket_number}")

                ticket = await uow.tickets.get_by_number(ticket_number, for_update=True)
                if ticket is None:
                    raise NotFoundError(f"ticket not found: {ticket_number}")
                await uow.tickets.set_refund_status(
                    ticket.id,
                    refund_status=new_status,
                    processed_at=now if new_status is RefundStatus.PROCESSED else None,
                    updated_at=now,
                )
                await uow.history.append(
                    ticket.id,
                    HistoryAction.REFUND_STATUS_UPDATED,
                    f"Refund {latest.status.value} -> {new_status.value}",
                    processed_by,
                    created_at=now,
                )
        logger.info("Refund for ticket %s marked %s by %s", ticket_number, new_status.value, processed_by)
        return refund

    def _new_ticket(
        self,
        *,
        number: str,
        owner_id: str,
        subject: str,
        description: str,
        priority: TicketPriority,
        status: TicketStatus,
        ticket_type: TicketType | None,
        price: float,
        currency: str | None,
    ) -> Ticket:
        now = datetime.now(timezone.utc)
        return Ticket(
            id=str(uuid.uuid4()),
            number=number,
            owner_id=owner_id,
            subject=subject,
            description=description,
            priority=priority,
            status=status,
            ticket_type=ticket_type,
            price=float(price),
            currency=(currency or self._default_currency).upper(),
            refund_status=None,
            refund_amount=None,
            refund_processed_at=None,
            created_at=now,
            updated_at=now,
        )


def _validate_price(price: float) -> None:
    if price < 0:
        raise ValidationError(f"invalid price: {price}")
