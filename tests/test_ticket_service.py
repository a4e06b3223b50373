from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from apps.api.tickets.errors import (
    DuplicateTicketNumberError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from apps.api.tickets.service import TicketLifecycleService
from apps.api.tickets.state import HistoryAction, RefundStatus, TicketStatus
from apps.api.tickets.stores import RefundRequestStore, TicketHistoryLog, TicketStore
from packages.db.models import TicketTable


async def _import(service: TicketLifecycleService, number: str, *, ticket_type: str, price: float):
    return await service.import_ticket(
        owner_id="owner-1",
        number=number,
        subject="Flight THR-MHD",
        ticket_type=ticket_type,
        price=price,
    )


@pytest.mark.asyncio
async def test_create_ticket_starts_open_with_history(service: TicketLifecycleService):
    ticket = await service.create_ticket(
        owner_id="owner-1",
        subject="Baggage lost",
        description="My bag did not arrive",
        priority="high",
    )

    assert ticket.status == TicketStatus.OPEN
    assert ticket.number.startswith("TKT-")
    assert len(ticket.number) == len("TKT-") + 8

    history = await service.get_history(ticket.id, "owner-1")
    assert [entry.action for entry in history] == [HistoryAction.CREATED]
    assert history[0].actor_id == "owner-1"


@pytest.mark.asyncio
async def test_create_ticket_rejects_unknown_priority(service: TicketLifecycleService):
    with pytest.raises(ValidationError):
        await service.create_ticket(owner_id="owner-1", subject="s", description="d", priority="urgent")

    assert await service.list_tickets_for_owner("owner-1") == []


@pytest.mark.asyncio
async def test_create_ticket_retries_colliding_numbers(session_factory: async_sessionmaker, engine: AsyncEngine):
    numbers = iter(["TKT-taken", "TKT-taken", "TKT-fresh"])
    service = TicketLifecycleService(session_factory, engine=engine, number_generator=lambda: next(numbers))

    first = await service.create_ticket(owner_id="owner-1", subject="a", description="a")
    second = await service.create_ticket(owner_id="owner-1", subject="b", description="b")

    assert first.number == "TKT-taken"
    assert second.number == "TKT-fresh"


@pytest.mark.asyncio
async def test_create_ticket_gives_up_after_bounded_attempts(session_factory: async_sessionmaker, engine: AsyncEngine):
    service = TicketLifecycleService(
        session_factory, engine=engine, number_generator=lambda: "TKT-fixed", number_attempts=2
    )
    await service.create_ticket(owner_id="owner-1", subject="a", description="a")

    with pytest.raises(DuplicateTicketNumberError):
        await service.create_ticket(owner_id="owner-1", subject="b", description="b")


@pytest.mark.asyncio
async def test_import_rejects_duplicate_number(service: TicketLifecycleService):
    await _import(service, "TKT-1", ticket_type="charter", price=100)

    with pytest.raises(DuplicateTicketNumberError):
        await _import(service, "TKT-1", ticket_type="systematic", price=200)

    ticket = await service.get_ticket_by_number("TKT-1")
    assert ticket.price == pytest.approx(100)


@pytest.mark.asyncio
async def test_import_validates_type_and_price(service: TicketLifecycleService):
    with pytest.raises(ValidationError):
        await _import(service, "TKT-X", ticket_type="business", price=100)
    with pytest.raises(ValidationError):
        await _import(service, "TKT-Y", ticket_type="charter", price=-1)


@pytest.mark.asyncio
async def test_get_ticket_is_scoped_to_owner(service: TicketLifecycleService):
    ticket = await service.create_ticket(owner_id="owner-1", subject="s", description="d")

    assert (await service.get_ticket(ticket.id, "owner-1")).number == ticket.number
    with pytest.raises(NotFoundError):
        await service.get_ticket(ticket.id, "owner-2")
    with pytest.raises(NotFoundError):
        await service.get_history(ticket.id, "owner-2")


@pytest.mark.asyncio
async def test_list_tickets_for_owner(service: TicketLifecycleService):
    await service.create_ticket(owner_id="owner-1", subject="first", description="d")
    await service.create_ticket(owner_id="owner-1", subject="second", description="d")
    await service.create_ticket(owner_id="owner-2", subject="other", description="d")

    tickets = await service.list_tickets_for_owner("owner-1")
    assert {ticket.subject for ticket in tickets} == {"first", "second"}


@pytest.mark.asyncio
async def test_update_status_appends_history(service: TicketLifecycleService):
    ticket = await service.create_ticket(owner_id="owner-1", subject="s", description="d")

    updated = await service.update_status(
        ticket.id, owner_id="owner-1", new_status="in_progress", description="Agent assigned"
    )

    assert updated.status == TicketStatus.IN_PROGRESS
    assert (await service.get_ticket(ticket.id, "owner-1")).status == TicketStatus.IN_PROGRESS
    history = await service.get_history(ticket.id, "owner-1")
    assert [entry.action for entry in history] == [HistoryAction.CREATED, HistoryAction.STATUS_UPDATED]
    assert history[-1].description == "Agent assigned"


@pytest.mark.asyncio
async def test_update_status_failures(service: TicketLifecycleService):
    ticket = await service.create_ticket(owner_id="owner-1", subject="s", description="d")

    with pytest.raises(NotFoundError):
        await service.update_status(ticket.id, owner_id="owner-2", new_status="closed")
    with pytest.raises(ValidationError):
        await service.update_status(ticket.id, owner_id="owner-1", new_status="cancelled")

    history = await service.get_history(ticket.id, "owner-1")
    assert len(history) == 1


@pytest.mark.asyncio
async def test_cancel_systematic_ticket_creates_pending_refund(service: TicketLifecycleService):
    imported = await _import(service, "TKT-SYS", ticket_type="systematic", price=1000)

    refund = await service.cancel_by_number("TKT-SYS", reason="changed plans", requested_by="owner-1")

    assert refund.amount == pytest.approx(800.0)
    assert refund.status == RefundStatus.PENDING
    assert refund.currency == "USD"
    assert refund.requested_by == "owner-1"
    ticket = await service.get_ticket_by_number("TKT-SYS")
    assert ticket.status == TicketStatus.CANCELLED
    assert ticket.price == pytest.approx(1000)
    assert ticket.refund_status == RefundStatus.PENDING
    assert ticket.refund_amount == pytest.approx(800.0)

    history = await service.get_history(imported.id, "owner-1")
    cancelled = [entry for entry in history if entry.action == HistoryAction.CANCELLED]
    assert len(cancelled) == 1
    assert cancelled[0].description == "changed plans"


@pytest.mark.asyncio
async def test_cancel_charter_ticket_refunds_half(service: TicketLifecycleService):
    await service.import_ticket(
        owner_id="owner-1", number="TKT-CH", subject="Charter", ticket_type="charter", price=500, currency="eur"
    )

    refund = await service.cancel_by_number("TKT-CH", reason="sick")

    assert refund.amount == pytest.approx(250.0)
    assert refund.currency == "EUR"
    assert refund.requested_by == "system"


@pytest.mark.asyncio
async def test_cancel_twice_fails_without_second_refund(service: TicketLifecycleService):
    await _import(service, "TKT-2X", ticket_type="charter", price=500)
    await service.cancel_by_number("TKT-2X", reason="first")

    with pytest.raises(InvalidStateError) as exc:
        await service.cancel_by_number("TKT-2X", reason="second")

    assert "current status is cancelled" in str(exc.value)
    refunds = await service.list_refund_requests_by_number("TKT-2X")
    assert len(refunds) == 1


@pytest.mark.asyncio
async def test_cancel_requires_active_status(service: TicketLifecycleService):
    ticket = await service.create_ticket(owner_id="owner-1", subject="s", description="d")

    with pytest.raises(InvalidStateError):
        await service.cancel_by_number(ticket.number, reason="nope")

    assert (await service.get_ticket(ticket.id, "owner-1")).status == TicketStatus.OPEN
    assert await service.list_refund_requests_by_number(ticket.number) == []


@pytest.mark.asyncio
async def test_cancel_unknown_ticket(service: TicketLifecycleService):
    with pytest.raises(NotFoundError):
        await service.cancel_by_number("TKT-missing", reason="x")


@pytest.mark.asyncio
async def test_cancel_with_invalid_ticket_type_leaves_no_trace(
    service: TicketLifecycleService, session_factory: async_sessionmaker
):
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        async with session.begin():
            session.add(
                TicketTable(
                    id=str(uuid.uuid4()),
                    number="TKT-NOTYPE",
                    owner_id="owner-1",
                    subject="legacy",
                    description="",
                    priority="medium",
                    status="active",
                    ticket_type=None,
                    price=300.0,
                    currency="USD",
                    created_at=now,
                    updated_at=now,
                )
            )

    with pytest.raises(ValidationError):
        await service.cancel_by_number("TKT-NOTYPE", reason="x")

    assert (await service.get_ticket_by_number("TKT-NOTYPE")).status == TicketStatus.ACTIVE
    assert await service.list_refund_requests_by_number("TKT-NOTYPE") == []


@pytest.mark.asyncio
async def test_cancel_rolls_back_when_history_write_fails(service: TicketLifecycleService, monkeypatch):
    await _import(service, "TKT-RB", ticket_type="systematic", price=1000)

    async def failing_append(self, *args, **kwargs):
        raise OperationalError("INSERT INTO ticket_history", {}, Exception("disk full"))

    monkeypatch.setattr(TicketHistoryLog, "append", failing_append)

    with pytest.raises(PersistenceError):
        await service.cancel_by_number("TKT-RB", reason="x")

    monkeypatch.undo()
    ticket = await service.get_ticket_by_number("TKT-RB")
    assert ticket.status == TicketStatus.ACTIVE
    assert ticket.refund_status is None
    assert await service.list_refund_requests_by_number("TKT-RB") == []


@pytest.mark.asyncio
async def test_get_refund_status_returns_latest(service: TicketLifecycleService):
    await _import(service, "TKT-GR", ticket_type="charter", price=500)

    with pytest.raises(NotFoundError):
        await service.get_refund_status_by_number("TKT-GR")

    await service.cancel_by_number("TKT-GR", reason="first")
    refund = await service.get_refund_status_by_number("TKT-GR")
    assert refund.reason == "first"
    assert refund.status == RefundStatus.PENDING


@pytest.mark.asyncio
async def test_update_refund_status_processed(service: TicketLifecycleService):
    imported = await _import(service, "TKT-P", ticket_type="systematic", price=1000)
    await service.cancel_by_number("TKT-P", reason="changed plans")

    refund = await service.update_refund_status_by_number(
        "TKT-P", status="processed", processed_by="agent-7", notes="wired"
    )

    assert refund.status == RefundStatus.PROCESSED
    assert refund.processed_by == "agent-7"
    assert refund.processed_at is not None
    assert refund.notes == "wired"
    assert refund.amount == pytest.approx(800.0)

    ticket = await service.get_ticket_by_number("TKT-P")
    assert ticket.refund_status == RefundStatus.PROCESSED
    assert ticket.refund_processed_at is not None
    assert (await service.get_refund_status_by_number("TKT-P")).status == ticket.refund_status

    history = await service.get_history(imported.id, "owner-1")
    assert history[-1].action == HistoryAction.REFUND_STATUS_UPDATED
    assert history[-1].actor_id == "agent-7"


@pytest.mark.asyncio
async def test_update_refund_status_approved_does_not_set_processed_time(service: TicketLifecycleService):
    await _import(service, "TKT-AP", ticket_type="charter", price=500)
    await service.cancel_by_number("TKT-AP", reason="x")

    await service.update_refund_status_by_number("TKT-AP", status="approved", processed_by="agent-1")

    ticket = await service.get_ticket_by_number("TKT-AP")
    assert ticket.refund_status == RefundStatus.APPROVED
    assert ticket.refund_processed_at is None


@pytest.mark.asyncio
async def test_update_refund_status_validation_and_missing(service: TicketLifecycleService):
    await _import(service, "TKT-V", ticket_type="charter", price=500)

    with pytest.raises(NotFoundError):
        await service.update_refund_status_by_number("TKT-V", status="approved", processed_by="agent-1")

    await service.cancel_by_number("TKT-V", reason="x")
    with pytest.raises(ValidationError):
        await service.update_refund_status_by_number("TKT-V", status="refunded", processed_by="agent-1")

    assert (await service.get_refund_status_by_number("TKT-V")).status == RefundStatus.PENDING


@pytest.mark.asyncio
async def test_update_refund_status_is_atomic_when_ticket_missing(
    service: TicketLifecycleService, session_factory: async_sessionmaker
):
    async with session_factory() as session:
        async with session.begin():
            await RefundRequestStore(session).add(
                ticket_number="TKT-ORPHAN",
                requested_by="system",
                reason="orphan",
                amount=10.0,
                currency="USD",
                created_at=datetime.now(timezone.utc),
            )

    with pytest.raises(NotFoundError):
        await service.update_refund_status_by_number("TKT-ORPHAN", status="processed", processed_by="agent-7")

    refund = await service.get_refund_status_by_number("TKT-ORPHAN")
    assert refund.status == RefundStatus.PENDING
    assert refund.processed_by is None
    assert refund.processed_at is None


@pytest.mark.asyncio
async def test_create_ticket_surfaces_non_number_constraint_failures(
    session_factory: async_sessionmaker, engine: AsyncEngine
):
    numbers = iter(["TKT-N1", "TKT-N2"])
    service = TicketLifecycleService(session_factory, engine=engine, number_generator=lambda: next(numbers))

    with pytest.raises(PersistenceError):
        await service.create_ticket(owner_id="owner-1", subject=None, description="d")  # type: ignore[arg-type]

    assert next(numbers) == "TKT-N2"
    assert await service.list_tickets_for_owner("owner-1") == []


@pytest.mark.asyncio
async def test_concurrent_cancel_loser_fails_without_extra_refund(service_pair, monkeypatch):
    first, rival = service_pair
    await _import(first, "TKT-RACE", ticket_type="charter", price=500)

    original_add = RefundRequestStore.add
    interleaved = False

    async def add_after_rival_cancel(self, **kwargs):
        nonlocal interleaved
        if not interleaved:
            interleaved = True
            await rival.cancel_by_number("TKT-RACE", reason="rival", requested_by="agent-2")
        return await original_add(self, **kwargs)

    monkeypatch.setattr(RefundRequestStore, "add", add_after_rival_cancel)

    with pytest.raises(InvalidStateError) as exc:
        await first.cancel_by_number("TKT-RACE", reason="first", requested_by="agent-1")
    assert "changed concurrently" in str(exc.value)

    monkeypatch.undo()
    refunds = await first.list_refund_requests_by_number("TKT-RACE")
    assert [refund.reason for refund in refunds] == ["rival"]
    assert refunds[0].amount == pytest.approx(250.0)

    ticket = await first.get_ticket_by_number("TKT-RACE")
    assert ticket.status == TicketStatus.CANCELLED
    assert ticket.refund_status == RefundStatus.PENDING
    history = await first.get_history(ticket.id, "owner-1")
    assert [entry.action for entry in history] == [HistoryAction.IMPORTED, HistoryAction.CANCELLED]


@pytest.mark.asyncio
async def test_status_update_does_not_overwrite_concurrent_cancel(service_pair, monkeypatch):
    first, rival = service_pair
    ticket = await _import(first, "TKT-STALE", ticket_type="charter", price=500)

    original_set_status = TicketStore.set_status
    interleaved = False

    async def set_status_after_rival_cancel(self, *args, **kwargs):
        nonlocal interleaved
        if not interleaved:
            interleaved = True
            await rival.cancel_by_number("TKT-STALE", reason="changed plans")
        return await original_set_status(self, *args, **kwargs)

    monkeypatch.setattr(TicketStore, "set_status", set_status_after_rival_cancel)

    with pytest.raises(InvalidStateError):
        await first.update_status(ticket.id, owner_id="owner-1", new_status="in_progress")

    monkeypatch.undo()
    reloaded = await first.get_ticket_by_number("TKT-STALE")
    assert reloaded.status == TicketStatus.CANCELLED
    assert reloaded.refund_status == RefundStatus.PENDING
    assert reloaded.refund_amount == pytest.approx(250.0)
    assert len(await first.list_refund_requests_by_number("TKT-STALE")) == 1
    history = await first.get_history(ticket.id, "owner-1")
    assert [entry.action for entry in history] == [HistoryAction.IMPORTED, HistoryAction.CANCELLED]


@pytest.mark.asyncio
async def test_update_status_rejects_closed_tickets(service: TicketLifecycleService):
    ticket = await service.create_ticket(owner_id="owner-1", subject="s", description="d")
    await service.update_status(ticket.id, owner_id="owner-1", new_status="closed")

    with pytest.raises(InvalidStateError):
        await service.update_status(ticket.id, owner_id="owner-1", new_status="open")

    assert (await service.get_ticket(ticket.id, "owner-1")).status == TicketStatus.CLOSED
