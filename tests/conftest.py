from __future__ import annotations

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from apps.api.tickets.service import TicketLifecycleService


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    factory = async_sessionmaker(engine, expire_on_commit=False)
    service = TicketLifecycleService(factory, engine=engine)
    await service.ensure_schema()
    return factory


@pytest_asyncio.fixture
async def service(session_factory: async_sessionmaker, engine: AsyncEngine) -> TicketLifecycleService:
    return TicketLifecycleService(session_factory, engine=engine)


@pytest_asyncio.fixture
async def service_pair(tmp_path) -> tuple[TicketLifecycleService, TicketLifecycleService]:
    """Two services on separate engines sharing one SQLite file, like two API workers."""

    url = f"sqlite+aiosqlite:///{tmp_path / 'tickets.db'}"
    engines = [create_async_engine(url), create_async_engine(url)]
    services = [
        TicketLifecycleService(async_sessionmaker(engine, expire_on_commit=False), engine=engine)
        for engine in engines
    ]
    await services[0].ensure_schema()
    try:
        yield services[0], services[1]
    finally:
        for engine in engines:
            await engine.dispose()
