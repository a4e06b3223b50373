import logging
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from apps.api.api.routes import ping, tickets
from apps.api.core.config import get_settings
from apps.api.core.logging import configure_logging, init_tracer, shutdown_tracer
from apps.api.tickets.service import TicketLifecycleService, generate_ticket_number

logger = logging.getLogger(__name__)


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    return dsn


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    db_engine: AsyncEngine | None = None
    app.state.db_engine = None
    app.state.ticket_service = None
    try:
        # SQL echo is driven by the sqlalchemy.engine logger level.
        db_engine = create_async_engine(_to_asyncpg_dsn(settings.postgres_dsn), future=True)
        app.state.db_engine = db_engine
        session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
        ticket_service = TicketLifecycleService(
            session_factory,
            number_generator=partial(generate_ticket_number, settings.ticket_number_prefix),
            number_attempts=settings.ticket_number_attempts,
            default_currency=settings.default_currency,
            engine=db_engine,
        )
        await ticket_service.ensure_schema()
        app.state.ticket_service = ticket_service
    except Exception:
        logger.exception("Ticket service initialisation failed; ticket routes will return 503")
    try:
        yield
    finally:
        if db_engine is not None:
            await db_engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(tickets.router)
    return app


app = create_app()
