import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from apps.helpdesk.api.routes import admin, health, instructor, public, tickets
from apps.helpdesk.core.config import get_settings
from apps.helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from apps.helpdesk.notifications import NotificationDispatcher, NotificationWorker
from apps.helpdesk.tickets.errors import TicketServiceError
from apps.helpdesk.tickets.repository import (
    AttachmentRepository,
    CategoryRepository,
    TicketCommentRepository,
    TicketHistoryRepository,
    TicketRepository,
)
from apps.helpdesk.tickets.service import TicketLifecycleService

API_PREFIX = "/api/v1"

logger = logging.getLogger(__name__)


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    return dsn


def build_ticket_service(
    session_factory: async_sessionmaker,
    *,
    engine=None,
    dispatcher: NotificationDispatcher | None = None,
    worker: NotificationWorker | None = None,
) -> tuple[TicketLifecycleService, TicketRepository]:
    ticket_repository = TicketRepository(session_factory, engine=engine)
    service = TicketLifecycleService(
        ticket_repository,
        comments=TicketCommentRepository(session_factory),
        history=TicketHistoryRepository(session_factory),
        categories=CategoryRepository(session_factory),
        attachments=AttachmentRepository(session_factory),
        dispatcher=dispatcher,
        scheduler=worker,
    )
    return service, ticket_repository


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app_logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = app_logger
    app.state.tracer_provider = tracer_provider

    db_engine = create_async_engine(_to_asyncpg_dsn(settings.postgres_dsn), future=True)
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
    dispatcher = NotificationDispatcher(settings)
    worker = NotificationWorker(
        max_queue_size=settings.notification_queue_size,
        drain_timeout=settings.notification_drain_timeout_seconds,
    )

    service, ticket_repository = build_ticket_service(
        session_factory, engine=db_engine, dispatcher=dispatcher, worker=worker
    )
    app.state.db_engine = db_engine
    app.state.db_session_factory = session_factory
    app.state.notification_worker = worker
    app.state.ticket_service = None
    try:
        await ticket_repository.ensure_schema()
        app.state.ticket_service = service
    except Exception:
        app_logger.exception("Ticket store is unavailable; ticket endpoints will answer 503")

    await worker.start()
    try:
        yield
    finally:
        await worker.stop()
        await dispatcher.aclose()
        await db_engine.dispose()
        shutdown_tracer(tracer_provider)


async def handle_ticket_service_error(request: Request, exc: TicketServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan if use_lifespan else None)
    app.add_exception_handler(TicketServiceError, handle_ticket_service_error)
    app.include_router(health.router, prefix=API_PREFIX)
    app.include_router(public.router, prefix=API_PREFIX)
    app.include_router(tickets.router, prefix=API_PREFIX)
    app.include_router(instructor.router, prefix=API_PREFIX)
    app.include_router(admin.router, prefix=API_PREFIX)
    return app


app = create_app()
