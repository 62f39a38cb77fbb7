from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from apps.helpdesk.dependencies.auth import Identity, Role
from apps.helpdesk.notifications.dispatcher import NotificationDispatcher
from apps.helpdesk.tickets.models import Ticket, TicketPriority, TicketType
from apps.helpdesk.tickets.repository import (
    AttachmentRepository,
    CategoryRepository,
    TicketCommentRepository,
    TicketHistoryRepository,
    TicketRepository,
)
from apps.helpdesk.tickets.service import TicketLifecycleService
from apps.helpdesk.tickets.state import TicketStatus

BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class SteppingClock:
    """Deterministic clock advancing by ``step`` on every call."""

    def __init__(self, start: datetime = BASE_TIME, step: timedelta = timedelta(seconds=1)) -> None:
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value


class RecordingScheduler:
    """Collects notification jobs so tests can inspect or run them."""

    def __init__(self) -> None:
        self.jobs: list[tuple[str, Callable[[], Any]]] = []

    def enqueue(self, name: str, job: Callable[[], Any]) -> bool:
        self.jobs.append((name, job))
        return True

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.jobs]

    async def run_all(self) -> list[Any]:
        jobs, self.jobs = self.jobs, []
        return [await job() for _, job in jobs]


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def ticket_repository(session_factory: async_sessionmaker, engine: AsyncEngine) -> TicketRepository:
    return TicketRepository(session_factory, engine=engine)


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def dispatcher() -> AsyncMock:
    return AsyncMock(spec=NotificationDispatcher)


@pytest.fixture
def service(
    session_factory: async_sessionmaker,
    ticket_repository: TicketRepository,
    dispatcher: AsyncMock,
    scheduler: RecordingScheduler,
    clock: SteppingClock,
) -> TicketLifecycleService:
    return TicketLifecycleService(
        ticket_repository,
        comments=TicketCommentRepository(session_factory),
        history=TicketHistoryRepository(session_factory),
        categories=CategoryRepository(session_factory),
        attachments=AttachmentRepository(session_factory),
        dispatcher=dispatcher,
        scheduler=scheduler,
        clock=clock,
    )


@pytest.fixture
def student() -> Identity:
    return Identity(subject_id="student-1", email="student1@example.edu", role=Role.STUDENT)


@pytest.fixture
def other_student() -> Identity:
    return Identity(subject_id="student-2", email="student2@example.edu", role=Role.STUDENT)


@pytest.fixture
def instructor() -> Identity:
    return Identity(subject_id="instructor-1", email="instructor1@example.edu", role=Role.INSTRUCTOR)


@pytest.fixture
def other_instructor() -> Identity:
    return Identity(subject_id="instructor-2", email="instructor2@example.edu", role=Role.INSTRUCTOR)


@pytest.fixture
def admin() -> Identity:
    return Identity(subject_id="admin-1", email="admin@example.edu", role=Role.ADMIN)


@pytest.fixture
def make_ticket() -> Callable[..., Ticket]:
    counter = {"value": 0}

    def factory(**overrides: Any) -> Ticket:
        counter["value"] += 1
        number = counter["value"]
        created_at = overrides.pop("created_at", BASE_TIME + timedelta(minutes=number))
        values: dict[str, Any] = {
            "id": f"ticket-{number}",
            "ticket_number": f"TKT-20240501090000-{number:06X}",
            "title": f"Ticket {number}",
            "description": "Cannot open the assignment page",
            "status": TicketStatus.OPEN,
            "priority": TicketPriority.MEDIUM,
            "type": TicketType.GENERAL,
            "student_id": "student-1",
            "instructor_id": None,
            "course_id": None,
            "category_id": None,
            "metadata": {"student_email": "student1@example.edu"},
            "created_at": created_at,
            "updated_at": created_at,
        }
        values.update(overrides)
        return Ticket(**values)

    return factory
