from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Collection, Mapping, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

from packages.db.models import (
    AttachmentTable,
    CategoryTable,
    TicketCommentTable,
    TicketHistoryTable,
    TicketTable,
)

from .errors import PersistenceError
from .filters import Pagination, TicketFilters, build_ticket_predicates, order_clause
from .models import (
    Attachment,
    Category,
    Ticket,
    TicketComment,
    TicketHistory,
    TicketPriority,
    TicketType,
)
from .state import TicketStatus

logger = logging.getLogger(__name__)


class DuplicateTicketNumberError(PersistenceError):
    """The generated ticket number is already taken."""

    def __init__(self, ticket_number: str) -> None:
        super().__init__("Ticket number already exists")
        self.ticket_number = ticket_number


class _SessionRepository:
    """Shared plumbing: session handling and translation of driver errors."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("Database failure during %s", operation)
            raise PersistenceError() from exc


class TicketRepository(_SessionRepository):
    """Persistence for tickets and the history rows written alongside them.

    Every mutating method accepts an optional :class:`TicketHistory` which is
    inserted in the same transaction as the ticket change.
    """

    async def create(self, ticket: Ticket, history: TicketHistory | None = None) -> Ticket:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(_ticket_to_table(ticket))
                    # Flush first so the history foreign key sees the ticket.
                    await session.flush()
                    if history is not None:
                        session.add(_history_to_table(history))
        except IntegrityError as exc:
            if await self.get_by_ticket_number(ticket.ticket_number) is not None:
                raise DuplicateTicketNumberError(ticket.ticket_number) from exc
            logger.exception("Integrity failure while creating ticket %s", ticket.id)
            raise PersistenceError() from exc
        except SQLAlchemyError as exc:
            logger.exception("Database failure while creating ticket %s", ticket.id)
            raise PersistenceError() from exc
        return ticket

    async def get_by_id(self, ticket_id: str) -> Ticket | None:
        async with self._session("get ticket") as session:
            result = await session.execute(_ticket_select().where(TicketTable.id == ticket_id))
            row = result.first()
        if row is None:
            return None
        return _table_to_ticket(row[0], row[1])

    async def get_by_ticket_number(self, ticket_number: str) -> Ticket | None:
        async with self._session("get ticket by number") as session:
            result = await session.execute(
                _ticket_select().where(TicketTable.ticket_number == ticket_number)
            )
            row = result.first()
        if row is None:
            return None
        return _table_to_ticket(row[0], row[1])

    async def get_by_student_id(
        self, student_id: str, filters: TicketFilters | None = None
    ) -> list[Ticket]:
        items, _ = await self.list(filters, Pagination(page_size=0), student_id=student_id)
        return list(items)

    async def get_by_course_id(
        self, course_id: str, filters: TicketFilters | None = None
    ) -> list[Ticket]:
        items, _ = await self.list(filters, Pagination(page_size=0), course_id=course_id)
        return list(items)

    async def get_by_instructor_id(
        self, instructor_id: str, filters: TicketFilters | None = None
    ) -> list[Ticket]:
        items, _ = await self.list(filters, Pagination(page_size=0), instructor_id=instructor_id)
        return list(items)

    async def list(
        self,
        filters: TicketFilters | None,
        pagination: Pagination,
        *,
        student_id: str | None = None,
        course_id: str | None = None,
        instructor_id: str | None = None,
    ) -> tuple[Sequence[Ticket], int]:
        """Return one page of matching tickets and the total before paging."""

        predicates = build_ticket_predicates(filters)
        if student_id is not None:
            predicates.append(TicketTable.student_id == student_id)
        if course_id is not None:
            predicates.append(TicketTable.course_id == course_id)
        if instructor_id is not None:
            predicates.append(TicketTable.instructor_id == instructor_id)

        count_stmt = select(func.count()).select_from(TicketTable).where(*predicates)
        stmt = (
            _ticket_select()
            .where(*predicates)
            .order_by(order_clause(pagination), TicketTable.id.asc())
        )
        if pagination.page_size > 0:
            stmt = stmt.offset(pagination.offset).limit(pagination.page_size)

        async with self._session("list tickets") as session:
            total = int((await session.execute(count_stmt)).scalar_one())
            result = await session.execute(stmt)
            items = [_table_to_ticket(ticket_row, category_row) for ticket_row, category_row in result.all()]
        return items, total

    async def update(
        self,
        ticket_id: str,
        values: Mapping[str, Any],
        *,
        history: TicketHistory | None = None,
        expected_statuses: Collection[TicketStatus] | None = None,
    ) -> Ticket | None:
        """Apply ``values`` to the ticket and return the stored result.

        When ``expected_statuses`` is given the write only happens while the
        stored status is one of them. ``None`` is returned when no row was
        written, either because the ticket is gone or the guard failed.
        """

        stmt = update(TicketTable).where(TicketTable.id == ticket_id)
        if expected_statuses is not None:
            stmt = stmt.where(TicketTable.status.in_([TicketStatus(s).value for s in expected_statuses]))
        stmt = stmt.values({_ticket_attribute(key): value for key, value in values.items()})
        stmt = stmt.execution_options(synchronize_session=False)

        async with self._session("update ticket") as session:
            async with session.begin():
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    return None
                if history is not None:
                    session.add(_history_to_table(history))
            fetched = await session.execute(_ticket_select().where(TicketTable.id == ticket_id))
            row = fetched.first()
        if row is None:
            return None
        return _table_to_ticket(row[0], row[1])

    async def update_status(
        self,
        ticket_id: str,
        status: TicketStatus,
        *,
        changed_at: datetime,
        history: TicketHistory | None = None,
        expected_statuses: Collection[TicketStatus] | None = None,
    ) -> Ticket | None:
        values = {"updated_at": changed_at, **status_timestamps(status, changed_at)}
        return await self.update(
            ticket_id, values, history=history, expected_statuses=expected_statuses
        )

    async def assign_instructor(
        self,
        ticket_id: str,
        instructor_id: str,
        *,
        assigned_at: datetime,
        history: TicketHistory | None = None,
    ) -> Ticket | None:
        return await self.update(
            ticket_id,
            {"instructor_id": instructor_id, "updated_at": assigned_at},
            history=history,
        )

    async def delete(self, ticket_id: str) -> bool:
        """Delete the ticket along with its comments, history and attachments."""

        comment_ids = select(TicketCommentTable.id).where(TicketCommentTable.ticket_id == ticket_id)
        async with self._session("delete ticket") as session:
            async with session.begin():
                await session.execute(
                    delete(AttachmentTable).where(
                        or_(
                            AttachmentTable.ticket_id == ticket_id,
                            AttachmentTable.comment_id.in_(comment_ids),
                        )
                    )
                )
                await session.execute(delete(TicketCommentTable).where(TicketCommentTable.ticket_id == ticket_id))
                await session.execute(delete(TicketHistoryTable).where(TicketHistoryTable.ticket_id == ticket_id))
                result = await session.execute(delete(TicketTable).where(TicketTable.id == ticket_id))
                return result.rowcount == 1


class TicketCommentRepository(_SessionRepository):
    async def create(self, comment: TicketComment, history: TicketHistory | None = None) -> TicketComment:
        async with self._session("create comment") as session:
            async with session.begin():
                session.add(_comment_to_table(comment))
                await session.flush()
                if history is not None:
                    session.add(_history_to_table(history))
                await session.execute(
                    update(TicketTable)
                    .where(TicketTable.id == comment.ticket_id)
                    .values(updated_at=comment.created_at)
                    .execution_options(synchronize_session=False)
                )
        return comment

    async def get_by_id(self, comment_id: str) -> TicketComment | None:
        async with self._session("get comment") as session:
            row = await session.get(TicketCommentTable, comment_id)
            if row is None:
                return None
            return _table_to_comment(row)

    async def list_by_ticket(self, ticket_id: str, *, include_internal: bool = True) -> list[TicketComment]:
        stmt = select(TicketCommentTable).where(TicketCommentTable.ticket_id == ticket_id)
        if not include_internal:
            stmt = stmt.where(TicketCommentTable.is_internal.is_(False))
        stmt = stmt.order_by(TicketCommentTable.created_at.asc(), TicketCommentTable.id.asc())
        async with self._session("list comments") as session:
            result = await session.execute(stmt)
            return [_table_to_comment(row) for row in result.scalars().all()]

    async def update_content(self, comment_id: str, content: str, updated_at: datetime) -> TicketComment | None:
        async with self._session("update comment") as session:
            async with session.begin():
                row = await session.get(TicketCommentTable, comment_id)
                if row is None:
                    return None
                row.content = content
                row.updated_at = updated_at
                comment = _table_to_comment(row)
        return comment

    async def delete(self, comment_id: str) -> bool:
        async with self._session("delete comment") as session:
            async with session.begin():
                await session.execute(delete(AttachmentTable).where(AttachmentTable.comment_id == comment_id))
                result = await session.execute(delete(TicketCommentTable).where(TicketCommentTable.id == comment_id))
                return result.rowcount == 1


class TicketHistoryRepository(_SessionRepository):
    async def create(self, history: TicketHistory) -> TicketHistory:
        async with self._session("create history") as session:
            async with session.begin():
                session.add(_history_to_table(history))
        return history

    async def list_by_ticket(self, ticket_id: str) -> list[TicketHistory]:
        async with self._session("list history") as session:
            result = await session.execute(
                select(TicketHistoryTable)
                .where(TicketHistoryTable.ticket_id == ticket_id)
                .order_by(TicketHistoryTable.created_at.asc(), TicketHistoryTable.id.asc())
            )
            return [_table_to_history(row) for row in result.scalars().all()]


class CategoryRepository(_SessionRepository):
    async def create(self, category: Category) -> Category:
        async with self._session("create category") as session:
            async with session.begin():
                session.add(_category_to_table(category))
        return category

    async def get_by_id(self, category_id: str) -> Category | None:
        async with self._session("get category") as session:
            row = await session.get(CategoryTable, category_id)
            if row is None:
                return None
            return _table_to_category(row)

    async def list(self, *, active_only: bool = True) -> list[Category]:
        stmt = select(CategoryTable)
        if active_only:
            stmt = stmt.where(CategoryTable.is_active.is_(True))
        stmt = stmt.order_by(CategoryTable.name.asc())
        async with self._session("list categories") as session:
            result = await session.execute(stmt)
            return [_table_to_category(row) for row in result.scalars().all()]

    async def update(self, category_id: str, values: Mapping[str, Any]) -> Category | None:
        async with self._session("update category") as session:
            async with session.begin():
                row = await session.get(CategoryTable, category_id)
                if row is None:
                    return None
                for key, value in values.items():
                    setattr(row, key, value)
                category = _table_to_category(row)
        return category

    async def delete(self, category_id: str) -> bool:
        async with self._session("delete category") as session:
            async with session.begin():
                # Tickets keep existing without a category.
                await session.execute(
                    update(TicketTable)
                    .where(TicketTable.category_id == category_id)
                    .values(category_id=None)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(delete(CategoryTable).where(CategoryTable.id == category_id))
                return result.rowcount == 1


class AttachmentRepository(_SessionRepository):
    async def create(self, attachment: Attachment, history: TicketHistory | None = None) -> Attachment:
        async with self._session("create attachment") as session:
            async with session.begin():
                session.add(_attachment_to_table(attachment))
                await session.flush()
                if history is not None:
                    session.add(_history_to_table(history))
        return attachment

    async def list_by_ticket(self, ticket_id: str) -> list[Attachment]:
        """Attachments on the ticket itself and on any of its comments."""

        comment_ids = select(TicketCommentTable.id).where(TicketCommentTable.ticket_id == ticket_id)
        async with self._session("list attachments") as session:
            result = await session.execute(
                select(AttachmentTable)
                .where(
                    or_(
                        AttachmentTable.ticket_id == ticket_id,
                        AttachmentTable.comment_id.in_(comment_ids),
                    )
                )
                .order_by(AttachmentTable.created_at.asc(), AttachmentTable.id.asc())
            )
            return [_table_to_attachment(row) for row in result.scalars().all()]

    async def list_by_comment(self, comment_id: str) -> list[Attachment]:
        async with self._session("list comment attachments") as session:
            result = await session.execute(
                select(AttachmentTable)
                .where(AttachmentTable.comment_id == comment_id)
                .order_by(AttachmentTable.created_at.asc())
            )
            return [_table_to_attachment(row) for row in result.scalars().all()]


def status_timestamps(status: TicketStatus, changed_at: datetime) -> dict[str, Any]:
    """Column values keeping ``resolved_at``/``closed_at`` consistent with ``status``."""

    status = TicketStatus(status)
    if status is TicketStatus.RESOLVED:
        return {"status": status.value, "resolved_at": changed_at, "closed_at": None}
    if status is TicketStatus.CLOSED:
        return {
            "status": status.value,
            "resolved_at": func.coalesce(TicketTable.resolved_at, changed_at),
            "closed_at": changed_at,
        }
    return {"status": status.value, "resolved_at": None, "closed_at": None}


def _ticket_select():
    return select(TicketTable, CategoryTable).outerjoin(
        CategoryTable, TicketTable.category_id == CategoryTable.id
    )


def _ticket_attribute(key: str) -> Any:
    if key == "metadata":
        return TicketTable.metadata_
    if key not in TicketTable.__table__.columns:
        raise KeyError(f"Unknown ticket column: {key}")
    return getattr(TicketTable, key)


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _ticket_to_table(ticket: Ticket) -> TicketTable:
    return TicketTable(
        id=ticket.id,
        ticket_number=ticket.ticket_number,
        title=ticket.title,
        description=ticket.description,
        status=_enum_value(ticket.status),
        priority=_enum_value(ticket.priority),
        type=_enum_value(ticket.type),
        student_id=ticket.student_id,
        instructor_id=ticket.instructor_id,
        course_id=ticket.course_id,
        category_id=ticket.category_id,
        metadata_=dict(ticket.metadata),
        created_at=ticket.created_at,
        updated_at=ticket.updated_at,
        resolved_at=ticket.resolved_at,
        closed_at=ticket.closed_at,
    )


def _table_to_ticket(row: TicketTable, category: CategoryTable | None = None) -> Ticket:
    return Ticket(
        id=row.id,
        ticket_number=row.ticket_number,
        title=row.title,
        description=row.description,
        status=TicketStatus(row.status),
        priority=TicketPriority(row.priority),
        type=TicketType(row.type),
        student_id=row.student_id,
        instructor_id=row.instructor_id,
        course_id=row.course_id,
        category_id=row.category_id,
        metadata=dict(row.metadata_ or {}),
        created_at=_ensure_datetime(row.created_at),
        updated_at=_ensure_datetime(row.updated_at),
        resolved_at=_optional_datetime(row.resolved_at),
        closed_at=_optional_datetime(row.closed_at),
        category=_table_to_category(category) if category is not None else None,
    )


def _comment_to_table(comment: TicketComment) -> TicketCommentTable:
    return TicketCommentTable(
        id=comment.id,
        ticket_id=comment.ticket_id,
        user_id=comment.user_id,
        content=comment.content,
        is_internal=comment.is_internal,
        metadata_=dict(comment.metadata),
        created_at=comment.created_at,
        updated_at=comment.updated_at,
    )


def _table_to_comment(row: TicketCommentTable) -> TicketComment:
    return TicketComment(
        id=row.id,
        ticket_id=row.ticket_id,
        user_id=row.user_id,
        content=row.content,
        is_internal=bool(row.is_internal),
        metadata=dict(row.metadata_ or {}),
        created_at=_ensure_datetime(row.created_at),
        updated_at=_ensure_datetime(row.updated_at),
    )


def _history_to_table(history: TicketHistory) -> TicketHistoryTable:
    return TicketHistoryTable(
        id=history.id,
        ticket_id=history.ticket_id,
        user_id=history.user_id,
        action=history.action,
        old_value=history.old_value,
        new_value=history.new_value,
        description=history.description,
        metadata_=dict(history.metadata),
        created_at=history.created_at,
    )


def _table_to_history(row: TicketHistoryTable) -> TicketHistory:
    return TicketHistory(
        id=row.id,
        ticket_id=row.ticket_id,
        user_id=row.user_id,
        action=row.action,
        old_value=row.old_value,
        new_value=row.new_value,
        description=row.description,
        metadata=dict(row.metadata_ or {}),
        created_at=_ensure_datetime(row.created_at),
    )


def _category_to_table(category: Category) -> CategoryTable:
    return CategoryTable(
        id=category.id,
        name=category.name,
        description=category.description,
        color=category.color,
        is_active=category.is_active,
        created_at=category.created_at,
        updated_at=category.updated_at,
    )


def _table_to_category(row: CategoryTable) -> Category:
    return Category(
        id=row.id,
        name=row.name,
        description=row.description,
        color=row.color,
        is_active=bool(row.is_active),
        created_at=_ensure_datetime(row.created_at),
        updated_at=_ensure_datetime(row.updated_at),
    )


def _attachment_to_table(attachment: Attachment) -> AttachmentTable:
    return AttachmentTable(
        id=attachment.id,
        ticket_id=attachment.ticket_id,
        comment_id=attachment.comment_id,
        file_name=attachment.file_name,
        file_url=attachment.file_url,
        file_type=attachment.file_type,
        uploaded_by=attachment.uploaded_by,
        metadata_=dict(attachment.metadata),
        created_at=attachment.created_at,
    )


def _table_to_attachment(row: AttachmentTable) -> Attachment:
    return Attachment(
        id=row.id,
        ticket_id=row.ticket_id,
        comment_id=row.comment_id,
        file_name=row.file_name,
        file_url=row.file_url,
        file_type=row.file_type,
        uploaded_by=row.uploaded_by,
        metadata=dict(row.metadata_ or {}),
        created_at=_ensure_datetime(row.created_at),
    )


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def _optional_datetime(value: datetime | None) -> datetime | None:
    return _ensure_datetime(value) if value is not None else None
