from __future__ import annotations

import logging
import re
import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, NoReturn, Sequence, TypeVar

from apps.helpdesk.dependencies.auth import Identity, Role
from apps.helpdesk.notifications.dispatcher import NotificationDispatcher
from apps.helpdesk.notifications.worker import JobScheduler, NotificationJob

from .errors import (
    CategoryNotFoundError,
    CommentNotFoundError,
    ConflictError,
    ForbiddenError,
    InvalidTicketTransitionError,
    PersistenceError,
    TicketNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from .filters import Pagination, ScopeKind, TicketFilters, TicketPage, TicketScope
from .models import (
    Attachment,
    Category,
    CategoryPatch,
    CreateTicketRequest,
    HistoryAction,
    NewAttachment,
    Ticket,
    TicketComment,
    TicketHistory,
    TicketPatch,
    TicketPriority,
    TicketType,
)
from .repository import (
    AttachmentRepository,
    CategoryRepository,
    DuplicateTicketNumberError,
    TicketCommentRepository,
    TicketHistoryRepository,
    TicketRepository,
    status_timestamps,
)
from .state import TERMINAL_STATUSES, TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

MAX_TITLE_LENGTH = 255
MAX_CATEGORY_NAME_LENGTH = 100
_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
_OPEN_STATUSES = frozenset(TicketStatus) - TERMINAL_STATUSES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_ticket_number(now: datetime) -> str:
    """``TKT-<UTC yyyymmddHHMMSS>-<6 hex>``."""

    stamp = now.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"TKT-{stamp}-{secrets.token_hex(3).upper()}"


def _new_id() -> str:
    return str(uuid.uuid4())


def _parse_enum(enum_cls: type[E], value: Any, field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field}: {value!r} (expected one of {allowed})", field=field) from exc


def _require_text(value: str | None, field: str, *, max_length: int | None = None) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required", field=field)
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters", field=field)
    return text


def _optional_ref(value: str) -> str | None:
    return value.strip() or None


class TicketLifecycleService:
    """Orchestrates ticket operations: authorization, state legality,
    persistence with history and notification fan-out.

    Every operation receives the caller's :class:`Identity` explicitly.
    Notification jobs are handed to the scheduler and never affect the
    outcome of the operation that produced them.
    """

    def __init__(
        self,
        tickets: TicketRepository,
        *,
        comments: TicketCommentRepository,
        history: TicketHistoryRepository,
        categories: CategoryRepository,
        attachments: AttachmentRepository,
        dispatcher: NotificationDispatcher | None = None,
        scheduler: JobScheduler | None = None,
        state_machine: TicketStateMachine | None = None,
        clock: Callable[[], datetime] = _utcnow,
        ticket_number_factory: Callable[[datetime], str] = generate_ticket_number,
        max_ticket_number_attempts: int = 5,
    ) -> None:
        self._tickets = tickets
        self._comments = comments
        self._history = history
        self._categories = categories
        self._attachments = attachments
        self._dispatcher = dispatcher
        self._scheduler = scheduler
        self._state_machine = state_machine or TicketStateMachine()
        self._clock = clock
        self._ticket_number_factory = ticket_number_factory
        self._max_ticket_number_attempts = max(1, max_ticket_number_attempts)

    # Tickets

    async def create_ticket(self, identity: Identity, request: CreateTicketRequest) -> Ticket:
        if not identity.subject_id or not identity.email:
            raise UnauthorizedError("A user id and email are required to open a ticket")

        title = _require_text(request.title, "title", max_length=MAX_TITLE_LENGTH)
        description = _require_text(request.description, "description")
        priority = _parse_enum(TicketPriority, request.priority, "priority")
        ticket_type = _parse_enum(TicketType, request.type, "type")
        category = await self._resolve_category(request.category_id)

        now = self._clock()
        metadata = {**dict(request.metadata or {}), "student_email": identity.email}

        created: Ticket | None = None
        for attempt in range(1, self._max_ticket_number_attempts + 1):
            ticket = Ticket(
                id=_new_id(),
                ticket_number=self._ticket_number_factory(now),
                title=title,
                description=description,
                status=self._state_machine.initial_state(),
                priority=priority,
                type=ticket_type,
                student_id=identity.subject_id,
                instructor_id=None,
                course_id=_optional_ref(request.course_id or ""),
                category_id=category.id if category else None,
                metadata=metadata,
                created_at=now,
                updated_at=now,
            )
            history = self._history_entry(
                ticket.id,
                identity,
                HistoryAction.CREATED,
                new_value=ticket.status.value,
                description="Ticket created",
                created_at=now,
            )
            try:
                created = await self._tickets.create(ticket, history)
                break
            except DuplicateTicketNumberError as exc:
                logger.warning(
                    "Ticket number %s already taken (attempt %d of %d)",
                    exc.ticket_number,
                    attempt,
                    self._max_ticket_number_attempts,
                )
        if created is None:
            raise PersistenceError("Could not allocate a unique ticket number")

        created.category = category
        logger.info("Ticket %s created by %s", created.ticket_number, identity.subject_id)

        dispatcher = self._dispatcher
        student_email = identity.email
        if dispatcher is not None:
            self._schedule(
                f"ticket_created:{created.ticket_number}",
                lambda: dispatcher.send_ticket_created_notifications(created, student_email),
            )
        return created

    async def get_ticket(self, identity: Identity, ticket_id: str) -> Ticket:
        ticket = await self._load_ticket(ticket_id)
        self._ensure_can_view(identity, ticket)
        return ticket

    async def list_tickets(
        self,
        identity: Identity,
        scope: TicketScope,
        filters: TicketFilters | None = None,
        pagination: Pagination | None = None,
    ) -> TicketPage[Ticket]:
        pagination = pagination or Pagination()
        criteria = self._scope_criteria(identity, scope)
        items, total = await self._tickets.list(filters, pagination, **criteria)
        return TicketPage(items=items, total=total, page=pagination.page, page_size=pagination.page_size)

    async def assign_instructor(self, identity: Identity, ticket_id: str, instructor_id: str) -> Ticket:
        self._ensure_elevated(identity)
        instructor_id = _require_text(instructor_id, "instructor_id")
        ticket = await self._load_ticket(ticket_id)

        now = self._clock()
        history = self._history_entry(
            ticket.id,
            identity,
            HistoryAction.ASSIGNED,
            old_value=ticket.instructor_id,
            new_value=instructor_id,
            description=f"Ticket assigned to instructor {instructor_id}",
            created_at=now,
        )
        updated = await self._tickets.assign_instructor(
            ticket.id, instructor_id, assigned_at=now, history=history
        )
        if updated is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        logger.info("Ticket %s assigned to %s", ticket.ticket_number, instructor_id)
        return updated

    async def update_ticket(self, identity: Identity, ticket_id: str, patch: TicketPatch) -> Ticket:
        self._ensure_elevated(identity)
        ticket = await self._load_ticket(ticket_id)
        now = self._clock()

        values: dict[str, Any] = {}
        changes: dict[str, dict[str, Any]] = {}

        def record(field: str, old: Any, new: Any) -> None:
            if old != new:
                values[field] = new
                changes[field] = {"old": _plain(old), "new": _plain(new)}

        if patch.title is not None:
            record("title", ticket.title, _require_text(patch.title, "title", max_length=MAX_TITLE_LENGTH))
        if patch.description is not None:
            record("description", ticket.description, _require_text(patch.description, "description"))
        if patch.priority is not None:
            record("priority", ticket.priority, _parse_enum(TicketPriority, patch.priority, "priority"))
        if patch.type is not None:
            record("type", ticket.type, _parse_enum(TicketType, patch.type, "type"))
        if patch.instructor_id is not None:
            record("instructor_id", ticket.instructor_id, _optional_ref(patch.instructor_id))
        if patch.course_id is not None:
            record("course_id", ticket.course_id, _optional_ref(patch.course_id))
        if patch.category_id is not None:
            category = await self._resolve_category(_optional_ref(patch.category_id))
            record("category_id", ticket.category_id, category.id if category else None)
        if patch.metadata is not None:
            merged = {**dict(ticket.metadata), **dict(patch.metadata)}
            if ticket.student_email:
                merged["student_email"] = ticket.student_email
            record("metadata", dict(ticket.metadata), merged)

        status_changed = False
        if patch.status is not None:
            new_status = _parse_enum(TicketStatus, patch.status, "status")
            if new_status != ticket.status:
                try:
                    self._state_machine.assert_transition(ticket.status, new_status)
                except ValueError as exc:
                    raise InvalidTicketTransitionError(str(exc)) from exc
                changes["status"] = {"old": ticket.status.value, "new": new_status.value}
                status_changed = True

        if not changes:
            return ticket

        db_values: dict[str, Any] = {
            key: value.value if isinstance(value, Enum) else value for key, value in values.items()
        }
        if status_changed:
            db_values.update(status_timestamps(TicketStatus(changes["status"]["new"]), now))
        db_values["updated_at"] = now

        history = self._history_entry(
            ticket.id,
            identity,
            HistoryAction.UPDATED,
            old_value=changes["status"]["old"] if status_changed else None,
            new_value=changes["status"]["new"] if status_changed else None,
            description=f"Updated fields: {', '.join(sorted(changes))}",
            metadata={"changes": changes},
            created_at=now,
        )
        updated = await self._tickets.update(
            ticket.id,
            db_values,
            history=history,
            expected_statuses={ticket.status} if status_changed else None,
        )
        if updated is None:
            await self._raise_lost_write(ticket_id)
        return updated

    async def complete_ticket(self, identity: Identity, ticket_id: str) -> Ticket:
        """Resolve the ticket. Completing an already resolved or closed ticket is a conflict."""

        self._ensure_elevated(identity)
        ticket = await self._load_ticket(ticket_id)
        if ticket.status in TERMINAL_STATUSES:
            raise ConflictError("Ticket is already completed")

        now = self._clock()
        history = self._history_entry(
            ticket.id,
            identity,
            HistoryAction.COMPLETED,
            old_value=ticket.status.value,
            new_value=TicketStatus.RESOLVED.value,
            description=f"Ticket completed by {identity.role.value}",
            created_at=now,
        )
        updated = await self._tickets.update_status(
            ticket.id,
            TicketStatus.RESOLVED,
            changed_at=now,
            history=history,
            expected_statuses=_OPEN_STATUSES,
        )
        if updated is None:
            await self._raise_lost_write(ticket_id, conflict_message="Ticket is already completed")

        logger.info("Ticket %s completed by %s", updated.ticket_number, identity.subject_id)
        dispatcher = self._dispatcher
        resolver = identity.email or identity.subject_id
        if dispatcher is not None:
            self._schedule(
                f"ticket_completed:{updated.ticket_number}",
                lambda: dispatcher.send_completion_notification(updated, resolver),
            )
        return updated

    async def reopen_ticket(self, identity: Identity, ticket_id: str) -> Ticket:
        self._ensure_admin(identity)
        ticket = await self._load_ticket(ticket_id)
        if ticket.status not in TERMINAL_STATUSES:
            raise ConflictError("Only resolved or closed tickets can be reopened")

        now = self._clock()
        history = self._history_entry(
            ticket.id,
            identity,
            HistoryAction.REOPENED,
            old_value=ticket.status.value,
            new_value=TicketStatus.OPEN.value,
            description="Ticket reopened by admin",
            created_at=now,
        )
        updated = await self._tickets.update_status(
            ticket.id,
            TicketStatus.OPEN,
            changed_at=now,
            history=history,
            expected_statuses=TERMINAL_STATUSES,
        )
        if updated is None:
            await self._raise_lost_write(ticket_id, conflict_message="Ticket is no longer resolved or closed")
        logger.info("Ticket %s reopened by %s", updated.ticket_number, identity.subject_id)
        return updated

    async def delete_ticket(self, identity: Identity, ticket_id: str) -> None:
        self._ensure_admin(identity)
        if not await self._tickets.delete(ticket_id):
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        logger.info("Ticket %s deleted by %s", ticket_id, identity.subject_id)

    async def get_ticket_history(self, identity: Identity, ticket_id: str) -> Sequence[TicketHistory]:
        ticket = await self._load_ticket(ticket_id)
        self._ensure_can_view(identity, ticket)
        return await self._history.list_by_ticket(ticket.id)

    # Comments

    async def add_comment(
        self,
        identity: Identity,
        ticket_id: str,
        content: str,
        *,
        is_internal: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> TicketComment:
        ticket = await self._load_ticket(ticket_id)
        self._ensure_can_view(identity, ticket)
        if is_internal and not identity.is_elevated:
            raise ForbiddenError("Students cannot post internal comments")
        text = _require_text(content, "content")

        now = self._clock()
        comment = TicketComment(
            id=_new_id(),
            ticket_id=ticket.id,
            user_id=identity.subject_id,
            content=text,
            is_internal=is_internal,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        history = self._history_entry(
            ticket.id,
            identity,
            HistoryAction.COMMENTED,
            new_value=comment.id,
            description="Internal note added" if is_internal else "Comment added",
            metadata={"comment_id": comment.id, "is_internal": is_internal},
            created_at=now,
        )
        await self._comments.create(comment, history)

        dispatcher = self._dispatcher
        student_email = ticket.student_email
        if dispatcher is not None and identity.is_elevated and not is_internal and student_email:
            self._schedule(
                f"admin_reply:{ticket.ticket_number}",
                lambda: dispatcher.send_admin_reply_notification(ticket, comment, student_email),
            )
        return comment

    async def list_comments(self, identity: Identity, ticket_id: str) -> Sequence[TicketComment]:
        ticket = await self._load_ticket(ticket_id)
        self._ensure_can_view(identity, ticket)
        return await self._comments.list_by_ticket(ticket.id, include_internal=identity.is_elevated)

    async def update_comment(self, identity: Identity, comment_id: str, content: str) -> TicketComment:
        comment = await self._comments.get_by_id(comment_id)
        if comment is None:
            raise CommentNotFoundError(f"Comment {comment_id} not found")
        if comment.user_id != identity.subject_id:
            raise ForbiddenError("Only the author can edit a comment")
        text = _require_text(content, "content")
        updated = await self._comments.update_content(comment_id, text, self._clock())
        if updated is None:
            raise CommentNotFoundError(f"Comment {comment_id} not found")
        return updated

    async def delete_comment(self, identity: Identity, comment_id: str) -> None:
        self._ensure_admin(identity)
        if not await self._comments.delete(comment_id):
            raise CommentNotFoundError(f"Comment {comment_id} not found")

    # Attachments

    async def add_attachment(self, identity: Identity, ticket_id: str, attachment: NewAttachment) -> Attachment:
        ticket = await self._load_ticket(ticket_id)
        self._ensure_can_view(identity, ticket)
        file_name = _require_text(attachment.file_name, "file_name", max_length=255)
        file_url = _require_text(attachment.file_url, "file_url")

        comment_id = _optional_ref(attachment.comment_id or "")
        if comment_id is not None:
            comment = await self._comments.get_by_id(comment_id)
            if comment is None or comment.ticket_id != ticket.id:
                raise CommentNotFoundError(f"Comment {comment_id} not found on ticket {ticket_id}")
            if comment.is_internal and not identity.is_elevated:
                raise CommentNotFoundError(f"Comment {comment_id} not found on ticket {ticket_id}")

        now = self._clock()
        record = Attachment(
            id=_new_id(),
            ticket_id=None if comment_id else ticket.id,
            comment_id=comment_id,
            file_name=file_name,
            file_url=file_url,
            file_type=attachment.file_type,
            uploaded_by=identity.subject_id,
            metadata=dict(attachment.metadata or {}),
            created_at=now,
        )
        history = self._history_entry(
            ticket.id,
            identity,
            HistoryAction.ATTACHED,
            new_value=file_name,
            description="Attachment added",
            metadata={"attachment_id": record.id, "comment_id": comment_id},
            created_at=now,
        )
        return await self._attachments.create(record, history)

    async def list_attachments(self, identity: Identity, ticket_id: str) -> Sequence[Attachment]:
        ticket = await self._load_ticket(ticket_id)
        self._ensure_can_view(identity, ticket)
        attachments = await self._attachments.list_by_ticket(ticket.id)
        if identity.is_elevated:
            return attachments
        visible = {comment.id for comment in await self._comments.list_by_ticket(ticket.id, include_internal=False)}
        return [item for item in attachments if item.comment_id is None or item.comment_id in visible]

    # Categories

    async def list_categories(self, *, active_only: bool = True) -> Sequence[Category]:
        return await self._categories.list(active_only=active_only)

    async def create_category(
        self,
        identity: Identity,
        name: str,
        *,
        description: str | None = None,
        color: str | None = None,
        is_active: bool = True,
    ) -> Category:
        self._ensure_admin(identity)
        now = self._clock()
        category = Category(
            id=_new_id(),
            name=_require_text(name, "name", max_length=MAX_CATEGORY_NAME_LENGTH),
            description=description,
            color=_validate_color(color),
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        return await self._categories.create(category)

    async def update_category(self, identity: Identity, category_id: str, patch: CategoryPatch) -> Category:
        self._ensure_admin(identity)
        values: dict[str, Any] = {}
        if patch.name is not None:
            values["name"] = _require_text(patch.name, "name", max_length=MAX_CATEGORY_NAME_LENGTH)
        if patch.description is not None:
            values["description"] = patch.description
        if patch.color is not None:
            values["color"] = _validate_color(patch.color)
        if patch.is_active is not None:
            values["is_active"] = patch.is_active

        if not values:
            existing = await self._categories.get_by_id(category_id)
            if existing is None:
                raise CategoryNotFoundError(f"Category {category_id} not found")
            return existing

        values["updated_at"] = self._clock()
        updated = await self._categories.update(category_id, values)
        if updated is None:
            raise CategoryNotFoundError(f"Category {category_id} not found")
        return updated

    async def delete_category(self, identity: Identity, category_id: str) -> None:
        self._ensure_admin(identity)
        if not await self._categories.delete(category_id):
            raise CategoryNotFoundError(f"Category {category_id} not found")

    # Helpers

    async def _load_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self._tickets.get_by_id(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def _resolve_category(self, category_id: str | None) -> Category | None:
        if not category_id:
            return None
        category = await self._categories.get_by_id(category_id)
        if category is None or not category.is_active:
            raise ValidationError(f"Unknown category: {category_id}", field="category_id")
        return category

    async def _raise_lost_write(self, ticket_id: str, *, conflict_message: str | None = None) -> NoReturn:
        if await self._tickets.get_by_id(ticket_id) is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        raise ConflictError(conflict_message or "Ticket was modified concurrently")

    @staticmethod
    def _ensure_can_view(identity: Identity, ticket: Ticket) -> None:
        if identity.is_elevated or ticket.student_id == identity.subject_id:
            return
        raise ForbiddenError("You do not have access to this ticket")

    @staticmethod
    def _ensure_elevated(identity: Identity) -> None:
        if not identity.is_elevated:
            raise ForbiddenError("Instructor or admin role required")

    @staticmethod
    def _ensure_admin(identity: Identity) -> None:
        if not identity.is_admin:
            raise ForbiddenError("Admin role required")

    @staticmethod
    def _scope_criteria(identity: Identity, scope: TicketScope) -> dict[str, str]:
        if scope.kind is ScopeKind.ALL:
            if not identity.is_admin:
                raise ForbiddenError("Admin role required")
            return {}

        subject_id = (scope.subject_id or "").strip()
        if not subject_id:
            raise ValidationError(f"A {scope.kind.value} id is required", field=f"{scope.kind.value}_id")

        if scope.kind is ScopeKind.STUDENT:
            if not identity.is_admin and identity.subject_id != subject_id:
                raise ForbiddenError("Students can only list their own tickets")
            return {"student_id": subject_id}
        if scope.kind is ScopeKind.INSTRUCTOR:
            is_self = identity.role is Role.INSTRUCTOR and identity.subject_id == subject_id
            if not identity.is_admin and not is_self:
                raise ForbiddenError("Instructors can only list their own tickets")
            return {"instructor_id": subject_id}
        if not identity.is_elevated:
            raise ForbiddenError("Instructor or admin role required")
        return {"course_id": subject_id}

    def _history_entry(
        self,
        ticket_id: str,
        identity: Identity,
        action: HistoryAction,
        *,
        created_at: datetime,
        old_value: str | None = None,
        new_value: str | None = None,
        description: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> TicketHistory:
        return TicketHistory(
            id=_new_id(),
            ticket_id=ticket_id,
            user_id=identity.subject_id,
            action=action.value,
            old_value=old_value,
            new_value=new_value,
            description=description,
            metadata=dict(metadata or {}),
            created_at=created_at,
        )

    def _schedule(self, name: str, job: NotificationJob) -> None:
        if self._scheduler is None:
            logger.debug("No notification scheduler configured; skipping %s", name)
            return
        try:
            self._scheduler.enqueue(name, job)
        except Exception:
            logger.exception("Failed to schedule notification job %s", name)


def _validate_color(color: str | None) -> str | None:
    if color is None or color == "":
        return None
    if not _COLOR_PATTERN.match(color):
        raise ValidationError("color must be a hex value like #1A2B3C", field="color")
    return color


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value
