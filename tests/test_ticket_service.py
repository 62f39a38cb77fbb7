from __future__ import annotations

import re

import pytest

from apps.helpdesk.dependencies.auth import Identity, Role
from apps.helpdesk.tickets.errors import (
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
from apps.helpdesk.tickets.filters import Pagination, TicketFilters, TicketScope
from apps.helpdesk.tickets.models import (
    CategoryPatch,
    CreateTicketRequest,
    NewAttachment,
    TicketPatch,
    TicketPriority,
    TicketType,
)
from apps.helpdesk.tickets.repository import (
    AttachmentRepository,
    CategoryRepository,
    TicketCommentRepository,
    TicketHistoryRepository,
)
from apps.helpdesk.tickets.service import TicketLifecycleService, generate_ticket_number
from apps.helpdesk.tickets.state import TicketStatus

from conftest import BASE_TIME


def _request(**overrides) -> CreateTicketRequest:
    values = {
        "title": "Cannot submit assignment",
        "description": "The upload button does nothing",
    }
    values.update(overrides)
    return CreateTicketRequest(**values)


def _assert_timestamps_match_status(ticket) -> None:
    if ticket.status in (TicketStatus.RESOLVED, TicketStatus.CLOSED):
        assert ticket.resolved_at is not None
    else:
        assert ticket.resolved_at is None
    assert (ticket.closed_at is not None) == (ticket.status is TicketStatus.CLOSED)


def test_generate_ticket_number_format():
    number = generate_ticket_number(BASE_TIME)

    assert re.fullmatch(r"TKT-20240501090000-[0-9A-F]{6}", number)


@pytest.mark.asyncio
async def test_create_ticket_defaults_and_history(service, student, scheduler):
    ticket = await service.create_ticket(student, _request())

    assert ticket.status is TicketStatus.OPEN
    assert ticket.priority is TicketPriority.MEDIUM
    assert ticket.type is TicketType.GENERAL
    assert ticket.student_id == student.subject_id
    assert ticket.student_email == student.email
    assert ticket.created_at == BASE_TIME
    _assert_timestamps_match_status(ticket)

    history = await service.get_ticket_history(student, ticket.id)
    assert [entry.action for entry in history] == ["created"]
    assert scheduler.names == [f"ticket_created:{ticket.ticket_number}"]


@pytest.mark.asyncio
async def test_create_ticket_trims_and_validates(service, student):
    ticket = await service.create_ticket(student, _request(title="  Padded title  "))
    assert ticket.title == "Padded title"

    with pytest.raises(ValidationError) as exc:
        await service.create_ticket(student, _request(title="   "))
    assert exc.value.field == "title"

    with pytest.raises(ValidationError):
        await service.create_ticket(student, _request(title="x" * 256))

    with pytest.raises(ValidationError) as exc:
        await service.create_ticket(student, _request(priority="critical"))
    assert exc.value.field == "priority"

    with pytest.raises(ValidationError):
        await service.create_ticket(student, _request(type="billing"))


@pytest.mark.asyncio
async def test_create_ticket_requires_email(service):
    anonymous = Identity(subject_id="student-9", email=None, role=Role.STUDENT)

    with pytest.raises(UnauthorizedError):
        await service.create_ticket(anonymous, _request())


@pytest.mark.asyncio
async def test_create_ticket_rejects_unknown_or_inactive_category(service, student, admin):
    archived = await service.create_category(admin, "Archived", is_active=False)

    with pytest.raises(ValidationError):
        await service.create_ticket(student, _request(category_id="missing"))
    with pytest.raises(ValidationError):
        await service.create_ticket(student, _request(category_id=archived.id))


@pytest.mark.asyncio
async def test_create_ticket_retries_on_number_collision(
    session_factory, ticket_repository, scheduler, dispatcher, clock, student
):
    numbers = iter(["TKT-20240501090000-AAAAAA", "TKT-20240501090000-AAAAAA", "TKT-20240501090000-BBBBBB"])
    service = TicketLifecycleService(
        ticket_repository,
        comments=TicketCommentRepository(session_factory),
        history=TicketHistoryRepository(session_factory),
        categories=CategoryRepository(session_factory),
        attachments=AttachmentRepository(session_factory),
        dispatcher=dispatcher,
        scheduler=scheduler,
        clock=clock,
        ticket_number_factory=lambda _now: next(numbers),
    )

    first = await service.create_ticket(student, _request())
    second = await service.create_ticket(student, _request())

    assert first.ticket_number == "TKT-20240501090000-AAAAAA"
    assert second.ticket_number == "TKT-20240501090000-BBBBBB"


@pytest.mark.asyncio
async def test_create_ticket_gives_up_after_repeated_collisions(
    session_factory, ticket_repository, clock, student
):
    service = TicketLifecycleService(
        ticket_repository,
        comments=TicketCommentRepository(session_factory),
        history=TicketHistoryRepository(session_factory),
        categories=CategoryRepository(session_factory),
        attachments=AttachmentRepository(session_factory),
        clock=clock,
        ticket_number_factory=lambda _now: "TKT-20240501090000-CCCCCC",
        max_ticket_number_attempts=2,
    )
    await service.create_ticket(student, _request())

    with pytest.raises(PersistenceError):
        await service.create_ticket(student, _request())


@pytest.mark.asyncio
async def test_other_student_cannot_read_ticket(service, student, other_student, instructor):
    ticket = await service.create_ticket(student, _request())

    with pytest.raises(ForbiddenError):
        await service.get_ticket(other_student, ticket.id)
    with pytest.raises(ForbiddenError):
        await service.get_ticket_history(other_student, ticket.id)

    assert (await service.get_ticket(instructor, ticket.id)).id == ticket.id


@pytest.mark.asyncio
async def test_missing_ticket_is_not_found(service, admin):
    with pytest.raises(TicketNotFoundError) as exc:
        await service.get_ticket(admin, "missing")

    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_complete_ticket_resolves_once(service, student, instructor, scheduler):
    ticket = await service.create_ticket(student, _request())
    scheduler.jobs.clear()

    completed = await service.complete_ticket(instructor, ticket.id)

    assert completed.status is TicketStatus.RESOLVED
    assert completed.resolved_at is not None
    _assert_timestamps_match_status(completed)
    assert scheduler.names == [f"ticket_completed:{ticket.ticket_number}"]

    with pytest.raises(ConflictError):
        await service.complete_ticket(instructor, ticket.id)

    history = await service.get_ticket_history(instructor, ticket.id)
    assert [entry.action for entry in history] == ["created", "completed"]
    assert history[1].old_value == "open"
    assert history[1].new_value == "resolved"
    assert len(scheduler.jobs) == 1


@pytest.mark.asyncio
async def test_any_instructor_may_complete(service, student, instructor, other_instructor):
    ticket = await service.create_ticket(student, _request())
    await service.assign_instructor(instructor, ticket.id, instructor.subject_id)

    completed = await service.complete_ticket(other_instructor, ticket.id)

    assert completed.status is TicketStatus.RESOLVED


@pytest.mark.asyncio
async def test_students_cannot_manage_tickets(service, student):
    ticket = await service.create_ticket(student, _request())

    with pytest.raises(ForbiddenError):
        await service.complete_ticket(student, ticket.id)
    with pytest.raises(ForbiddenError):
        await service.assign_instructor(student, ticket.id, "instructor-1")
    with pytest.raises(ForbiddenError):
        await service.update_ticket(student, ticket.id, TicketPatch(title="Mine now"))
    with pytest.raises(ForbiddenError):
        await service.reopen_ticket(student, ticket.id)
    with pytest.raises(ForbiddenError):
        await service.delete_ticket(student, ticket.id)

    assert (await service.get_ticket(student, ticket.id)).status is TicketStatus.OPEN


@pytest.mark.asyncio
async def test_completing_closed_ticket_is_conflict(service, ticket_repository, make_ticket, admin, scheduler):
    ticket = make_ticket(status=TicketStatus.CLOSED, resolved_at=BASE_TIME, closed_at=BASE_TIME)
    await ticket_repository.create(ticket)

    with pytest.raises(ConflictError):
        await service.complete_ticket(admin, ticket.id)

    assert await service.get_ticket_history(admin, ticket.id) == []
    assert scheduler.jobs == []


@pytest.mark.asyncio
async def test_completion_losing_the_race_is_conflict(
    service, ticket_repository, student, instructor, other_instructor, monkeypatch
):
    ticket = await service.create_ticket(student, _request())
    stale = await ticket_repository.get_by_id(ticket.id)
    await service.complete_ticket(instructor, ticket.id)

    real_get = ticket_repository.get_by_id
    reads = {"count": 0}

    async def stale_first_read(ticket_id):
        reads["count"] += 1
        if reads["count"] == 1:
            return stale
        return await real_get(ticket_id)

    monkeypatch.setattr(ticket_repository, "get_by_id", stale_first_read)

    with pytest.raises(ConflictError):
        await service.complete_ticket(other_instructor, ticket.id)

    history = await service.get_ticket_history(instructor, ticket.id)
    assert [entry.action for entry in history].count("completed") == 1


@pytest.mark.asyncio
async def test_assign_instructor_records_history(service, student, admin):
    ticket = await service.create_ticket(student, _request())

    assigned = await service.assign_instructor(admin, ticket.id, "instructor-7")

    assert assigned.instructor_id == "instructor-7"
    history = await service.get_ticket_history(admin, ticket.id)
    assert history[-1].action == "assigned"
    assert history[-1].new_value == "instructor-7"

    with pytest.raises(TicketNotFoundError):
        await service.assign_instructor(admin, "missing", "instructor-7")
    with pytest.raises(ValidationError):
        await service.assign_instructor(admin, ticket.id, "  ")


@pytest.mark.asyncio
async def test_update_ticket_applies_fields_and_status(service, student, instructor):
    ticket = await service.create_ticket(student, _request())

    updated = await service.update_ticket(
        instructor,
        ticket.id,
        TicketPatch(priority="high", status="inProgress", metadata={"browser": "firefox"}),
    )

    assert updated.priority is TicketPriority.HIGH
    assert updated.status is TicketStatus.IN_PROGRESS
    assert updated.metadata == {"student_email": student.email, "browser": "firefox"}
    _assert_timestamps_match_status(updated)

    history = await service.get_ticket_history(instructor, ticket.id)
    assert history[-1].action == "updated"
    assert set(history[-1].metadata["changes"]) == {"priority", "status", "metadata"}


@pytest.mark.asyncio
async def test_update_ticket_to_closed_sets_both_timestamps(service, student, admin):
    ticket = await service.create_ticket(student, _request())

    closed = await service.update_ticket(admin, ticket.id, TicketPatch(status=TicketStatus.CLOSED))

    assert closed.status is TicketStatus.CLOSED
    _assert_timestamps_match_status(closed)


@pytest.mark.asyncio
async def test_update_ticket_rejects_illegal_transition(service, student, instructor):
    ticket = await service.create_ticket(student, _request())
    await service.complete_ticket(instructor, ticket.id)

    with pytest.raises(InvalidTicketTransitionError) as exc:
        await service.update_ticket(instructor, ticket.id, TicketPatch(status="inProgress"))

    assert exc.value.status_code == 409


@pytest.mark.asyncio
async def test_update_ticket_without_changes_returns_ticket(service, student, instructor):
    ticket = await service.create_ticket(student, _request())

    unchanged = await service.update_ticket(instructor, ticket.id, TicketPatch(title=ticket.title))

    assert unchanged.updated_at == ticket.updated_at
    assert len(await service.get_ticket_history(instructor, ticket.id)) == 1


@pytest.mark.asyncio
async def test_reopen_ticket(service, student, instructor, admin):
    ticket = await service.create_ticket(student, _request())

    with pytest.raises(ConflictError):
        await service.reopen_ticket(admin, ticket.id)

    await service.complete_ticket(instructor, ticket.id)
    reopened = await service.reopen_ticket(admin, ticket.id)

    assert reopened.status is TicketStatus.OPEN
    _assert_timestamps_match_status(reopened)
    history = await service.get_ticket_history(admin, ticket.id)
    assert [entry.action for entry in history] == ["created", "completed", "reopened"]


@pytest.mark.asyncio
async def test_delete_ticket(service, student, admin):
    ticket = await service.create_ticket(student, _request())
    await service.add_comment(student, ticket.id, "Still broken")

    await service.delete_ticket(admin, ticket.id)

    with pytest.raises(TicketNotFoundError):
        await service.get_ticket(admin, ticket.id)
    with pytest.raises(TicketNotFoundError):
        await service.delete_ticket(admin, ticket.id)


@pytest.mark.asyncio
async def test_list_tickets_scopes(service, student, other_student, instructor, admin):
    own = await service.create_ticket(student, _request(course_id="course-1"))
    await service.create_ticket(other_student, _request(course_id="course-1"))
    await service.assign_instructor(admin, own.id, instructor.subject_id)

    mine = await service.list_tickets(student, TicketScope.student(student.subject_id))
    course = await service.list_tickets(instructor, TicketScope.course("course-1"))
    assigned = await service.list_tickets(instructor, TicketScope.instructor(instructor.subject_id))
    everything = await service.list_tickets(admin, TicketScope.all())

    assert [ticket.id for ticket in mine.items] == [own.id]
    assert course.total == 2
    assert [ticket.id for ticket in assigned.items] == [own.id]
    assert everything.total == 2


@pytest.mark.asyncio
async def test_list_tickets_scope_authorization(service, student, instructor, other_instructor):
    with pytest.raises(ForbiddenError):
        await service.list_tickets(student, TicketScope.student("student-2"))
    with pytest.raises(ForbiddenError):
        await service.list_tickets(student, TicketScope.course("course-1"))
    with pytest.raises(ForbiddenError):
        await service.list_tickets(instructor, TicketScope.instructor(other_instructor.subject_id))
    with pytest.raises(ForbiddenError):
        await service.list_tickets(instructor, TicketScope.all())
    with pytest.raises(ValidationError):
        await service.list_tickets(instructor, TicketScope.course("  "))


@pytest.mark.asyncio
async def test_list_tickets_filters_and_paging(service, student, admin):
    for index in range(15):
        await service.create_ticket(student, _request(title=f"Login issue {index}"))
    await service.create_ticket(student, _request(title="Grade dispute", priority="urgent"))

    page = await service.list_tickets(
        student,
        TicketScope.student(student.subject_id),
        TicketFilters(search="LOGIN"),
        Pagination(page=2, page_size=10),
    )
    urgent = await service.list_tickets(admin, TicketScope.all(), TicketFilters(priority=TicketPriority.URGENT))
    narrowed = await service.list_tickets(
        admin,
        TicketScope.all(),
        TicketFilters(priority=TicketPriority.URGENT, status=TicketStatus.RESOLVED),
    )

    assert page.total == 15
    assert len(page.items) == 5
    assert page.total_pages == 2
    assert [ticket.title for ticket in urgent.items] == ["Grade dispute"]
    assert narrowed.total == 0


@pytest.mark.asyncio
async def test_comments_visibility_and_admin_reply(service, student, other_student, instructor, scheduler):
    ticket = await service.create_ticket(student, _request())
    scheduler.jobs.clear()

    await service.add_comment(student, ticket.id, "Any news?")
    await service.add_comment(instructor, ticket.id, "Checking logs", is_internal=True)
    reply = await service.add_comment(instructor, ticket.id, "Fixed on our side")

    assert scheduler.names == [f"admin_reply:{ticket.ticket_number}"]
    assert [comment.content for comment in await service.list_comments(student, ticket.id)] == [
        "Any news?",
        "Fixed on our side",
    ]
    assert len(await service.list_comments(instructor, ticket.id)) == 3

    with pytest.raises(ForbiddenError):
        await service.add_comment(student, ticket.id, "secret", is_internal=True)
    with pytest.raises(ForbiddenError):
        await service.add_comment(other_student, ticket.id, "Me too")
    with pytest.raises(ValidationError):
        await service.add_comment(student, ticket.id, "   ")

    history = await service.get_ticket_history(instructor, ticket.id)
    assert [entry.action for entry in history].count("commented") == 3
    assert reply.user_id == instructor.subject_id


@pytest.mark.asyncio
async def test_update_and_delete_comment(service, student, instructor, admin):
    ticket = await service.create_ticket(student, _request())
    comment = await service.add_comment(student, ticket.id, "Typo")

    edited = await service.update_comment(student, comment.id, "Fixed typo")
    assert edited.content == "Fixed typo"

    with pytest.raises(ForbiddenError):
        await service.update_comment(instructor, comment.id, "Not yours")
    with pytest.raises(CommentNotFoundError):
        await service.update_comment(student, "missing", "text")
    with pytest.raises(ForbiddenError):
        await service.delete_comment(instructor, comment.id)

    await service.delete_comment(admin, comment.id)
    assert await service.list_comments(student, ticket.id) == []
    with pytest.raises(CommentNotFoundError):
        await service.delete_comment(admin, comment.id)


@pytest.mark.asyncio
async def test_attachments(service, student, instructor):
    ticket = await service.create_ticket(student, _request())
    note = await service.add_comment(instructor, ticket.id, "Internal trace", is_internal=True)

    on_ticket = await service.add_attachment(
        student,
        ticket.id,
        NewAttachment(file_name="error.png", file_url="https://files.example.edu/error.png", file_type="image/png"),
    )
    await service.add_attachment(
        instructor,
        ticket.id,
        NewAttachment(file_name="trace.log", file_url="https://files.example.edu/trace.log", comment_id=note.id),
    )

    assert on_ticket.ticket_id == ticket.id
    assert on_ticket.comment_id is None
    assert [item.file_name for item in await service.list_attachments(student, ticket.id)] == ["error.png"]
    assert len(await service.list_attachments(instructor, ticket.id)) == 2

    with pytest.raises(CommentNotFoundError):
        await service.add_attachment(
            student,
            ticket.id,
            NewAttachment(file_name="x.txt", file_url="https://files.example.edu/x.txt", comment_id=note.id),
        )
    with pytest.raises(ValidationError):
        await service.add_attachment(student, ticket.id, NewAttachment(file_name="", file_url="https://x"))


@pytest.mark.asyncio
async def test_category_management(service, student, admin):
    category = await service.create_category(admin, "Technical", color="#1A2B3C")
    ticket = await service.create_ticket(student, _request(category_id=category.id))
    assert ticket.category is not None
    assert ticket.category.name == "Technical"

    with pytest.raises(ForbiddenError):
        await service.create_category(student, "Nope")
    with pytest.raises(ValidationError):
        await service.create_category(admin, "Bad colour", color="blue")

    renamed = await service.update_category(admin, category.id, CategoryPatch(name="Tech", is_active=False))
    assert renamed.name == "Tech"
    assert await service.list_categories() == []
    assert len(await service.list_categories(active_only=False)) == 1

    with pytest.raises(CategoryNotFoundError):
        await service.update_category(admin, "missing", CategoryPatch(name="x"))

    await service.delete_category(admin, category.id)
    assert (await service.get_ticket(student, ticket.id)).category_id is None
    with pytest.raises(CategoryNotFoundError):
        await service.delete_category(admin, category.id)


@pytest.mark.asyncio
async def test_scheduled_jobs_call_dispatcher(service, student, instructor, scheduler, dispatcher):
    ticket = await service.create_ticket(student, _request())
    await service.add_comment(instructor, ticket.id, "On it")
    completed = await service.complete_ticket(instructor, ticket.id)

    await scheduler.run_all()

    dispatcher.send_ticket_created_notifications.assert_awaited_once()
    created_args = dispatcher.send_ticket_created_notifications.await_args.args
    assert created_args[0].id == ticket.id
    assert created_args[1] == student.email
    dispatcher.send_admin_reply_notification.assert_awaited_once()
    dispatcher.send_completion_notification.assert_awaited_once_with(completed, instructor.email)


@pytest.mark.asyncio
async def test_scheduler_failure_does_not_fail_operation(service, student, scheduler):
    def broken_enqueue(name, job):
        raise RuntimeError("queue unavailable")

    scheduler.enqueue = broken_enqueue

    ticket = await service.create_ticket(student, _request())

    assert ticket.status is TicketStatus.OPEN


@pytest.mark.asyncio
async def test_status_invariant_holds_across_lifecycle(service, student, instructor, admin):
    ticket = await service.create_ticket(student, _request())
    steps = [
        lambda: service.update_ticket(instructor, ticket.id, TicketPatch(status="inProgress")),
        lambda: service.update_ticket(instructor, ticket.id, TicketPatch(status="waitingForCustomer")),
        lambda: service.complete_ticket(instructor, ticket.id),
        lambda: service.update_ticket(admin, ticket.id, TicketPatch(status="closed")),
        lambda: service.reopen_ticket(admin, ticket.id),
    ]

    for step in steps:
        _assert_timestamps_match_status(await step())
