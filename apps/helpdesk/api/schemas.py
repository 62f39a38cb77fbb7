"""Request and response bodies shared by the helpdesk routers."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from apps.helpdesk.tickets.filters import TicketPage
from apps.helpdesk.tickets.models import (
    Attachment,
    Category,
    Ticket,
    TicketComment,
    TicketHistory,
    TicketPriority,
    TicketType,
)
from apps.helpdesk.tickets.state import TicketStatus


class CategoryModel(BaseModel):
    id: str
    name: str
    description: str | None = None
    color: str | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, entity: Category) -> "CategoryModel":
        return cls(
            id=entity.id,
            name=entity.name,
            description=entity.description,
            color=entity.color,
            is_active=entity.is_active,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )


class TicketModel(BaseModel):
    id: str
    ticket_number: str
    title: str
    description: str
    status: TicketStatus
    priority: TicketPriority
    type: TicketType
    student_id: str
    instructor_id: str | None = None
    course_id: str | None = None
    category_id: str | None = None
    category: CategoryModel | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None
    closed_at: datetime | None = None

    @classmethod
    def from_entity(cls, entity: Ticket) -> "TicketModel":
        return cls(
            id=entity.id,
            ticket_number=entity.ticket_number,
            title=entity.title,
            description=entity.description,
            status=entity.status,
            priority=entity.priority,
            type=entity.type,
            student_id=entity.student_id,
            instructor_id=entity.instructor_id,
            course_id=entity.course_id,
            category_id=entity.category_id,
            category=CategoryModel.from_entity(entity.category) if entity.category else None,
            metadata=dict(entity.metadata),
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            resolved_at=entity.resolved_at,
            closed_at=entity.closed_at,
        )


class TicketPageModel(BaseModel):
    items: list[TicketModel]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def from_page(cls, page: TicketPage[Ticket]) -> "TicketPageModel":
        return cls(
            items=[TicketModel.from_entity(item) for item in page.items],
            total=page.total,
            page=page.page,
            page_size=page.page_size,
            total_pages=page.total_pages,
        )


class CommentModel(BaseModel):
    id: str
    ticket_id: str
    user_id: str
    content: str
    is_internal: bool
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, entity: TicketComment) -> "CommentModel":
        return cls(
            id=entity.id,
            ticket_id=entity.ticket_id,
            user_id=entity.user_id,
            content=entity.content,
            is_internal=entity.is_internal,
            metadata=dict(entity.metadata),
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )


class HistoryModel(BaseModel):
    id: str
    ticket_id: str
    user_id: str
    action: str
    old_value: str | None = None
    new_value: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_entity(cls, entity: TicketHistory) -> "HistoryModel":
        return cls(
            id=entity.id,
            ticket_id=entity.ticket_id,
            user_id=entity.user_id,
            action=entity.action,
            old_value=entity.old_value,
            new_value=entity.new_value,
            description=entity.description,
            metadata=dict(entity.metadata),
            created_at=entity.created_at,
        )


class AttachmentModel(BaseModel):
    id: str
    ticket_id: str | None = None
    comment_id: str | None = None
    file_name: str
    file_url: str
    file_type: str | None = None
    uploaded_by: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_entity(cls, entity: Attachment) -> "AttachmentModel":
        return cls(
            id=entity.id,
            ticket_id=entity.ticket_id,
            comment_id=entity.comment_id,
            file_name=entity.file_name,
            file_url=entity.file_url,
            file_type=entity.file_type,
            uploaded_by=entity.uploaded_by,
            metadata=dict(entity.metadata),
            created_at=entity.created_at,
        )


class TicketCreateRequest(BaseModel):
    title: str
    description: str
    priority: str = Field(default=TicketPriority.MEDIUM.value)
    type: str = Field(default=TicketType.GENERAL.value)
    course_id: str | None = None
    category_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TicketUpdateRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    type: str | None = None
    instructor_id: str | None = None
    course_id: str | None = None
    category_id: str | None = None
    metadata: dict[str, Any] | None = None


class AssignInstructorRequest(BaseModel):
    instructor_id: str


class CommentCreateRequest(BaseModel):
    content: str
    is_internal: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class CommentUpdateRequest(BaseModel):
    content: str


class AttachmentCreateRequest(BaseModel):
    file_name: str
    file_url: str
    file_type: str | None = None
    comment_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CategoryCreateRequest(BaseModel):
    name: str
    description: str | None = None
    color: str | None = None
    is_active: bool = True


class CategoryUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    color: str | None = None
    is_active: bool | None = None


class MessageResponse(BaseModel):
    message: str
    ticket: TicketModel | None = None
