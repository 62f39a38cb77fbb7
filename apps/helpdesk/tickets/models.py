from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from .state import TicketStatus


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TicketType(str, Enum):
    GENERAL = "general"
    TECHNICAL = "technical"
    COURSE = "course"
    ASSIGNMENT = "assignment"
    GRADING = "grading"
    PLATFORM = "platform"
    CONTENT = "content"


class HistoryAction(str, Enum):
    """Actions recorded in a ticket's history."""

    CREATED = "created"
    UPDATED = "updated"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    REOPENED = "reopened"
    COMMENTED = "commented"
    ATTACHED = "attached"


@dataclass(slots=True)
class Category:
    id: str
    name: str
    description: str | None
    color: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class Ticket:
    """Support ticket raised by a student.

    ``resolved_at`` is populated exactly when the status is resolved or closed
    and ``closed_at`` exactly when it is closed.
    """

    id: str
    ticket_number: str
    title: str
    description: str
    status: TicketStatus
    priority: TicketPriority
    type: TicketType
    student_id: str
    instructor_id: str | None
    course_id: str | None
    category_id: str | None
    metadata: Mapping[str, Any]
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    category: Category | None = None

    @property
    def student_email(self) -> str | None:
        value = self.metadata.get("student_email")
        return str(value) if value else None


@dataclass(slots=True)
class TicketComment:
    id: str
    ticket_id: str
    user_id: str
    content: str
    is_internal: bool
    metadata: Mapping[str, Any]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TicketHistory:
    id: str
    ticket_id: str
    user_id: str
    action: str
    old_value: str | None
    new_value: str | None
    description: str | None
    metadata: Mapping[str, Any]
    created_at: datetime


@dataclass(slots=True)
class Attachment:
    id: str
    ticket_id: str | None
    comment_id: str | None
    file_name: str
    file_url: str
    file_type: str | None
    uploaded_by: str
    metadata: Mapping[str, Any]
    created_at: datetime


@dataclass(slots=True)
class CreateTicketRequest:
    """Input accepted when a student opens a ticket."""

    title: str
    description: str
    priority: TicketPriority | str = TicketPriority.MEDIUM
    type: TicketType | str = TicketType.GENERAL
    course_id: str | None = None
    category_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TicketPatch:
    """Partial ticket update. ``None`` leaves a field untouched."""

    title: str | None = None
    description: str | None = None
    status: TicketStatus | str | None = None
    priority: TicketPriority | str | None = None
    type: TicketType | str | None = None
    instructor_id: str | None = None
    course_id: str | None = None
    category_id: str | None = None
    metadata: Mapping[str, Any] | None = None


@dataclass(slots=True)
class CategoryPatch:
    name: str | None = None
    description: str | None = None
    color: str | None = None
    is_active: bool | None = None


@dataclass(slots=True)
class NewAttachment:
    file_name: str
    file_url: str
    file_type: str | None = None
    comment_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
