"""SQLModel table definitions for the helpdesk data layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, JSON, String, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    """Generate a random UUID string."""

    return str(uuid.uuid4())


class CategoryTable(SQLModel, table=True):
    """Ticket categories managed by administrators."""

    __tablename__ = "categories"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(100), nullable=False))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    color: str | None = Field(default=None, sa_column=Column(String(7), nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketTable(SQLModel, table=True):
    """Support tickets raised by students."""

    __tablename__ = "tickets"
    __table_args__ = (
        Index("ix_tickets_student_id", "student_id"),
        Index("ix_tickets_instructor_id", "instructor_id"),
        Index("ix_tickets_course_id", "course_id"),
        Index("ix_tickets_status", "status"),
        Index("ix_tickets_created_at", "created_at"),
    )

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_number: str = Field(sa_column=Column(String(50), nullable=False, unique=True))
    title: str = Field(sa_column=Column(String(255), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(sa_column=Column(String(50), nullable=False))
    priority: str = Field(sa_column=Column(String(20), nullable=False))
    type: str = Field(sa_column=Column(String(20), nullable=False))
    student_id: str = Field(sa_column=Column(String(255), nullable=False))
    instructor_id: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    course_id: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    category_id: str | None = Field(
        default=None,
        sa_column=Column(String(36), ForeignKey("categories.id", ondelete="SET NULL"), nullable=True),
    )
    metadata_: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


class TicketCommentTable(SQLModel, table=True):
    """Comments posted on a ticket."""

    __tablename__ = "ticket_comments"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    user_id: str = Field(sa_column=Column(String(255), nullable=False))
    content: str = Field(sa_column=Column(Text, nullable=False))
    is_internal: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    metadata_: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketHistoryTable(SQLModel, table=True):
    """Append-only history of ticket actions."""

    __tablename__ = "ticket_history"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    user_id: str = Field(sa_column=Column(String(255), nullable=False))
    action: str = Field(sa_column=Column(String(50), nullable=False))
    old_value: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    new_value: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    metadata_: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class AttachmentTable(SQLModel, table=True):
    """File references attached to a ticket or to one of its comments."""

    __tablename__ = "attachments"
    __table_args__ = (
        CheckConstraint(
            "(ticket_id IS NOT NULL AND comment_id IS NULL) OR (ticket_id IS NULL AND comment_id IS NOT NULL)",
            name="ck_attachments_single_owner",
        ),
    )

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str | None = Field(
        default=None,
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=True, index=True),
    )
    comment_id: str | None = Field(
        default=None,
        sa_column=Column(String(36), ForeignKey("ticket_comments.id", ondelete="CASCADE"), nullable=True, index=True),
    )
    file_name: str = Field(sa_column=Column(String(255), nullable=False))
    file_url: str = Field(sa_column=Column(Text, nullable=False))
    file_type: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    uploaded_by: str = Field(sa_column=Column(String(255), nullable=False))
    metadata_: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
