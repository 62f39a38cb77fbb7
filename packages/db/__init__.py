"""Database models and utilities."""

from .models import (
    AttachmentTable,
    CategoryTable,
    TicketCommentTable,
    TicketHistoryTable,
    TicketTable,
)

__all__ = [
    "AttachmentTable",
    "CategoryTable",
    "TicketCommentTable",
    "TicketHistoryTable",
    "TicketTable",
]
