"""Filtering, ordering and pagination contract for ticket listings.

The dataclasses here are plain values. :func:`build_ticket_predicates` and
:func:`order_clause` translate them into SQLAlchemy expressions over
:class:`~packages.db.models.TicketTable`; nothing is assembled from strings.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Sequence, TypeVar

from sqlalchemy import case, or_
from sqlalchemy.sql.elements import ColumnElement

from packages.db.models import TicketTable

from .errors import ValidationError
from .models import TicketPriority, TicketType
from .state import TicketStatus

T = TypeVar("T")


class OrderDirection(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


DEFAULT_ORDER_FIELD = "created_at"
DEFAULT_ORDER_DIRECTION = OrderDirection.DESC

_ORDER_COLUMNS: dict[str, Any] = {
    "created_at": TicketTable.created_at,
    "updated_at": TicketTable.updated_at,
    "ticket_number": TicketTable.ticket_number,
    "title": TicketTable.title,
    "status": TicketTable.status,
    # Severity rank, so ascending runs low to urgent.
    "priority": case(
        {priority.value: rank for rank, priority in enumerate(TicketPriority)},
        value=TicketTable.priority,
        else_=len(TicketPriority),
    ),
}
_ORDER_ALIASES = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "ticketNumber": "ticket_number",
}


@dataclass(slots=True, frozen=True)
class TicketFilters:
    """Optional narrowing criteria. Every present field adds one predicate."""

    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    type: TicketType | None = None
    category_id: str | None = None
    course_id: str | None = None
    instructor_id: str | None = None
    search: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None


@dataclass(slots=True, frozen=True)
class Pagination:
    """Page request. ``page_size == 0`` returns every matching row."""

    page: int = 1
    page_size: int = 20
    order_by: str = DEFAULT_ORDER_FIELD
    order_dir: str = DEFAULT_ORDER_DIRECTION.value

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValidationError("page must be at least 1", field="page")
        if self.page_size < 0:
            raise ValidationError("page_size must not be negative", field="page_size")

    @property
    def order_field(self) -> str:
        """Allow-listed column name; unknown names fall back to ``created_at``."""

        name = _ORDER_ALIASES.get(self.order_by, self.order_by)
        return name if name in _ORDER_COLUMNS else DEFAULT_ORDER_FIELD

    @property
    def direction(self) -> OrderDirection:
        try:
            return OrderDirection((self.order_dir or "").upper())
        except ValueError:
            return DEFAULT_ORDER_DIRECTION

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class ScopeKind(str, Enum):
    STUDENT = "student"
    COURSE = "course"
    INSTRUCTOR = "instructor"
    ALL = "all"


@dataclass(slots=True, frozen=True)
class TicketScope:
    """Which perspective a listing is taken from."""

    kind: ScopeKind
    subject_id: str | None = None

    @classmethod
    def student(cls, student_id: str) -> "TicketScope":
        return cls(ScopeKind.STUDENT, student_id)

    @classmethod
    def course(cls, course_id: str) -> "TicketScope":
        return cls(ScopeKind.COURSE, course_id)

    @classmethod
    def instructor(cls, instructor_id: str) -> "TicketScope":
        return cls(ScopeKind.INSTRUCTOR, instructor_id)

    @classmethod
    def all(cls) -> "TicketScope":
        return cls(ScopeKind.ALL)


@dataclass(slots=True)
class TicketPage(Generic[T]):
    items: Sequence[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total <= 0:
            return 0
        if self.page_size == 0:
            return 1
        return math.ceil(self.total / self.page_size)


def build_ticket_predicates(filters: TicketFilters | None) -> list[ColumnElement[bool]]:
    """Return one predicate per present filter field, to be combined with AND."""

    if filters is None:
        return []

    predicates: list[ColumnElement[bool]] = []
    if filters.status is not None:
        predicates.append(TicketTable.status == TicketStatus(filters.status).value)
    if filters.priority is not None:
        predicates.append(TicketTable.priority == TicketPriority(filters.priority).value)
    if filters.type is not None:
        predicates.append(TicketTable.type == TicketType(filters.type).value)
    if filters.category_id:
        predicates.append(TicketTable.category_id == filters.category_id)
    if filters.course_id:
        predicates.append(TicketTable.course_id == filters.course_id)
    if filters.instructor_id:
        predicates.append(TicketTable.instructor_id == filters.instructor_id)

    term = (filters.search or "").strip()
    if term:
        predicates.append(
            or_(
                TicketTable.ticket_number.icontains(term, autoescape=True),
                TicketTable.title.icontains(term, autoescape=True),
                TicketTable.description.icontains(term, autoescape=True),
            )
        )

    if filters.from_date is not None:
        predicates.append(TicketTable.created_at >= filters.from_date)
    if filters.to_date is not None:
        predicates.append(TicketTable.created_at <= filters.to_date)
    return predicates


def order_clause(pagination: Pagination) -> Any:
    column = _ORDER_COLUMNS[pagination.order_field]
    if pagination.direction is OrderDirection.ASC:
        return column.asc()
    return column.desc()
