from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import Depends, HTTPException, Query, Request

from apps.helpdesk.tickets.filters import Pagination, TicketFilters
from apps.helpdesk.tickets.models import TicketPriority, TicketType
from apps.helpdesk.tickets.service import TicketLifecycleService
from apps.helpdesk.tickets.state import TicketStatus


async def get_ticket_service(request: Request) -> TicketLifecycleService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not available")
    return service


TicketServiceDep = Annotated[TicketLifecycleService, Depends(get_ticket_service)]


def get_ticket_filters(
    status: Annotated[TicketStatus | None, Query()] = None,
    priority: Annotated[TicketPriority | None, Query()] = None,
    type: Annotated[TicketType | None, Query()] = None,
    category_id: Annotated[str | None, Query()] = None,
    course_id: Annotated[str | None, Query()] = None,
    instructor_id: Annotated[str | None, Query()] = None,
    search: Annotated[str | None, Query()] = None,
    from_date: Annotated[datetime | None, Query()] = None,
    to_date: Annotated[datetime | None, Query()] = None,
) -> TicketFilters:
    return TicketFilters(
        status=status,
        priority=priority,
        type=type,
        category_id=category_id,
        course_id=course_id,
        instructor_id=instructor_id,
        search=search,
        from_date=from_date,
        to_date=to_date,
    )


def get_pagination(
    page: Annotated[int, Query()] = 1,
    page_size: Annotated[int, Query()] = 20,
    order_by: Annotated[str, Query()] = "created_at",
    order_dir: Annotated[str, Query()] = "DESC",
) -> Pagination:
    return Pagination(page=page, page_size=page_size, order_by=order_by, order_dir=order_dir)


FiltersDep = Annotated[TicketFilters, Depends(get_ticket_filters)]
PaginationDep = Annotated[Pagination, Depends(get_pagination)]
