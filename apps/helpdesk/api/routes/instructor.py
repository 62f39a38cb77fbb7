from __future__ import annotations

from fastapi import APIRouter

from apps.helpdesk.api.schemas import AssignInstructorRequest, TicketModel, TicketPageModel, TicketUpdateRequest
from apps.helpdesk.dependencies.auth import ElevatedIdentity
from apps.helpdesk.dependencies.tickets import FiltersDep, PaginationDep, TicketServiceDep
from apps.helpdesk.tickets.filters import TicketScope
from apps.helpdesk.tickets.models import TicketPatch

router = APIRouter(prefix="/instructor", tags=["instructor"])


@router.get("/tickets", response_model=TicketPageModel, summary="Tickets assigned to the caller")
async def list_assigned_tickets(
    identity: ElevatedIdentity,
    service: TicketServiceDep,
    filters: FiltersDep,
    pagination: PaginationDep,
) -> TicketPageModel:
    page = await service.list_tickets(identity, TicketScope.instructor(identity.subject_id), filters, pagination)
    return TicketPageModel.from_page(page)


@router.get("/courses/{course}/tickets", response_model=TicketPageModel)
async def list_course_tickets(
    course: str,
    identity: ElevatedIdentity,
    service: TicketServiceDep,
    filters: FiltersDep,
    pagination: PaginationDep,
) -> TicketPageModel:
    page = await service.list_tickets(identity, TicketScope.course(course), filters, pagination)
    return TicketPageModel.from_page(page)


@router.put("/tickets/{ticket_id}", response_model=TicketModel)
async def update_ticket(
    ticket_id: str,
    payload: TicketUpdateRequest,
    identity: ElevatedIdentity,
    service: TicketServiceDep,
) -> TicketModel:
    ticket = await service.update_ticket(identity, ticket_id, TicketPatch(**payload.model_dump()))
    return TicketModel.from_entity(ticket)


@router.post("/tickets/{ticket_id}/assign", response_model=TicketModel)
async def assign_instructor(
    ticket_id: str,
    payload: AssignInstructorRequest,
    identity: ElevatedIdentity,
    service: TicketServiceDep,
) -> TicketModel:
    ticket = await service.assign_instructor(identity, ticket_id, payload.instructor_id)
    return TicketModel.from_entity(ticket)
