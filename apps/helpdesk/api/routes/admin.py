from __future__ import annotations

from fastapi import APIRouter, status

from apps.helpdesk.api.schemas import (
    CategoryCreateRequest,
    CategoryModel,
    CategoryUpdateRequest,
    TicketModel,
    TicketPageModel,
)
from apps.helpdesk.dependencies.auth import AdminIdentity
from apps.helpdesk.dependencies.tickets import FiltersDep, PaginationDep, TicketServiceDep
from apps.helpdesk.tickets.filters import TicketScope
from apps.helpdesk.tickets.models import CategoryPatch

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/tickets", response_model=TicketPageModel, summary="Every ticket on the platform")
async def list_all_tickets(
    identity: AdminIdentity,
    service: TicketServiceDep,
    filters: FiltersDep,
    pagination: PaginationDep,
) -> TicketPageModel:
    page = await service.list_tickets(identity, TicketScope.all(), filters, pagination)
    return TicketPageModel.from_page(page)


@router.post("/tickets/{ticket_id}/reopen", response_model=TicketModel)
async def reopen_ticket(ticket_id: str, identity: AdminIdentity, service: TicketServiceDep) -> TicketModel:
    ticket = await service.reopen_ticket(identity, ticket_id)
    return TicketModel.from_entity(ticket)


@router.delete("/tickets/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket(ticket_id: str, identity: AdminIdentity, service: TicketServiceDep) -> None:
    await service.delete_ticket(identity, ticket_id)


@router.delete("/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_comment(comment_id: str, identity: AdminIdentity, service: TicketServiceDep) -> None:
    await service.delete_comment(identity, comment_id)


@router.post("/categories", response_model=CategoryModel, status_code=status.HTTP_201_CREATED)
async def create_category(
    payload: CategoryCreateRequest,
    identity: AdminIdentity,
    service: TicketServiceDep,
) -> CategoryModel:
    category = await service.create_category(
        identity,
        payload.name,
        description=payload.description,
        color=payload.color,
        is_active=payload.is_active,
    )
    return CategoryModel.from_entity(category)


@router.put("/categories/{category_id}", response_model=CategoryModel)
async def update_category(
    category_id: str,
    payload: CategoryUpdateRequest,
    identity: AdminIdentity,
    service: TicketServiceDep,
) -> CategoryModel:
    category = await service.update_category(identity, category_id, CategoryPatch(**payload.model_dump()))
    return CategoryModel.from_entity(category)


@router.delete("/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_category(category_id: str, identity: AdminIdentity, service: TicketServiceDep) -> None:
    await service.delete_category(identity, category_id)
