from __future__ import annotations

from fastapi import APIRouter, status

from apps.helpdesk.api.schemas import (
    AttachmentCreateRequest,
    AttachmentModel,
    CommentCreateRequest,
    CommentModel,
    CommentUpdateRequest,
    HistoryModel,
    MessageResponse,
    TicketCreateRequest,
    TicketModel,
    TicketPageModel,
)
from apps.helpdesk.dependencies.auth import CurrentIdentity, ElevatedIdentity
from apps.helpdesk.dependencies.tickets import FiltersDep, PaginationDep, TicketServiceDep
from apps.helpdesk.tickets.filters import TicketScope
from apps.helpdesk.tickets.models import CreateTicketRequest, NewAttachment

router = APIRouter(tags=["tickets"])


@router.get("/tickets", response_model=TicketPageModel, summary="List the caller's tickets")
async def list_my_tickets(
    identity: CurrentIdentity,
    service: TicketServiceDep,
    filters: FiltersDep,
    pagination: PaginationDep,
) -> TicketPageModel:
    page = await service.list_tickets(identity, TicketScope.student(identity.subject_id), filters, pagination)
    return TicketPageModel.from_page(page)


@router.post("/tickets", response_model=TicketModel, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    identity: CurrentIdentity,
    service: TicketServiceDep,
) -> TicketModel:
    ticket = await service.create_ticket(
        identity,
        CreateTicketRequest(
            title=payload.title,
            description=payload.description,
            priority=payload.priority,
            type=payload.type,
            course_id=payload.course_id,
            category_id=payload.category_id,
            metadata=payload.metadata,
        ),
    )
    return TicketModel.from_entity(ticket)


@router.get("/tickets/{ticket_id}", response_model=TicketModel)
async def get_ticket(ticket_id: str, identity: CurrentIdentity, service: TicketServiceDep) -> TicketModel:
    ticket = await service.get_ticket(identity, ticket_id)
    return TicketModel.from_entity(ticket)


@router.post("/tickets/{ticket_id}/complete", response_model=MessageResponse)
async def complete_ticket(ticket_id: str, identity: ElevatedIdentity, service: TicketServiceDep) -> MessageResponse:
    ticket = await service.complete_ticket(identity, ticket_id)
    return MessageResponse(message="Ticket completed successfully", ticket=TicketModel.from_entity(ticket))


@router.get("/tickets/{ticket_id}/history", response_model=list[HistoryModel])
async def get_ticket_history(
    ticket_id: str, identity: CurrentIdentity, service: TicketServiceDep
) -> list[HistoryModel]:
    entries = await service.get_ticket_history(identity, ticket_id)
    return [HistoryModel.from_entity(entry) for entry in entries]


@router.get("/tickets/{ticket_id}/comments", response_model=list[CommentModel])
async def list_comments(ticket_id: str, identity: CurrentIdentity, service: TicketServiceDep) -> list[CommentModel]:
    comments = await service.list_comments(identity, ticket_id)
    return [CommentModel.from_entity(comment) for comment in comments]


@router.post("/tickets/{ticket_id}/comments", response_model=CommentModel, status_code=status.HTTP_201_CREATED)
async def add_comment(
    ticket_id: str,
    payload: CommentCreateRequest,
    identity: CurrentIdentity,
    service: TicketServiceDep,
) -> CommentModel:
    comment = await service.add_comment(
        identity,
        ticket_id,
        payload.content,
        is_internal=payload.is_internal,
        metadata=payload.metadata,
    )
    return CommentModel.from_entity(comment)


@router.put("/comments/{comment_id}", response_model=CommentModel)
async def update_comment(
    comment_id: str,
    payload: CommentUpdateRequest,
    identity: CurrentIdentity,
    service: TicketServiceDep,
) -> CommentModel:
    comment = await service.update_comment(identity, comment_id, payload.content)
    return CommentModel.from_entity(comment)


@router.get("/tickets/{ticket_id}/attachments", response_model=list[AttachmentModel])
async def list_attachments(
    ticket_id: str, identity: CurrentIdentity, service: TicketServiceDep
) -> list[AttachmentModel]:
    attachments = await service.list_attachments(identity, ticket_id)
    return [AttachmentModel.from_entity(item) for item in attachments]


@router.post(
    "/tickets/{ticket_id}/attachments", response_model=AttachmentModel, status_code=status.HTTP_201_CREATED
)
async def add_attachment(
    ticket_id: str,
    payload: AttachmentCreateRequest,
    identity: CurrentIdentity,
    service: TicketServiceDep,
) -> AttachmentModel:
    attachment = await service.add_attachment(
        identity,
        ticket_id,
        NewAttachment(
            file_name=payload.file_name,
            file_url=payload.file_url,
            file_type=payload.file_type,
            comment_id=payload.comment_id,
            metadata=payload.metadata,
        ),
    )
    return AttachmentModel.from_entity(attachment)
