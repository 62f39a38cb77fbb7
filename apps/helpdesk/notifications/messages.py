"""Payload models and builders for outbound email and Slack messages."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from apps.helpdesk.core.config import Settings
from apps.helpdesk.tickets.models import Ticket, TicketComment

NEW_TICKET_ADMIN_TEMPLATE = "new_ticket_admin_notification"
TICKET_CREATED_TEMPLATE = "ticket_created_confirmation"
ADMIN_REPLY_TEMPLATE = "admin_reply_notification"

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class EmailNotificationRequest(BaseModel):
    to: list[str]
    subject: str
    template_id: str
    template_data: dict[str, Any] = Field(default_factory=dict)
    reply_to: str | None = None


class SlackText(BaseModel):
    type: str = "mrkdwn"
    text: str


class SlackElement(BaseModel):
    type: str
    text: str | None = None
    value: str | None = None
    action_id: str | None = None


class SlackBlock(BaseModel):
    type: str
    text: SlackText | None = None
    elements: list[SlackElement] | None = None


class SlackNotificationRequest(BaseModel):
    channel: str
    message: str
    blocks: list[SlackBlock] = Field(default_factory=list)
    thread_ts: str | None = None
    template_data: dict[str, Any] = Field(default_factory=dict)


def _admin_ticket_url(settings: Settings, ticket: Ticket) -> str:
    return f"{settings.frontend_base_url.rstrip('/')}/admin/tickets/{ticket.id}"


def _student_ticket_url(settings: Settings, ticket: Ticket) -> str:
    return f"{settings.frontend_base_url.rstrip('/')}/tickets/{ticket.id}"


def build_admin_new_ticket_email(
    settings: Settings, ticket: Ticket, student_email: str
) -> EmailNotificationRequest:
    return EmailNotificationRequest(
        to=list(settings.admin_email_list),
        subject=f"{settings.platform_name} Support - New Ticket #{ticket.ticket_number}",
        template_id=NEW_TICKET_ADMIN_TEMPLATE,
        template_data={
            "ticketNumber": ticket.ticket_number,
            "ticketTitle": ticket.title,
            "ticketType": ticket.type.value,
            "priority": ticket.priority.value,
            "studentEmail": student_email,
            "ticketUrl": _admin_ticket_url(settings, ticket),
            "courseId": ticket.course_id,
            "platformName": settings.platform_name,
            "createdAt": ticket.created_at.strftime(_TIMESTAMP_FORMAT),
        },
        reply_to=student_email,
    )


def build_student_confirmation_email(
    settings: Settings, ticket: Ticket, student_email: str
) -> EmailNotificationRequest:
    return EmailNotificationRequest(
        to=[student_email],
        subject=f"{settings.platform_name} Support - Ticket Created #{ticket.ticket_number}",
        template_id=TICKET_CREATED_TEMPLATE,
        template_data={
            "ticketNumber": ticket.ticket_number,
            "ticketTitle": ticket.title,
            "ticketType": ticket.type.value,
            "priority": ticket.priority.value,
            "ticketUrl": _student_ticket_url(settings, ticket),
            "platformName": settings.platform_name,
            "supportEmail": settings.support_email,
        },
    )


def build_admin_reply_email(
    settings: Settings, ticket: Ticket, comment: TicketComment, student_email: str
) -> EmailNotificationRequest:
    return EmailNotificationRequest(
        to=[student_email],
        subject=f"{settings.platform_name} Support - Reply to Ticket #{ticket.ticket_number}",
        template_id=ADMIN_REPLY_TEMPLATE,
        template_data={
            "ticketNumber": ticket.ticket_number,
            "ticketTitle": ticket.title,
            "replyMessage": comment.content,
            "ticketUrl": _student_ticket_url(settings, ticket),
            "platformName": settings.platform_name,
        },
        reply_to=settings.support_email,
    )


def build_new_ticket_slack_message(
    settings: Settings, ticket: Ticket, student_email: str
) -> SlackNotificationRequest:
    summary = (
        f"*New {settings.platform_name} Support Ticket*\n"
        f"*Ticket:* #{ticket.ticket_number}\n"
        f"*Title:* {ticket.title}\n"
        f"*Type:* {ticket.type.value}\n"
        f"*Priority:* {ticket.priority.value}\n"
        f"*Student:* {student_email}"
    )
    return SlackNotificationRequest(
        channel=settings.slack_channel,
        message=f"New {settings.platform_name} support ticket created",
        blocks=[
            SlackBlock(type="section", text=SlackText(text=summary)),
            SlackBlock(
                type="actions",
                elements=[
                    SlackElement(type="button", text="View Ticket", value=ticket.id, action_id="view_ticket"),
                    SlackElement(type="button", text="Reply", value=ticket.id, action_id="reply_ticket"),
                ],
            ),
        ],
        template_data={
            "ticketId": ticket.id,
            "ticketNumber": ticket.ticket_number,
            "ticketUrl": _admin_ticket_url(settings, ticket),
        },
    )


def build_completion_slack_message(
    settings: Settings, ticket: Ticket, resolver_email: str
) -> SlackNotificationRequest:
    resolved_at = ticket.resolved_at or ticket.updated_at
    summary = (
        "*Ticket Completed*\n"
        f"*Ticket:* #{ticket.ticket_number}\n"
        f"*Title:* {ticket.title}\n"
        f"*Resolved by:* {resolver_email}\n"
        f"*Resolved at:* {resolved_at.strftime(_TIMESTAMP_FORMAT)}"
    )
    return SlackNotificationRequest(
        channel=settings.slack_channel,
        message=f"Ticket #{ticket.ticket_number} has been completed",
        blocks=[SlackBlock(type="section", text=SlackText(text=summary))],
        template_data={
            "ticketId": ticket.id,
            "ticketNumber": ticket.ticket_number,
            "resolvedBy": resolver_email,
            "resolvedAt": resolved_at.isoformat(),
            "status": ticket.status.value,
        },
    )
