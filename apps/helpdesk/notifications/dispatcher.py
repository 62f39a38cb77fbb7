from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx
from opentelemetry import trace
from pydantic import BaseModel

from apps.helpdesk.core.config import Settings
from apps.helpdesk.tickets.models import Ticket, TicketComment

from .messages import (
    EmailNotificationRequest,
    SlackNotificationRequest,
    build_admin_new_ticket_email,
    build_admin_reply_email,
    build_completion_slack_message,
    build_new_ticket_slack_message,
    build_student_confirmation_email,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_SUCCESS_STATUS_CODES = frozenset({200, 202})


class DeliveryError(RuntimeError):
    """A notification could not be handed to the downstream service."""

    def __init__(
        self,
        message: str,
        *,
        channel: str,
        status_code: int | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.channel = channel
        self.status_code = status_code
        self.attempts = attempts


@dataclass(slots=True)
class DeliveryResult:
    """Outcome of one outbound message."""

    channel: str
    name: str
    delivered: bool
    attempts: int
    error: str | None = None


class NotificationDispatcher:
    """Send ticket notifications to the email and Slack relay services."""

    def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.notification_timeout_seconds)
        self._max_attempts = max(1, settings.notification_max_attempts)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send_email(self, request: EmailNotificationRequest) -> int:
        """Post one email request and return the number of attempts it took."""

        return await self._post(
            "email",
            self._settings.email_service_url,
            self._settings.email_service_token,
            request,
        )

    async def send_slack(self, request: SlackNotificationRequest) -> int:
        return await self._post(
            "slack",
            self._settings.slack_service_url,
            self._settings.slack_service_token,
            request,
        )

    async def send_ticket_created_notifications(
        self, ticket: Ticket, student_email: str
    ) -> list[DeliveryResult]:
        """Notify admins, confirm to the student and alert Slack.

        Each message is attempted even when an earlier one failed.
        """

        settings = self._settings
        return [
            await self._deliver(
                "email",
                "admin_new_ticket",
                lambda: self.send_email(build_admin_new_ticket_email(settings, ticket, student_email)),
            ),
            await self._deliver(
                "email",
                "student_confirmation",
                lambda: self.send_email(build_student_confirmation_email(settings, ticket, student_email)),
            ),
            await self._deliver(
                "slack",
                "new_ticket_alert",
                lambda: self.send_slack(build_new_ticket_slack_message(settings, ticket, student_email)),
            ),
        ]

    async def send_completion_notification(self, ticket: Ticket, resolver_email: str) -> DeliveryResult:
        return await self._deliver(
            "slack",
            "ticket_completed",
            lambda: self.send_slack(build_completion_slack_message(self._settings, ticket, resolver_email)),
        )

    async def send_admin_reply_notification(
        self, ticket: Ticket, comment: TicketComment, student_email: str
    ) -> DeliveryResult:
        return await self._deliver(
            "email",
            "admin_reply",
            lambda: self.send_email(build_admin_reply_email(self._settings, ticket, comment, student_email)),
        )

    async def _deliver(
        self, channel: str, name: str, send: Callable[[], Awaitable[int]]
    ) -> DeliveryResult:
        try:
            attempts = await send()
        except DeliveryError as exc:
            logger.warning("Failed to deliver %s notification %s: %s", channel, name, exc)
            return DeliveryResult(channel=channel, name=name, delivered=False, attempts=exc.attempts, error=str(exc))
        except Exception as exc:
            # Each message fails on its own.
            logger.exception("Could not prepare %s notification %s", channel, name)
            return DeliveryResult(channel=channel, name=name, delivered=False, attempts=0, error=str(exc))
        return DeliveryResult(channel=channel, name=name, delivered=True, attempts=attempts)

    async def _post(self, channel: str, base_url: str, token: str, payload: BaseModel) -> int:
        url = f"{base_url.rstrip('/')}/send"
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {token}"}
        body = payload.model_dump(mode="json")

        last_error = DeliveryError(f"{channel} notification was not attempted", channel=channel)
        for attempt in range(1, self._max_attempts + 1):
            with tracer.start_as_current_span(f"notification.{channel}.send") as span:
                span.set_attribute("notification.channel", channel)
                span.set_attribute("notification.attempt", attempt)
                try:
                    response = await self._client.post(url, json=body, headers=headers)
                except httpx.InvalidURL as exc:
                    error = DeliveryError(
                        f"{channel} service URL is invalid: {exc}", channel=channel, attempts=attempt
                    )
                    span.record_exception(error)
                    # A malformed URL is not retried.
                    raise error from exc
                except httpx.HTTPError as exc:
                    last_error = DeliveryError(
                        f"{channel} service request failed: {exc}", channel=channel, attempts=attempt
                    )
                else:
                    span.set_attribute("http.status_code", response.status_code)
                    if response.status_code in _SUCCESS_STATUS_CODES:
                        return attempt
                    last_error = DeliveryError(
                        f"{channel} service returned status: {response.status_code}",
                        channel=channel,
                        status_code=response.status_code,
                        attempts=attempt,
                    )
                span.record_exception(last_error)
            if attempt < self._max_attempts:
                logger.info("Retrying %s notification (attempt %d of %d)", channel, attempt + 1, self._max_attempts)

        raise last_error
