"""Outbound email and Slack notifications."""

from .dispatcher import DeliveryError, DeliveryResult, NotificationDispatcher
from .worker import NotificationWorker

__all__ = ["DeliveryError", "DeliveryResult", "NotificationDispatcher", "NotificationWorker"]
