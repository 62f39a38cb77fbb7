"""Ticket lifecycle domain: state machine, models, persistence and service."""

from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidTicketTransitionError,
    NotFoundError,
    PersistenceError,
    TicketNotFoundError,
    TicketServiceError,
    UnauthorizedError,
    ValidationError,
)
from .state import TicketStateMachine, TicketStatus

__all__ = [
    "ConflictError",
    "ForbiddenError",
    "InvalidTicketTransitionError",
    "NotFoundError",
    "PersistenceError",
    "TicketNotFoundError",
    "TicketServiceError",
    "TicketStateMachine",
    "TicketStatus",
    "UnauthorizedError",
    "ValidationError",
]
