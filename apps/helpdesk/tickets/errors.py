from __future__ import annotations


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues.

    ``status_code`` is the HTTP status the API layer answers with.
    """

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TicketServiceError):
    """Malformed or missing input that the caller can correct."""

    status_code = 400

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class UnauthorizedError(TicketServiceError):
    """The identity is missing or incomplete."""

    status_code = 401


class ForbiddenError(TicketServiceError):
    """The identity is known but not allowed to perform the operation."""

    status_code = 403


class NotFoundError(TicketServiceError):
    """Raised when a referenced entity could not be located."""

    status_code = 404


class TicketNotFoundError(NotFoundError):
    """Raised when a ticket could not be located."""


class CommentNotFoundError(NotFoundError):
    """Raised when a comment could not be located."""


class CategoryNotFoundError(NotFoundError):
    """Raised when a category could not be located."""


class ConflictError(TicketServiceError):
    """The operation is illegal for the current state of the entity."""

    status_code = 409


class InvalidTicketTransitionError(ConflictError):
    """Raised when attempting to transition to an invalid state."""


class PersistenceError(TicketServiceError):
    """The store failed. The message is safe to show; details live in the logs."""

    status_code = 500

    def __init__(self, message: str = "Internal storage error") -> None:
        super().__init__(message)
