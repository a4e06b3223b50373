from __future__ import annotations


class TicketLifecycleError(RuntimeError):
    """Base error for ticket and refund lifecycle failures."""

    status_code: int = 500


class ValidationError(TicketLifecycleError):
    """Raised when a field or enum value supplied by the caller is invalid."""

    status_code = 400


class DuplicateTicketNumberError(ValidationError):
    """Raised when a ticket number is already taken."""

    status_code = 409


class NotFoundError(TicketLifecycleError):
    """Raised when no matching ticket or refund request exists."""

    status_code = 404


class InvalidStateError(TicketLifecycleError):
    """Raised when an operation is not permitted in the ticket's current state."""

    status_code = 409


class PersistenceError(TicketLifecycleError):
    """Raised when the storage layer fails."""

    status_code = 500
