"""Domain error codes and the exceptions that carry them.

Every error a client can see is a ``DomainError``. The HTTP layer maps it to
``{"error": code, "message": message, "details": details}`` with
``status_code``; nothing else about the failure leaves the process.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Stable, user-visible error kinds."""

    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"
    DUPLICATE_ATTENDEE = "DUPLICATE_ATTENDEE"
    EVENT_FULL = "EVENT_FULL"
    MODE_LOCKED = "MODE_LOCKED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    REGISTRATION_NOT_OPEN = "REGISTRATION_NOT_OPEN"
    USE_EXTERNAL_REGISTRATION = "USE_EXTERNAL_REGISTRATION"
    MEDIA_UNAVAILABLE = "MEDIA_UNAVAILABLE"
    INTERNAL = "INTERNAL"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    status_code = 500

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code.value, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class BadRequestError(DomainError):
    status_code = 400

    def __init__(self, message: str = "Bad request", details=None) -> None:
        super().__init__(ErrorCode.BAD_REQUEST, message, details)


class UnauthorizedError(DomainError):
    status_code = 401

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(ErrorCode.UNAUTHORIZED, message)


class ForbiddenError(DomainError):
    status_code = 403

    def __init__(self, message: str = "Administrator access required") -> None:
        super().__init__(ErrorCode.FORBIDDEN, message)


class NotFoundError(DomainError):
    status_code = 404

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(ErrorCode.NOT_FOUND, message)


class EventNotFoundError(NotFoundError):
    """Raised when an event is not found."""

    def __init__(self, event_id: str) -> None:
        DomainError.__init__(self, ErrorCode.EVENT_NOT_FOUND, "Event not found")
        self.event_id = event_id


class TicketNotFoundError(NotFoundError):
    """Raised when no ticket matches an internal id or ticket code."""

    def __init__(self, id_or_code: str) -> None:
        DomainError.__init__(self, ErrorCode.TICKET_NOT_FOUND, "Ticket not found")
        self.id_or_code = id_or_code


class ConflictError(DomainError):
    status_code = 409


class DuplicateAttendeeError(ConflictError):
    """Raised when (event, email) or (event, student id) is already taken."""

    def __init__(self, field: str) -> None:
        super().__init__(
            ErrorCode.DUPLICATE_ATTENDEE,
            "This email or student ID is already registered for this event.",
            {"field": field},
        )
        self.field = field


class EventFullError(ConflictError):
    def __init__(self) -> None:
        super().__init__(ErrorCode.EVENT_FULL, "This event is fully booked.")


class ModeLockedError(ConflictError):
    """Raised when an edit would move registration away from internal while tickets exist."""

    def __init__(self, ticket_count: int) -> None:
        super().__init__(
            ErrorCode.MODE_LOCKED,
            "Cannot set registration.mode to non-internal while tickets exist. Remove tickets first.",
            {"tickets": ticket_count},
        )


class InvalidTransitionError(ConflictError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            ErrorCode.INVALID_TRANSITION,
            f"Ticket cannot move from {current} to {requested}.",
            {"from": current, "to": requested},
        )


class RegistrationNotOpenError(DomainError):
    status_code = 400

    def __init__(self, reason: str) -> None:
        super().__init__(
            ErrorCode.REGISTRATION_NOT_OPEN,
            f"Registration is currently not open. Status: {reason}",
            {"reason": reason},
        )
        self.reason = reason


class UseExternalRegistrationError(DomainError):
    status_code = 400

    def __init__(self, external_url: str) -> None:
        super().__init__(
            ErrorCode.USE_EXTERNAL_REGISTRATION,
            "Registration for this event happens on an external site.",
            {"externalUrl": external_url},
        )
        self.external_url = external_url


class MediaUnavailableError(DomainError):
    status_code = 503

    def __init__(self, message: str = "Media storage is unavailable") -> None:
        super().__init__(ErrorCode.MEDIA_UNAVAILABLE, message)


class InternalError(DomainError):
    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(ErrorCode.INTERNAL, message)
