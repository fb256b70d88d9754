from typing import Any


class MeetupError(Exception):
    """Base for caller-visible domain errors.

    ``status_code`` is the HTTP status the API layer answers with; ``code`` is a
    stable machine-readable tag clients can branch on.
    """

    status_code = 500
    default_code = "INTERNAL"

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class Unauthenticated(MeetupError):
    status_code = 401
    default_code = "UNAUTHENTICATED"


class PermissionDenied(MeetupError):
    status_code = 403
    default_code = "PERMISSION_DENIED"


class InvalidArgument(MeetupError):
    status_code = 400
    default_code = "INVALID_ARGUMENT"


class NotFound(MeetupError):
    status_code = 404
    default_code = "NOT_FOUND"


class FailedPrecondition(MeetupError):
    status_code = 409
    default_code = "FAILED_PRECONDITION"


class ResourceExhausted(MeetupError):
    status_code = 429
    default_code = "RESOURCE_EXHAUSTED"


class AlreadyExists(MeetupError):
    status_code = 409
    default_code = "ALREADY_EXISTS"
