"""
Error kinds surfaced by the recorder, the registry and the history assembler.

Each kind carries the HTTP status it maps to and whether retrying the same
request later can succeed. The offline outbox uses `transient` to decide
between dropping an action and keeping it queued.
"""
from typing import Optional


class TraceError(Exception):
    code = "internal"
    status_code = 500
    transient = False

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class Unauthenticated(TraceError):
    code = "unauthenticated"
    status_code = 401
    # the user can sign in again and resubmit
    transient = True


class InvalidArgument(TraceError):
    code = "invalid_argument"
    status_code = 400


class PermissionDenied(TraceError):
    code = "permission_denied"
    status_code = 403


class NotFound(TraceError):
    code = "not_found"
    status_code = 404


class Conflict(TraceError):
    code = "conflict"
    status_code = 409


class Internal(TraceError):
    code = "internal"
    status_code = 500
    transient = True


class Unavailable(TraceError):
    code = "unavailable"
    status_code = 503
    transient = True


_BY_STATUS = {
    400: InvalidArgument,
    401: Unauthenticated,
    403: PermissionDenied,
    404: NotFound,
    409: Conflict,
    422: InvalidArgument,
    503: Unavailable,
}


def from_status(status_code: int, message: str) -> TraceError:
    """Rebuild an error kind from an HTTP response status."""
    cls = _BY_STATUS.get(status_code, Internal)
    return cls(message)
