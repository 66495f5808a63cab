"""Error taxonomy for the lending service.

Every error the service layer raises derives from ``LibraryError`` and
carries the HTTP status and machine code the API layer reports. None of
them are fatal: each one is the final outcome of a single operation and
the caller decides whether to resubmit.
"""

from __future__ import annotations


class LibraryError(Exception):
    """Base class for all user-actionable lending errors."""

    status_code = 400
    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(LibraryError, ValueError):
    """Missing or malformed input."""

    status_code = 400
    code = "validation_error"


class NotFoundError(LibraryError, LookupError):
    """Unknown member, book or lending record."""

    status_code = 404
    code = "not_found"


class UnavailableError(LibraryError):
    """No copies left to lend."""

    status_code = 409
    code = "unavailable"


class AlreadyReturnedError(LibraryError):
    """The lending record has already been closed."""

    status_code = 409
    code = "already_returned"


class ConflictError(LibraryError):
    """A concurrent writer won the race for the same row."""

    status_code = 409
    code = "conflict"


class AuthError(LibraryError):
    """The session could not be established or refreshed."""

    status_code = 401
    code = "not_authenticated"


class ExternalServiceError(LibraryError):
    """A remote service could not be reached."""

    status_code = 502
    code = "service_unavailable"


_BY_CODE = {
    cls.code: cls
    for cls in (
        ValidationError,
        NotFoundError,
        UnavailableError,
        AlreadyReturnedError,
        ConflictError,
        AuthError,
        ExternalServiceError,
    )
}

_BY_STATUS = {
    400: ValidationError,
    401: AuthError,
    403: AuthError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
    502: ExternalServiceError,
    503: ExternalServiceError,
}


def error_from_response(status_code: int, payload: object) -> LibraryError:
    """Rebuild a domain error from an API error response."""
    detail = f"HTTP {status_code}"
    code = None
    if isinstance(payload, dict):
        raw = payload.get("detail")
        if isinstance(raw, str) and raw:
            detail = raw
        elif raw is not None:
            detail = str(raw)
        code = payload.get("code")
    cls = _BY_CODE.get(code) or _BY_STATUS.get(status_code, LibraryError)
    return cls(detail)

