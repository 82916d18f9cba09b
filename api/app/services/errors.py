"""Typed failures returned by the join-request core.

Each error carries the HTTP status it maps to and a short machine code that
clients use to map a response body back onto the same class.
"""


class JoinRequestError(Exception):
    """Base class for all join-request core failures."""
    code = 'error'
    status_code = 400

    def __init__(self, detail: str = ''):
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__


class ValidationFailed(JoinRequestError):
    """Malformed input, or a host requesting their own activity."""
    code = 'validation'
    status_code = 422


class NotFound(JoinRequestError):
    code = 'not_found'
    status_code = 404


class Forbidden(JoinRequestError):
    """Actor lacks permission for the requested transition."""
    code = 'forbidden'
    status_code = 403


class Conflict(JoinRequestError):
    """Request already resolved, or a duplicate pending request."""
    code = 'conflict'
    status_code = 409


class AtCapacity(JoinRequestError):
    """Roster full at approval time."""
    code = 'at_capacity'
    status_code = 409


class Transient(JoinRequestError):
    """Store or channel unavailable. Never retried by the core."""
    code = 'transient'
    status_code = 503


ERRORS_BY_CODE: dict[str, type[JoinRequestError]] = {
    cls.code: cls
    for cls in (ValidationFailed, NotFound, Forbidden, Conflict, AtCapacity, Transient)
}


def error_from_code(code: str | None, detail: str) -> JoinRequestError:
    """Rebuild a typed error from a response body's `code` field."""
    return ERRORS_BY_CODE.get(code or '', Transient)(detail)
