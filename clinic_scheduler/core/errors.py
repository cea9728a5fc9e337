"""Typed errors raised by the scheduling core.

Every error carries the HTTP status code the routes answer with, so the
web layer never has to guess how to classify a failure.
"""

from fastapi import HTTPException, status


class SchedulingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SchedulingError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidRange(ValidationError):
    pass


class InvalidDuration(ValidationError):
    pass


class Forbidden(SchedulingError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND


class SlotConflict(SchedulingError):
    status_code = status.HTTP_409_CONFLICT


class InvalidTransition(SchedulingError):
    status_code = status.HTTP_409_CONFLICT


class Unavailable(SchedulingError):
    """Storage failure. The only kind a caller should retry with backoff."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def to_http_exception(exc: SchedulingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)
