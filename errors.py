from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL_ERROR = "internal_error"


class TrackerError(Exception):
    """Base error carrying a kind and the HTTP status it maps to."""

    kind = ErrorKind.INTERNAL_ERROR
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind.value, "detail": self.message}


class Unauthorized(TrackerError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401


class ValidationError(TrackerError):
    kind = ErrorKind.VALIDATION_ERROR
    status_code = 400


class NotFound(TrackerError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class Conflict(TrackerError):
    kind = ErrorKind.CONFLICT
    status_code = 409


class InternalError(TrackerError):
    kind = ErrorKind.INTERNAL_ERROR
    status_code = 500


STATUS_CODES = {cls.kind: cls.status_code for cls in (Unauthorized, ValidationError, NotFound, Conflict, InternalError)}
