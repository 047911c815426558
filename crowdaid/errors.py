"""Typed failures raised by the coordination core."""
from __future__ import annotations


class CrowdAidError(Exception):
    """Base class for errors that callers translate into user-visible responses."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(CrowdAidError):
    status_code = 400
    code = "validation_error"


class Unauthorized(CrowdAidError):
    status_code = 401
    code = "unauthorized"


class Forbidden(CrowdAidError):
    status_code = 403
    code = "forbidden"


class NotFound(CrowdAidError):
    status_code = 404
    code = "not_found"

    @classmethod
    def for_entity(cls, entity: str, entity_id: object) -> "NotFound":
        return cls(f"{entity} {entity_id} not found")


class Conflict(CrowdAidError):
    status_code = 409
    code = "conflict"


class InternalError(CrowdAidError):
    """Unexpected failure in a collaborator such as the store."""


__all__ = [
    "Conflict",
    "CrowdAidError",
    "Forbidden",
    "InternalError",
    "NotFound",
    "Unauthorized",
    "ValidationError",
]
