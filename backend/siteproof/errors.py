"""
Typed service errors.

Services raise these; the HTTP layer maps ``status_code`` and ``to_dict()`` onto the
response envelope. ``NotFoundError`` is also used where revealing that a record exists
in another tenant would leak information.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Optional


@dataclass(eq=False)
class ServiceError(Exception):
    code: str
    message: str
    details: Optional[dict] = None

    status_code: ClassVar[int] = 400

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> dict:
        payload = {
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class UnauthorizedError(ServiceError):
    status_code = 401

    def __init__(self, message: str = "Authentication required", code: str = "UNAUTHORIZED") -> None:
        super().__init__(code, message)


class ForbiddenError(ServiceError):
    status_code = 403

    def __init__(self, message: str = "Access denied", code: str = "FORBIDDEN", details: Optional[dict] = None) -> None:
        super().__init__(code, message, details)


class NotFoundError(ServiceError):
    status_code = 404

    def __init__(self, resource: str, resource_id: object | None = None, code: str = "NOT_FOUND") -> None:
        # resource_id is kept for logs only; it never reaches the response body
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(code, f"{resource} not found")


class ValidationFailed(ServiceError):
    status_code = 400

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        *,
        field: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        merged = dict(details or {})
        if field:
            merged.setdefault("field", field)
        super().__init__(code, message, merged or None)


class ConflictError(ServiceError):
    status_code = 409

    def __init__(
        self,
        message: str,
        code: str = "CONFLICT",
        *,
        field: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        merged = dict(details or {})
        if field:
            merged.setdefault("field", field)
        super().__init__(code, message, merged or None)


class InternalError(ServiceError):
    status_code = 500

    def __init__(self, message: str = "Internal server error", code: str = "INTERNAL_ERROR") -> None:
        super().__init__(code, message)
