"""
Application Errors
==================

Operational errors raised by the services and rendered by the API layer as
`{"status": "fail"|"error", "message": ...}` with the matching HTTP code.
Anything that is not an AppError is treated as a programming fault.
"""

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base class for errors that are safe to show to the caller."""

    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.is_operational = True
        super().__init__(self.message)

    @property
    def status(self) -> str:
        return "fail" if 400 <= self.status_code < 500 else "error"

    def to_payload(self) -> Dict[str, Any]:
        return {"status": self.status, "message": self.message}


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid input data"

    def __init__(self, message: Optional[str] = None, errors: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.errors = errors

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class AuthenticationError(AppError):
    status_code = 401
    default_message = "You are not logged in! Please log in to get access."


class AuthorizationError(AppError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Duplicate field value"


class InvalidOrExpiredError(AppError):
    status_code = 400
    default_message = "Token is invalid or has expired"
