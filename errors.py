"""
Error taxonomy

Each error knows the HTTP status it maps to. Handlers raise them; the
exception handlers in main.py turn them into `{"message": ..., "details": ...}`.
"""

from typing import Any, Optional


class ApiError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(ApiError):
    status_code = 400


class AuthError(ApiError):
    status_code = 401


class InvalidTokenError(AuthError):
    def __init__(self, message: str = "Unauthorized access: Invalid token", details: Optional[Any] = None):
        super().__init__(message, details)


class ExpiredTokenError(AuthError):
    def __init__(self, message: str = "Unauthorized access: Token expired", details: Optional[Any] = None):
        super().__init__(message, details)


class ForbiddenError(ApiError):
    status_code = 403


class NotFoundError(ApiError):
    status_code = 404


class ConflictError(ApiError):
    # Existing clients expect 400 here, not 409
    status_code = 400


class DependencyError(ApiError):
    status_code = 500
