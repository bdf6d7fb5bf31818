"""
Domain errors shared by services and routers.

Services raise these; the handlers registered in main.py turn them into
`{"message": ..., "details": ...}` JSON bodies with the matching status code.
"""
from typing import Any, Optional

from fastapi import status


class AppError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    """Missing or malformed input"""
    status_code = status.HTTP_400_BAD_REQUEST


class NotFound(AppError):
    """Entity absent, or not visible to the caller"""
    status_code = status.HTTP_404_NOT_FOUND


class InvalidState(AppError):
    """Operation not legal for the entity's current status"""
    status_code = status.HTTP_409_CONFLICT


class ExternalProviderError(AppError):
    """A third-party call failed, timed out or returned an error payload"""
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, details: Optional[Any] = None, timed_out: bool = False):
        super().__init__(message, details)
        self.timed_out = timed_out


class Unauthorized(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDenied(Unauthorized):
    """Authenticated, but not allowed to perform this operation"""
    status_code = status.HTTP_403_FORBIDDEN
