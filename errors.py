"""Typed failures raised by the services and rendered by the API boundary."""
from fastapi import status


class AppError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Missing or malformed input, detected before any write."""
    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    """Entity absent, or hidden from a caller who does not own it."""
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    """Duplicate, capacity, deadline or wrong-state failures."""
    status_code = status.HTTP_409_CONFLICT


class UpstreamError(AppError):
    """Email or webhook delivery failure. Logged by the dispatcher, never returned."""
    status_code = status.HTTP_502_BAD_GATEWAY
