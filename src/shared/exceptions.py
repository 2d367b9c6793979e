# src/shared/exceptions.py
from typing import Optional

from fastapi import HTTPException, status


class BaseHTTPException(HTTPException):
    """Base for domain exceptions with a class-level status code and message."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.message
        super().__init__(status_code=self.status_code, detail=self.message)

    def __str__(self) -> str:
        return self.message


# Authentication & Authorization Exceptions
class InvalidTokenError(HTTPException):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid token"
        )


# Request Exceptions
class ConflictError(HTTPException):
    def __init__(self, message: str = "Resource conflict") -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=message)


# Integration Exceptions
class IntegrationNotFoundError(HTTPException):
    def __init__(self, message: str = "CRM integration not found") -> None:
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=message)


class IntegrationConfigurationError(HTTPException):
    def __init__(self, message: str = "CRM integration is misconfigured") -> None:
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


class SyncRecordNotFoundError(HTTPException):
    def __init__(self, message: str = "No CRM sync recorded for this invoice") -> None:
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=message)
