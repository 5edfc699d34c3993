"""
Custom exception classes for the practice manager import API.
"""
from typing import Any, Dict, Optional


class PracticeException(Exception):
    """Base exception class for the application."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class AuthenticationError(PracticeException):
    """Raised when authentication fails."""

    def __init__(
        self,
        message: str = "Authentication failed",
        code: str = "AUTHENTICATION_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, status_code=401, details=details)


class ValidationError(PracticeException):
    """Raised for validation errors."""

    def __init__(
        self,
        message: str = "Validation error",
        code: str = "VALIDATION_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, status_code=422, details=details)


class NotFoundError(PracticeException):
    """Raised when a resource is not found."""

    def __init__(
        self,
        message: str = "Resource not found",
        code: str = "NOT_FOUND",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, status_code=404, details=details)


class InvalidJobStateError(PracticeException):
    """Raised when an import job is asked to move to a status it cannot reach."""

    def __init__(
        self,
        message: str = "Invalid import job state",
        code: str = "INVALID_JOB_STATE",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, status_code=409, details=details)


class ImportLockedError(PracticeException):
    """Raised when another import is already running for the same tenant."""

    def __init__(
        self,
        message: str = "Another import is already running for this practice",
        code: str = "IMPORT_LOCKED",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, status_code=409, details=details)
