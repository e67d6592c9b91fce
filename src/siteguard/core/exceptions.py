"""
Custom exceptions for SiteGuard.

Provides structured error handling with appropriate HTTP status codes
and error details for API responses.
"""

from typing import Any, Dict, Optional


class SiteGuardException(Exception):
    """Base exception for SiteGuard."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ValidationError(SiteGuardException):
    """Raised when request validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="validation_error",
            details=details,
        )


class AuthenticationError(SiteGuardException):
    """Raised when authentication fails."""

    def __init__(self, message: str = "Invalid or missing authentication token") -> None:
        super().__init__(
            message=message,
            status_code=401,
            error_code="authentication_error",
        )


class InvalidCategoryError(SiteGuardException):
    """Raised for an unknown rate limit category name (programmer error)."""

    def __init__(self, category: str) -> None:
        super().__init__(
            message=f"Unknown rate limit category '{category}'",
            status_code=400,
            error_code="invalid_category",
            details={"category": category},
        )
