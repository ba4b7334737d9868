"""
Error types shared by every app.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── NotFoundError - Lookup of an entity that must exist
    ├── ConflictError - Concurrent claims, immutable rows, refused transitions
    └── ExternalServiceError - A collaborator outside the process failed

Domain errors live in billing.exceptions and extend these. Expected
outcomes (a failed redemption, a skipped event) are returned as results,
not raised; these classes cover what a caller cannot continue past.

Usage:
    from core.exceptions import ExternalServiceError

    try:
        receipt = redeemer.submit(request)
    except ExternalServiceError as e:
        if e.is_retryable:
            ...  # leave for the next sweep
        logger.warning(str(e), extra=e.to_dict())
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code, stored on failure records
        details: Identifiers and context for logs and error_details columns
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize for JSON columns and API responses.

        Example:
            {
                "error": "No workspace for provider account",
                "error_code": "PROVIDER_ACCOUNT_NOT_FOUND",
                "details": {"provider_account_id": "acct_123"}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


class NotFoundError(BaseApplicationError):
    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with stored state.

    Covers claims held by another worker, writes to append-only or
    immutable rows, and status transitions the state machine refuses.
    Maps to HTTP 409.
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when a service outside the process fails.

    is_retryable separates outages, timeouts and rate limits (True) from
    refusals that will repeat on every attempt (False). Subclasses may fix
    it as a class attribute; passing it to the constructor overrides it.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
        is_retryable: bool | None = None,
    ):
        super().__init__(message, error_code=error_code, details=details)
        if is_retryable is not None:
            self.is_retryable = is_retryable
