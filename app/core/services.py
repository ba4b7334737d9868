"""
Service layer building blocks.

- ServiceResult: typed outcome for operations whose failure is part of the
  normal flow (a refused signup, a cancel on a completed subscription)
- BaseService: class-method services with a per-class logger

Raise for what the caller cannot handle (database errors, broken
invariants); return a failed ServiceResult for what it can.

Usage:
    from core.services import BaseService, ServiceResult

    class SubscriptionLedger(BaseService):
        @classmethod
        def suspend(cls, subscription_id, reason="") -> ServiceResult[Subscription]:
            subscription = Subscription.objects.filter(id=subscription_id).first()
            if subscription is None:
                return ServiceResult.failure("Subscription not found", error_code="SUBSCRIPTION_NOT_FOUND")
            ...
            cls.get_logger().info("Subscription suspended", extra={"subscription_id": str(subscription.id)})
            return ServiceResult.success(subscription)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Outcome of a service call.

    Attributes:
        success: Whether the operation succeeded
        data: Payload on success
        error: Human-readable reason on failure
        error_code: Machine-readable code (e.g. "DEPENDENCY_NOT_SYNCED")
        errors: Extra structured context for the failure

    A result is truthy exactly when it succeeded:

        result = dispatch_projection(event)
        if not result:
            return cls._fail(record, result.error, result.error_code)
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, Any] | None = None

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        return cls(success=False, error=error, error_code=error_code, errors=errors)

    @classmethod
    def from_exception(cls, exc: Exception) -> ServiceResult[T]:
        """Failed result carrying an application error's own message and code."""
        code = getattr(exc, "error_code", None) or type(exc).__name__.upper()
        message = getattr(exc, "message", None) or str(exc)
        return cls(success=False, error=message, error_code=code)

    def to_response(self) -> dict[str, Any]:
        """Body for a DRF Response."""
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {"success": False, "error": self.error}
        if self.error_code:
            response["error_code"] = self.error_code
        if self.errors:
            response["errors"] = self.errors
        return response

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for stateless services.

    Services expose class methods only, so Celery workers and views share
    them without construction. Each subclass logs under
    "<module>.<ClassName>", which lets LOGGING route a single service.
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")
