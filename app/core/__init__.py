"""
Core infrastructure shared by the billing app.

Generic building blocks with no billing semantics:

Models (import from core.models / core.model_mixins):
    - BaseModel: Abstract model with created_at / updated_at
    - UUIDPrimaryKeyMixin, SoftDeleteMixin, MetadataMixin

Managers (import from core.managers):
    - SoftDeleteManager / SoftDeleteQuerySet

Services (import from core.services):
    - BaseService: per-class logger for class-method services
    - ServiceResult: success/failure wrapper for expected failures

Exceptions (import from core.exceptions):
    - BaseApplicationError and its generic subclasses

Resilience (import from core.circuit_breaker):
    - CircuitBreaker: cache-backed breaker shared across workers

Note:
    Models, mixins and managers are not imported here because they need the
    app registry. Import them from their modules directly.
"""

from .exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
)
from .services import BaseService, ServiceResult

__all__ = [
    "BaseService",
    "ServiceResult",
    "BaseApplicationError",
    "NotFoundError",
    "ConflictError",
    "ExternalServiceError",
]
