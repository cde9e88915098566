"""
Core Application - Infrastructure & Base Classes

Generic building blocks shared by the domain apps. Business logic does not
live here.

Models (import from core.models):
    - BaseModel: Abstract model with timestamps (created_at, updated_at)

Model Mixins (import from core.model_mixins):
    - UUIDPrimaryKeyMixin: UUID as primary key
    - VersionedMixin: Optimistic locking version, bumped on save

Services (import from core.services):
    - BaseService: Base class for service layer (logging helpers)

Exceptions (import from core.exceptions):
    - BaseApplicationError: Base exception with error codes and HTTP status
    - ValidationError: Input validation failures
    - NotFoundError: Resource not found
    - PermissionDeniedError: Authorization failures
    - ConflictError: State conflicts
    - ExternalServiceError: Third-party service failures

API (import from core.exception_handler / core.views):
    - application_exception_handler: DRF handler rendering BaseApplicationError
    - health_check: Liveness/readiness endpoint

Note:
    Django models and model mixins are NOT imported here to avoid
    AppRegistryNotReady errors. Import them directly from their modules.
"""

from .exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .services import BaseService

__all__ = [
    "BaseService",
    "BaseApplicationError",
    "ValidationError",
    "NotFoundError",
    "PermissionDeniedError",
    "ConflictError",
    "ExternalServiceError",
]
