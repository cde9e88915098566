"""
Shared plumbing for escrow services.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.conf import settings

from core.services import BaseService
from escrow.adapters import get_gateway
from escrow.exceptions import ConcurrentModificationError, InvalidTransitionError

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any, TypeVar

    from escrow.adapters import PaymentGateway

    T = TypeVar("T")


ACTOR_NOT_PERMITTED = "ACTOR_NOT_PERMITTED"


class EscrowService(BaseService):
    """
    Base class for escrow services.

    Adds to BaseService:
    - Gateway injection (tests swap in a mock with set_gateway)
    - Bounded retry of optimistic locking conflicts
    """

    # Payment gateway - can be injected for testing
    _gateway: PaymentGateway | None = None

    @classmethod
    def get_gateway(cls) -> PaymentGateway:
        """Get the injected gateway, or the one configured in settings."""
        return EscrowService._gateway or get_gateway()

    @classmethod
    def set_gateway(cls, gateway: PaymentGateway | None) -> None:
        """Set the gateway for every escrow service (for testing)."""
        EscrowService._gateway = gateway

    @classmethod
    def with_conflict_retry(cls, operation: Callable[[], T], log_context: dict[str, Any]) -> T:
        """Run ``operation`` again from scratch on ConcurrentModificationError."""

        def give_up(error: Exception, attempts: int) -> Exception:
            details = dict(getattr(error, "details", {}) or {})
            details["attempts"] = attempts
            return ConcurrentModificationError(
                f"Gave up after {attempts} conflicting attempts: {error}",
                details=details,
            )

        return cls.retry_on_conflict(
            operation,
            retry_on=(ConcurrentModificationError,),
            max_attempts=settings.ESCROW_MAX_CONCURRENCY_RETRIES,
            give_up=give_up,
            log_context=log_context,
        )

    @staticmethod
    def actor_not_permitted(message: str, **details: Any) -> InvalidTransitionError:
        return InvalidTransitionError(
            message,
            error_code=ACTOR_NOT_PERMITTED,
            details={k: str(v) if v is not None else None for k, v in details.items()},
        )
