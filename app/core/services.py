"""
Base service layer patterns for business logic encapsulation.

Services encapsulate business logic separate from views and models.
Views handle HTTP concerns, models handle data, services handle logic.

Error Model:
    Money-affecting operations fail loudly: services raise subclasses of
    core.exceptions.BaseApplicationError and the API layer renders them.
    Nothing in the service layer converts an error into a silent no-op.

Usage:
    from core.services import BaseService

    class PayoutService(BaseService):
        @classmethod
        def cancel(cls, payout_id):
            with cls.atomic():
                payout = PayoutRequest.objects.select_for_update().get(pk=payout_id)
                payout.cancel()
                payout.save()

            cls.get_logger().info("Payout cancelled", extra={"payout_id": str(payout_id)})
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

T = TypeVar("T")


class BaseService:
    """
    Base class for service layer classes.

    Provides common utilities for services:
    - Logging setup per service
    - Database transaction management
    - Bounded retry of optimistic-concurrency conflicts

    Design Notes:
        - Use @staticmethod or @classmethod (no instance state)
        - Services should be stateless
        - Raise exceptions for failures; never return half-applied results
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """
        Get logger for this service.

        Returns a logger named after the service class for
        easy filtering in logs.
        """
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        All database operations within this context manager are
        wrapped in a transaction. If any operation fails, all
        changes are rolled back.

        Example:
            with cls.atomic():
                dispute.save()
                transaction.save()
                # If the transaction save fails, the dispute is rolled back
        """
        with transaction.atomic():
            yield

    @classmethod
    def retry_on_conflict(
        cls,
        operation: Callable[[], T],
        retry_on: tuple[type[Exception], ...],
        max_attempts: int,
        give_up: Callable[[Exception, int], Exception] | None = None,
        log_context: dict | None = None,
    ) -> T:
        """
        Run a whole read-validate-write operation, retrying on conflict.

        The operation must re-read everything it depends on each time it is
        called. Exceptions that are not listed in ``retry_on`` propagate
        immediately.

        Args:
            operation: Zero-argument callable performing the full operation
            retry_on: Exception types that mean "state changed under us"
            max_attempts: Total number of attempts (at least 1)
            give_up: Optional factory building the exception raised when
                attempts are exhausted; defaults to re-raising the last one
            log_context: Extra logging context

        Returns:
            Whatever ``operation`` returns on its first successful attempt

        Example:
            return cls.retry_on_conflict(
                lambda: cls._ship_once(transaction_id, actor),
                retry_on=(ConcurrentModificationError,),
                max_attempts=3,
            )
        """
        logger = cls.get_logger()
        attempts = max(1, max_attempts)
        attempt = 1

        while True:
            try:
                return operation()
            except retry_on as e:
                context = {
                    **(log_context or {}),
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "error": str(e),
                }
                if attempt >= attempts:
                    logger.warning("Concurrent modification persisted, giving up", extra=context)
                    if give_up is not None:
                        raise give_up(e, attempts) from e
                    raise
                logger.warning("Concurrent modification detected, retrying", extra=context)
                attempt += 1
