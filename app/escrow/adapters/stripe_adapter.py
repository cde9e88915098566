"""
Stripe implementation of the escrow PaymentGateway.

All Stripe calls go through this adapter so that timeouts, idempotency,
logging and error translation are consistent. Stripe errors are
translated to escrow.exceptions.StripeError subclasses whose
``is_retryable`` flag drives retry decisions in services and tasks.

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)

Usage:
    from escrow.adapters import StripeAdapter, CreatePaymentParams

    payment = StripeAdapter.create_payment(
        CreatePaymentParams(
            amount=10000,
            currency="ngn",
            metadata={"escrow_transaction_id": str(txn.id)},
            idempotency_key=f"escrow_payment:{txn.id}",
        )
    )
"""

from __future__ import annotations

import logging
import time
from typing import Any

import stripe
from django.conf import settings

from escrow.adapters.base import (
    CreatePaymentParams,
    GatewayPayment,
    GatewayPaymentStatus,
    RefundResult,
    TransferResult,
)
from escrow.exceptions import (
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeInvalidAccountError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
)


class StripeAdapter:
    """
    Adapter for Stripe API operations used by the escrow engine.

    All methods are classmethods with no instance state; an instance is
    what escrow.adapters.get_gateway() hands to services.
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = 0
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    def _call(cls, operation: str, log_context: dict[str, Any], func, *args, **kwargs):
        """Run one Stripe SDK call with timing logs and error translation."""
        cls._configure_stripe()
        logger = cls.get_logger()
        log_context = {"operation": operation, **log_context}

        start_time = time.time()
        logger.debug("Starting Stripe operation", extra=log_context)
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            cls._handle_stripe_error(e, log_context, (time.time() - start_time) * 1000)
            raise

        logger.info(
            "Stripe operation completed",
            extra={**log_context, "duration_ms": (time.time() - start_time) * 1000},
        )
        return result

    # =========================================================================
    # Payments
    # =========================================================================

    @classmethod
    def _to_gateway_payment(cls, intent) -> GatewayPayment:
        raw_status = intent.status
        failure_reason = None
        last_error = getattr(intent, "last_payment_error", None)

        if raw_status == "succeeded":
            status = GatewayPaymentStatus.SUCCEEDED
        elif raw_status == "canceled":
            status = GatewayPaymentStatus.FAILED
            failure_reason = getattr(intent, "cancellation_reason", None) or "canceled"
        elif raw_status == "requires_payment_method" and last_error:
            status = GatewayPaymentStatus.FAILED
            failure_reason = getattr(last_error, "message", None) or "payment declined"
        else:
            status = GatewayPaymentStatus.PENDING

        return GatewayPayment(
            reference=intent.id,
            status=status,
            amount=intent.amount_received if status == GatewayPaymentStatus.SUCCEEDED else intent.amount,
            currency=intent.currency,
            metadata=dict(intent.metadata or {}),
            client_secret=getattr(intent, "client_secret", None),
            failure_reason=failure_reason,
            raw_status=raw_status,
        )

    @classmethod
    def create_payment(cls, params: CreatePaymentParams) -> GatewayPayment:
        """
        Create a PaymentIntent for an escrow transaction.

        Raises:
            StripeError subclass: Translated Stripe failure
        """
        intent = cls._call(
            "create_payment_intent",
            {"amount": params.amount, "idempotency_key": params.idempotency_key},
            stripe.PaymentIntent.create,
            amount=params.amount,
            currency=params.currency,
            metadata=params.metadata,
            payment_method_types=params.payment_method_types,
            idempotency_key=params.idempotency_key,
        )
        return cls._to_gateway_payment(intent)

    @classmethod
    def retrieve_payment(cls, reference: str) -> GatewayPayment:
        """
        Retrieve a PaymentIntent by id.

        Raises:
            StripeInvalidRequestError: Unknown reference (stripe_code
                ``resource_missing``) or invalid request
            StripeAPIUnavailableError / StripeRateLimitError: Transient
        """
        intent = cls._call(
            "retrieve_payment_intent",
            {"payment_intent_id": reference},
            stripe.PaymentIntent.retrieve,
            reference,
        )
        return cls._to_gateway_payment(intent)

    # =========================================================================
    # Refunds & Transfers
    # =========================================================================

    @classmethod
    def create_refund(
        cls,
        reference: str,
        amount: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        refund = cls._call(
            "create_refund",
            {"payment_intent_id": reference, "amount": amount, "idempotency_key": idempotency_key},
            stripe.Refund.create,
            payment_intent=reference,
            amount=amount,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        return RefundResult(
            id=refund.id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status,
            payment_reference=refund.payment_intent,
        )

    @classmethod
    def create_transfer(
        cls,
        destination: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult:
        transfer = cls._call(
            "create_transfer",
            {"destination": destination, "amount": amount, "idempotency_key": idempotency_key},
            stripe.Transfer.create,
            amount=amount,
            currency=currency,
            destination=destination,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        return TransferResult(
            id=transfer.id,
            amount=transfer.amount,
            currency=transfer.currency,
            destination=transfer.destination,
        )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    @classmethod
    def verify_webhook_signature(cls, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and parse a Stripe webhook event.

        Raises:
            StripeInvalidRequestError: Invalid signature or payload
        """
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as e:
            raise StripeInvalidRequestError(
                "Invalid webhook signature",
                stripe_code="signature_verification_failed",
                details={"error": str(e)},
            ) from e
        except ValueError as e:
            raise StripeInvalidRequestError(
                "Invalid webhook payload",
                stripe_code="invalid_payload",
                details={"error": str(e)},
            ) from e
        return event.to_dict()

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe SDK exceptions to escrow exceptions.

        Raises:
            StripeCardDeclinedError: Card declined (permanent)
            StripeInvalidAccountError: Bad Connect destination (permanent)
            StripeInvalidRequestError: Invalid request or unknown object (permanent)
            StripeRateLimitError: Rate limited (retryable)
            StripeTimeoutError: Request timed out (retryable)
            StripeAPIUnavailableError: Network or Stripe server error (retryable)
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning("Card error from Stripe", extra={**log_context, "decline_code": decline_code})
            raise StripeCardDeclinedError(
                str(error.user_message or error),
                stripe_code=error.code,
                decline_code=decline_code,
            ) from error

        if isinstance(error, stripe.InvalidRequestError):
            logger.error("Invalid request to Stripe", extra={**log_context, "stripe_code": error.code})
            if error.code != "resource_missing" and "account" in str(error).lower():
                raise StripeInvalidAccountError(str(error), stripe_code=error.code) from error
            raise StripeInvalidRequestError(str(error), stripe_code=error.code) from error

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise StripeRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                stripe_code="rate_limit",
            ) from error

        if isinstance(error, stripe.APIConnectionError):
            if "timed out" in str(error).lower() or "timeout" in str(error).lower():
                logger.error("Stripe request timed out", extra=log_context)
                raise StripeTimeoutError(
                    "Stripe request timed out. Please retry.",
                    stripe_code="timeout",
                ) from error
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Could not connect to Stripe. Please retry.",
                stripe_code="api_connection_error",
            ) from error

        if isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise StripeAPIUnavailableError(
                "Stripe service error. Please retry.",
                stripe_code="api_error",
            ) from error

        if isinstance(error, stripe.AuthenticationError):
            logger.critical("Stripe authentication failed - check API key", extra=log_context)
            raise StripeInvalidRequestError(
                "Stripe authentication failed",
                stripe_code="authentication_error",
            ) from error

        # Anything else is a programming error on our side; let it propagate.
        logger.error(
            f"Unexpected error during Stripe call: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
