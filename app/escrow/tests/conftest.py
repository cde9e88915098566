"""
Pytest fixtures for escrow tests.

Provides the parties (buyer, seller, arbiter), their Actors, transactions
in each lifecycle status, and mocks for the two external systems: Redis
(distributed locks) and the payment gateway.

Usage:
    def test_ship(paid_transaction, seller_actor):
        txn = TransactionService.mark_shipped(paid_transaction.id, seller_actor)
        assert txn.status == EscrowStatus.SHIPPED
"""

from unittest.mock import MagicMock

import pytest
from django.utils import timezone
from rest_framework.test import APIClient

from escrow.actors import Actor
from escrow.adapters import GatewayPayment, GatewayPaymentStatus, RefundResult, TransferResult
from escrow.services import EscrowService
from escrow.state_machines import EscrowStatus
from escrow.tests.factories import (
    ArbiterFactory,
    DisputeFactory,
    EscrowTransactionFactory,
    UserFactory,
)


# =============================================================================
# Users and Actors
# =============================================================================


@pytest.fixture
def buyer(db):
    return UserFactory()


@pytest.fixture
def seller(db):
    return UserFactory()


@pytest.fixture
def arbiter(db):
    """Staff user who is not a party to any fixture transaction."""
    return ArbiterFactory()


@pytest.fixture
def stranger(db):
    """Authenticated user with no relation to the fixture transactions."""
    return UserFactory()


@pytest.fixture
def buyer_actor(buyer):
    return Actor.from_user(buyer)


@pytest.fixture
def seller_actor(seller):
    return Actor.from_user(seller)


@pytest.fixture
def arbiter_actor(arbiter):
    return Actor.from_user(arbiter)


@pytest.fixture
def stranger_actor(stranger):
    return Actor.from_user(stranger)


@pytest.fixture
def system_actor():
    return Actor.system()


# =============================================================================
# Transaction State Fixtures
# =============================================================================


@pytest.fixture
def pending_transaction(db, buyer, seller):
    """PENDING 10000 NGN transaction, commission 200."""
    return EscrowTransactionFactory(buyer=buyer, seller=seller)


@pytest.fixture
def paid_transaction(db, buyer, seller):
    return EscrowTransactionFactory(
        buyer=buyer,
        seller=seller,
        status=EscrowStatus.PAID,
        payment_reference="pi_paid_123",
        paid_at=timezone.now(),
    )


@pytest.fixture
def shipped_transaction(db, buyer, seller):
    return EscrowTransactionFactory(
        buyer=buyer,
        seller=seller,
        status=EscrowStatus.SHIPPED,
        payment_reference="pi_shipped_123",
        paid_at=timezone.now(),
        shipped_at=timezone.now(),
    )


@pytest.fixture
def delivered_transaction(db, buyer, seller):
    return EscrowTransactionFactory(
        buyer=buyer,
        seller=seller,
        status=EscrowStatus.DELIVERED,
        payment_reference="pi_delivered_123",
        paid_at=timezone.now(),
        shipped_at=timezone.now(),
        delivered_at=timezone.now(),
    )


@pytest.fixture
def disputed_transaction(db, buyer, seller):
    return EscrowTransactionFactory(
        buyer=buyer,
        seller=seller,
        status=EscrowStatus.DISPUTED,
        payment_reference="pi_disputed_123",
        paid_at=timezone.now(),
        shipped_at=timezone.now(),
        dispute_reason="item_not_as_described",
    )


@pytest.fixture
def open_dispute(db, disputed_transaction, buyer):
    """OPEN dispute raised by the buyer on disputed_transaction."""
    return DisputeFactory(
        transaction=disputed_transaction,
        raised_by=buyer,
        reason="item_not_as_described",
        description="Screen is cracked.",
    )


# =============================================================================
# External System Mocks
# =============================================================================


@pytest.fixture
def mock_redis(mocker):
    """Redis client behind DistributedLock; every lock is free."""
    client = MagicMock()
    client.set.return_value = True
    client.eval.return_value = 1
    mocker.patch("escrow.locks.get_redis_connection", return_value=client)
    return client


@pytest.fixture
def mock_gateway():
    """
    Payment gateway double injected into every escrow service.

    Defaults: refunds and transfers succeed.
    """
    gateway = MagicMock()
    gateway.create_refund.return_value = RefundResult(
        id="re_test_123",
        amount=10000,
        currency="ngn",
        status="succeeded",
        payment_reference="pi_disputed_123",
    )
    gateway.create_transfer.return_value = TransferResult(
        id="tr_test_123",
        amount=9800,
        currency="ngn",
        destination="acct_test",
    )
    EscrowService.set_gateway(gateway)
    yield gateway
    EscrowService.set_gateway(None)


@pytest.fixture
def gateway_payment():
    """Build a GatewayPayment for a transaction (succeeded, full amount)."""

    def _build(txn, reference="pi_verify_123", status=GatewayPaymentStatus.SUCCEEDED, **overrides):
        values = {
            "reference": reference,
            "status": status,
            "amount": txn.amount,
            "currency": txn.currency,
            "metadata": {"escrow_transaction_id": str(txn.id)},
            "raw_status": status,
        }
        values.update(overrides)
        return GatewayPayment(**values)

    return _build


@pytest.fixture
def no_backoff(mocker):
    """Skip the sleeps between gateway retries."""
    return mocker.patch("escrow.services.payment_service.time.sleep")


@pytest.fixture
def api_client():
    return APIClient()
