"""
Tests for the auto-confirm worker.

Time is frozen with freezegun; transactions are created with timestamps
relative to the frozen clock.
"""

import itertools
from datetime import timedelta

import pytest
from django.utils import timezone
from freezegun import freeze_time

from escrow.exceptions import LockAcquisitionError
from escrow.locks import DistributedLock
from escrow.models import EscrowEvent, EscrowTransaction
from escrow.state_machines import EscrowEventName, EscrowStatus, EventType
from escrow.tests.factories import EscrowTransactionFactory
from escrow.workers.auto_confirm import (
    auto_advance_transaction,
    is_due,
    process_auto_confirmations,
)

FROZEN_NOW = "2026-03-15 12:00:00"

_references = itertools.count(1)


def shipped(days_ago, **kwargs):
    when = timezone.now() - timedelta(days=days_ago)
    return EscrowTransactionFactory(
        status=EscrowStatus.SHIPPED,
        payment_reference=f"pi_auto_{next(_references)}",
        paid_at=when,
        shipped_at=when,
        **kwargs,
    )


def delivered(days_ago, **kwargs):
    when = timezone.now() - timedelta(days=days_ago)
    return EscrowTransactionFactory(
        status=EscrowStatus.DELIVERED,
        payment_reference=f"pi_auto_{next(_references)}",
        paid_at=when,
        shipped_at=when,
        delivered_at=when,
        **kwargs,
    )


@pytest.mark.django_db
@freeze_time(FROZEN_NOW)
class TestIsDue:
    def test_shipped_window(self, settings):
        settings.ESCROW_AUTO_CONFIRM_DELIVERY_DAYS = 7

        assert is_due(shipped(7), EscrowEventName.CONFIRM_DELIVERY)
        assert not is_due(shipped(6), EscrowEventName.CONFIRM_DELIVERY)

    def test_delivered_window(self, settings):
        settings.ESCROW_AUTO_RELEASE_DAYS = 3

        assert is_due(delivered(3), EscrowEventName.CONFIRM_SATISFACTION)
        assert not is_due(delivered(2), EscrowEventName.CONFIRM_SATISFACTION)

    def test_wrong_status_is_never_due(self):
        txn = delivered(30)

        assert not is_due(txn, EscrowEventName.CONFIRM_DELIVERY)
        assert not is_due(txn, EscrowEventName.SHIP)


@pytest.mark.django_db
@freeze_time(FROZEN_NOW)
class TestProcessAutoConfirmations:
    def test_queues_due_transactions_per_window(self, mocker, settings):
        settings.ESCROW_AUTO_CONFIRM_DELIVERY_DAYS = 7
        settings.ESCROW_AUTO_RELEASE_DAYS = 3
        mock_delay = mocker.patch("escrow.workers.auto_confirm.auto_advance_transaction.delay")

        due_shipment = shipped(8)
        shipped(2)
        due_release = delivered(4)
        delivered(1)

        result = process_auto_confirmations()

        assert result == {
            "queued": {
                EscrowEventName.CONFIRM_DELIVERY: 1,
                EscrowEventName.CONFIRM_SATISFACTION: 1,
            }
        }
        mock_delay.assert_any_call(str(due_shipment.id), EscrowEventName.CONFIRM_DELIVERY)
        mock_delay.assert_any_call(str(due_release.id), EscrowEventName.CONFIRM_SATISFACTION)
        assert mock_delay.call_count == 2

    def test_disputed_transactions_are_not_queued(self, mocker):
        mock_delay = mocker.patch("escrow.workers.auto_confirm.auto_advance_transaction.delay")
        EscrowTransactionFactory(
            status=EscrowStatus.DISPUTED,
            payment_reference="pi_frozen",
            shipped_at=timezone.now() - timedelta(days=30),
        )

        process_auto_confirmations()

        mock_delay.assert_not_called()


@pytest.mark.django_db
@freeze_time(FROZEN_NOW)
class TestAutoAdvanceTransaction:
    def test_confirms_overdue_delivery(self, mock_redis, seller):
        txn = shipped(10, seller=seller)

        result = auto_advance_transaction(str(txn.id), EscrowEventName.CONFIRM_DELIVERY)

        assert result["status"] == "advanced"
        assert result["new_status"] == EscrowStatus.DELIVERED
        stored = EscrowTransaction.objects.get(pk=txn.pk)
        assert stored.status == EscrowStatus.DELIVERED
        event = EscrowEvent.objects.get(transaction=txn, event_type=EventType.DELIVERY_CONFIRMED)
        assert event.payload["automatic"] is True

    def test_releases_funds_after_window(self, mock_redis):
        txn = delivered(5)

        result = auto_advance_transaction(str(txn.id), EscrowEventName.CONFIRM_SATISFACTION)

        assert result["status"] == "advanced"
        stored = EscrowTransaction.objects.get(pk=txn.pk)
        assert stored.status == EscrowStatus.COMPLETED
        assert stored.is_payable

    def test_disputed_in_the_meantime_is_skipped(self, mock_redis):
        txn = shipped(10)
        txn.open_dispute(reason="item_not_received")
        txn.save()

        result = auto_advance_transaction(str(txn.id), EscrowEventName.CONFIRM_DELIVERY)

        assert result["status"] == "not_due"
        assert EscrowTransaction.objects.get(pk=txn.pk).status == EscrowStatus.DISPUTED

    def test_running_twice_advances_once(self, mock_redis):
        txn = shipped(10)

        first = auto_advance_transaction(str(txn.id), EscrowEventName.CONFIRM_DELIVERY)
        second = auto_advance_transaction(str(txn.id), EscrowEventName.CONFIRM_DELIVERY)

        assert first["status"] == "advanced"
        assert second["status"] == "not_due"
        assert EscrowEvent.objects.filter(event_type=EventType.DELIVERY_CONFIRMED).count() == 1

    def test_unknown_transaction(self, mock_redis):
        result = auto_advance_transaction("00000000-0000-0000-0000-000000000000", EscrowEventName.CONFIRM_DELIVERY)

        assert result["status"] == "not_found"

    def test_lock_failure(self, mock_redis, mocker):
        mocker.patch.object(DistributedLock, "acquire", side_effect=LockAcquisitionError("Lock is already held"))
        txn = shipped(10)

        result = auto_advance_transaction(str(txn.id), EscrowEventName.CONFIRM_DELIVERY)

        assert result["status"] == "lock_failed"
        assert EscrowTransaction.objects.get(pk=txn.pk).status == EscrowStatus.SHIPPED

    def test_uses_per_transaction_lock(self, mock_redis):
        txn = shipped(10)

        auto_advance_transaction(str(txn.id), EscrowEventName.CONFIRM_DELIVERY)

        assert mock_redis.set.call_args[0][0] == f"lock:escrow:transaction:{txn.id}"
