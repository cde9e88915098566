"""
Tests for PayoutService.

Covers:
1. Claiming eligible transactions into a payout request
2. Manual processing, retry and cancellation
3. Gateway execution
4. Seller balance
"""

import itertools
from datetime import timedelta

import pytest
from django.utils import timezone

from escrow.exceptions import (
    EscrowValidationError,
    InsufficientPayoutBalanceError,
    InvalidTransitionError,
    LockAcquisitionError,
    StripeAPIUnavailableError,
    StripeInvalidAccountError,
    TransactionNotFoundError,
)
from escrow.models import EscrowEvent, EscrowTransaction, PayoutRequest
from escrow.services import DisputeService, PayoutService, TransactionService
from escrow.services.base import ACTOR_NOT_PERMITTED
from escrow.state_machines import DisputeOutcome, DisputeReason, EscrowStatus, EventType, PayoutStatus
from escrow.tests.factories import (
    CompletedTransactionFactory,
    EscrowTransactionFactory,
    PayoutAccountFactory,
    PayoutRequestFactory,
)


def reload(payout):
    return PayoutRequest.objects.get(pk=payout.pk)


@pytest.fixture
def earnings(db, seller):
    """Three completed sales: 9800, 4900, 1960 seller amounts, oldest first."""
    now = timezone.now()
    return [
        CompletedTransactionFactory(seller=seller, amount=amount, completed_at=now - timedelta(days=days))
        for amount, days in ((10000, 3), (5000, 2), (2000, 1))
    ]


@pytest.fixture
def pending_payout(db, seller, earnings, seller_actor, mock_redis):
    return PayoutService.request_payout(seller.pk, seller_actor)


# =============================================================================
# Requesting
# =============================================================================


@pytest.mark.django_db
class TestRequestPayout:
    def test_claims_all_eligible_transactions(self, seller, seller_actor, earnings, mock_redis):
        payout = PayoutService.request_payout(seller.pk, seller_actor)

        assert payout.status == PayoutStatus.PENDING
        assert payout.amount == 9800 + 4900 + 1960
        assert set(payout.transactions.values_list("pk", flat=True)) == {t.pk for t in earnings}

    def test_claim_bumps_transaction_versions(self, seller, seller_actor, earnings, mock_redis):
        PayoutService.request_payout(seller.pk, seller_actor)

        assert all(EscrowTransaction.objects.get(pk=t.pk).version == 2 for t in earnings)

    def test_cap_takes_oldest_prefix(self, seller, seller_actor, earnings, mock_redis):
        payout = PayoutService.request_payout(seller.pk, seller_actor, amount=15000)

        assert payout.amount == 9800 + 4900
        claimed = set(payout.transactions.values_list("pk", flat=True))
        assert claimed == {earnings[0].pk, earnings[1].pk}
        assert EscrowTransaction.objects.get(pk=earnings[2].pk).payout_request_id is None

    def test_cap_below_oldest_transaction(self, seller, seller_actor, earnings, mock_redis):
        with pytest.raises(InsufficientPayoutBalanceError):
            PayoutService.request_payout(seller.pk, seller_actor, amount=5000)

        assert not PayoutRequest.objects.exists()

    def test_cap_above_available(self, seller, seller_actor, earnings, mock_redis):
        with pytest.raises(InsufficientPayoutBalanceError) as exc_info:
            PayoutService.request_payout(seller.pk, seller_actor, amount=50000)

        assert exc_info.value.details["available"] == 16660

    def test_nothing_to_pay(self, seller, seller_actor, mock_redis):
        EscrowTransactionFactory(seller=seller, status=EscrowStatus.DELIVERED, payment_reference="pi_not_done")

        with pytest.raises(InsufficientPayoutBalanceError):
            PayoutService.request_payout(seller.pk, seller_actor)

    def test_claimed_transactions_are_not_claimed_twice(self, seller, seller_actor, pending_payout):
        with pytest.raises(InsufficientPayoutBalanceError):
            PayoutService.request_payout(seller.pk, seller_actor)

    def test_fully_refunded_sales_are_not_eligible(self, seller, seller_actor, mock_redis):
        CompletedTransactionFactory(seller=seller, seller_amount=0, commission=0, refunded_amount=10000)

        with pytest.raises(InsufficientPayoutBalanceError):
            PayoutService.request_payout(seller.pk, seller_actor)

    def test_notifies_seller_and_admins(self, seller, pending_payout):
        recipients = list(
            EscrowEvent.objects.filter(
                payout_request=pending_payout,
                event_type=EventType.PAYOUT_REQUESTED,
            ).values_list("user_id", flat=True)
        )
        assert sorted(recipients, key=lambda v: v is None) == [seller.pk, None]

    def test_arbiter_can_request_for_seller(self, seller, arbiter_actor, earnings, mock_redis):
        payout = PayoutService.request_payout(seller.pk, arbiter_actor)

        assert payout.seller_id == seller.pk

    def test_other_users_cannot_request(self, seller, buyer_actor, system_actor, earnings, mock_redis):
        for actor in (buyer_actor, system_actor):
            with pytest.raises(InvalidTransitionError) as exc_info:
                PayoutService.request_payout(seller.pk, actor)
            assert exc_info.value.error_code == ACTOR_NOT_PERMITTED

    @pytest.mark.parametrize("amount", [0, -100, 12.5, True])
    def test_invalid_cap(self, seller, seller_actor, amount, mock_redis):
        with pytest.raises(EscrowValidationError):
            PayoutService.request_payout(seller.pk, seller_actor, amount=amount)

    def test_other_currency_is_paid_out_on_request(self, seller, seller_actor, earnings, mock_redis):
        usd_sale = CompletedTransactionFactory(seller=seller, currency="usd")

        payout = PayoutService.request_payout(seller.pk, seller_actor, currency="USD")

        assert payout.currency == "usd"
        assert payout.amount == 9800
        assert list(payout.transactions.values_list("pk", flat=True)) == [usd_sale.pk]
        assert all(EscrowTransaction.objects.get(pk=t.pk).payout_request_id is None for t in earnings)

    def test_default_currency_does_not_mix_currencies(self, seller, seller_actor, mock_redis):
        CompletedTransactionFactory(seller=seller, currency="usd")

        with pytest.raises(InsufficientPayoutBalanceError) as exc_info:
            PayoutService.request_payout(seller.pk, seller_actor)

        assert exc_info.value.details["currency"] == "ngn"

    @pytest.mark.parametrize("currency", ["", "us", "dollars"])
    def test_invalid_currency(self, seller, seller_actor, earnings, currency, mock_redis):
        with pytest.raises(EscrowValidationError) as exc_info:
            PayoutService.request_payout(seller.pk, seller_actor, currency=currency)

        assert "currency" in exc_info.value.details

    def test_holds_seller_lock(self, seller, seller_actor, earnings, mock_redis):
        PayoutService.request_payout(seller.pk, seller_actor)

        assert mock_redis.set.call_args[0][0] == f"lock:escrow:payout:seller:{seller.pk}"

    def test_concurrent_request_is_rejected(self, seller, seller_actor, earnings, mock_redis, mocker):
        mocker.patch("escrow.locks.time.sleep")
        mocker.patch("escrow.locks.time.monotonic", side_effect=itertools.count(0.0, 20.0))
        mock_redis.set.return_value = None

        with pytest.raises(LockAcquisitionError):
            PayoutService.request_payout(seller.pk, seller_actor)

        assert not PayoutRequest.objects.exists()

    def test_auto_execution_is_queued_after_commit(
        self, seller, seller_actor, earnings, mock_redis, settings, mocker, django_capture_on_commit_callbacks
    ):
        settings.ESCROW_AUTO_EXECUTE_PAYOUTS = True
        mock_delay = mocker.patch("escrow.tasks.execute_single_payout.delay")

        with django_capture_on_commit_callbacks(execute=True):
            payout = PayoutService.request_payout(seller.pk, seller_actor)

        mock_delay.assert_called_once_with(str(payout.id))


# =============================================================================
# Manual processing
# =============================================================================


@pytest.mark.django_db
class TestManualProcessing:
    def test_mark_processed_success(self, pending_payout, arbiter_actor, seller):
        payout = PayoutService.mark_processed(pending_payout.id, True, arbiter_actor, reference="BANK-7781")

        assert payout.status == PayoutStatus.COMPLETED
        assert payout.transaction_reference == "BANK-7781"
        event = EscrowEvent.objects.get(event_type=EventType.PAYOUT_PROCESSED)
        assert event.user_id == seller.pk

    def test_mark_processed_failure_keeps_claims(self, pending_payout, arbiter_actor):
        payout = PayoutService.mark_processed(
            pending_payout.id, False, arbiter_actor, failure_reason="Account closed"
        )

        assert payout.status == PayoutStatus.FAILED
        assert payout.failure_reason == "Account closed"
        assert payout.transactions.count() == 3

    @pytest.mark.parametrize(
        ("success", "kwargs", "field"),
        [
            (True, {}, "reference"),
            (True, {"reference": "  "}, "reference"),
            (False, {}, "failure_reason"),
        ],
    )
    def test_requires_reference_or_reason(self, pending_payout, arbiter_actor, success, kwargs, field):
        with pytest.raises(EscrowValidationError) as exc_info:
            PayoutService.mark_processed(pending_payout.id, success, arbiter_actor, **kwargs)

        assert field in exc_info.value.details

    def test_seller_cannot_mark_own_payout(self, pending_payout, seller_actor):
        with pytest.raises(InvalidTransitionError) as exc_info:
            PayoutService.mark_processed(pending_payout.id, True, seller_actor, reference="SELF")

        assert exc_info.value.error_code == ACTOR_NOT_PERMITTED

    def test_completed_payout_cannot_be_processed_again(self, pending_payout, arbiter_actor):
        PayoutService.mark_processed(pending_payout.id, True, arbiter_actor, reference="BANK-1")

        with pytest.raises(InvalidTransitionError):
            PayoutService.mark_processed(pending_payout.id, False, arbiter_actor, failure_reason="Oops")

    def test_retry_failed_payout(self, pending_payout, arbiter_actor):
        PayoutService.mark_processed(pending_payout.id, False, arbiter_actor, failure_reason="Timeout")

        payout = PayoutService.retry_payout(pending_payout.id, arbiter_actor)

        assert payout.status == PayoutStatus.PENDING

    def test_retry_requires_failed_status(self, pending_payout, arbiter_actor):
        with pytest.raises(InvalidTransitionError):
            PayoutService.retry_payout(pending_payout.id, arbiter_actor)


@pytest.mark.django_db
class TestCancelPayout:
    def test_seller_cancels_and_transactions_are_released(self, pending_payout, seller_actor, seller):
        payout = PayoutService.cancel_payout(pending_payout.id, seller_actor, reason="Wrong account")

        assert payout.status == PayoutStatus.CANCELLED
        assert not EscrowTransaction.objects.filter(payout_request=payout).exists()
        assert PayoutService.seller_balance(seller.pk).available_balance == 16660
        assert EscrowEvent.objects.filter(event_type=EventType.PAYOUT_CANCELLED).exists()

    def test_released_transactions_can_be_claimed_again(self, pending_payout, seller, seller_actor, mock_redis):
        PayoutService.cancel_payout(pending_payout.id, seller_actor)

        again = PayoutService.request_payout(seller.pk, seller_actor)

        assert again.amount == pending_payout.amount

    def test_cannot_cancel_completed_payout(self, pending_payout, seller_actor, arbiter_actor):
        PayoutService.mark_processed(pending_payout.id, True, arbiter_actor, reference="BANK-2")

        with pytest.raises(InvalidTransitionError):
            PayoutService.cancel_payout(pending_payout.id, seller_actor)

    def test_stranger_cannot_cancel(self, pending_payout, stranger_actor):
        with pytest.raises(InvalidTransitionError) as exc_info:
            PayoutService.cancel_payout(pending_payout.id, stranger_actor)

        assert exc_info.value.error_code == ACTOR_NOT_PERMITTED


# =============================================================================
# Execution
# =============================================================================


@pytest.mark.django_db
class TestExecutePayout:
    def test_transfers_to_connected_account(self, pending_payout, seller, mock_gateway, mock_redis):
        account = PayoutAccountFactory(seller=seller)

        payout = PayoutService.execute_payout(pending_payout.id)

        assert payout.status == PayoutStatus.COMPLETED
        assert payout.transaction_reference == "tr_test_123"
        assert payout.attempt_count == 1
        kwargs = mock_gateway.create_transfer.call_args.kwargs
        assert kwargs["destination"] == account.stripe_account_id
        assert kwargs["amount"] == 16660
        assert kwargs["idempotency_key"] == f"payout:{pending_payout.id}:1"

    def test_without_account_stays_pending(self, pending_payout, mock_gateway, mock_redis):
        payout = PayoutService.execute_payout(pending_payout.id)

        assert payout.status == PayoutStatus.PENDING
        mock_gateway.create_transfer.assert_not_called()

    def test_disabled_account_is_ignored(self, pending_payout, seller, mock_gateway, mock_redis):
        PayoutAccountFactory(seller=seller, payouts_enabled=False)

        assert PayoutService.execute_payout(pending_payout.id).status == PayoutStatus.PENDING

    def test_permanent_error_fails_payout(self, pending_payout, seller, mock_gateway, mock_redis):
        PayoutAccountFactory(seller=seller)
        mock_gateway.create_transfer.side_effect = StripeInvalidAccountError("No such destination")

        payout = PayoutService.execute_payout(pending_payout.id)

        assert payout.status == PayoutStatus.FAILED
        assert "No such destination" in payout.failure_reason
        assert EscrowEvent.objects.filter(event_type=EventType.PAYOUT_FAILED).exists()

    def test_transient_error_leaves_processing(self, pending_payout, seller, mock_gateway, mock_redis):
        PayoutAccountFactory(seller=seller)
        mock_gateway.create_transfer.side_effect = StripeAPIUnavailableError("Stripe is down")

        with pytest.raises(StripeAPIUnavailableError):
            PayoutService.execute_payout(pending_payout.id)

        assert reload(pending_payout).status == PayoutStatus.PROCESSING

    def test_completed_payout_is_skipped(self, pending_payout, seller, arbiter_actor, mock_gateway, mock_redis):
        PayoutAccountFactory(seller=seller)
        PayoutService.mark_processed(pending_payout.id, True, arbiter_actor, reference="BANK-3")

        payout = PayoutService.execute_payout(pending_payout.id)

        assert payout.status == PayoutStatus.COMPLETED
        mock_gateway.create_transfer.assert_not_called()

    def test_retry_after_failure_uses_new_idempotency_key(
        self, pending_payout, seller, arbiter_actor, mock_gateway, mock_redis
    ):
        PayoutAccountFactory(seller=seller)
        mock_gateway.create_transfer.side_effect = StripeInvalidAccountError("Restricted account")
        PayoutService.execute_payout(pending_payout.id)

        PayoutService.retry_payout(pending_payout.id, arbiter_actor)
        mock_gateway.create_transfer.side_effect = None
        payout = PayoutService.execute_payout(pending_payout.id)

        assert payout.status == PayoutStatus.COMPLETED
        assert payout.attempt_count == 2
        assert mock_gateway.create_transfer.call_args.kwargs["idempotency_key"] == f"payout:{pending_payout.id}:2"


# =============================================================================
# Balance
# =============================================================================


@pytest.mark.django_db
class TestSellerBalance:
    def test_balance_before_any_payout(self, seller, earnings):
        balance = PayoutService.seller_balance(seller.pk)

        assert balance.total_earnings == 16660
        assert balance.available_balance == 16660
        assert balance.pending_payouts == 0
        assert balance.currency == "ngn"

    def test_balance_tracks_payout_lifecycle(self, seller, pending_payout, arbiter_actor):
        balance = PayoutService.seller_balance(seller.pk)
        assert balance.available_balance == 0
        assert balance.pending_payouts == 16660

        PayoutService.mark_processed(pending_payout.id, True, arbiter_actor, reference="BANK-4")

        balance = PayoutService.seller_balance(seller.pk)
        assert balance.total_earnings == 16660
        assert balance.pending_payouts == 0
        assert balance.completed_payouts == 16660

    def test_failed_payouts_are_reported(self, seller):
        PayoutRequestFactory(seller=seller, amount=500, status=PayoutStatus.FAILED)

        assert PayoutService.seller_balance(seller.pk).failed_payouts == 500

    def test_other_currency_is_separate(self, seller, earnings):
        CompletedTransactionFactory(seller=seller, currency="usd")

        assert PayoutService.seller_balance(seller.pk, currency="USD").total_earnings == 9800


# =============================================================================
# Disputed sales
# =============================================================================


@pytest.mark.django_db
class TestRefundedDisputes:
    @pytest.fixture
    def refunded_sale(self, shipped_transaction, buyer_actor, arbiter_actor):
        dispute = DisputeService.open_dispute(
            shipped_transaction.id,
            buyer_actor,
            DisputeReason.ITEM_NOT_RECEIVED,
            "Tracking has not moved in two weeks.",
        )
        DisputeService.resolve(dispute.id, DisputeOutcome.REFUND_TO_BUYER, None, "Courier lost it.", arbiter_actor)
        return EscrowTransaction.objects.get(pk=shipped_transaction.pk)

    def test_refunded_sale_is_never_paid_out(self, seller, seller_actor, refunded_sale, mock_redis):
        assert refunded_sale.status == EscrowStatus.CANCELLED

        with pytest.raises(InsufficientPayoutBalanceError):
            PayoutService.request_payout(seller.pk, seller_actor)

    def test_refunded_sale_is_left_out_of_balance(self, seller, seller_actor, refunded_sale, earnings, mock_redis):
        balance = PayoutService.seller_balance(seller.pk)
        assert balance.total_earnings == 16660
        assert balance.available_balance == 16660

        payout = PayoutService.request_payout(seller.pk, seller_actor)

        assert refunded_sale.pk not in set(payout.transactions.values_list("pk", flat=True))
        assert EscrowTransaction.objects.get(pk=refunded_sale.pk).payout_request_id is None


# =============================================================================
# Automatic payout on completion
# =============================================================================


@pytest.mark.django_db
class TestAutoPayout:
    def test_schedule_is_off_by_default(
        self, delivered_transaction, buyer_actor, mocker, django_capture_on_commit_callbacks
    ):
        mock_delay = mocker.patch("escrow.tasks.auto_payout_transaction.delay")

        with django_capture_on_commit_callbacks(execute=True):
            TransactionService.confirm_satisfaction(delivered_transaction.id, buyer_actor)

        mock_delay.assert_not_called()

    def test_completion_queues_auto_payout_after_commit(
        self, delivered_transaction, buyer_actor, settings, mocker, django_capture_on_commit_callbacks
    ):
        settings.ESCROW_AUTO_PAYOUT_ON_COMPLETION = True
        mock_delay = mocker.patch("escrow.tasks.auto_payout_transaction.delay")

        with django_capture_on_commit_callbacks(execute=False) as callbacks:
            TransactionService.confirm_satisfaction(delivered_transaction.id, buyer_actor)
        mock_delay.assert_not_called()

        for callback in callbacks:
            callback()
        mock_delay.assert_called_once_with(str(delivered_transaction.id))

    def test_release_by_arbiter_queues_auto_payout(
        self, open_dispute, arbiter_actor, settings, mocker, django_capture_on_commit_callbacks
    ):
        settings.ESCROW_AUTO_PAYOUT_ON_COMPLETION = True
        mock_delay = mocker.patch("escrow.tasks.auto_payout_transaction.delay")

        with django_capture_on_commit_callbacks(execute=True):
            DisputeService.resolve(open_dispute.id, DisputeOutcome.RELEASE_TO_SELLER, None, "", arbiter_actor)

        mock_delay.assert_called_once_with(str(open_dispute.transaction_id))

    def test_full_refund_does_not_queue_auto_payout(
        self, open_dispute, arbiter_actor, settings, mocker, django_capture_on_commit_callbacks
    ):
        settings.ESCROW_AUTO_PAYOUT_ON_COMPLETION = True
        mock_delay = mocker.patch("escrow.tasks.auto_payout_transaction.delay")
        mocker.patch("escrow.tasks.process_refund.delay")

        with django_capture_on_commit_callbacks(execute=True):
            DisputeService.resolve(open_dispute.id, DisputeOutcome.REFUND_TO_BUYER, None, "", arbiter_actor)

        mock_delay.assert_not_called()

    def test_initiate_claims_only_that_transaction(
        self, seller, earnings, mock_redis, mocker, django_capture_on_commit_callbacks
    ):
        PayoutAccountFactory(seller=seller)
        mock_execute = mocker.patch("escrow.tasks.execute_single_payout.delay")
        just_completed = earnings[1]

        with django_capture_on_commit_callbacks(execute=True):
            payout = PayoutService.initiate_auto_payout(just_completed.id)

        assert payout.status == PayoutStatus.PENDING
        assert payout.amount == 4900
        assert list(payout.transactions.values_list("pk", flat=True)) == [just_completed.pk]
        assert PayoutService.seller_balance(seller.pk).available_balance == 9800 + 1960
        assert mock_redis.set.call_args[0][0] == f"lock:escrow:payout:seller:{seller.pk}"
        mock_execute.assert_called_once_with(str(payout.id))

    def test_initiate_skips_seller_without_account(self, seller, earnings, mock_redis):
        PayoutAccountFactory(seller=seller, payouts_enabled=False)

        assert PayoutService.initiate_auto_payout(earnings[0].id) is None
        assert not PayoutRequest.objects.exists()

    def test_initiate_skips_claimed_transaction(self, seller, pending_payout, earnings, mock_redis):
        PayoutAccountFactory(seller=seller)

        assert PayoutService.initiate_auto_payout(earnings[0].id) is None
        assert PayoutRequest.objects.count() == 1

    def test_initiate_unknown_transaction(self, mock_redis):
        with pytest.raises(TransactionNotFoundError):
            PayoutService.initiate_auto_payout("00000000-0000-0000-0000-000000000000")
