"""
Tests for DisputeService.

Covers:
1. Opening disputes (who, when, one active dispute per transaction)
2. Evidence and arbiter review
3. Resolution outcomes and their financial effects
4. Closing
"""

import pytest

from escrow.exceptions import (
    DisputeAlreadyOpenError,
    DisputeNotFoundError,
    EscrowValidationError,
    InvalidTransitionError,
)
from escrow.models import Dispute, DisputeEvidence, EscrowEvent, EscrowTransaction, Refund
from escrow.services import DisputeService
from escrow.services.base import ACTOR_NOT_PERMITTED
from escrow.state_machines import (
    CommissionRefundPolicy,
    DisputeOutcome,
    DisputeParty,
    DisputeReason,
    DisputeStatus,
    EscrowStatus,
    EventType,
    RefundStatus,
)


def reload_txn(txn):
    return EscrowTransaction.objects.get(pk=txn.pk)


def reload_dispute(dispute):
    return Dispute.objects.get(pk=dispute.pk)


# =============================================================================
# Opening
# =============================================================================


@pytest.mark.django_db
class TestOpenDispute:
    def test_buyer_opens_dispute_and_freezes_transaction(self, shipped_transaction, buyer_actor, buyer):
        dispute = DisputeService.open_dispute(
            shipped_transaction.id,
            buyer_actor,
            DisputeReason.DAMAGED_ITEM,
            "  Screen arrived cracked  ",
        )

        assert dispute.status == DisputeStatus.OPEN
        assert dispute.raised_by_id == buyer.pk
        assert dispute.description == "Screen arrived cracked"

        txn = reload_txn(shipped_transaction)
        assert txn.status == EscrowStatus.DISPUTED
        assert txn.dispute_reason == DisputeReason.DAMAGED_ITEM

    def test_notifies_other_party_and_admins(self, paid_transaction, seller_actor, buyer):
        dispute = DisputeService.open_dispute(
            paid_transaction.id,
            seller_actor,
            DisputeReason.BUYER_UNRESPONSIVE,
            "Buyer never replied about pickup",
        )

        recipients = list(
            EscrowEvent.objects.filter(dispute=dispute, event_type=EventType.DISPUTE_OPENED).values_list(
                "user_id", flat=True
            )
        )
        assert sorted(recipients, key=lambda v: v is None) == [buyer.pk, None]

    def test_initial_evidence_is_stored(self, delivered_transaction, buyer_actor):
        dispute = DisputeService.open_dispute(
            delivered_transaction.id,
            buyer_actor,
            DisputeReason.WRONG_ITEM,
            "Received a different model",
            evidence={"photos": ["uploads/box.jpg"], "notes": "Serial differs"},
        )

        evidence = DisputeEvidence.objects.get(dispute=dispute)
        assert evidence.party == DisputeParty.BUYER
        assert evidence.photos == ["uploads/box.jpg"]
        assert evidence.notes == "Serial differs"

    def test_stranger_cannot_open(self, paid_transaction, stranger_actor):
        with pytest.raises(InvalidTransitionError) as exc_info:
            DisputeService.open_dispute(paid_transaction.id, stranger_actor, DisputeReason.OTHER, "Hmm")

        assert exc_info.value.error_code == ACTOR_NOT_PERMITTED
        assert reload_txn(paid_transaction).status == EscrowStatus.PAID

    def test_cannot_dispute_unpaid_transaction(self, pending_transaction, buyer_actor):
        with pytest.raises(InvalidTransitionError):
            DisputeService.open_dispute(pending_transaction.id, buyer_actor, DisputeReason.OTHER, "Changed mind")

        assert not Dispute.objects.exists()

    def test_only_one_active_dispute(self, open_dispute, seller_actor):
        with pytest.raises(DisputeAlreadyOpenError):
            DisputeService.open_dispute(
                open_dispute.transaction_id,
                seller_actor,
                DisputeReason.BUYER_UNRESPONSIVE,
                "Counter claim",
            )

    @pytest.mark.parametrize(
        ("reason", "description", "field"),
        [
            ("changed_mind", "Not needed", "reason"),
            (DisputeReason.OTHER, "   ", "description"),
        ],
    )
    def test_validates_input(self, paid_transaction, buyer_actor, reason, description, field):
        with pytest.raises(EscrowValidationError) as exc_info:
            DisputeService.open_dispute(paid_transaction.id, buyer_actor, reason, description)

        assert field in exc_info.value.details

    def test_evidence_failure_rolls_back_everything(self, paid_transaction, buyer_actor):
        with pytest.raises(EscrowValidationError):
            DisputeService.open_dispute(
                paid_transaction.id,
                buyer_actor,
                DisputeReason.OTHER,
                "Bad evidence",
                evidence={"photos": "not-a-list"},
            )

        assert reload_txn(paid_transaction).status == EscrowStatus.PAID
        assert not Dispute.objects.exists()


# =============================================================================
# Evidence and review
# =============================================================================


@pytest.mark.django_db
class TestEvidenceAndReview:
    def test_seller_submits_evidence(self, open_dispute, seller_actor, buyer):
        record = DisputeService.submit_evidence(
            open_dispute.id,
            seller_actor,
            {"description": "Shipped in original packaging", "documents": ["uploads/waybill.pdf"]},
        )

        assert record.party == DisputeParty.SELLER
        assert record.documents == ["uploads/waybill.pdf"]
        event = EscrowEvent.objects.get(
            dispute=open_dispute,
            event_type=EventType.DISPUTE_EVIDENCE_ADDED,
            user__isnull=False,
        )
        assert event.user_id == buyer.pk

    def test_empty_evidence_is_rejected(self, open_dispute, buyer_actor):
        with pytest.raises(EscrowValidationError):
            DisputeService.submit_evidence(open_dispute.id, buyer_actor, {})

    def test_stranger_cannot_submit(self, open_dispute, stranger_actor):
        with pytest.raises(InvalidTransitionError) as exc_info:
            DisputeService.submit_evidence(open_dispute.id, stranger_actor, {"notes": "I saw it"})

        assert exc_info.value.error_code == ACTOR_NOT_PERMITTED

    def test_evidence_closed_after_resolution(self, open_dispute, arbiter_actor, buyer_actor, mocker):
        mocker.patch("escrow.tasks.process_refund.delay")
        DisputeService.resolve(open_dispute.id, DisputeOutcome.RELEASE_TO_SELLER, None, "", arbiter_actor)

        with pytest.raises(InvalidTransitionError):
            DisputeService.submit_evidence(open_dispute.id, buyer_actor, {"notes": "Late"})

    def test_unknown_dispute(self, buyer_actor):
        with pytest.raises(DisputeNotFoundError):
            DisputeService.submit_evidence("00000000-0000-0000-0000-000000000000", buyer_actor, {"notes": "x"})

    def test_arbiter_starts_review(self, open_dispute, arbiter_actor, buyer, seller):
        dispute = DisputeService.start_review(open_dispute.id, arbiter_actor)

        assert dispute.status == DisputeStatus.UNDER_REVIEW
        recipients = set(
            EscrowEvent.objects.filter(event_type=EventType.DISPUTE_UNDER_REVIEW).values_list("user_id", flat=True)
        )
        assert recipients == {buyer.pk, seller.pk}

    def test_party_cannot_start_review(self, open_dispute, buyer_actor):
        with pytest.raises(InvalidTransitionError) as exc_info:
            DisputeService.start_review(open_dispute.id, buyer_actor)

        assert exc_info.value.error_code == ACTOR_NOT_PERMITTED

    def test_admin_notes_are_appended(self, open_dispute, arbiter_actor, arbiter):
        DisputeService.add_admin_notes(open_dispute.id, arbiter_actor, "Asked seller for waybill")
        dispute = DisputeService.add_admin_notes(open_dispute.id, arbiter_actor, "Waybill received")

        lines = dispute.admin_notes.splitlines()
        assert len(lines) == 2
        assert lines[0].endswith(f"user:{arbiter.pk}: Asked seller for waybill")
        assert lines[1].endswith("Waybill received")

    def test_party_cannot_add_notes(self, open_dispute, seller_actor):
        with pytest.raises(InvalidTransitionError):
            DisputeService.add_admin_notes(open_dispute.id, seller_actor, "Please side with me")


# =============================================================================
# Resolution
# =============================================================================


@pytest.mark.django_db
class TestResolve:
    @pytest.fixture(autouse=True)
    def _no_refund_dispatch(self, mocker):
        self.mock_delay = mocker.patch("escrow.tasks.process_refund.delay")

    def test_release_to_seller(self, open_dispute, arbiter_actor, arbiter, seller):
        dispute = DisputeService.resolve(
            open_dispute.id,
            DisputeOutcome.RELEASE_TO_SELLER,
            None,
            "Item matches listing photos",
            arbiter_actor,
            resolution="The item matches the listing.",
        )

        assert dispute.status == DisputeStatus.RESOLVED
        assert dispute.outcome == DisputeOutcome.RELEASE_TO_SELLER
        assert dispute.refund_amount == 0
        assert dispute.resolved_by_id == arbiter.pk
        assert dispute.resolution == "The item matches the listing."
        assert "Item matches listing photos" in dispute.admin_notes

        txn = reload_txn(open_dispute.transaction)
        assert txn.status == EscrowStatus.COMPLETED
        assert txn.seller_amount == 9800
        assert not Refund.objects.exists()
        assert EscrowEvent.objects.filter(event_type=EventType.FUNDS_RELEASED, user_id=seller.pk).exists()

    def test_full_refund(self, open_dispute, arbiter_actor, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True):
            dispute = DisputeService.resolve(
                open_dispute.id,
                DisputeOutcome.REFUND_TO_BUYER,
                None,
                "",
                arbiter_actor,
            )

        assert dispute.refund_amount == 10000
        txn = reload_txn(open_dispute.transaction)
        assert txn.status == EscrowStatus.CANCELLED
        assert txn.refunded_amount == 10000

        refund = Refund.objects.get(dispute=dispute)
        assert refund.amount == 10000
        assert refund.status == RefundStatus.REQUESTED
        self.mock_delay.assert_called_once_with(str(refund.id))
        assert not EscrowEvent.objects.filter(event_type=EventType.FUNDS_RELEASED).exists()

    def test_partial_refund_retains_commission(self, open_dispute, arbiter_actor, settings):
        settings.ESCROW_PARTIAL_REFUND_COMMISSION_POLICY = CommissionRefundPolicy.RETAIN

        dispute = DisputeService.resolve(open_dispute.id, DisputeOutcome.PARTIAL, 3000, "", arbiter_actor)

        txn = reload_txn(open_dispute.transaction)
        assert txn.status == EscrowStatus.COMPLETED
        assert txn.refunded_amount == 3000
        assert txn.commission == 200
        assert txn.seller_amount == 6800
        assert Refund.objects.get(dispute=dispute).amount == 3000

    def test_partial_refund_proportional_commission(self, open_dispute, arbiter_actor, settings):
        settings.ESCROW_PARTIAL_REFUND_COMMISSION_POLICY = CommissionRefundPolicy.PROPORTIONAL

        DisputeService.resolve(open_dispute.id, DisputeOutcome.PARTIAL, 3000, "", arbiter_actor)

        txn = reload_txn(open_dispute.transaction)
        assert txn.commission == 140
        assert txn.seller_amount == 6860

    @pytest.mark.parametrize(
        ("outcome", "refund_amount"),
        [
            (DisputeOutcome.RELEASE_TO_SELLER, 500),
            (DisputeOutcome.REFUND_TO_BUYER, 5000),
            (DisputeOutcome.PARTIAL, None),
            (DisputeOutcome.PARTIAL, 0),
            (DisputeOutcome.PARTIAL, 10000),
            ("split_evenly", 5000),
            (DisputeOutcome.PARTIAL, -1),
        ],
    )
    def test_inconsistent_refund_is_rejected(self, open_dispute, arbiter_actor, outcome, refund_amount):
        with pytest.raises(EscrowValidationError):
            DisputeService.resolve(open_dispute.id, outcome, refund_amount, "", arbiter_actor)

        assert reload_dispute(open_dispute).status == DisputeStatus.OPEN
        assert reload_txn(open_dispute.transaction).status == EscrowStatus.DISPUTED

    def test_party_cannot_resolve(self, open_dispute, buyer_actor):
        with pytest.raises(InvalidTransitionError) as exc_info:
            DisputeService.resolve(open_dispute.id, DisputeOutcome.REFUND_TO_BUYER, None, "", buyer_actor)

        assert exc_info.value.error_code == ACTOR_NOT_PERMITTED

    def test_cannot_resolve_twice(self, open_dispute, arbiter_actor):
        DisputeService.resolve(open_dispute.id, DisputeOutcome.RELEASE_TO_SELLER, 0, "", arbiter_actor)

        with pytest.raises(InvalidTransitionError):
            DisputeService.resolve(open_dispute.id, DisputeOutcome.REFUND_TO_BUYER, None, "", arbiter_actor)

        assert not Refund.objects.exists()

    def test_resolution_notifies_both_parties(self, open_dispute, arbiter_actor, buyer, seller):
        DisputeService.resolve(open_dispute.id, DisputeOutcome.PARTIAL, 2500, "", arbiter_actor)

        recipients = set(
            EscrowEvent.objects.filter(event_type=EventType.DISPUTE_RESOLVED).values_list("user_id", flat=True)
        )
        assert recipients == {buyer.pk, seller.pk}


@pytest.mark.django_db
class TestClose:
    def test_close_resolved_dispute(self, open_dispute, arbiter_actor):
        DisputeService.resolve(open_dispute.id, DisputeOutcome.RELEASE_TO_SELLER, None, "", arbiter_actor)

        dispute = DisputeService.close(open_dispute.id, arbiter_actor)

        assert dispute.status == DisputeStatus.CLOSED
        assert dispute.closed_at is not None

    def test_cannot_close_active_dispute(self, open_dispute, arbiter_actor):
        with pytest.raises(InvalidTransitionError):
            DisputeService.close(open_dispute.id, arbiter_actor)
