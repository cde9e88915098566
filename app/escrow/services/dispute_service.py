"""
Dispute service: opening, evidence, review and arbitration.

Opening a dispute freezes the transaction (DISPUTED); from then on only an
arbiter's resolution moves it. Resolution commits in one database
transaction:

    dispute          OPEN/UNDER_REVIEW -> RESOLVED   (version-checked)
    transaction      DISPUTED -> COMPLETED | CANCELLED (version-checked)
    refund           one Refund row for refund and partial outcomes
    outbox events    dispute_resolved (+ funds_released)

and queues refund execution after commit.

Usage:
    from escrow.services import DisputeService

    dispute = DisputeService.open_dispute(
        txn.id, buyer_actor, DisputeReason.DAMAGED_ITEM, "Screen cracked",
        evidence={"photos": ["uploads/crack.jpg"]},
    )
    DisputeService.resolve(dispute.id, DisputeOutcome.PARTIAL, 3000, "Split", arbiter_actor)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError
from django.db import transaction as db_transaction
from django.utils import timezone
from django_fsm import can_proceed, has_transition_perm

from escrow import events
from escrow.commission import CommissionCalculator
from escrow.exceptions import (
    DisputeAlreadyOpenError,
    DisputeNotFoundError,
    EscrowValidationError,
    InvalidTransitionError,
)
from escrow.locks import check_version
from escrow.models import Dispute, DisputeEvidence, Refund
from escrow.services.base import EscrowService
from escrow.services.transaction_service import TransactionService
from escrow.state_machines import (
    DisputeOutcome,
    DisputeParty,
    DisputeReason,
    DisputeStatus,
    EscrowEventName,
)
from escrow.types import parse_evidence

if TYPE_CHECKING:
    from typing import Any

    from escrow.actors import Actor
    from escrow.models import EscrowTransaction
    from escrow.types import Evidence


class DisputeService(EscrowService):
    """
    Service for escrow disputes.

    Methods:
        open_dispute: Buyer or seller freezes a paid transaction
        submit_evidence: Either party adds evidence while the dispute is active
        start_review: Arbiter picks the dispute up
        add_admin_notes: Arbiter appends internal notes
        resolve: Arbiter decides release, refund or partial refund
        close: Arbiter closes a resolved dispute
    """

    # =========================================================================
    # Lookups
    # =========================================================================

    @classmethod
    def get_dispute(cls, dispute_id: Any) -> Dispute:
        try:
            return Dispute.objects.select_related("transaction").get(pk=dispute_id)
        except (Dispute.DoesNotExist, DjangoValidationError, ValueError, TypeError) as e:
            raise DisputeNotFoundError(
                f"Dispute {dispute_id} not found",
                details={"dispute_id": str(dispute_id)},
            ) from e

    @staticmethod
    def _party(txn: EscrowTransaction, actor: Actor) -> str:
        return DisputeParty.BUYER if actor.is_buyer_of(txn) else DisputeParty.SELLER

    @classmethod
    def _lock_dispute(cls, dispute: Dispute) -> Dispute:
        return check_version(Dispute, dispute.pk, dispute.version, not_found_error=DisputeNotFoundError)

    # =========================================================================
    # Opening
    # =========================================================================

    @classmethod
    def open_dispute(
        cls,
        transaction_id: Any,
        actor: Actor,
        reason: str,
        description: str,
        evidence: Evidence | dict | None = None,
    ) -> Dispute:
        """
        Open a dispute and freeze the transaction.

        Args:
            transaction_id: EscrowTransaction id (PAID, SHIPPED or DELIVERED)
            actor: Buyer or seller of the transaction
            reason: DisputeReason value
            description: The opener's account
            evidence: Optional first evidence submission

        Returns:
            The created Dispute (OPEN)

        Raises:
            EscrowValidationError: Unknown reason or empty description
            DisputeAlreadyOpenError: An open or under-review dispute exists
            InvalidTransitionError: Status does not allow disputes, or the
                actor is not a party (ACTOR_NOT_PERMITTED)
        """
        if reason not in DisputeReason.values:
            raise EscrowValidationError(
                f"Unknown dispute reason: {reason!r}",
                details={"reason": [f"Must be one of: {', '.join(DisputeReason.values)}."]},
            )
        if not description or not description.strip():
            raise EscrowValidationError(
                "A dispute needs a description",
                details={"description": ["This field is required."]},
            )
        parsed_evidence = parse_evidence(evidence)

        dispute = cls.with_conflict_retry(
            lambda: cls._open_once(transaction_id, actor, reason, description.strip(), parsed_evidence),
            log_context={"transaction_id": str(transaction_id), "actor": actor.label},
        )

        cls.get_logger().info(
            "Dispute opened",
            extra={
                "dispute_id": str(dispute.id),
                "transaction_id": str(transaction_id),
                "reason": reason,
                "actor": actor.label,
            },
        )
        return dispute

    @classmethod
    def _open_once(
        cls,
        transaction_id: Any,
        actor: Actor,
        reason: str,
        description: str,
        evidence: Evidence,
    ) -> Dispute:
        txn = TransactionService.get_transaction(transaction_id)

        if not actor.is_party_to(txn):
            raise cls.actor_not_permitted(
                "Only the buyer or seller can open a dispute",
                transaction_id=txn.id,
                actor=actor.label,
            )
        if Dispute.objects.filter(transaction=txn, status__in=DisputeStatus.active()).exists():
            raise DisputeAlreadyOpenError(
                f"Transaction {txn.id} already has an active dispute",
                details={"transaction_id": str(txn.id)},
            )

        created: dict[str, Dispute] = {}

        def create_dispute(locked: EscrowTransaction) -> None:
            dispute = Dispute.objects.create(
                transaction=locked,
                raised_by_id=actor.user_id,
                reason=reason,
                description=description,
            )
            if not evidence.is_empty:
                cls._store_evidence(dispute, actor, cls._party(locked, actor), evidence)
            events.dispute_opened(dispute)
            created["dispute"] = dispute

        try:
            TransactionService.transition_once(
                txn.id,
                EscrowEventName.OPEN_DISPUTE,
                actor,
                on_applied=create_dispute,
                reason=reason,
            )
        except IntegrityError as e:
            raise DisputeAlreadyOpenError(
                f"Transaction {txn.id} already has an active dispute",
                details={"transaction_id": str(txn.id)},
            ) from e

        return created["dispute"]

    # =========================================================================
    # Evidence & review
    # =========================================================================

    @staticmethod
    def _store_evidence(dispute: Dispute, actor: Actor, party: str, evidence: Evidence) -> DisputeEvidence:
        return DisputeEvidence.objects.create(
            dispute=dispute,
            submitted_by_id=actor.user_id,
            party=party,
            description=evidence.description,
            photos=list(evidence.photos),
            documents=list(evidence.documents),
            notes=evidence.notes,
        )

    @classmethod
    def submit_evidence(
        cls,
        dispute_id: Any,
        actor: Actor,
        evidence: Evidence | dict,
    ) -> DisputeEvidence:
        """
        Add a party's evidence to an active dispute.

        Raises:
            DisputeNotFoundError: Unknown dispute
            EscrowValidationError: Malformed or empty evidence
            InvalidTransitionError: Dispute no longer active, or actor is
                not a party (ACTOR_NOT_PERMITTED)
        """
        parsed = parse_evidence(evidence)
        if parsed.is_empty:
            raise EscrowValidationError(
                "Evidence must include a description, notes, photos or documents",
                details={"evidence": ["Empty submission."]},
            )

        dispute = cls.get_dispute(dispute_id)
        txn = dispute.transaction
        if not actor.is_party_to(txn):
            raise cls.actor_not_permitted(
                "Only the buyer or seller can submit evidence",
                dispute_id=dispute.id,
                actor=actor.label,
            )

        party = cls._party(txn, actor)
        with cls.atomic():
            locked = Dispute.objects.select_for_update().get(pk=dispute.pk)
            if not locked.is_active:
                raise InvalidTransitionError(
                    f"Dispute {dispute.id} is {locked.status}; evidence is closed",
                    details={"dispute_id": str(dispute.id), "status": locked.status},
                )
            record = cls._store_evidence(locked, actor, party, parsed)
            events.dispute_evidence_added(locked, actor.user_id, party)

        cls.get_logger().info(
            "Dispute evidence submitted",
            extra={"dispute_id": str(dispute.id), "party": party, "evidence_id": str(record.id)},
        )
        return record

    @classmethod
    def _ensure_dispute_transition(cls, dispute: Dispute, method_name: str, actor: Actor) -> None:
        method = getattr(dispute, method_name)
        context = {"dispute_id": str(dispute.id), "status": dispute.status, "event": method_name}
        if not can_proceed(method):
            raise InvalidTransitionError(
                f"Cannot {method_name} dispute {dispute.id} in status {dispute.status}",
                details=context,
            )
        if not has_transition_perm(method, actor):
            raise cls.actor_not_permitted(
                f"{actor.label} may not {method_name} dispute {dispute.id}",
                **context,
                actor=actor.label,
            )

    @classmethod
    def start_review(cls, dispute_id: Any, actor: Actor) -> Dispute:
        """Arbiter moves an OPEN dispute to UNDER_REVIEW."""

        def operation() -> Dispute:
            dispute = cls.get_dispute(dispute_id)
            cls._ensure_dispute_transition(dispute, "start_review", actor)
            with cls.atomic():
                locked = cls._lock_dispute(dispute)
                locked.start_review()
                locked.save()
                events.dispute_under_review(locked)
            return locked

        dispute = cls.with_conflict_retry(
            operation,
            log_context={"dispute_id": str(dispute_id), "actor": actor.label},
        )
        cls.get_logger().info(
            "Dispute under review",
            extra={"dispute_id": str(dispute.id), "actor": actor.label},
        )
        return dispute

    @classmethod
    def add_admin_notes(cls, dispute_id: Any, actor: Actor, notes: str) -> Dispute:
        """Append internal arbiter notes; never shown to the parties."""
        if not notes or not notes.strip():
            raise EscrowValidationError(
                "Notes cannot be empty",
                details={"notes": ["This field is required."]},
            )

        def operation() -> Dispute:
            dispute = cls.get_dispute(dispute_id)
            if not actor.can_arbitrate(dispute.transaction):
                raise cls.actor_not_permitted(
                    "Only an arbiter can add notes",
                    dispute_id=dispute.id,
                    actor=actor.label,
                )
            with cls.atomic():
                locked = cls._lock_dispute(dispute)
                locked.admin_notes = cls._append_notes(locked.admin_notes, actor, notes)
                locked.save()
            return locked

        return cls.with_conflict_retry(
            operation,
            log_context={"dispute_id": str(dispute_id), "actor": actor.label},
        )

    @staticmethod
    def _append_notes(existing: str, actor: Actor, notes: str) -> str:
        entry = f"[{timezone.now().isoformat(timespec='seconds')}] {actor.label}: {notes.strip()}"
        return f"{existing}\n{entry}" if existing else entry

    # =========================================================================
    # Resolution
    # =========================================================================

    @classmethod
    def resolve(
        cls,
        dispute_id: Any,
        outcome: str,
        refund_amount: int | None,
        admin_notes: str,
        actor: Actor,
        resolution: str = "",
    ) -> Dispute:
        """
        Resolve a dispute and settle its transaction.

        Args:
            dispute_id: Dispute id (OPEN or UNDER_REVIEW)
            outcome: DisputeOutcome value
            refund_amount: Minor units returned to the buyer. None means 0
                for release and the full amount for refund.
            admin_notes: Internal notes appended to the dispute
            actor: Arbiter who is not a party to the transaction
            resolution: Explanation shown to both parties

        Returns:
            The resolved Dispute

        Raises:
            DisputeNotFoundError: Unknown dispute
            EscrowValidationError: Refund amount inconsistent with outcome
            InvalidTransitionError: Dispute already resolved, transaction
                not DISPUTED, or actor not an arbiter (ACTOR_NOT_PERMITTED)
            ConcurrentModificationError: Still conflicting after retries
        """
        if outcome not in DisputeOutcome.values:
            raise EscrowValidationError(
                f"Unknown dispute outcome: {outcome!r}",
                details={"outcome": [f"Must be one of: {', '.join(DisputeOutcome.values)}."]},
            )
        if refund_amount is not None and (
            isinstance(refund_amount, bool) or not isinstance(refund_amount, int) or refund_amount < 0
        ):
            raise EscrowValidationError(
                "refund_amount must be a non-negative integer",
                details={"refund_amount": ["Must be a non-negative integer in minor units."]},
            )

        dispute, refund = cls.with_conflict_retry(
            lambda: cls._resolve_once(dispute_id, outcome, refund_amount, admin_notes, actor, resolution),
            log_context={"dispute_id": str(dispute_id), "outcome": outcome, "actor": actor.label},
        )

        cls.get_logger().info(
            "Dispute resolved",
            extra={
                "dispute_id": str(dispute.id),
                "transaction_id": str(dispute.transaction_id),
                "outcome": outcome,
                "refund_amount": dispute.refund_amount,
                "refund_id": str(refund.id) if refund else None,
                "actor": actor.label,
            },
        )
        return dispute

    @classmethod
    def _resolve_once(
        cls,
        dispute_id: Any,
        outcome: str,
        refund_amount: int | None,
        admin_notes: str,
        actor: Actor,
        resolution: str,
    ) -> tuple[Dispute, Refund | None]:
        from escrow.tasks import process_refund

        dispute = cls.get_dispute(dispute_id)
        txn = dispute.transaction
        cls._ensure_dispute_transition(dispute, "resolve", actor)

        event, refund_amount, params = cls._settlement(txn, outcome, refund_amount)

        with cls.atomic():
            locked = cls._lock_dispute(dispute)
            locked.resolve(outcome, refund_amount, resolution, actor.user_id)
            if admin_notes and admin_notes.strip():
                locked.admin_notes = cls._append_notes(locked.admin_notes, actor, admin_notes)
            locked.save()

            settled = TransactionService.transition_once(txn.id, event, actor, **params).transaction

            refund = None
            if refund_amount > 0:
                refund = Refund.objects.create(
                    transaction=settled,
                    dispute=locked,
                    amount=refund_amount,
                    currency=settled.currency,
                )
                refund_id = str(refund.id)
                db_transaction.on_commit(lambda: process_refund.delay(refund_id))

            locked.transaction = settled
            events.dispute_resolved(locked)
            if outcome != DisputeOutcome.REFUND_TO_BUYER:
                events.funds_released(settled)

        return locked, refund

    @classmethod
    def _settlement(
        cls,
        txn: EscrowTransaction,
        outcome: str,
        refund_amount: int | None,
    ) -> tuple[str, int, dict[str, Any]]:
        """Validate the refund for the outcome and pick the transaction event."""
        if outcome == DisputeOutcome.RELEASE_TO_SELLER:
            if refund_amount not in (None, 0):
                raise EscrowValidationError(
                    "Release to seller cannot include a refund",
                    details={"refund_amount": ["Must be 0 for release_to_seller."]},
                )
            return EscrowEventName.RESOLVE_RELEASE, 0, {}

        if outcome == DisputeOutcome.REFUND_TO_BUYER:
            if refund_amount is not None and refund_amount != txn.amount:
                raise EscrowValidationError(
                    "A full refund must equal the transaction amount",
                    details={"refund_amount": [f"Must be {txn.amount} for refund_to_buyer."]},
                )
            return EscrowEventName.RESOLVE_REFUND, txn.amount, {}

        if refund_amount is None:
            raise EscrowValidationError(
                "A partial refund needs an amount",
                details={"refund_amount": ["This field is required for partial outcomes."]},
            )
        try:
            split = CommissionCalculator.split_partial_refund(
                amount=txn.amount,
                commission=txn.commission,
                seller_amount=txn.seller_amount,
                refund_amount=refund_amount,
                policy=settings.ESCROW_PARTIAL_REFUND_COMMISSION_POLICY,
            )
        except ValueError as e:
            raise EscrowValidationError(
                str(e),
                details={"refund_amount": [str(e)]},
            ) from e

        return (
            EscrowEventName.RESOLVE_PARTIAL,
            split.refund_amount,
            {
                "refund_amount": split.refund_amount,
                "commission": split.commission,
                "seller_amount": split.seller_amount,
            },
        )

    @classmethod
    def close(cls, dispute_id: Any, actor: Actor) -> Dispute:
        """Arbiter closes a RESOLVED dispute. No financial effect."""

        def operation() -> Dispute:
            dispute = cls.get_dispute(dispute_id)
            cls._ensure_dispute_transition(dispute, "close", actor)
            with cls.atomic():
                locked = cls._lock_dispute(dispute)
                locked.close()
                locked.save()
            return locked

        dispute = cls.with_conflict_retry(
            operation,
            log_context={"dispute_id": str(dispute_id), "actor": actor.label},
        )
        cls.get_logger().info("Dispute closed", extra={"dispute_id": str(dispute.id)})
        return dispute
