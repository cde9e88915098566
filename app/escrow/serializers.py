"""
DRF serializers for the escrow API.

Input serializers validate request shape only; business rules (who may do
what, in which status, refund bounds) live in the services. Output
serializers render money as integers in minor units and hide internal
fields from non-staff callers.

Related files:
    - views.py: Escrow API views
    - types.py: Delivery and evidence parsing shared with the services

Usage:
    serializer = TransactionCreateSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    params = serializer.to_params(buyer_id=request.user.pk)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import serializers

from escrow.exceptions import EscrowValidationError
from escrow.models import Dispute, DisputeEvidence, EscrowEvent, EscrowTransaction, PayoutRequest, Refund
from escrow.state_machines import DisputeOutcome, DisputeReason, PaymentMethod
from escrow.types import CreateTransactionParams, parse_delivery_details, parse_evidence

if TYPE_CHECKING:
    from typing import Any


def _is_staff(context: dict) -> bool:
    request = context.get("request")
    user = getattr(request, "user", None)
    return bool(user and user.is_authenticated and user.is_staff)


def _as_drf_error(error: EscrowValidationError) -> serializers.ValidationError:
    return serializers.ValidationError(error.details or error.message)


class StaffOnlyFieldsMixin:
    """Drop ``staff_only_fields`` from the output unless the caller is staff."""

    staff_only_fields: tuple[str, ...] = ()

    def to_representation(self, instance):
        data = super().to_representation(instance)
        if not _is_staff(self.context):
            for name in self.staff_only_fields:
                data.pop(name, None)
        return data


# =============================================================================
# Transactions
# =============================================================================


class TransactionCreateSerializer(serializers.Serializer):
    """
    Request body for opening an escrow transaction.

    Fields:
        item_id: Marketplace item being bought
        seller_id: Seller's user id
        amount: Price in minor units
        currency: Optional ISO 4217 code (defaults to ESCROW_CURRENCY)
        payment_method: card, bank_transfer or mobile_money
        delivery_details: {"option": "face_to_face", "meeting_point": ...}
            or {"option": "seller_delivery", "address": ...}
    """

    item_id = serializers.CharField(max_length=255)
    seller_id = serializers.IntegerField()
    amount = serializers.IntegerField(min_value=1, help_text="Price in smallest currency unit")
    currency = serializers.CharField(min_length=3, max_length=3, required=False)
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices)
    delivery_details = serializers.JSONField()

    def validate_delivery_details(self, value):
        try:
            return parse_delivery_details(value)
        except EscrowValidationError as e:
            raise _as_drf_error(e) from e

    def to_params(self, buyer_id: Any) -> CreateTransactionParams:
        data = self.validated_data
        return CreateTransactionParams(
            item_id=data["item_id"],
            buyer_id=buyer_id,
            seller_id=data["seller_id"],
            amount=data["amount"],
            payment_method=data["payment_method"],
            delivery_details=data["delivery_details"],
            currency=data.get("currency"),
        )


class TransactionShipSerializer(serializers.Serializer):
    tracking_number = serializers.CharField(
        max_length=255,
        required=False,
        allow_blank=True,
        allow_null=True,
    )


class TransactionSerializer(StaffOnlyFieldsMixin, serializers.ModelSerializer):
    """
    Escrow transaction for API responses.

    requires_review and review_reason are shown to staff only.
    """

    staff_only_fields = ("requires_review", "review_reason")

    class Meta:
        model = EscrowTransaction
        fields = [
            "id",
            "item_id",
            "buyer_id",
            "seller_id",
            "amount",
            "currency",
            "commission",
            "commission_rate",
            "seller_amount",
            "refunded_amount",
            "status",
            "payment_method",
            "payment_reference",
            "delivery_details",
            "dispute_reason",
            "requires_review",
            "review_reason",
            "payout_request_id",
            "paid_at",
            "shipped_at",
            "delivered_at",
            "completed_at",
            "cancelled_at",
            "version",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


# =============================================================================
# Payments
# =============================================================================


class PaymentVerifySerializer(serializers.Serializer):
    reference = serializers.CharField(max_length=255, help_text="Gateway payment reference")


class PaymentInitiationSerializer(serializers.Serializer):
    transaction_id = serializers.CharField(read_only=True)
    reference = serializers.CharField(read_only=True)
    client_secret = serializers.CharField(read_only=True, allow_null=True)
    amount = serializers.IntegerField(read_only=True)
    currency = serializers.CharField(read_only=True)


class VerificationResultSerializer(serializers.Serializer):
    success = serializers.BooleanField(read_only=True)
    transaction_id = serializers.CharField(read_only=True)
    amount_paid = serializers.IntegerField(read_only=True)
    already_verified = serializers.BooleanField(read_only=True)


# =============================================================================
# Disputes
# =============================================================================


class EvidenceCreateSerializer(serializers.Serializer):
    """
    One party's evidence.

    Photos and documents are references into the file store, not uploads.
    """

    description = serializers.CharField(required=False, allow_blank=True)
    photos = serializers.ListField(child=serializers.CharField(max_length=500), required=False)
    documents = serializers.ListField(child=serializers.CharField(max_length=500), required=False)
    notes = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        try:
            evidence = parse_evidence(attrs)
        except EscrowValidationError as e:
            raise _as_drf_error(e) from e
        if evidence.is_empty:
            raise serializers.ValidationError("Evidence must include a description, notes, photos or documents.")
        return {"evidence": evidence}


class DisputeCreateSerializer(serializers.Serializer):
    reason = serializers.ChoiceField(choices=DisputeReason.choices)
    description = serializers.CharField()
    evidence = serializers.JSONField(required=False)

    def validate_evidence(self, value):
        try:
            return parse_evidence(value)
        except EscrowValidationError as e:
            raise _as_drf_error(e) from e


class DisputeResolveSerializer(serializers.Serializer):
    """
    Arbiter's decision.

    refund_amount may be omitted for release (0) and full refund (the
    transaction amount); it is required for partial outcomes.
    """

    outcome = serializers.ChoiceField(choices=DisputeOutcome.choices)
    refund_amount = serializers.IntegerField(min_value=0, required=False, allow_null=True)
    resolution = serializers.CharField(required=False, allow_blank=True, default="")
    admin_notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if attrs["outcome"] == DisputeOutcome.PARTIAL and attrs.get("refund_amount") is None:
            raise serializers.ValidationError({"refund_amount": "Required for partial outcomes."})
        return attrs


class DisputeNotesSerializer(serializers.Serializer):
    notes = serializers.CharField()


class DisputeEvidenceSerializer(serializers.ModelSerializer):
    class Meta:
        model = DisputeEvidence
        fields = [
            "id",
            "submitted_by_id",
            "party",
            "description",
            "photos",
            "documents",
            "notes",
            "created_at",
        ]
        read_only_fields = fields


class RefundSerializer(serializers.ModelSerializer):
    class Meta:
        model = Refund
        fields = ["id", "amount", "currency", "status", "completed_at"]
        read_only_fields = fields


class DisputeSerializer(StaffOnlyFieldsMixin, serializers.ModelSerializer):
    """Dispute with its evidence; admin_notes is staff-only."""

    staff_only_fields = ("admin_notes",)

    evidence = DisputeEvidenceSerializer(many=True, read_only=True)
    refund = serializers.SerializerMethodField()

    class Meta:
        model = Dispute
        fields = [
            "id",
            "transaction_id",
            "raised_by_id",
            "reason",
            "description",
            "status",
            "outcome",
            "resolution",
            "refund_amount",
            "refund",
            "admin_notes",
            "resolved_by_id",
            "resolved_at",
            "closed_at",
            "evidence",
            "version",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_refund(self, obj) -> dict | None:
        refund = Refund.objects.filter(dispute=obj).first()
        return RefundSerializer(refund).data if refund else None


class DisputeListSerializer(StaffOnlyFieldsMixin, serializers.ModelSerializer):
    staff_only_fields = ("admin_notes",)

    class Meta:
        model = Dispute
        fields = [
            "id",
            "transaction_id",
            "raised_by_id",
            "reason",
            "status",
            "outcome",
            "refund_amount",
            "admin_notes",
            "created_at",
        ]
        read_only_fields = fields


# =============================================================================
# Payouts
# =============================================================================


class PayoutCreateSerializer(serializers.Serializer):
    seller_id = serializers.IntegerField(
        required=False,
        help_text="Staff only: request on behalf of this seller",
    )
    amount = serializers.IntegerField(
        min_value=1,
        required=False,
        allow_null=True,
        help_text="Optional cap in smallest currency unit",
    )
    currency = serializers.CharField(
        min_length=3,
        max_length=3,
        required=False,
        help_text="Currency of the sales to pay out (defaults to the platform currency)",
    )


class PayoutProcessedSerializer(serializers.Serializer):
    success = serializers.BooleanField()
    reference = serializers.CharField(max_length=255, required=False, allow_blank=True)
    failure_reason = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        if attrs["success"] and not attrs.get("reference"):
            raise serializers.ValidationError({"reference": "Required for a successful payout."})
        if not attrs["success"] and not attrs.get("failure_reason"):
            raise serializers.ValidationError({"failure_reason": "Required for a failed payout."})
        return attrs


class PayoutCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True)


class PayoutSerializer(serializers.ModelSerializer):
    transaction_ids = serializers.SerializerMethodField()

    class Meta:
        model = PayoutRequest
        fields = [
            "id",
            "seller_id",
            "amount",
            "currency",
            "status",
            "transaction_reference",
            "transaction_ids",
            "requested_at",
            "processed_at",
            "failure_reason",
            "attempt_count",
            "version",
        ]
        read_only_fields = fields

    def get_transaction_ids(self, obj) -> list[str]:
        return [str(pk) for pk in obj.transactions.values_list("pk", flat=True)]


class SellerBalanceSerializer(serializers.Serializer):
    total_earnings = serializers.IntegerField(read_only=True)
    available_balance = serializers.IntegerField(read_only=True)
    pending_payouts = serializers.IntegerField(read_only=True)
    completed_payouts = serializers.IntegerField(read_only=True)
    failed_payouts = serializers.IntegerField(read_only=True)
    currency = serializers.CharField(read_only=True)


class EscrowStatsSerializer(serializers.Serializer):
    total_transactions = serializers.IntegerField(read_only=True)
    total_volume = serializers.IntegerField(read_only=True)
    total_commission = serializers.IntegerField(read_only=True)
    pending_transactions = serializers.IntegerField(read_only=True)
    completed_transactions = serializers.IntegerField(read_only=True)
    disputed_transactions = serializers.IntegerField(read_only=True)
    flagged_transactions = serializers.IntegerField(read_only=True)


# =============================================================================
# Outbox events
# =============================================================================


class EscrowEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = EscrowEvent
        fields = [
            "id",
            "event_type",
            "user_id",
            "transaction_id",
            "dispute_id",
            "payout_request_id",
            "message",
            "payload",
            "created_at",
            "dispatched_at",
        ]
        read_only_fields = fields


class EventAcknowledgeSerializer(serializers.Serializer):
    event_ids = serializers.ListField(
        child=serializers.UUIDField(),
        allow_empty=False,
        max_length=500,
        help_text="Events delivered by the caller",
    )
