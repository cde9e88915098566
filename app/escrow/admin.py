"""
Escrow admin configuration.

Status fields are FSM-protected, so every admin here shows them read-only.
State changes go through the API (or the services) so that permissions,
locking and events apply.
"""

from django.contrib import admin

from escrow.models import (
    Dispute,
    DisputeEvidence,
    EscrowEvent,
    EscrowTransaction,
    PayoutAccount,
    PayoutRequest,
    Refund,
)

__all__ = [
    "DisputeAdmin",
    "EscrowEventAdmin",
    "EscrowTransactionAdmin",
    "PayoutAccountAdmin",
    "PayoutRequestAdmin",
    "RefundAdmin",
]


@admin.register(EscrowTransaction)
class EscrowTransactionAdmin(admin.ModelAdmin):
    """
    Admin configuration for EscrowTransaction.

    Money fields are immutable here; commission is fixed at creation.
    """

    list_display = [
        "id",
        "item_id",
        "buyer",
        "seller",
        "amount",
        "currency",
        "status",
        "requires_review",
        "created_at",
    ]
    list_filter = ["status", "requires_review", "payment_method", "currency"]
    search_fields = ["id", "item_id", "payment_reference", "buyer__email", "seller__email"]
    readonly_fields = [
        "id",
        "buyer",
        "seller",
        "amount",
        "currency",
        "commission",
        "commission_rate",
        "seller_amount",
        "refunded_amount",
        "status",
        "payment_reference",
        "payout_request",
        "paid_at",
        "shipped_at",
        "delivered_at",
        "completed_at",
        "cancelled_at",
        "version",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "item_id", "buyer", "seller", "status"),
            },
        ),
        (
            "Money",
            {
                "fields": (
                    "amount",
                    "currency",
                    "commission",
                    "commission_rate",
                    "seller_amount",
                    "refunded_amount",
                ),
            },
        ),
        (
            "Payment",
            {
                "fields": ("payment_method", "payment_reference", "requires_review", "review_reason"),
            },
        ),
        (
            "Delivery & Dispute",
            {
                "fields": ("delivery_details", "dispute_reason", "payout_request"),
            },
        ),
        (
            "Timestamps",
            {
                "fields": (
                    "paid_at",
                    "shipped_at",
                    "delivered_at",
                    "completed_at",
                    "cancelled_at",
                    "created_at",
                    "updated_at",
                    "version",
                ),
                "classes": ("collapse",),
            },
        ),
    )


class DisputeEvidenceInline(admin.TabularInline):
    model = DisputeEvidence
    extra = 0
    can_delete = False
    readonly_fields = ["submitted_by", "party", "description", "photos", "documents", "notes", "created_at"]


@admin.register(Dispute)
class DisputeAdmin(admin.ModelAdmin):
    list_display = ["id", "transaction", "raised_by", "reason", "status", "outcome", "created_at"]
    list_filter = ["status", "reason", "outcome"]
    search_fields = ["id", "transaction__id", "raised_by__email"]
    readonly_fields = [
        "id",
        "transaction",
        "raised_by",
        "status",
        "outcome",
        "refund_amount",
        "resolved_by",
        "resolved_at",
        "closed_at",
        "version",
        "created_at",
        "updated_at",
    ]
    inlines = [DisputeEvidenceInline]
    ordering = ["created_at"]


@admin.register(PayoutRequest)
class PayoutRequestAdmin(admin.ModelAdmin):
    list_display = ["id", "seller", "amount", "currency", "status", "attempt_count", "requested_at"]
    list_filter = ["status", "currency"]
    search_fields = ["id", "seller__email", "transaction_reference"]
    readonly_fields = [
        "id",
        "seller",
        "amount",
        "currency",
        "status",
        "transaction_reference",
        "requested_at",
        "processed_at",
        "failure_reason",
        "attempt_count",
        "version",
    ]
    ordering = ["-requested_at"]


@admin.register(PayoutAccount)
class PayoutAccountAdmin(admin.ModelAdmin):
    list_display = ["id", "seller", "stripe_account_id", "payouts_enabled", "created_at"]
    list_filter = ["payouts_enabled"]
    search_fields = ["seller__email", "stripe_account_id"]
    readonly_fields = ["id", "created_at", "updated_at"]


@admin.register(Refund)
class RefundAdmin(admin.ModelAdmin):
    list_display = ["id", "transaction", "amount", "currency", "status", "completed_at"]
    list_filter = ["status"]
    search_fields = ["id", "gateway_refund_id", "transaction__id"]
    readonly_fields = [
        "id",
        "transaction",
        "dispute",
        "amount",
        "currency",
        "status",
        "gateway_refund_id",
        "failure_reason",
        "completed_at",
        "version",
        "created_at",
    ]


@admin.register(EscrowEvent)
class EscrowEventAdmin(admin.ModelAdmin):
    list_display = ["event_type", "user", "transaction", "dispatched_at", "created_at"]
    list_filter = ["event_type"]
    search_fields = ["transaction__id", "user__email"]
    readonly_fields = [
        "id",
        "event_type",
        "user",
        "transaction",
        "dispute",
        "payout_request",
        "message",
        "payload",
        "dispatched_at",
        "created_at",
    ]
    ordering = ["-created_at"]
