import uuid

import django.db.models.deletion
import django.utils.timezone
import django_fsm
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="PayoutRequest",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified"),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                ("amount", models.PositiveBigIntegerField(help_text="Payout amount in smallest currency unit")),
                ("currency", models.CharField(max_length=3)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current payout status (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "transaction_reference",
                    models.CharField(
                        blank=True,
                        help_text="Gateway transfer id or manual transfer reference",
                        max_length=255,
                        null=True,
                    ),
                ),
                ("requested_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True, null=True)),
                ("attempt_count", models.PositiveIntegerField(default=0)),
                (
                    "seller",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="escrow_payout_requests",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Payout Request",
                "verbose_name_plural": "Payout Requests",
                "ordering": ["-requested_at"],
                "indexes": [
                    models.Index(fields=["seller", "status"], name="escrow_payo_seller__a1c3e2_idx"),
                    models.Index(fields=["status", "requested_at"], name="escrow_payo_status_5b7d10_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="escrow_payout_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PayoutAccount",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified"),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "stripe_account_id",
                    models.CharField(
                        help_text="Stripe Connect account id (acct_xxx)",
                        max_length=255,
                        unique=True,
                    ),
                ),
                ("payouts_enabled", models.BooleanField(default=False)),
                (
                    "seller",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="escrow_payout_account",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Payout Account",
                "verbose_name_plural": "Payout Accounts",
            },
        ),
        migrations.CreateModel(
            name="EscrowTransaction",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified"),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "item_id",
                    models.CharField(db_index=True, help_text="Marketplace item being purchased", max_length=255),
                ),
                ("amount", models.PositiveBigIntegerField(help_text="Item price in smallest currency unit")),
                ("currency", models.CharField(help_text="ISO 4217 currency code (lowercase)", max_length=3)),
                (
                    "commission",
                    models.PositiveBigIntegerField(help_text="Platform commission, computed once at creation"),
                ),
                (
                    "commission_rate",
                    models.DecimalField(
                        decimal_places=4,
                        help_text="Commission rate in force at creation",
                        max_digits=6,
                    ),
                ),
                ("seller_amount", models.PositiveBigIntegerField(help_text="Amount owed to the seller")),
                (
                    "refunded_amount",
                    models.PositiveBigIntegerField(
                        default=0,
                        help_text="Amount refunded to the buyer by dispute resolution",
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("paid", "Paid"),
                            ("shipped", "Shipped"),
                            ("delivered", "Delivered"),
                            ("completed", "Completed"),
                            ("disputed", "Disputed"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current escrow status (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "payment_method",
                    models.CharField(
                        choices=[
                            ("card", "Card"),
                            ("bank_transfer", "Bank Transfer"),
                            ("mobile_money", "Mobile Money"),
                        ],
                        max_length=32,
                    ),
                ),
                (
                    "payment_reference",
                    models.CharField(
                        blank=True,
                        help_text="Gateway payment reference, immutable once bound",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "requires_review",
                    models.BooleanField(
                        db_index=True,
                        default=False,
                        help_text="Flagged for manual review by the payment verifier",
                    ),
                ),
                ("review_reason", models.TextField(blank=True, default="")),
                (
                    "delivery_details",
                    models.JSONField(
                        default=dict,
                        help_text="Delivery option and its details (validated at the API boundary)",
                    ),
                ),
                ("dispute_reason", models.TextField(blank=True, null=True)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("shipped_at", models.DateTimeField(blank=True, null=True)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                (
                    "buyer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="escrow_purchases",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "seller",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="escrow_sales",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "payout_request",
                    models.ForeignKey(
                        blank=True,
                        help_text="Payout request that claimed this transaction's seller amount",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="escrow.payoutrequest",
                    ),
                ),
            ],
            options={
                "verbose_name": "Escrow Transaction",
                "verbose_name_plural": "Escrow Transactions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["buyer", "status"], name="escrow_escr_buyer_i_0f9a41_idx"),
                    models.Index(fields=["seller", "status"], name="escrow_escr_seller__7e2b58_idx"),
                    models.Index(fields=["status", "shipped_at"], name="escrow_escr_status_c41d9e_idx"),
                    models.Index(fields=["status", "delivered_at"], name="escrow_escr_status_3a8f06_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="escrow_transaction_amount_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("refunded_amount__lte", models.F("amount"))),
                        name="escrow_transaction_refund_within_amount",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            (
                                "amount",
                                models.F("seller_amount") + models.F("commission") + models.F("refunded_amount"),
                            ),
                            models.Q(("refunded_amount", models.F("amount")), ("status", "cancelled")),
                            _connector="OR",
                        ),
                        name="escrow_transaction_amounts_balance",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Dispute",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified"),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "reason",
                    models.CharField(
                        choices=[
                            ("item_not_received", "Item Not Received"),
                            ("item_not_as_described", "Item Not As Described"),
                            ("damaged_item", "Damaged Item"),
                            ("wrong_item", "Wrong Item"),
                            ("seller_unresponsive", "Seller Unresponsive"),
                            ("buyer_unresponsive", "Buyer Unresponsive"),
                            ("other", "Other"),
                        ],
                        max_length=32,
                    ),
                ),
                ("description", models.TextField()),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("open", "Open"),
                            ("under_review", "Under Review"),
                            ("resolved", "Resolved"),
                            ("closed", "Closed"),
                        ],
                        db_index=True,
                        default="open",
                        help_text="Current dispute status (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "outcome",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("release_to_seller", "Release to Seller"),
                            ("refund_to_buyer", "Refund to Buyer"),
                            ("partial", "Partial Refund"),
                        ],
                        max_length=32,
                        null=True,
                    ),
                ),
                ("resolution", models.TextField(blank=True, default="")),
                (
                    "refund_amount",
                    models.PositiveBigIntegerField(
                        default=0,
                        help_text="Amount refunded to the buyer in smallest currency unit",
                    ),
                ),
                ("admin_notes", models.TextField(blank=True, default="")),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("closed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "raised_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="escrow_disputes_raised",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "resolved_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="escrow_disputes_resolved",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "transaction",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="disputes",
                        to="escrow.escrowtransaction",
                    ),
                ),
            ],
            options={
                "verbose_name": "Dispute",
                "verbose_name_plural": "Disputes",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="escrow_disp_status_9d2e47_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status__in", ["open", "under_review"])),
                        fields=("transaction",),
                        name="escrow_dispute_one_active_per_transaction",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DisputeEvidence",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified"),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "party",
                    models.CharField(choices=[("buyer", "Buyer"), ("seller", "Seller")], max_length=16),
                ),
                ("description", models.TextField(blank=True, default="")),
                ("photos", models.JSONField(blank=True, default=list)),
                ("documents", models.JSONField(blank=True, default=list)),
                ("notes", models.TextField(blank=True, default="")),
                (
                    "dispute",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="evidence",
                        to="escrow.dispute",
                    ),
                ),
                (
                    "submitted_by",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Dispute Evidence",
                "verbose_name_plural": "Dispute Evidence",
                "ordering": ["created_at"],
            },
        ),
        migrations.CreateModel(
            name="Refund",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified"),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                ("amount", models.PositiveBigIntegerField(help_text="Refund amount in smallest currency unit")),
                ("currency", models.CharField(max_length=3)),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("requested", "Requested"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="requested",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "gateway_refund_id",
                    models.CharField(
                        blank=True,
                        help_text="Gateway refund id (re_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                ("failure_reason", models.TextField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "dispute",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refund",
                        to="escrow.dispute",
                    ),
                ),
                (
                    "transaction",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="refunds",
                        to="escrow.escrowtransaction",
                    ),
                ),
            ],
            options={
                "verbose_name": "Refund",
                "verbose_name_plural": "Refunds",
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="escrow_refund_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="EscrowEvent",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified"),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        choices=[
                            ("transaction_created", "Transaction Created"),
                            ("payment_received", "Payment Received"),
                            ("payment_flagged", "Payment Flagged For Review"),
                            ("transaction_cancelled", "Transaction Cancelled"),
                            ("item_shipped", "Item Shipped"),
                            ("delivery_confirmed", "Delivery Confirmed"),
                            ("funds_released", "Funds Released"),
                            ("dispute_opened", "Dispute Opened"),
                            ("dispute_evidence_added", "Dispute Evidence Added"),
                            ("dispute_under_review", "Dispute Under Review"),
                            ("dispute_resolved", "Dispute Resolved"),
                            ("refund_completed", "Refund Completed"),
                            ("refund_failed", "Refund Failed"),
                            ("item_relist_requested", "Item Relist Requested"),
                            ("payout_requested", "Payout Requested"),
                            ("payout_processed", "Payout Processed"),
                            ("payout_failed", "Payout Failed"),
                            ("payout_cancelled", "Payout Cancelled"),
                        ],
                        db_index=True,
                        max_length=64,
                    ),
                ),
                ("message", models.CharField(max_length=500)),
                ("payload", models.JSONField(blank=True, default=dict)),
                (
                    "dispatched_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="When the notification collaborator picked the event up",
                        null=True,
                    ),
                ),
                (
                    "dispute",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="events",
                        to="escrow.dispute",
                    ),
                ),
                (
                    "payout_request",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="events",
                        to="escrow.payoutrequest",
                    ),
                ),
                (
                    "transaction",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="events",
                        to="escrow.escrowtransaction",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        help_text="Recipient; empty means the admin channel",
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="escrow_events",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Escrow Event",
                "verbose_name_plural": "Escrow Events",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["user", "created_at"], name="escrow_escr_user_id_b6e0d3_idx"),
                ],
            },
        ),
    ]
