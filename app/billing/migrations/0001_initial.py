import uuid

import django.db.models.deletion
import django.utils.timezone
import django_fsm
from django.db import migrations, models

import billing.models.dunning
import billing.models.payment_sync


def timestamps():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True, db_index=True, help_text="Timestamp when this record was created"
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified"),
        ),
    ]


def uuid_pk():
    return (
        "id",
        models.UUIDField(
            default=uuid.uuid4,
            editable=False,
            help_text="Unique identifier for this record",
            primary_key=True,
            serialize=False,
        ),
    )


def soft_delete():
    return [
        (
            "is_deleted",
            models.BooleanField(
                db_index=True, default=False, help_text="Whether this record has been soft deleted"
            ),
        ),
        (
            "deleted_at",
            models.DateTimeField(blank=True, null=True, help_text="Timestamp when this record was soft deleted"),
        ),
    ]


def metadata():
    return ("metadata", models.JSONField(blank=True, default=dict, help_text="Flexible key-value metadata storage"))


SYNC_STATUS_CHOICES = [("pending", "Pending"), ("synced", "Synced"), ("failed", "Failed")]

ENVIRONMENT_CHOICES = [("live", "Live"), ("test", "Test"), ("sandbox", "Sandbox")]

FINAL_ACTION_CHOICES = [
    ("cancel", "Cancel Subscription"),
    ("suspend", "Suspend Subscription"),
    ("notify_only", "Notify Only"),
]

FAILED_ATTEMPT_CHOICES = [
    ("failed_validation", "Failed Validation"),
    ("failed_customer_creation", "Failed Customer Creation"),
    ("failed_wallet_creation", "Failed Wallet Creation"),
    ("failed_delegation_storage", "Failed Delegation Storage"),
    ("failed_subscription_db", "Failed Subscription DB"),
    ("failed_duplicate", "Failed Duplicate"),
    ("failed", "Failed"),
]


def processor_sync_fields():
    return [
        (
            "external_id",
            models.CharField(
                blank=True,
                db_index=True,
                help_text="Identifier of this entity at the payment processor",
                max_length=255,
                null=True,
            ),
        ),
        (
            "payment_provider",
            models.CharField(
                blank=True,
                default="",
                help_text="Payment processor owning external_id (e.g., 'stripe')",
                max_length=50,
            ),
        ),
        (
            "payment_sync_status",
            models.CharField(
                choices=SYNC_STATUS_CHOICES,
                default="pending",
                help_text="Whether this row matches the processor's copy",
                max_length=20,
            ),
        ),
        (
            "payment_synced_at",
            models.DateTimeField(blank=True, help_text="When the processor's copy was last applied", null=True),
        ),
    ]


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        # =====================================================================
        # Catalogue
        # =====================================================================
        migrations.CreateModel(
            name="Workspace",
            fields=[
                *timestamps(),
                uuid_pk(),
                ("name", models.CharField(help_text="Display name", max_length=255)),
                ("is_active", models.BooleanField(default=True, help_text="Whether the workspace can bill")),
            ],
            options={
                "verbose_name": "Workspace",
                "verbose_name_plural": "Workspaces",
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="Customer",
            fields=[
                *timestamps(),
                *processor_sync_fields(),
                uuid_pk(),
                *soft_delete(),
                metadata(),
                ("email", models.EmailField(blank=True, default="", help_text="Billing email address", max_length=254)),
                ("name", models.CharField(blank=True, default="", help_text="Customer name", max_length=255)),
                (
                    "workspace",
                    models.ForeignKey(
                        help_text="Workspace this customer belongs to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="customers",
                        to="billing.workspace",
                    ),
                ),
            ],
            options={
                "verbose_name": "Customer",
                "verbose_name_plural": "Customers",
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("external_id__isnull", False), ("is_deleted", False)),
                        fields=("workspace", "external_id", "payment_provider"),
                        name="customer_unique_external_id",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Network",
            fields=[
                *timestamps(),
                uuid_pk(),
                ("name", models.CharField(help_text="Network name (e.g., 'Base')", max_length=100)),
                ("chain_id", models.PositiveBigIntegerField(help_text="EIP-155 chain id", unique=True)),
                (
                    "is_active",
                    models.BooleanField(default=True, help_text="Whether redemptions may target this network"),
                ),
            ],
            options={"ordering": ["name"]},
        ),
        migrations.CreateModel(
            name="Token",
            fields=[
                *timestamps(),
                uuid_pk(),
                ("symbol", models.CharField(help_text="Ticker symbol (e.g., 'USDC')", max_length=20)),
                ("contract_address", models.CharField(help_text="Checksummed contract address", max_length=42)),
                ("decimals", models.PositiveSmallIntegerField(default=6, help_text="Token decimals")),
                ("is_active", models.BooleanField(default=True)),
                (
                    "network",
                    models.ForeignKey(
                        help_text="Network the token contract lives on",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="tokens",
                        to="billing.network",
                    ),
                ),
            ],
            options={
                "ordering": ["symbol"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("network", "contract_address"),
                        name="token_unique_contract_per_network",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Wallet",
            fields=[
                *timestamps(),
                uuid_pk(),
                metadata(),
                ("address", models.CharField(db_index=True, help_text="Wallet address", max_length=42)),
                (
                    "is_merchant",
                    models.BooleanField(default=False, help_text="Whether this wallet receives redemptions"),
                ),
                (
                    "customer",
                    models.ForeignKey(
                        blank=True,
                        help_text="Owning customer, null for merchant wallets",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="wallets",
                        to="billing.customer",
                    ),
                ),
                (
                    "network",
                    models.ForeignKey(
                        help_text="Network the address is used on",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="wallets",
                        to="billing.network",
                    ),
                ),
                (
                    "workspace",
                    models.ForeignKey(
                        help_text="Workspace this wallet belongs to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="wallets",
                        to="billing.workspace",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("workspace", "network", "address"),
                        name="wallet_unique_address_per_network",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Product",
            fields=[
                *timestamps(),
                *processor_sync_fields(),
                uuid_pk(),
                *soft_delete(),
                metadata(),
                ("name", models.CharField(help_text="Product name", max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "is_active",
                    models.BooleanField(default=True, help_text="Whether new subscriptions are accepted"),
                ),
                (
                    "wallet",
                    models.ForeignKey(
                        blank=True,
                        help_text="Merchant wallet receiving redemptions (null for processor-only products)",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="products",
                        to="billing.wallet",
                    ),
                ),
                (
                    "workspace",
                    models.ForeignKey(
                        help_text="Workspace selling this product",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="products",
                        to="billing.workspace",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("external_id__isnull", False), ("is_deleted", False)),
                        fields=("workspace", "external_id", "payment_provider"),
                        name="product_unique_external_id",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Price",
            fields=[
                *timestamps(),
                *processor_sync_fields(),
                uuid_pk(),
                metadata(),
                (
                    "price_type",
                    models.CharField(
                        choices=[("recurring", "Recurring"), ("one_time", "One Time")],
                        default="recurring",
                        help_text="Recurring or one-time",
                        max_length=20,
                    ),
                ),
                ("currency", models.CharField(default="USD", help_text="ISO 4217 currency code", max_length=3)),
                (
                    "unit_amount_in_pennies",
                    models.PositiveBigIntegerField(help_text="Amount per period in the currency's smallest unit"),
                ),
                (
                    "interval_type",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("1min", "Every Minute"),
                            ("5mins", "Every 5 Minutes"),
                            ("daily", "Daily"),
                            ("week", "Weekly"),
                            ("month", "Monthly"),
                            ("year", "Yearly"),
                        ],
                        help_text="Billing interval for recurring prices",
                        max_length=10,
                        null=True,
                    ),
                ),
                (
                    "term_length",
                    models.PositiveIntegerField(
                        blank=True, help_text="Number of periods until completion (null = open-ended)", null=True
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                (
                    "product",
                    models.ForeignKey(
                        help_text="Product this price belongs to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="prices",
                        to="billing.product",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("interval_type__isnull", False), ("price_type", "recurring")),
                            models.Q(("interval_type__isnull", True), ("price_type", "one_time")),
                            _connector="OR",
                        ),
                        name="price_interval_matches_type",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("external_id__isnull", False)),
                        fields=("product", "external_id", "payment_provider"),
                        name="price_unique_external_id",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ProductToken",
            fields=[
                *timestamps(),
                uuid_pk(),
                ("is_active", models.BooleanField(default=True)),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="product_tokens",
                        to="billing.product",
                    ),
                ),
                (
                    "token",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="product_tokens",
                        to="billing.token",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(fields=("product", "token"), name="product_token_unique"),
                ],
            },
        ),
        # =====================================================================
        # Delegations & Subscriptions
        # =====================================================================
        migrations.CreateModel(
            name="DelegationRecord",
            fields=[
                *timestamps(),
                uuid_pk(),
                *soft_delete(),
                ("delegate", models.CharField(help_text="Address allowed to redeem the delegation", max_length=42)),
                (
                    "delegator",
                    models.CharField(db_index=True, help_text="Address that signed the delegation", max_length=42),
                ),
                (
                    "authority",
                    models.CharField(help_text="Authority hash the delegation derives from", max_length=66),
                ),
                ("caveats", models.JSONField(default=list, help_text="Ordered list of tagged caveats")),
                ("salt", models.CharField(help_text="Signer-chosen salt", max_length=78)),
                ("signature", models.TextField(help_text="Hex-encoded signature")),
                (
                    "workspace",
                    models.ForeignKey(
                        help_text="Workspace the delegation was signed for",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="delegations",
                        to="billing.workspace",
                    ),
                ),
            ],
            options={
                "verbose_name": "Delegation",
                "verbose_name_plural": "Delegations",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["workspace", "delegator"], name="billing_del_workspa_5b1c2e_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                *timestamps(),
                uuid_pk(),
                *soft_delete(),
                metadata(),
                (
                    "token_amount",
                    models.DecimalField(
                        decimal_places=0, default=0, help_text="Per-period amount in token base units", max_digits=78
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("active", "Active"),
                            ("canceled", "Canceled"),
                            ("expired", "Expired"),
                            ("overdue", "Overdue"),
                            ("suspended", "Suspended"),
                            ("failed", "Failed"),
                            ("completed", "Completed"),
                        ],
                        db_index=True,
                        default="active",
                        help_text="Current status (managed by FSM)",
                        max_length=50,
                    ),
                ),
                (
                    "current_period_start",
                    models.DateTimeField(blank=True, help_text="Start of current period", null=True),
                ),
                ("current_period_end", models.DateTimeField(blank=True, help_text="End of current period", null=True)),
                (
                    "next_redemption_date",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="When the next redemption is due; null means none scheduled",
                        null=True,
                    ),
                ),
                (
                    "overdue_since",
                    models.DateTimeField(
                        blank=True, help_text="When the subscription entered OVERDUE (grace period anchor)", null=True
                    ),
                ),
                (
                    "total_redemptions",
                    models.PositiveIntegerField(default=0, help_text="Successful redemptions so far (monotonic)"),
                ),
                (
                    "total_amount_in_cents",
                    models.PositiveBigIntegerField(
                        default=0, help_text="Running total collected in the price currency's smallest unit"
                    ),
                ),
                ("cancel_at", models.DateTimeField(blank=True, help_text="Scheduled cancellation time", null=True)),
                (
                    "cancelled_at",
                    models.DateTimeField(blank=True, help_text="When the subscription was canceled", null=True),
                ),
                ("cancellation_reason", models.CharField(blank=True, default="", max_length=255)),
                (
                    "processing_token",
                    models.UUIDField(blank=True, help_text="Claim marker of the worker currently redeeming", null=True),
                ),
                (
                    "processing_claimed_until",
                    models.DateTimeField(
                        blank=True, help_text="Claim expiry; after this another worker may claim", null=True
                    ),
                ),
                (
                    "external_id",
                    models.CharField(
                        blank=True, help_text="Processor subscription ID (e.g., sub_xxx)", max_length=255, null=True
                    ),
                ),
                (
                    "payment_provider",
                    models.CharField(blank=True, default="", help_text="Processor owning external_id", max_length=50),
                ),
                (
                    "payment_sync_status",
                    models.CharField(choices=SYNC_STATUS_CHOICES, default="pending", max_length=20),
                ),
                ("payment_synced_at", models.DateTimeField(blank=True, null=True)),
                (
                    "payment_sync_version",
                    models.PositiveIntegerField(default=0, help_text="Number of processor events applied"),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1, help_text="Version for optimistic locking - incremented on each save"
                    ),
                ),
                (
                    "customer",
                    models.ForeignKey(
                        help_text="Customer paying for the subscription",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.customer",
                    ),
                ),
                (
                    "customer_wallet",
                    models.ForeignKey(
                        blank=True,
                        help_text="Delegator wallet funds are pulled from",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.wallet",
                    ),
                ),
                (
                    "delegation",
                    models.ForeignKey(
                        blank=True,
                        help_text="Signed delegation; null for processor-owned subscriptions",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.delegationrecord",
                    ),
                ),
                (
                    "price",
                    models.ForeignKey(
                        help_text="Price determining amount and interval",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.price",
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        help_text="Product subscribed to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.product",
                    ),
                ),
                (
                    "product_token",
                    models.ForeignKey(
                        blank=True,
                        help_text="Asset and network redemptions are paid in",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.producttoken",
                    ),
                ),
                (
                    "workspace",
                    models.ForeignKey(
                        help_text="Workspace billing this subscription",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.workspace",
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "next_redemption_date"], name="billing_sub_status_3f2a41_idx"),
                    models.Index(fields=["workspace", "status"], name="billing_sub_workspa_8c6d17_idx"),
                    models.Index(fields=["customer", "status"], name="billing_sub_custome_e04b9a_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            ("next_redemption_date__isnull", True),
                            ("status__in", ["active", "overdue"]),
                            _connector="OR",
                        ),
                        name="subscription_schedule_only_when_live",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("total_amount_in_cents__gte", 0), ("total_redemptions__gte", 0)),
                        name="subscription_counters_non_negative",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("external_id__isnull", False), ("is_deleted", False)),
                        fields=("workspace", "external_id", "payment_provider"),
                        name="subscription_unique_external_id",
                    ),
                ],
            },
        ),
        # =====================================================================
        # Events
        # =====================================================================
        migrations.CreateModel(
            name="SubscriptionEvent",
            fields=[
                *timestamps(),
                uuid_pk(),
                metadata(),
                (
                    "event_type",
                    models.CharField(
                        choices=[
                            ("created", "Created"),
                            ("redeemed", "Redeemed"),
                            ("renewed", "Renewed"),
                            ("canceled", "Canceled"),
                            ("expired", "Expired"),
                            ("completed", "Completed"),
                            ("suspended", "Suspended"),
                            ("failed_validation", "Failed Validation"),
                            ("failed_customer_creation", "Failed Customer Creation"),
                            ("failed_wallet_creation", "Failed Wallet Creation"),
                            ("failed_delegation_storage", "Failed Delegation Storage"),
                            ("failed_subscription_db", "Failed Subscription DB"),
                            ("failed_redemption", "Failed Redemption"),
                            ("failed_transaction", "Failed Transaction"),
                            ("failed_duplicate", "Failed Duplicate"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        help_text="Event type",
                        max_length=40,
                    ),
                ),
                (
                    "transaction_hash",
                    models.CharField(
                        blank=True, db_index=True, help_text="On-chain transaction hash", max_length=66, null=True
                    ),
                ),
                ("amount_in_cents", models.BigIntegerField(default=0, help_text="Amount concerned by the event")),
                ("error_message", models.TextField(blank=True, help_text="Failure description", null=True)),
                ("occurred_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                (
                    "subscription",
                    models.ForeignKey(
                        help_text="Subscription this event belongs to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="events",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription Event",
                "verbose_name_plural": "Subscription Events",
                "ordering": ["occurred_at", "created_at"],
                "indexes": [
                    models.Index(fields=["subscription", "occurred_at"], name="billing_sub_subscri_1a7e52_idx"),
                    models.Index(fields=["subscription", "event_type"], name="billing_sub_subscri_96c0d3_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="FailedSubscriptionAttempt",
            fields=[
                *timestamps(),
                uuid_pk(),
                metadata(),
                ("wallet_address", models.CharField(blank=True, default="", max_length=42)),
                (
                    "error_type",
                    models.CharField(
                        choices=FAILED_ATTEMPT_CHOICES,
                        db_index=True,
                        help_text="Why the signup failed",
                        max_length=40,
                    ),
                ),
                ("error_message", models.TextField(blank=True, default="")),
                ("error_details", models.JSONField(blank=True, default=dict)),
                ("delegation_signature", models.TextField(blank=True, default="")),
                ("occurred_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                (
                    "customer",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="failed_subscription_attempts",
                        to="billing.customer",
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="failed_subscription_attempts",
                        to="billing.product",
                    ),
                ),
                (
                    "product_token",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="failed_subscription_attempts",
                        to="billing.producttoken",
                    ),
                ),
                (
                    "workspace",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="failed_subscription_attempts",
                        to="billing.workspace",
                    ),
                ),
            ],
            options={
                "verbose_name": "Failed Subscription Attempt",
                "verbose_name_plural": "Failed Subscription Attempts",
                "ordering": ["-occurred_at"],
                "indexes": [
                    models.Index(fields=["workspace", "error_type"], name="billing_fai_workspa_4d8b60_idx"),
                ],
            },
        ),
        # =====================================================================
        # Dunning
        # =====================================================================
        migrations.CreateModel(
            name="DunningConfiguration",
            fields=[
                *timestamps(),
                uuid_pk(),
                ("name", models.CharField(default="Default", max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                ("is_active", models.BooleanField(default=True)),
                (
                    "is_default",
                    models.BooleanField(default=False, help_text="Used for new campaigns in the workspace"),
                ),
                ("max_retry_attempts", models.PositiveSmallIntegerField(default=4)),
                (
                    "retry_interval_days",
                    models.JSONField(
                        default=billing.models.dunning.default_retry_interval_days,
                        help_text="Days to wait after each failure, indexed by attempt number",
                    ),
                ),
                (
                    "attempt_actions",
                    models.JSONField(blank=True, default=billing.models.dunning.default_attempt_actions),
                ),
                (
                    "final_action",
                    models.CharField(choices=FINAL_ACTION_CHOICES, default="cancel", max_length=20),
                ),
                ("send_pre_dunning_reminder", models.BooleanField(default=True)),
                ("pre_dunning_days", models.PositiveSmallIntegerField(default=3)),
                ("grace_period_hours", models.PositiveIntegerField(default=24)),
                (
                    "workspace",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="dunning_configurations",
                        to="billing.workspace",
                    ),
                ),
            ],
            options={
                "verbose_name": "Dunning Configuration",
                "verbose_name_plural": "Dunning Configurations",
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("is_default", True)),
                        fields=("workspace",),
                        name="dunning_configuration_one_default_per_workspace",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("max_retry_attempts__gte", 1)),
                        name="dunning_configuration_at_least_one_attempt",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DunningCampaign",
            fields=[
                *timestamps(),
                uuid_pk(),
                metadata(),
                (
                    "status",
                    models.CharField(
                        choices=[("active", "Active"), ("completed", "Completed"), ("cancelled", "Cancelled")],
                        db_index=True,
                        default="active",
                        max_length=20,
                    ),
                ),
                ("current_attempt", models.PositiveSmallIntegerField(default=0, help_text="Retries executed so far")),
                ("next_retry_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("last_retry_at", models.DateTimeField(blank=True, null=True)),
                ("locked_until", models.DateTimeField(blank=True, help_text="Worker claim expiry", null=True)),
                ("recovered", models.BooleanField(default=False)),
                ("recovered_at", models.DateTimeField(blank=True, null=True)),
                ("recovered_amount_cents", models.PositiveBigIntegerField(blank=True, null=True)),
                (
                    "final_action_taken",
                    models.CharField(blank=True, choices=FINAL_ACTION_CHOICES, default="", max_length=20),
                ),
                ("final_action_at", models.DateTimeField(blank=True, null=True)),
                ("pre_dunning_reminder_at", models.DateTimeField(blank=True, null=True)),
                ("pre_dunning_reminder_sent_at", models.DateTimeField(blank=True, null=True)),
                ("original_failure_reason", models.TextField(blank=True, default="")),
                ("original_amount_cents", models.PositiveBigIntegerField(default=0)),
                ("currency", models.CharField(default="USD", max_length=3)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "configuration",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="campaigns",
                        to="billing.dunningconfiguration",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="dunning_campaigns",
                        to="billing.subscription",
                    ),
                ),
                (
                    "workspace",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="dunning_campaigns",
                        to="billing.workspace",
                    ),
                ),
            ],
            options={
                "verbose_name": "Dunning Campaign",
                "verbose_name_plural": "Dunning Campaigns",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "next_retry_at"], name="billing_dun_status_7b3e90_idx"),
                    models.Index(fields=["status", "pre_dunning_reminder_at"], name="billing_dun_status_c51f28_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "active")),
                        fields=("subscription",),
                        name="dunning_campaign_one_active_per_subscription",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DunningAttempt",
            fields=[
                *timestamps(),
                uuid_pk(),
                ("attempt_number", models.PositiveSmallIntegerField()),
                (
                    "attempt_type",
                    models.CharField(
                        choices=[("retry_payment", "Retry Payment")], default="retry_payment", max_length=20
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("success", "Success"),
                            ("failed", "Failed"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("payment_error", models.TextField(blank=True, default="")),
                ("transaction_hash", models.CharField(blank=True, default="", max_length=66)),
                (
                    "communication_type",
                    models.CharField(
                        blank=True,
                        choices=[("email", "Email"), ("in_app", "In-App")],
                        default="",
                        max_length=20,
                    ),
                ),
                ("communication_sent", models.BooleanField(default=False)),
                ("communication_error", models.TextField(blank=True, default="")),
                (
                    "campaign",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="attempts",
                        to="billing.dunningcampaign",
                    ),
                ),
            ],
            options={
                "verbose_name": "Dunning Attempt",
                "verbose_name_plural": "Dunning Attempts",
                "ordering": ["campaign", "attempt_number"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("campaign", "attempt_number"),
                        name="dunning_attempt_unique_number",
                    ),
                ],
            },
        ),
        # =====================================================================
        # Payment Sync
        # =====================================================================
        migrations.CreateModel(
            name="WorkspaceProviderAccount",
            fields=[
                *timestamps(),
                uuid_pk(),
                metadata(),
                ("provider_name", models.CharField(help_text="Processor name (e.g., 'stripe')", max_length=50)),
                (
                    "provider_account_id",
                    models.CharField(
                        db_index=True, help_text="Processor account identifier (e.g., acct_xxx)", max_length=255
                    ),
                ),
                ("account_type", models.CharField(blank=True, default="standard", max_length=50)),
                ("environment", models.CharField(choices=ENVIRONMENT_CHOICES, default="live", max_length=10)),
                ("is_active", models.BooleanField(default=True)),
                ("display_name", models.CharField(blank=True, default="", max_length=255)),
                (
                    "workspace",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="provider_accounts",
                        to="billing.workspace",
                    ),
                ),
            ],
            options={
                "verbose_name": "Workspace Provider Account",
                "verbose_name_plural": "Workspace Provider Accounts",
                "ordering": ["provider_name", "provider_account_id"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("provider_name", "provider_account_id", "environment"),
                        name="provider_account_unique_per_environment",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentSyncSession",
            fields=[
                *timestamps(),
                uuid_pk(),
                ("provider_name", models.CharField(max_length=50)),
                (
                    "session_type",
                    models.CharField(
                        choices=[
                            ("initial_sync", "Initial Sync"),
                            ("partial_sync", "Partial Sync"),
                            ("delta_sync", "Delta Sync"),
                            ("webhook", "Webhook"),
                        ],
                        default="webhook",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("running", "Running"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("entity_types", models.JSONField(blank=True, default=list, help_text="Entity types covered")),
                (
                    "config",
                    models.JSONField(blank=True, default=dict, help_text="Run options (e.g., created_after)"),
                ),
                (
                    "progress",
                    models.JSONField(
                        default=billing.models.payment_sync.empty_progress, help_text="Per-outcome counters"
                    ),
                ),
                ("error_summary", models.JSONField(blank=True, default=list, help_text="Most recent errors")),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "workspace",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_sync_sessions",
                        to="billing.workspace",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Sync Session",
                "verbose_name_plural": "Payment Sync Sessions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["workspace", "provider_name", "status"], name="billing_pay_workspa_a2e6f1_idx"
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentSyncEvent",
            fields=[
                *timestamps(),
                uuid_pk(),
                ("provider_name", models.CharField(max_length=50)),
                ("provider_account_id", models.CharField(blank=True, default="", max_length=255)),
                ("environment", models.CharField(choices=ENVIRONMENT_CHOICES, default="live", max_length=10)),
                ("entity_type", models.CharField(blank=True, default="", max_length=50)),
                ("external_id", models.CharField(blank=True, default="", max_length=255)),
                ("event_type", models.CharField(db_index=True, max_length=100)),
                ("webhook_event_id", models.CharField(blank=True, default="", max_length=255)),
                (
                    "idempotency_key",
                    models.CharField(
                        blank=True,
                        help_text="sha256(workspace:provider_account:webhook_event_id)",
                        max_length=64,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("applied", "Applied"),
                            ("failed", "Failed"),
                            ("rejected", "Rejected"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("signature_valid", models.BooleanField(default=True)),
                ("processing_attempts", models.PositiveSmallIntegerField(default=0)),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("error_details", models.JSONField(blank=True, default=dict)),
                ("event_message", models.TextField(blank=True, default="")),
                ("occurred_at", models.DateTimeField(blank=True, null=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "session",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="events",
                        to="billing.paymentsyncsession",
                    ),
                ),
                (
                    "workspace",
                    models.ForeignKey(
                        blank=True,
                        help_text="Null when the delivery could not be routed",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_sync_events",
                        to="billing.workspace",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Sync Event",
                "verbose_name_plural": "Payment Sync Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "processing_attempts"], name="billing_pay_status_5e9d84_idx"
                    ),
                    models.Index(
                        fields=["workspace", "entity_type", "external_id"], name="billing_pay_workspa_0f7c3b_idx"
                    ),
                ],
            },
        ),
    ]
