"""
Billing admin configuration.

Subscriptions, events and sync records are operational views: state
changes go through the service layer, so most models are read-only here.
Catalogue, dunning configuration and provider account routing are
editable.
"""

from django.contrib import admin

from billing.models import (
    Customer,
    DelegationRecord,
    DunningAttempt,
    DunningCampaign,
    DunningConfiguration,
    FailedSubscriptionAttempt,
    Network,
    PaymentSyncEvent,
    PaymentSyncSession,
    Price,
    Product,
    ProductToken,
    Subscription,
    SubscriptionEvent,
    Token,
    Wallet,
    Workspace,
    WorkspaceProviderAccount,
)
from billing.notifications import format_amount
from billing.state_machines import PaymentSyncEventStatus


class ReadOnlyAdminMixin:
    """Audit tables: viewable, never edited or deleted from admin."""

    def has_add_permission(self, request, obj=None) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


# =============================================================================
# Catalogue Admin
# =============================================================================


@admin.register(Workspace)
class WorkspaceAdmin(admin.ModelAdmin):
    list_display = ["id", "name", "is_active", "created_at"]
    list_filter = ["is_active"]
    search_fields = ["id", "name"]


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ["id", "email", "name", "workspace", "external_id", "payment_provider", "is_deleted"]
    list_filter = ["payment_provider", "payment_sync_status", "is_deleted"]
    search_fields = ["id", "email", "name", "external_id"]
    readonly_fields = ["id", "created_at", "updated_at", "payment_synced_at"]


@admin.register(Network)
class NetworkAdmin(admin.ModelAdmin):
    list_display = ["name", "chain_id", "is_active"]


@admin.register(Token)
class TokenAdmin(admin.ModelAdmin):
    list_display = ["symbol", "network", "contract_address", "decimals", "is_active"]
    list_filter = ["network", "is_active"]
    search_fields = ["symbol", "contract_address"]


@admin.register(Wallet)
class WalletAdmin(admin.ModelAdmin):
    list_display = ["address", "workspace", "network", "customer", "is_merchant"]
    list_filter = ["is_merchant", "network"]
    search_fields = ["address"]


class PriceInline(admin.TabularInline):
    model = Price
    extra = 0
    fields = ["price_type", "unit_amount_in_pennies", "currency", "interval_type", "term_length", "is_active"]


class ProductTokenInline(admin.TabularInline):
    model = ProductToken
    extra = 0


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ["name", "workspace", "wallet", "is_active", "external_id", "is_deleted"]
    list_filter = ["is_active", "payment_provider", "is_deleted"]
    search_fields = ["id", "name", "external_id"]
    inlines = [PriceInline, ProductTokenInline]


@admin.register(Price)
class PriceAdmin(admin.ModelAdmin):
    list_display = ["id", "product", "amount_display", "price_type", "interval_type", "term_length", "is_active"]
    list_filter = ["price_type", "interval_type", "currency", "is_active"]
    search_fields = ["id", "external_id", "product__name"]

    def amount_display(self, obj: Price) -> str:
        return format_amount(obj.unit_amount_in_pennies, obj.currency)

    amount_display.short_description = "Amount"


# =============================================================================
# Subscription Admin
# =============================================================================


class SubscriptionEventInline(admin.TabularInline):
    model = SubscriptionEvent
    extra = 0
    can_delete = False
    fields = ["event_type", "amount_in_cents", "transaction_hash", "error_message", "occurred_at"]
    readonly_fields = fields
    ordering = ["occurred_at"]

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """
    Admin configuration for Subscription.

    State changes should be made through SubscriptionLedger, not admin.
    """

    list_display = [
        "id",
        "customer",
        "product",
        "status",
        "next_redemption_date",
        "total_redemptions",
        "created_at",
    ]
    list_filter = ["status", "payment_provider", "created_at"]
    search_fields = ["id", "external_id", "customer__email", "delegation__delegator"]
    readonly_fields = [
        "id",
        "status",
        "version",
        "processing_token",
        "processing_claimed_until",
        "total_redemptions",
        "total_amount_in_cents",
        "overdue_since",
        "pause_ends_at",
        "cancelled_at",
        "payment_sync_version",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    inlines = [SubscriptionEventInline]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "workspace", "customer", "status"),
            },
        ),
        (
            "Product",
            {
                "fields": ("product", "price", "product_token", "token_amount"),
            },
        ),
        (
            "Delegation",
            {
                "fields": ("delegation", "customer_wallet"),
            },
        ),
        (
            "Schedule",
            {
                "fields": (
                    "current_period_start",
                    "current_period_end",
                    "next_redemption_date",
                    "overdue_since",
                    "pause_ends_at",
                    "total_redemptions",
                    "total_amount_in_cents",
                ),
            },
        ),
        (
            "Cancellation",
            {
                "fields": ("cancel_at", "cancelled_at", "cancellation_reason"),
                "classes": ("collapse",),
            },
        ),
        (
            "Processor Sync",
            {
                "fields": (
                    "external_id",
                    "payment_provider",
                    "payment_sync_status",
                    "payment_synced_at",
                    "payment_sync_version",
                ),
                "classes": ("collapse",),
            },
        ),
        (
            "Concurrency",
            {
                "fields": ("processing_token", "processing_claimed_until", "version"),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for subscriptions (audit trail)."""
        return False


@admin.register(DelegationRecord)
class DelegationRecordAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["id", "delegator", "delegate", "workspace", "is_deleted", "created_at"]
    list_filter = ["is_deleted"]
    search_fields = ["id", "delegator", "delegate"]


@admin.register(SubscriptionEvent)
class SubscriptionEventAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["id", "subscription", "event_type", "amount_in_cents", "transaction_hash", "occurred_at"]
    list_filter = ["event_type", "occurred_at"]
    search_fields = ["id", "subscription__id", "transaction_hash"]
    date_hierarchy = "occurred_at"


@admin.register(FailedSubscriptionAttempt)
class FailedSubscriptionAttemptAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["id", "workspace", "error_type", "wallet_address", "product", "occurred_at"]
    list_filter = ["error_type", "occurred_at"]
    search_fields = ["id", "wallet_address", "error_message"]
    date_hierarchy = "occurred_at"


# =============================================================================
# Dunning Admin
# =============================================================================


@admin.register(DunningConfiguration)
class DunningConfigurationAdmin(admin.ModelAdmin):
    list_display = [
        "name",
        "workspace",
        "is_default",
        "is_active",
        "max_retry_attempts",
        "final_action",
        "grace_period_hours",
    ]
    list_filter = ["is_default", "is_active", "final_action"]
    search_fields = ["name", "workspace__name"]


class DunningAttemptInline(admin.TabularInline):
    model = DunningAttempt
    extra = 0
    can_delete = False
    fields = [
        "attempt_number",
        "status",
        "started_at",
        "completed_at",
        "payment_error",
        "communication_type",
        "communication_sent",
    ]
    readonly_fields = fields

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(DunningCampaign)
class DunningCampaignAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "subscription",
        "status",
        "current_attempt",
        "next_retry_at",
        "recovered",
        "final_action_taken",
        "created_at",
    ]
    list_filter = ["status", "recovered", "final_action_taken"]
    search_fields = ["id", "subscription__id"]
    readonly_fields = [
        "id",
        "workspace",
        "configuration",
        "subscription",
        "current_attempt",
        "last_retry_at",
        "locked_until",
        "recovered",
        "recovered_at",
        "recovered_amount_cents",
        "final_action_taken",
        "final_action_at",
        "pre_dunning_reminder_sent_at",
        "original_failure_reason",
        "original_amount_cents",
        "currency",
        "completed_at",
        "created_at",
        "updated_at",
    ]
    inlines = [DunningAttemptInline]

    def has_add_permission(self, request) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


# =============================================================================
# Payment Sync Admin
# =============================================================================


@admin.register(WorkspaceProviderAccount)
class WorkspaceProviderAccountAdmin(admin.ModelAdmin):
    list_display = ["provider_account_id", "provider_name", "environment", "workspace", "is_active"]
    list_filter = ["provider_name", "environment", "is_active"]
    search_fields = ["provider_account_id", "display_name", "workspace__name"]


@admin.register(PaymentSyncSession)
class PaymentSyncSessionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["id", "workspace", "provider_name", "session_type", "status", "started_at", "completed_at"]
    list_filter = ["provider_name", "session_type", "status"]
    search_fields = ["id", "workspace__name"]


@admin.register(PaymentSyncEvent)
class PaymentSyncEventAdmin(admin.ModelAdmin):
    """
    Admin configuration for PaymentSyncEvent.

    Events are immutable once received; failed ones can be re-queued.
    """

    list_display = [
        "id",
        "provider_name",
        "event_type",
        "status",
        "signature_valid",
        "processing_attempts",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "provider_name", "signature_valid", "entity_type"]
    search_fields = ["id", "webhook_event_id", "external_id", "idempotency_key", "provider_account_id"]
    readonly_fields = [
        "id",
        "session",
        "workspace",
        "provider_name",
        "provider_account_id",
        "environment",
        "entity_type",
        "external_id",
        "event_type",
        "webhook_event_id",
        "idempotency_key",
        "status",
        "signature_valid",
        "processing_attempts",
        "payload",
        "error_details",
        "event_message",
        "occurred_at",
        "processed_at",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    actions = ["requeue_events"]

    def has_add_permission(self, request) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for processor events (audit trail)."""
        return False

    @admin.action(description="Re-queue selected failed events")
    def requeue_events(self, request, queryset):
        from billing.tasks import process_sync_event

        queued = 0
        for event in queryset.filter(status=PaymentSyncEventStatus.FAILED, signature_valid=True):
            process_sync_event.delay(str(event.id))
            queued += 1
        self.message_user(request, f"Queued {queued} events for processing.")
