"""
State and choice enums for billing models.

These are Django TextChoices for database storage and admin integration.
SubscriptionStatus is driven by django-fsm; the rest are plain status
columns updated through conditional queryset updates.

State Machines Overview:

Subscription Statuses:
    active → overdue → active (failed redemption, then recovery)
    active/overdue → canceled | suspended | expired
    suspended → active (resumed) | canceled
    active → completed (term length reached)
    active → failed (first redemption permanently rejected)

DunningCampaign Statuses:
    active → completed (recovered or final action applied)
    active → cancelled (subscription canceled out-of-band)

PaymentSyncEvent Statuses:
    pending → applied
    pending → failed → applied (retry)
    rejected (invalid signature, never applied)
"""

from django.db import models


class SubscriptionStatus(models.TextChoices):
    """
    Lifecycle states for a Subscription.

    Only ACTIVE and OVERDUE subscriptions carry a next_redemption_date.

    Terminal states: CANCELED, EXPIRED, FAILED, COMPLETED
    SUSPENDED is unscheduled until resumed (manually or at pause_ends_at).

    State Flow:
        ACTIVE → OVERDUE (redemption failed)
        OVERDUE → ACTIVE (retry redeemed)
        ACTIVE/OVERDUE → CANCELED (customer, merchant or dunning cancel)
        ACTIVE/OVERDUE → SUSPENDED (pause, or dunning final action)
        SUSPENDED → ACTIVE (resumed)
        ACTIVE/OVERDUE → EXPIRED (delegation time window closed)
        ACTIVE → COMPLETED (term length reached)
        ACTIVE/OVERDUE → FAILED (first redemption permanently rejected)
    """

    ACTIVE = "active", "Active"
    CANCELED = "canceled", "Canceled"
    EXPIRED = "expired", "Expired"
    OVERDUE = "overdue", "Overdue"
    SUSPENDED = "suspended", "Suspended"
    FAILED = "failed", "Failed"
    COMPLETED = "completed", "Completed"


class SubscriptionEventType(models.TextChoices):
    """
    Types of append-only lifecycle events.

    Failure types are deliberately fine-grained. DunningEngine measures a
    campaign's failed retries with EventRecorder.consecutive_failures, so
    this log is the source of truth for exhaustion. SUSPENDED and RESUMED
    extend the core set for pause and resume.
    """

    CREATED = "created", "Created"
    REDEEMED = "redeemed", "Redeemed"
    RENEWED = "renewed", "Renewed"
    CANCELED = "canceled", "Canceled"
    EXPIRED = "expired", "Expired"
    COMPLETED = "completed", "Completed"
    SUSPENDED = "suspended", "Suspended"
    RESUMED = "resumed", "Resumed"
    FAILED_VALIDATION = "failed_validation", "Failed Validation"
    FAILED_CUSTOMER_CREATION = "failed_customer_creation", "Failed Customer Creation"
    FAILED_WALLET_CREATION = "failed_wallet_creation", "Failed Wallet Creation"
    FAILED_DELEGATION_STORAGE = "failed_delegation_storage", "Failed Delegation Storage"
    FAILED_SUBSCRIPTION_DB = "failed_subscription_db", "Failed Subscription DB"
    FAILED_REDEMPTION = "failed_redemption", "Failed Redemption"
    FAILED_TRANSACTION = "failed_transaction", "Failed Transaction"
    FAILED_DUPLICATE = "failed_duplicate", "Failed Duplicate"
    FAILED = "failed", "Failed"


SUCCESS_EVENT_TYPES = (
    SubscriptionEventType.REDEEMED,
    SubscriptionEventType.RENEWED,
)

REDEMPTION_FAILURE_EVENT_TYPES = (
    SubscriptionEventType.FAILED_REDEMPTION,
    SubscriptionEventType.FAILED_TRANSACTION,
)


class FailedAttemptErrorType(models.TextChoices):
    """Failure reasons for subscriptions that were never created."""

    VALIDATION = "failed_validation", "Failed Validation"
    CUSTOMER_CREATION = "failed_customer_creation", "Failed Customer Creation"
    WALLET_CREATION = "failed_wallet_creation", "Failed Wallet Creation"
    DELEGATION_STORAGE = "failed_delegation_storage", "Failed Delegation Storage"
    SUBSCRIPTION_DB = "failed_subscription_db", "Failed Subscription DB"
    DUPLICATE = "failed_duplicate", "Failed Duplicate"
    OTHER = "failed", "Failed"


class PriceType(models.TextChoices):
    RECURRING = "recurring", "Recurring"
    ONE_TIME = "one_time", "One Time"


class IntervalType(models.TextChoices):
    ONE_MINUTE = "1min", "Every Minute"
    FIVE_MINUTES = "5mins", "Every 5 Minutes"
    DAILY = "daily", "Daily"
    WEEK = "week", "Weekly"
    MONTH = "month", "Monthly"
    YEAR = "year", "Yearly"


class PaymentSyncStatus(models.TextChoices):
    """Sync metadata on entities mirrored to or from a payment processor."""

    PENDING = "pending", "Pending"
    SYNCED = "synced", "Synced"
    FAILED = "failed", "Failed"


class DunningCampaignStatus(models.TextChoices):
    """
    Status of a DunningCampaign.

    ACTIVE covers both "open" and "retrying". A completed campaign is
    either recovered or exhausted (final_action_taken set).

    State Flow:
        ACTIVE → COMPLETED (retry succeeded, or final action applied)
        ACTIVE → CANCELLED (subscription canceled out-of-band)
    """

    ACTIVE = "active", "Active"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"


class DunningAttemptStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    SUCCESS = "success", "Success"
    FAILED = "failed", "Failed"


class DunningAttemptType(models.TextChoices):
    RETRY_PAYMENT = "retry_payment", "Retry Payment"


class DunningAction(models.TextChoices):
    """Per-attempt actions a DunningConfiguration can list."""

    RETRY_PAYMENT = "retry_payment", "Retry Payment"
    EMAIL = "email", "Email"
    IN_APP = "in_app", "In-App Notification"


class DunningFinalAction(models.TextChoices):
    CANCEL = "cancel", "Cancel Subscription"
    SUSPEND = "suspend", "Suspend Subscription"
    NOTIFY_ONLY = "notify_only", "Notify Only"


class CommunicationType(models.TextChoices):
    EMAIL = "email", "Email"
    IN_APP = "in_app", "In-App"


class ProviderEnvironment(models.TextChoices):
    LIVE = "live", "Live"
    TEST = "test", "Test"
    SANDBOX = "sandbox", "Sandbox"


class PaymentSyncSessionType(models.TextChoices):
    INITIAL_SYNC = "initial_sync", "Initial Sync"
    PARTIAL_SYNC = "partial_sync", "Partial Sync"
    DELTA_SYNC = "delta_sync", "Delta Sync"
    WEBHOOK = "webhook", "Webhook"


class PaymentSyncSessionStatus(models.TextChoices):
    """
    Status of a PaymentSyncSession.

    State Flow:
        PENDING → RUNNING → COMPLETED
        PENDING → RUNNING → FAILED (resumable)
        PENDING/RUNNING → CANCELLED
    """

    PENDING = "pending", "Pending"
    RUNNING = "running", "Running"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"


class PaymentSyncEventStatus(models.TextChoices):
    """
    Processing status for a PaymentSyncEvent.

    State Flow:
        PENDING → APPLIED
        PENDING → FAILED → APPLIED (retry, bounded by processing_attempts)
        REJECTED (signature invalid; terminal, never applied)
    """

    PENDING = "pending", "Pending"
    APPLIED = "applied", "Applied"
    FAILED = "failed", "Failed"
    REJECTED = "rejected", "Rejected"


__all__ = [
    "CommunicationType",
    "DunningAction",
    "DunningAttemptStatus",
    "DunningAttemptType",
    "DunningCampaignStatus",
    "DunningFinalAction",
    "FailedAttemptErrorType",
    "IntervalType",
    "PaymentSyncEventStatus",
    "PaymentSyncSessionStatus",
    "PaymentSyncSessionType",
    "PaymentSyncStatus",
    "PriceType",
    "ProviderEnvironment",
    "REDEMPTION_FAILURE_EVENT_TYPES",
    "SUCCESS_EVENT_TYPES",
    "SubscriptionEventType",
    "SubscriptionStatus",
]
