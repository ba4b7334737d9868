"""
Subscription model for delegated on-chain recurring billing.

A Subscription turns a signed delegation plus a price selection into a
schedule of on-chain redemptions. Processor-owned subscriptions (synced
from Stripe, no delegation) share the table but are never scheduled.

Usage:
    from billing.models import Subscription
    from billing.state_machines import SubscriptionStatus

    due = Subscription.objects.filter(
        status__in=[SubscriptionStatus.ACTIVE, SubscriptionStatus.OVERDUE],
        next_redemption_date__lte=now,
    )

    # State transitions using django-fsm
    subscription.mark_overdue()
    subscription.save()
"""

from __future__ import annotations

from django.db import models
from django.db.models import F
from django.utils import timezone
from django_fsm import RETURN_VALUE, FSMField, transition

from core.managers import SoftDeleteManager
from core.model_mixins import MetadataMixin, SoftDeleteMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import PaymentSyncStatus, SubscriptionStatus

LIVE = [SubscriptionStatus.ACTIVE, SubscriptionStatus.OVERDUE]


class Subscription(UUIDPrimaryKeyMixin, SoftDeleteMixin, MetadataMixin, BaseModel):
    """
    A customer's subscription to a price, paid by delegated redemptions.

    Uses django-fsm for status transitions and a version counter for
    optimistic locking. Concurrent redemption is prevented by a claim
    marker (processing_token + processing_claimed_until) taken with a
    conditional update; see SubscriptionLedger.

    State Flow:
        ACTIVE -> OVERDUE (redemption failed)
        OVERDUE -> ACTIVE (retry redeemed)
        ACTIVE -> COMPLETED (term length reached)
        ACTIVE/OVERDUE -> CANCELED | SUSPENDED | EXPIRED | FAILED
        SUSPENDED -> ACTIVE (resumed) | CANCELED

    Invariants (enforced by DB constraints):
        - next_redemption_date is set only while ACTIVE or OVERDUE
        - counters are non-negative
        - one live row per (workspace, external_id, payment_provider)
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    workspace = models.ForeignKey(
        "billing.Workspace",
        on_delete=models.PROTECT,
        related_name="subscriptions",
        help_text="Workspace billing this subscription",
    )

    customer = models.ForeignKey(
        "billing.Customer",
        on_delete=models.PROTECT,
        related_name="subscriptions",
        help_text="Customer paying for the subscription",
    )

    product = models.ForeignKey(
        "billing.Product",
        on_delete=models.PROTECT,
        related_name="subscriptions",
        help_text="Product subscribed to",
    )

    price = models.ForeignKey(
        "billing.Price",
        on_delete=models.PROTECT,
        related_name="subscriptions",
        help_text="Price determining amount and interval",
    )

    product_token = models.ForeignKey(
        "billing.ProductToken",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="subscriptions",
        help_text="Asset and network redemptions are paid in",
    )

    delegation = models.ForeignKey(
        "billing.DelegationRecord",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="subscriptions",
        help_text="Signed delegation; null for processor-owned subscriptions",
    )

    customer_wallet = models.ForeignKey(
        "billing.Wallet",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="subscriptions",
        help_text="Delegator wallet funds are pulled from",
    )

    # ==========================================================================
    # Amount
    # ==========================================================================

    token_amount = models.DecimalField(
        max_digits=78,
        decimal_places=0,
        default=0,
        help_text="Per-period amount in token base units",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=SubscriptionStatus.ACTIVE,
        choices=SubscriptionStatus.choices,
        db_index=True,
        help_text="Current status (managed by FSM)",
    )

    # ==========================================================================
    # Schedule
    # ==========================================================================

    current_period_start = models.DateTimeField(null=True, blank=True, help_text="Start of current period")
    current_period_end = models.DateTimeField(null=True, blank=True, help_text="End of current period")

    next_redemption_date = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When the next redemption is due; null means none scheduled",
    )

    overdue_since = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the subscription entered OVERDUE (grace period anchor)",
    )

    # ==========================================================================
    # Counters
    # ==========================================================================

    total_redemptions = models.PositiveIntegerField(
        default=0,
        help_text="Successful redemptions so far (monotonic)",
    )

    total_amount_in_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Running total collected in the price currency's smallest unit",
    )

    # ==========================================================================
    # Cancellation
    # ==========================================================================

    cancel_at = models.DateTimeField(null=True, blank=True, help_text="Scheduled cancellation time")
    cancelled_at = models.DateTimeField(null=True, blank=True, help_text="When the subscription was canceled")
    cancellation_reason = models.CharField(max_length=255, blank=True, default="")

    pause_ends_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When a paused (suspended) subscription resumes on its own",
    )

    # ==========================================================================
    # Redemption Claim
    # ==========================================================================

    processing_token = models.UUIDField(
        null=True,
        blank=True,
        help_text="Claim marker of the worker currently redeeming",
    )

    processing_claimed_until = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Claim expiry; after this another worker may claim",
    )

    # ==========================================================================
    # Processor Sync
    # ==========================================================================

    external_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Processor subscription ID (e.g., sub_xxx)",
    )

    payment_provider = models.CharField(
        max_length=50,
        blank=True,
        default="",
        help_text="Processor owning external_id",
    )

    payment_sync_status = models.CharField(
        max_length=20,
        choices=PaymentSyncStatus.choices,
        default=PaymentSyncStatus.PENDING,
    )

    payment_synced_at = models.DateTimeField(null=True, blank=True)

    payment_sync_version = models.PositiveIntegerField(
        default=0,
        help_text="Number of processor events applied",
    )

    # ==========================================================================
    # Concurrency Control
    # ==========================================================================

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    objects = SoftDeleteManager()
    all_objects = models.Manager()

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        indexes = [
            models.Index(fields=["status", "next_redemption_date"], name="billing_sub_status_3f2a41_idx"),
            models.Index(fields=["workspace", "status"], name="billing_sub_workspa_8c6d17_idx"),
            models.Index(fields=["customer", "status"], name="billing_sub_custome_e04b9a_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(next_redemption_date__isnull=True) | models.Q(status__in=LIVE),
                name="subscription_schedule_only_when_live",
            ),
            models.CheckConstraint(
                condition=models.Q(total_redemptions__gte=0, total_amount_in_cents__gte=0),
                name="subscription_counters_non_negative",
            ),
            models.UniqueConstraint(
                fields=["workspace", "external_id", "payment_provider"],
                condition=models.Q(is_deleted=False, external_id__isnull=False),
                name="subscription_unique_external_id",
            ),
        ]

    def __str__(self) -> str:
        return f"Subscription({self.id}, {self.status})"

    def save(self, *args, **kwargs):
        """
        Save with version auto-increment for optimistic locking.
        """
        is_update = self.pk and not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
            update_fields = kwargs.get("update_fields")
            if update_fields is not None:
                kwargs["update_fields"] = {*update_fields, "version", "updated_at"}
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=status, source=LIVE, target=SubscriptionStatus.ACTIVE)
    def mark_redeemed(self):
        """
        Record that the current period was paid.

        Transition: ACTIVE/OVERDUE -> ACTIVE
        """
        self.overdue_since = None

    @transition(field=status, source=LIVE, target=SubscriptionStatus.OVERDUE)
    def mark_overdue(self, at=None):
        """
        Transition: ACTIVE/OVERDUE -> OVERDUE

        next_redemption_date is left as is so the sweep (or dunning) retries.
        """
        if self.overdue_since is None:
            self.overdue_since = at or timezone.now()

    @transition(field=status, source=LIVE, target=SubscriptionStatus.COMPLETED)
    def complete(self):
        """Transition: ACTIVE/OVERDUE -> COMPLETED (term length reached)."""
        self.next_redemption_date = None
        self.overdue_since = None

    @transition(
        field=status,
        source=[SubscriptionStatus.ACTIVE, SubscriptionStatus.OVERDUE, SubscriptionStatus.SUSPENDED],
        target=SubscriptionStatus.CANCELED,
    )
    def cancel(self, reason: str = "", at=None):
        """
        Cancel the subscription. Terminal.

        Transition: ACTIVE/OVERDUE/SUSPENDED -> CANCELED
        """
        self.next_redemption_date = None
        self.cancelled_at = at or timezone.now()
        self.cancellation_reason = reason[:255]

    @transition(field=status, source=LIVE, target=SubscriptionStatus.SUSPENDED)
    def suspend(self, until=None):
        """
        Transition: ACTIVE/OVERDUE -> SUSPENDED (pause, or dunning final action)

        With until set, process_scheduled_resumptions resumes it then.
        """
        self.next_redemption_date = None
        self.pause_ends_at = until

    @transition(field=status, source=SubscriptionStatus.SUSPENDED, target=SubscriptionStatus.ACTIVE)
    def resume(self, at=None):
        """
        Transition: SUSPENDED -> ACTIVE

        The next redemption is due immediately; a successful one starts a
        fresh period.
        """
        self.next_redemption_date = at or timezone.now()
        self.pause_ends_at = None
        self.overdue_since = None

    @transition(field=status, source=LIVE, target=SubscriptionStatus.EXPIRED)
    def expire(self):
        """Transition: ACTIVE/OVERDUE -> EXPIRED (delegation window closed)."""
        self.next_redemption_date = None

    @transition(field=status, source=LIVE, target=SubscriptionStatus.FAILED)
    def mark_failed(self):
        """Transition: ACTIVE/OVERDUE -> FAILED (first redemption permanently rejected)."""
        self.next_redemption_date = None

    @transition(field=status, source="*", target=RETURN_VALUE(*SubscriptionStatus.values))
    def apply_processor_status(self, status: str):
        """
        Mirror the processor's status onto a processor-owned subscription.

        Processor-owned subscriptions are never scheduled, so the schedule
        is always cleared.
        """
        self.next_redemption_date = None
        if status == SubscriptionStatus.CANCELED and self.cancelled_at is None:
            self.cancelled_at = timezone.now()
        return status

    # ==========================================================================
    # Helper Properties
    # ==========================================================================

    @property
    def is_delegation_backed(self) -> bool:
        """On-chain path owns status, schedule and counters."""
        return self.delegation_id is not None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE

    @property
    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED

    @property
    def term_reached(self) -> bool:
        term_length = self.price.term_length
        return term_length is not None and self.total_redemptions >= term_length
