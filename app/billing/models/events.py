"""
Append-only lifecycle events and pre-creation failure telemetry.

SubscriptionEvent is the audit trail of a subscription and the dunning
engine's read model for consecutive failures. FailedSubscriptionAttempt
records signups that never produced a Subscription row, so it references
product, token and wallet address but never a subscription.

Usage:
    from billing.services import EventRecorder

    EventRecorder.record_event(
        subscription,
        SubscriptionEventType.REDEEMED,
        amount_in_cents=1000,
        transaction_hash="0xabc...",
    )
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.exceptions import ConflictError
from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import FailedAttemptErrorType, SubscriptionEventType


class AppendOnlyQuerySet(models.QuerySet):
    """Blocks bulk update and delete on append-only tables."""

    def update(self, **kwargs):
        raise ConflictError(
            f"{self.model.__name__} rows are append-only",
            error_code="APPEND_ONLY",
        )

    def delete(self):
        raise ConflictError(
            f"{self.model.__name__} rows are append-only",
            error_code="APPEND_ONLY",
        )


class AppendOnlyModel(models.Model):
    """Abstract model whose rows can be inserted but never changed."""

    objects = AppendOnlyQuerySet.as_manager()

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ConflictError(
                f"{self.__class__.__name__} rows are append-only",
                error_code="APPEND_ONLY",
                details={"id": str(self.pk)},
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ConflictError(
            f"{self.__class__.__name__} rows are append-only",
            error_code="APPEND_ONLY",
            details={"id": str(self.pk)},
        )


class SubscriptionEvent(UUIDPrimaryKeyMixin, MetadataMixin, AppendOnlyModel, BaseModel):
    """
    One lifecycle event of a subscription.

    Fields:
        event_type: Success or typed failure reason
        transaction_hash: On-chain hash when a transaction was submitted
        amount_in_cents: Amount the event concerns (0 when not applicable)
        error_message: Failure description
        occurred_at: When it happened (may precede created_at for synced events)
    """

    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.PROTECT,
        related_name="events",
        help_text="Subscription this event belongs to",
    )

    event_type = models.CharField(
        max_length=40,
        choices=SubscriptionEventType.choices,
        db_index=True,
        help_text="Event type",
    )

    transaction_hash = models.CharField(
        max_length=66,
        null=True,
        blank=True,
        db_index=True,
        help_text="On-chain transaction hash",
    )

    amount_in_cents = models.BigIntegerField(default=0, help_text="Amount concerned by the event")

    error_message = models.TextField(null=True, blank=True, help_text="Failure description")

    occurred_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ["occurred_at", "created_at"]
        verbose_name = "Subscription Event"
        verbose_name_plural = "Subscription Events"
        indexes = [
            models.Index(fields=["subscription", "occurred_at"], name="billing_sub_subscri_1a7e52_idx"),
            models.Index(fields=["subscription", "event_type"], name="billing_sub_subscri_96c0d3_idx"),
        ]

    def __str__(self) -> str:
        return f"SubscriptionEvent({self.subscription_id}, {self.event_type})"


class FailedSubscriptionAttempt(UUIDPrimaryKeyMixin, MetadataMixin, AppendOnlyModel, BaseModel):
    """
    A signup that failed before a Subscription row could exist.
    """

    workspace = models.ForeignKey(
        "billing.Workspace",
        on_delete=models.PROTECT,
        related_name="failed_subscription_attempts",
    )

    customer = models.ForeignKey(
        "billing.Customer",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="failed_subscription_attempts",
    )

    product = models.ForeignKey(
        "billing.Product",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="failed_subscription_attempts",
    )

    product_token = models.ForeignKey(
        "billing.ProductToken",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="failed_subscription_attempts",
    )

    wallet_address = models.CharField(max_length=42, blank=True, default="")

    error_type = models.CharField(
        max_length=40,
        choices=FailedAttemptErrorType.choices,
        db_index=True,
        help_text="Why the signup failed",
    )

    error_message = models.TextField(blank=True, default="")
    error_details = models.JSONField(default=dict, blank=True)
    delegation_signature = models.TextField(blank=True, default="")
    occurred_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ["-occurred_at"]
        verbose_name = "Failed Subscription Attempt"
        verbose_name_plural = "Failed Subscription Attempts"
        indexes = [
            models.Index(fields=["workspace", "error_type"], name="billing_fai_workspa_4d8b60_idx"),
        ]

    def __str__(self) -> str:
        return f"FailedSubscriptionAttempt({self.error_type}, {self.wallet_address})"
