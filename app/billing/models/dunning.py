"""
Dunning models: configuration, campaigns and attempts.

A DunningCampaign is opened against a subscription when a redemption
fails. It follows its DunningConfiguration's retry schedule, recording one
DunningAttempt per retry, until an attempt succeeds, attempts run out (and
the final action is applied), or the subscription is canceled elsewhere.

Usage:
    from billing.services import DunningEngine

    campaign = DunningEngine.handle_redemption_failure(
        subscription, SubscriptionEventType.FAILED_REDEMPTION, "insufficient allowance"
    )
"""

from __future__ import annotations

from datetime import timedelta

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import models

from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import (
    CommunicationType,
    DunningAction,
    DunningAttemptStatus,
    DunningAttemptType,
    DunningCampaignStatus,
    DunningFinalAction,
)

DEFAULT_MAX_RETRY_ATTEMPTS = 4
DEFAULT_RETRY_INTERVAL_DAYS = [3, 7, 7, 7]
DEFAULT_GRACE_PERIOD_HOURS = 24
DEFAULT_PRE_DUNNING_DAYS = 3


def default_retry_interval_days() -> list[int]:
    return list(DEFAULT_RETRY_INTERVAL_DAYS)


def default_attempt_actions() -> list[dict]:
    return [
        {"attempt": n, "actions": [DunningAction.RETRY_PAYMENT, DunningAction.EMAIL]}
        for n in range(1, DEFAULT_MAX_RETRY_ATTEMPTS + 1)
    ]


class DunningConfiguration(UUIDPrimaryKeyMixin, BaseModel):
    """
    Retry policy for failed redemptions in one workspace.

    Fields:
        max_retry_attempts: Retries before the final action
        retry_interval_days: Days between a failure and the next retry, by attempt
        attempt_actions: [{"attempt": n, "actions": ["retry_payment", "email"]}]
        final_action: cancel, suspend or notify_only
        pre_dunning_days: Reminder lead time before the first retry
        grace_period_hours: Minimum time in OVERDUE before the final action
    """

    workspace = models.ForeignKey(
        "billing.Workspace",
        on_delete=models.PROTECT,
        related_name="dunning_configurations",
    )

    name = models.CharField(max_length=255, default="Default")
    description = models.TextField(blank=True, default="")
    is_active = models.BooleanField(default=True)
    is_default = models.BooleanField(default=False, help_text="Used for new campaigns in the workspace")

    max_retry_attempts = models.PositiveSmallIntegerField(default=DEFAULT_MAX_RETRY_ATTEMPTS)
    retry_interval_days = models.JSONField(
        default=default_retry_interval_days,
        help_text="Days to wait after each failure, indexed by attempt number",
    )
    attempt_actions = models.JSONField(default=default_attempt_actions, blank=True)
    final_action = models.CharField(
        max_length=20,
        choices=DunningFinalAction.choices,
        default=DunningFinalAction.CANCEL,
    )

    send_pre_dunning_reminder = models.BooleanField(default=True)
    pre_dunning_days = models.PositiveSmallIntegerField(default=DEFAULT_PRE_DUNNING_DAYS)
    grace_period_hours = models.PositiveIntegerField(default=DEFAULT_GRACE_PERIOD_HOURS)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Dunning Configuration"
        verbose_name_plural = "Dunning Configurations"
        constraints = [
            models.UniqueConstraint(
                fields=["workspace"],
                condition=models.Q(is_default=True),
                name="dunning_configuration_one_default_per_workspace",
            ),
            models.CheckConstraint(
                condition=models.Q(max_retry_attempts__gte=1),
                name="dunning_configuration_at_least_one_attempt",
            ),
        ]

    def __str__(self) -> str:
        return f"DunningConfiguration({self.name}, {self.workspace_id})"

    def clean(self):
        intervals = self.retry_interval_days
        if not isinstance(intervals, list) or not intervals:
            raise DjangoValidationError({"retry_interval_days": "Must be a non-empty list of days."})
        if any(not isinstance(days, int) or days < 0 for days in intervals):
            raise DjangoValidationError({"retry_interval_days": "Days must be non-negative integers."})

    def retry_delay(self, attempt_number: int) -> timedelta:
        """
        Delay before attempt_number (1-based).

        The last interval repeats when the list is shorter than the attempt count.
        """
        intervals = self.retry_interval_days or DEFAULT_RETRY_INTERVAL_DAYS
        index = min(max(attempt_number, 1) - 1, len(intervals) - 1)
        return timedelta(days=intervals[index])

    def actions_for(self, attempt_number: int) -> list[str]:
        for entry in self.attempt_actions or []:
            if entry.get("attempt") == attempt_number:
                return list(entry.get("actions", []))
        return [DunningAction.RETRY_PAYMENT]


class DunningCampaign(UUIDPrimaryKeyMixin, MetadataMixin, BaseModel):
    """
    Retry campaign for one overdue subscription.

    At most one ACTIVE campaign exists per subscription (partial unique index).
    locked_until is the claim marker used by the dunning worker.
    """

    workspace = models.ForeignKey(
        "billing.Workspace",
        on_delete=models.PROTECT,
        related_name="dunning_campaigns",
    )
    configuration = models.ForeignKey(
        DunningConfiguration,
        on_delete=models.PROTECT,
        related_name="campaigns",
    )
    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.PROTECT,
        related_name="dunning_campaigns",
    )

    status = models.CharField(
        max_length=20,
        choices=DunningCampaignStatus.choices,
        default=DunningCampaignStatus.ACTIVE,
        db_index=True,
    )

    current_attempt = models.PositiveSmallIntegerField(default=0, help_text="Retries executed so far")
    next_retry_at = models.DateTimeField(null=True, blank=True, db_index=True)
    last_retry_at = models.DateTimeField(null=True, blank=True)
    locked_until = models.DateTimeField(null=True, blank=True, help_text="Worker claim expiry")

    recovered = models.BooleanField(default=False)
    recovered_at = models.DateTimeField(null=True, blank=True)
    recovered_amount_cents = models.PositiveBigIntegerField(null=True, blank=True)

    final_action_taken = models.CharField(
        max_length=20,
        choices=DunningFinalAction.choices,
        blank=True,
        default="",
    )
    final_action_at = models.DateTimeField(null=True, blank=True)

    pre_dunning_reminder_at = models.DateTimeField(null=True, blank=True)
    pre_dunning_reminder_sent_at = models.DateTimeField(null=True, blank=True)

    original_failure_reason = models.TextField(blank=True, default="")
    original_amount_cents = models.PositiveBigIntegerField(default=0)
    currency = models.CharField(max_length=3, default="USD")
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Dunning Campaign"
        verbose_name_plural = "Dunning Campaigns"
        indexes = [
            models.Index(fields=["status", "next_retry_at"], name="billing_dun_status_7b3e90_idx"),
            models.Index(fields=["status", "pre_dunning_reminder_at"], name="billing_dun_status_c51f28_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["subscription"],
                condition=models.Q(status=DunningCampaignStatus.ACTIVE),
                name="dunning_campaign_one_active_per_subscription",
            ),
        ]

    def __str__(self) -> str:
        return f"DunningCampaign({self.subscription_id}, {self.status}, attempt {self.current_attempt})"

    @property
    def is_active(self) -> bool:
        return self.status == DunningCampaignStatus.ACTIVE

    @property
    def attempts_exhausted(self) -> bool:
        return self.current_attempt >= self.configuration.max_retry_attempts


class DunningAttempt(UUIDPrimaryKeyMixin, BaseModel):
    """
    One retry within a campaign, including its customer communication.
    """

    campaign = models.ForeignKey(
        DunningCampaign,
        on_delete=models.CASCADE,
        related_name="attempts",
    )

    attempt_number = models.PositiveSmallIntegerField()
    attempt_type = models.CharField(
        max_length=20,
        choices=DunningAttemptType.choices,
        default=DunningAttemptType.RETRY_PAYMENT,
    )
    status = models.CharField(
        max_length=20,
        choices=DunningAttemptStatus.choices,
        default=DunningAttemptStatus.PENDING,
    )

    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    payment_error = models.TextField(blank=True, default="")
    transaction_hash = models.CharField(max_length=66, blank=True, default="")

    communication_type = models.CharField(
        max_length=20,
        choices=CommunicationType.choices,
        blank=True,
        default="",
    )
    communication_sent = models.BooleanField(default=False)
    communication_error = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["campaign", "attempt_number"]
        verbose_name = "Dunning Attempt"
        verbose_name_plural = "Dunning Attempts"
        constraints = [
            models.UniqueConstraint(
                fields=["campaign", "attempt_number"],
                name="dunning_attempt_unique_number",
            ),
        ]

    def __str__(self) -> str:
        return f"DunningAttempt({self.campaign_id}, #{self.attempt_number}, {self.status})"
