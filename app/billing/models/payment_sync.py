"""
Payment processor synchronization models.

This module provides models for mirroring processor state:
- WorkspaceProviderAccount: Routes a processor account id to a workspace
- PaymentSyncSession: One sync run (webhook stream or batch) for a workspace
- PaymentSyncEvent: One inbound processor event, keyed for idempotency

The unique idempotency_key on PaymentSyncEvent is the storage-level guard
against double application of replayed or multiply-delivered webhooks.

Usage:
    from billing.services import PaymentSyncCoordinator

    workspace_id = PaymentSyncCoordinator.route_inbound("acct_123", "stripe", "live")
    result = PaymentSyncCoordinator.apply_event(workspace_id, normalized_event)
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import (
    PaymentSyncEventStatus,
    PaymentSyncSessionStatus,
    PaymentSyncSessionType,
    ProviderEnvironment,
)


def empty_progress() -> dict[str, int]:
    return {"processed": 0, "applied": 0, "skipped": 0, "failed": 0, "rejected": 0}


class WorkspaceProviderAccount(UUIDPrimaryKeyMixin, MetadataMixin, BaseModel):
    """
    Maps a processor account id to a workspace within one environment.

    Inbound webhooks carry only the processor account id; this table is how
    they reach the right tenant before anything is applied.
    """

    workspace = models.ForeignKey(
        "billing.Workspace",
        on_delete=models.PROTECT,
        related_name="provider_accounts",
    )

    provider_name = models.CharField(max_length=50, help_text="Processor name (e.g., 'stripe')")
    provider_account_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Processor account identifier (e.g., acct_xxx)",
    )
    account_type = models.CharField(max_length=50, blank=True, default="standard")
    environment = models.CharField(
        max_length=10,
        choices=ProviderEnvironment.choices,
        default=ProviderEnvironment.LIVE,
    )
    is_active = models.BooleanField(default=True)
    display_name = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ["provider_name", "provider_account_id"]
        verbose_name = "Workspace Provider Account"
        verbose_name_plural = "Workspace Provider Accounts"
        constraints = [
            models.UniqueConstraint(
                fields=["provider_name", "provider_account_id", "environment"],
                name="provider_account_unique_per_environment",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.provider_name}:{self.provider_account_id} ({self.environment})"


class PaymentSyncSession(UUIDPrimaryKeyMixin, BaseModel):
    """
    One synchronization run for a workspace and processor.

    Sessions are resumable: restarting a failed session re-derives what is
    already done from its recorded PaymentSyncEvent rows.
    """

    workspace = models.ForeignKey(
        "billing.Workspace",
        on_delete=models.PROTECT,
        related_name="payment_sync_sessions",
    )
    provider_name = models.CharField(max_length=50)
    session_type = models.CharField(
        max_length=20,
        choices=PaymentSyncSessionType.choices,
        default=PaymentSyncSessionType.WEBHOOK,
    )
    status = models.CharField(
        max_length=20,
        choices=PaymentSyncSessionStatus.choices,
        default=PaymentSyncSessionStatus.PENDING,
        db_index=True,
    )
    entity_types = models.JSONField(default=list, blank=True, help_text="Entity types covered")
    config = models.JSONField(default=dict, blank=True, help_text="Run options (e.g., created_after)")
    progress = models.JSONField(default=empty_progress, help_text="Per-outcome counters")
    error_summary = models.JSONField(default=list, blank=True, help_text="Most recent errors")
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Sync Session"
        verbose_name_plural = "Payment Sync Sessions"
        indexes = [
            models.Index(fields=["workspace", "provider_name", "status"], name="billing_pay_workspa_a2e6f1_idx"),
        ]

    def __str__(self) -> str:
        return f"PaymentSyncSession({self.provider_name}, {self.session_type}, {self.status})"

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class PaymentSyncEvent(UUIDPrimaryKeyMixin, BaseModel):
    """
    One inbound processor event.

    Rows with signature_valid=False are stored REJECTED with no
    idempotency key and are never applied.
    """

    session = models.ForeignKey(
        PaymentSyncSession,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="events",
    )
    workspace = models.ForeignKey(
        "billing.Workspace",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payment_sync_events",
        help_text="Null when the delivery could not be routed",
    )

    provider_name = models.CharField(max_length=50)
    provider_account_id = models.CharField(max_length=255, blank=True, default="")
    environment = models.CharField(
        max_length=10,
        choices=ProviderEnvironment.choices,
        default=ProviderEnvironment.LIVE,
    )
    entity_type = models.CharField(max_length=50, blank=True, default="")
    external_id = models.CharField(max_length=255, blank=True, default="")
    event_type = models.CharField(max_length=100, db_index=True)
    webhook_event_id = models.CharField(max_length=255, blank=True, default="")

    idempotency_key = models.CharField(
        max_length=64,
        unique=True,
        null=True,
        blank=True,
        help_text="sha256(workspace:provider_account:webhook_event_id)",
    )

    status = models.CharField(
        max_length=20,
        choices=PaymentSyncEventStatus.choices,
        default=PaymentSyncEventStatus.PENDING,
        db_index=True,
    )
    signature_valid = models.BooleanField(default=True)
    processing_attempts = models.PositiveSmallIntegerField(default=0)

    payload = models.JSONField(default=dict, blank=True)
    error_details = models.JSONField(default=dict, blank=True)
    event_message = models.TextField(blank=True, default="")
    occurred_at = models.DateTimeField(null=True, blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Sync Event"
        verbose_name_plural = "Payment Sync Events"
        indexes = [
            models.Index(fields=["status", "processing_attempts"], name="billing_pay_status_5e9d84_idx"),
            models.Index(fields=["workspace", "entity_type", "external_id"], name="billing_pay_workspa_0f7c3b_idx"),
        ]

    def __str__(self) -> str:
        return f"PaymentSyncEvent({self.event_type}, {self.status})"

    @property
    def is_applied(self) -> bool:
        return self.status == PaymentSyncEventStatus.APPLIED

    def get_object(self) -> dict:
        """The processor object carried by the event payload."""
        data = self.payload.get("data") if isinstance(self.payload, dict) else None
        if isinstance(data, dict) and isinstance(data.get("object"), dict):
            return data["object"]
        return {}
