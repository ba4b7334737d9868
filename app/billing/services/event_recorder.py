"""
Event recorder.

Appends to the two audit tables: SubscriptionEvent for lifecycle events of
an existing subscription, FailedSubscriptionAttempt for signups that failed
before a subscription row existed. Both tables are append-only.

The DunningEngine reads SubscriptionEvent to count consecutive failures.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from django.utils import timezone

from core.services import BaseService

from billing.models import FailedSubscriptionAttempt, SubscriptionEvent
from billing.state_machines import (
    REDEMPTION_FAILURE_EVENT_TYPES,
    SUCCESS_EVENT_TYPES,
    FailedAttemptErrorType,
)

if TYPE_CHECKING:
    from datetime import datetime

    from billing.models import Customer, Product, ProductToken, Subscription, Workspace


class EventRecorder(BaseService):
    """Append-only writer for subscription audit events."""

    @classmethod
    def record_event(
        cls,
        subscription: Subscription,
        event_type: str,
        amount_in_cents: int = 0,
        tx_hash: str | None = None,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> SubscriptionEvent:
        event = SubscriptionEvent.objects.create(
            subscription=subscription,
            event_type=event_type,
            amount_in_cents=amount_in_cents,
            transaction_hash=tx_hash or None,
            error_message=error_message,
            metadata=metadata or {},
            occurred_at=occurred_at or timezone.now(),
        )

        log = cls.get_logger().warning if error_message else cls.get_logger().info
        log(
            f"Subscription event: {event_type}",
            extra={
                "subscription_id": str(subscription.id),
                "event_type": event_type,
                "tx_hash": tx_hash,
                "amount_in_cents": amount_in_cents,
            },
        )
        return event

    @classmethod
    def record_failed_attempt(
        cls,
        workspace: Workspace,
        error_type: str,
        error_message: str,
        product: Product | None = None,
        product_token: ProductToken | None = None,
        customer: Customer | None = None,
        wallet_address: str = "",
        delegation_signature: str = "",
        error_details: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> FailedSubscriptionAttempt:
        """
        Record a signup failure that happened before the subscription existed.

        error_type is one of FailedAttemptErrorType; anything else is stored
        as the generic 'failed'.
        """
        if error_type not in FailedAttemptErrorType.values:
            error_type = FailedAttemptErrorType.OTHER

        attempt = FailedSubscriptionAttempt.objects.create(
            workspace=workspace,
            customer=customer,
            product=product,
            product_token=product_token,
            wallet_address=wallet_address or "",
            error_type=error_type,
            error_message=error_message,
            error_details=error_details or {},
            delegation_signature=delegation_signature or "",
            metadata=metadata or {},
        )

        cls.get_logger().warning(
            "Subscription attempt failed",
            extra={
                "workspace_id": str(workspace.id),
                "product_id": str(product.id) if product else None,
                "error_type": error_type,
                "wallet_address": wallet_address,
            },
        )
        return attempt

    @classmethod
    def consecutive_failures(cls, subscription: Subscription) -> int:
        """Redemption failures recorded since the last successful redemption."""
        events = SubscriptionEvent.objects.filter(subscription=subscription)
        last_success = (
            events.filter(event_type__in=SUCCESS_EVENT_TYPES)
            .order_by("-occurred_at", "-created_at")
            .values_list("occurred_at", flat=True)
            .first()
        )
        failures = events.filter(event_type__in=REDEMPTION_FAILURE_EVENT_TYPES)
        if last_success is not None:
            failures = failures.filter(occurred_at__gt=last_success)
        return failures.count()

    @classmethod
    def history(cls, subscription: Subscription):
        return SubscriptionEvent.objects.filter(subscription=subscription).order_by("occurred_at", "created_at")
