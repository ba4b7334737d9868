"""
Celery tasks for billing.

This module provides async tasks for:
- Applying recorded processor events (webhooks)
- Retrying failed processor events
- Redemption, dunning and batch sync (re-exported from billing.workers)

Usage:
    from billing.tasks import process_sync_event

    # Queue a recorded webhook for application
    process_sync_event.delay(str(payment_sync_event.id))
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task

from billing.models import PaymentSyncEvent
from billing.services import ApplyOutcome, PaymentSyncCoordinator

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

RETRY_BATCH_SIZE = 100


# =============================================================================
# Processor Event Tasks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def process_sync_event(self, payment_sync_event_id: str) -> dict:
    """
    Apply a recorded processor event.

    Idempotency and attempt counting live in
    PaymentSyncCoordinator.apply_recorded; this task only loads and
    reports. A projection failure is recorded on the event and left to
    retry_failed_sync_events rather than raised.

    Args:
        payment_sync_event_id: UUID of the PaymentSyncEvent to apply

    Returns:
        Dict with processing result status
    """
    if isinstance(payment_sync_event_id, str):
        payment_sync_event_id = UUID(payment_sync_event_id)

    logger.info(
        "Processing payment sync event",
        extra={"payment_sync_event_id": str(payment_sync_event_id)},
    )

    try:
        result = PaymentSyncCoordinator.apply_recorded(payment_sync_event_id)
    except PaymentSyncEvent.DoesNotExist:
        logger.error(
            "PaymentSyncEvent not found",
            extra={"payment_sync_event_id": str(payment_sync_event_id)},
        )
        return {"status": "not_found", "payment_sync_event_id": str(payment_sync_event_id)}

    response = {
        "status": result.outcome.value,
        "payment_sync_event_id": str(payment_sync_event_id),
    }
    if result.outcome == ApplyOutcome.FAILED:
        response["error"] = result.error
    return response


@shared_task
def retry_failed_sync_events() -> dict:
    """
    Periodic task to retry failed processor events.

    Finds failed events with attempts left (including deliveries that could
    not be routed when they arrived) and re-queues them. Rejected events
    are never retried.

    Returns:
        Dict with count of events queued for retry
    """
    failed_events = PaymentSyncCoordinator.retryable_failed_events(limit=RETRY_BATCH_SIZE)

    queued_count = 0
    for event in failed_events:
        try:
            process_sync_event.delay(str(event.id))
            queued_count += 1
            logger.info(
                "Queued failed payment sync event for retry",
                extra={
                    "payment_sync_event_id": str(event.id),
                    "webhook_event_id": event.webhook_event_id,
                    "processing_attempts": event.processing_attempts,
                },
            )
        except Exception as e:
            logger.error(
                f"Failed to queue payment sync event for retry: {e}",
                extra={"payment_sync_event_id": str(event.id)},
            )

    logger.info(
        f"Queued {queued_count} failed payment sync events for retry",
        extra={"queued_count": queued_count},
    )

    return {"queued_count": queued_count}


# =============================================================================
# Re-exported Worker Tasks
# =============================================================================
# These tasks are defined in billing.workers but re-exported here so that
# Celery autodiscover finds them.

from billing.workers import (  # noqa: E402, F401
    confirm_redemption,
    open_missing_dunning_campaigns,
    process_dunning_campaigns,
    process_scheduled_cancellations,
    process_scheduled_resumptions,
    redeem_subscription,
    run_payment_sync_session,
    run_redemption_sweep,
    send_pre_dunning_reminders,
)
