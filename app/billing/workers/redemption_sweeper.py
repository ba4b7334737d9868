"""
Redemption sweeper for due subscriptions.

This module provides Celery tasks that drive recurring redemptions:

Tasks:
- run_redemption_sweep: Periodic task that claims due subscriptions and queues them
- redeem_subscription: Redeems one claimed subscription and hands failures to dunning
- confirm_redemption: Reconciles an asynchronous chain confirmation

Usage:
    # Typically called via celery-beat schedule
    from billing.workers import run_redemption_sweep

    run_redemption_sweep.delay()

    # Redeem a specific subscription (takes its own claim)
    redeem_subscription.delay(str(subscription.id))
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task
from django.conf import settings

from billing.exceptions import SubscriptionNotFoundError
from billing.services import DunningEngine, SubscriptionLedger
from billing.state_machines import SubscriptionStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum subscriptions claimed per sweep
BATCH_SIZE = getattr(settings, "REDEMPTION_BATCH_SIZE", 100)


# =============================================================================
# Periodic Task: Sweep Due Subscriptions
# =============================================================================


@shared_task(bind=True)
def run_redemption_sweep(self) -> dict:
    """
    Claim due subscriptions and queue a redemption task for each.

    Claims are taken here so that concurrent sweeps never queue the same
    subscription twice. The claim token travels with the task; a claim that
    outlives its TTL is released implicitly and picked up by a later sweep.

    Returns:
        Dict with:
        - queued_count: Number of subscriptions queued for redemption
    """
    logger.info("Starting redemption sweep")

    due = SubscriptionLedger.schedule_due(limit=BATCH_SIZE)

    queued_count = 0
    for subscription in due:
        try:
            redeem_subscription.delay(str(subscription.id), str(subscription.processing_token))
            queued_count += 1
        except Exception as e:
            SubscriptionLedger.release_claim(subscription.id, subscription.processing_token)
            logger.error(
                f"Failed to queue subscription for redemption: {e}",
                extra={
                    "subscription_id": str(subscription.id),
                    "error": str(e),
                },
            )

    logger.info(
        f"Redemption sweep complete: queued {queued_count} subscriptions",
        extra={"queued_count": queued_count, "claimed_count": len(due)},
    )

    return {"queued_count": queued_count}


# =============================================================================
# Individual Redemption Task
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def redeem_subscription(self, subscription_id: str, claim_token: str | None = None) -> dict:
    """
    Redeem one subscription period.

    Args:
        subscription_id: UUID of the Subscription to redeem
        claim_token: Claim taken by the sweep; when omitted the claim is
            taken here

    Returns:
        Dict with:
        - status: One of "succeeded", "failed", "skipped", "expired", "not_found"
        - subscription_id: The subscription processed
        - tx_hash: Transaction hash on success
        - error / error_code: Failure details
        - campaign_id: Dunning campaign opened for a failure
    """
    try:
        subscription_uuid = UUID(str(subscription_id))
        token_uuid = UUID(str(claim_token)) if claim_token else None
    except ValueError:
        logger.error(f"Invalid redemption task arguments: {subscription_id}")
        return {"status": "not_found", "subscription_id": str(subscription_id), "error": "Invalid UUID format"}

    try:
        result = SubscriptionLedger.redeem(subscription_uuid, claim_token=token_uuid)
    except SubscriptionNotFoundError:
        logger.warning("Subscription not found", extra={"subscription_id": str(subscription_id)})
        return {"status": "not_found", "subscription_id": str(subscription_id)}

    response = {"status": result.outcome.value, "subscription_id": str(subscription_id)}

    if result.succeeded:
        response["tx_hash"] = result.tx_hash
        return response

    if result.failed:
        response["error"] = result.error.message
        response["error_code"] = result.error.error_code
        if result.subscription.status == SubscriptionStatus.OVERDUE:
            campaign = DunningEngine.handle_redemption_failure(
                result.subscription,
                result.error.event_type,
                result.error.message,
            )
            if campaign is not None:
                response["campaign_id"] = str(campaign.id)
        return response

    response["reason"] = result.reason
    return response


# =============================================================================
# Confirmation Task
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def confirm_redemption(self, tx_hash: str, confirmed: bool) -> dict:
    """Record the chain's final verdict on a submitted redemption."""
    event = SubscriptionLedger.confirm_redemption(tx_hash, confirmed)
    if event is None:
        return {"status": "unknown_transaction", "tx_hash": tx_hash}
    return {
        "status": "confirmed" if confirmed else "reverted",
        "tx_hash": tx_hash,
        "subscription_id": str(event.subscription_id),
    }
