"""
Dunning worker.

Periodic tasks that move dunning campaigns forward:

Tasks:
- process_dunning_campaigns: Runs retries and final actions that are due
- send_pre_dunning_reminders: Emails customers ahead of the first retry
- open_missing_dunning_campaigns: Opens campaigns for overdue subscriptions without one
- process_scheduled_cancellations: Cancels subscriptions whose cancel_at has passed
- process_scheduled_resumptions: Resumes paused subscriptions whose pause_ends_at has passed

All tasks are safe to run concurrently: campaigns are claimed through
locked_until and reminders through their sent timestamp.
"""

from __future__ import annotations

import logging

from celery import shared_task
from django.conf import settings

from billing.services import DunningEngine, SubscriptionLedger

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

BATCH_SIZE = getattr(settings, "DUNNING_BATCH_SIZE", 100)


# =============================================================================
# Periodic Tasks
# =============================================================================


@shared_task(bind=True)
def process_dunning_campaigns(self) -> dict:
    """
    Process every campaign whose next retry or grace deadline has passed.

    Returns:
        Dict with:
        - outcomes: Count per campaign outcome
        - closed_count: Campaigns closed because the subscription ended
    """
    logger.info("Starting dunning campaign run")

    closed_count = DunningEngine.close_campaigns_for_cancelled()
    outcomes = DunningEngine.process_due_campaigns(limit=BATCH_SIZE)

    logger.info(
        "Dunning campaign run complete",
        extra={"outcomes": outcomes, "closed_count": closed_count},
    )
    return {"outcomes": outcomes, "closed_count": closed_count}


@shared_task(bind=True)
def send_pre_dunning_reminders(self) -> dict:
    sent_count = DunningEngine.send_pre_dunning_reminders(limit=BATCH_SIZE)
    if sent_count:
        logger.info(f"Sent {sent_count} pre-dunning reminders", extra={"sent_count": sent_count})
    return {"sent_count": sent_count}


@shared_task(bind=True)
def open_missing_dunning_campaigns(self) -> dict:
    """
    Open campaigns for overdue subscriptions that have none.

    Covers a worker that died between marking a subscription overdue and
    opening its campaign.
    """
    opened_count = DunningEngine.open_missing_campaigns(limit=BATCH_SIZE)
    if opened_count:
        logger.warning(
            f"Opened {opened_count} missing dunning campaigns",
            extra={"opened_count": opened_count},
        )
    return {"opened_count": opened_count}


@shared_task(bind=True)
def process_scheduled_cancellations(self) -> dict:
    cancelled_count = SubscriptionLedger.process_scheduled_cancellations()
    return {"cancelled_count": cancelled_count}


@shared_task(bind=True)
def process_scheduled_resumptions(self) -> dict:
    resumed_count = SubscriptionLedger.process_scheduled_resumptions()
    if resumed_count:
        logger.info(f"Resumed {resumed_count} paused subscriptions", extra={"resumed_count": resumed_count})
    return {"resumed_count": resumed_count}
