"""
Workers for background billing processing.

This module contains Celery tasks for:
- RedemptionSweeper: Claims due subscriptions and redeems them on chain
- DunningWorker: Retries, reminders, final actions, scheduled cancellations and resumptions
- SyncWorker: Batch syncs against payment processors

Usage:
    from billing.workers import (
        run_redemption_sweep,
        redeem_subscription,
        process_dunning_campaigns,
        run_payment_sync_session,
    )

    # Trigger a sweep manually
    run_redemption_sweep.delay()

    # Start an initial sync for a workspace
    run_payment_sync_session.delay(str(workspace_id), "stripe")
"""

from billing.workers.dunning_worker import (
    open_missing_dunning_campaigns,
    process_dunning_campaigns,
    process_scheduled_cancellations,
    process_scheduled_resumptions,
    send_pre_dunning_reminders,
)
from billing.workers.redemption_sweeper import (
    confirm_redemption,
    redeem_subscription,
    run_redemption_sweep,
)
from billing.workers.sync_worker import run_payment_sync_session

__all__ = [
    # Redemption Sweeper
    "confirm_redemption",
    "redeem_subscription",
    "run_redemption_sweep",
    # Dunning Worker
    "open_missing_dunning_campaigns",
    "process_dunning_campaigns",
    "process_scheduled_cancellations",
    "process_scheduled_resumptions",
    "send_pre_dunning_reminders",
    # Sync Worker
    "run_payment_sync_session",
]
