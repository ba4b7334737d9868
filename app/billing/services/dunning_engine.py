"""
Dunning engine: retries for failed redemptions.

Campaign lifecycle:
    open (ACTIVE, current_attempt=0)
      -> retry 1 .. retry N (ACTIVE, current_attempt=n)
      -> resolved  (COMPLETED, recovered=True)       a retry redeemed
      -> exhausted (COMPLETED, final_action_taken)  N retries failed
      -> CANCELLED                                  subscription ended elsewhere

Exhaustion:
    A campaign records how many consecutive failures the event log held
    when it opened (metadata["failures_at_open"]). Retries are used up once
    current_attempt, or the failures logged since then, reach
    max_retry_attempts.

Timing:
    Retry n runs retry_interval_days[n-1] days after the previous failure,
    not after the original due date, so repeated failures stretch the
    schedule instead of piling up. The final action waits until the
    subscription has been overdue for grace_period_hours, even when retries
    ran out sooner.

Concurrency:
    Workers claim a campaign with a conditional UPDATE on locked_until.
    The final action is applied at most once: the campaign leaves ACTIVE in
    the same transaction.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Exists, OuterRef, Q
from django.utils import timezone

from core.services import BaseService

from billing.intervals import add_interval
from billing.models import DunningAttempt, DunningCampaign, DunningConfiguration, Subscription, SubscriptionEvent
from billing.models.subscription import LIVE
from billing.notifications import DunningNotifier
from billing.services.event_recorder import EventRecorder
from billing.services.subscription_ledger import RedemptionOutcome, SubscriptionLedger
from billing.state_machines import (
    REDEMPTION_FAILURE_EVENT_TYPES,
    CommunicationType,
    DunningAction,
    DunningAttemptStatus,
    DunningCampaignStatus,
    DunningFinalAction,
    SubscriptionEventType,
    SubscriptionStatus,
)

if TYPE_CHECKING:
    from billing.models import Workspace

CAMPAIGN_LOCK_TTL = timedelta(minutes=10)


class CampaignOutcome:
    RECOVERED = "recovered"
    RETRY_FAILED = "retry_failed"
    FINAL_ACTION = "final_action"
    WAITING_GRACE = "waiting_grace"
    DEFERRED = "deferred"
    CLOSED = "closed"
    SKIPPED = "skipped"


class DunningEngine(BaseService):
    """
    Opens, advances and closes dunning campaigns.

    All methods are class methods - no instance state is maintained.
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @classmethod
    def get_default_configuration(cls, workspace: Workspace) -> DunningConfiguration:
        """Workspace default, created with stock settings on first use."""
        try:
            with transaction.atomic():
                configuration, created = DunningConfiguration.objects.get_or_create(
                    workspace=workspace,
                    is_default=True,
                    defaults={"name": "Default"},
                )
        except IntegrityError:
            configuration, created = DunningConfiguration.objects.get(workspace=workspace, is_default=True), False
        if created:
            cls.get_logger().info(
                "Created default dunning configuration",
                extra={"workspace_id": str(workspace.id), "configuration_id": str(configuration.id)},
            )
        return configuration

    # =========================================================================
    # Opening Campaigns
    # =========================================================================

    @classmethod
    def handle_redemption_failure(
        cls,
        subscription: Subscription,
        event_type: str,
        error_message: str = "",
        now: datetime | None = None,
    ) -> DunningCampaign | None:
        """
        Open a campaign for an overdue subscription.

        Returns the existing campaign when one is already active; retries
        inside a campaign are advanced by process_campaign. Returns None
        when the subscription is not overdue, or when this overdue episode
        already ended with a notify_only final action.
        """
        now = now or timezone.now()
        logger = cls.get_logger()
        log_context = {"subscription_id": str(subscription.id), "event_type": event_type}

        subscription.refresh_from_db()
        if subscription.status != SubscriptionStatus.OVERDUE or not subscription.is_delegation_backed:
            return None

        existing = DunningCampaign.objects.filter(
            subscription=subscription,
            status=DunningCampaignStatus.ACTIVE,
        ).first()
        if existing is not None:
            return existing

        if cls._episode_already_dunned(subscription):
            logger.info("Overdue episode already ended with notify_only", extra=log_context)
            return None

        configuration = cls.get_default_configuration(subscription.workspace)
        if not configuration.is_active:
            logger.info("Dunning disabled for workspace", extra=log_context)
            return None

        next_retry_at = now + configuration.retry_delay(1)
        reminder_at = None
        if configuration.send_pre_dunning_reminder:
            reminder_at = max(now, next_retry_at - timedelta(days=configuration.pre_dunning_days))

        price = subscription.price
        try:
            with transaction.atomic():
                campaign = DunningCampaign.objects.create(
                    workspace=subscription.workspace,
                    configuration=configuration,
                    subscription=subscription,
                    next_retry_at=next_retry_at,
                    pre_dunning_reminder_at=reminder_at,
                    original_failure_reason=error_message or event_type,
                    original_amount_cents=price.unit_amount_in_pennies,
                    currency=price.currency,
                    metadata={
                        "opened_by": event_type,
                        "failures_at_open": EventRecorder.consecutive_failures(subscription),
                    },
                )
        except IntegrityError:
            # Another worker opened it first
            return DunningCampaign.objects.get(subscription=subscription, status=DunningCampaignStatus.ACTIVE)

        logger.info(
            "Dunning campaign opened",
            extra={**log_context, "campaign_id": str(campaign.id), "next_retry_at": next_retry_at.isoformat()},
        )
        return campaign

    @staticmethod
    def _episode_already_dunned(subscription: Subscription) -> bool:
        if subscription.overdue_since is None:
            return False
        return DunningCampaign.objects.filter(
            subscription=subscription,
            final_action_taken=DunningFinalAction.NOTIFY_ONLY,
            final_action_at__gte=subscription.overdue_since,
        ).exists()

    @classmethod
    def open_missing_campaigns(cls, now: datetime | None = None, limit: int | None = None) -> int:
        """Open campaigns for overdue subscriptions that slipped through without one."""
        now = now or timezone.now()
        limit = limit or getattr(settings, "DUNNING_BATCH_SIZE", 100)

        active_campaign = DunningCampaign.objects.filter(
            subscription=OuterRef("pk"),
            status=DunningCampaignStatus.ACTIVE,
        )
        notified_episode = DunningCampaign.objects.filter(
            subscription=OuterRef("pk"),
            final_action_taken=DunningFinalAction.NOTIFY_ONLY,
            final_action_at__gte=OuterRef("overdue_since"),
        )
        orphans = (
            Subscription.objects.filter(status=SubscriptionStatus.OVERDUE, delegation__isnull=False)
            .filter(~Exists(active_campaign), ~Exists(notified_episode))
            .select_related("workspace", "price")[:limit]
        )

        opened = 0
        for subscription in orphans:
            last_failure = (
                SubscriptionEvent.objects.filter(
                    subscription=subscription,
                    event_type__in=REDEMPTION_FAILURE_EVENT_TYPES,
                )
                .order_by("-occurred_at", "-created_at")
                .first()
            )
            campaign = cls.handle_redemption_failure(
                subscription,
                last_failure.event_type if last_failure else SubscriptionEventType.FAILED_REDEMPTION,
                (last_failure.error_message or "") if last_failure else "",
                now=now,
            )
            if campaign is not None:
                opened += 1

        if opened:
            cls.get_logger().info("Opened missing dunning campaigns", extra={"count": opened})
        return opened

    # =========================================================================
    # Running Campaigns
    # =========================================================================

    @classmethod
    def _claim(cls, campaign_id: uuid.UUID, now: datetime) -> bool:
        updated = (
            DunningCampaign.objects.filter(id=campaign_id, status=DunningCampaignStatus.ACTIVE)
            .filter(Q(locked_until__isnull=True) | Q(locked_until__lte=now))
            .update(locked_until=now + CAMPAIGN_LOCK_TTL)
        )
        return updated == 1

    @classmethod
    def process_due_campaigns(cls, now: datetime | None = None, limit: int | None = None) -> dict[str, int]:
        """Run every active campaign whose next retry (or grace deadline) has come."""
        now = now or timezone.now()
        limit = limit or getattr(settings, "DUNNING_BATCH_SIZE", 100)

        due_ids = list(
            DunningCampaign.objects.filter(
                status=DunningCampaignStatus.ACTIVE,
                next_retry_at__lte=now,
            )
            .filter(Q(locked_until__isnull=True) | Q(locked_until__lte=now))
            .order_by("next_retry_at")
            .values_list("id", flat=True)[:limit]
        )

        counts: dict[str, int] = {}
        for campaign_id in due_ids:
            if not cls._claim(campaign_id, now):
                continue
            campaign = DunningCampaign.objects.select_related(
                "configuration", "subscription__price", "subscription__customer", "subscription__product"
            ).get(id=campaign_id)
            outcome = cls.process_campaign(campaign, now)
            counts[outcome] = counts.get(outcome, 0) + 1

        if counts:
            cls.get_logger().info("Dunning campaigns processed", extra={"outcomes": counts})
        return counts

    @classmethod
    def process_campaign(cls, campaign: DunningCampaign, now: datetime | None = None) -> str:
        """
        Execute the next step of a campaign: a retry, or the final action.

        The caller is expected to hold the campaign claim (locked_until);
        it is released here.
        """
        now = now or timezone.now()
        logger = cls.get_logger()
        log_context = {"campaign_id": str(campaign.id), "subscription_id": str(campaign.subscription_id)}

        campaign.refresh_from_db()
        if not campaign.is_active:
            return CampaignOutcome.SKIPPED

        subscription = campaign.subscription
        subscription.refresh_from_db()
        if subscription.status not in LIVE:
            cls._close(campaign, DunningCampaignStatus.CANCELLED, now)
            logger.info("Campaign closed, subscription no longer live", extra=log_context)
            return CampaignOutcome.CLOSED

        if cls._exhausted(campaign, subscription):
            return cls._apply_final_action_if_due(campaign, subscription, now)

        configuration = campaign.configuration
        attempt_number = campaign.current_attempt + 1
        actions = configuration.actions_for(attempt_number)

        attempt = DunningAttempt.objects.create(
            campaign=campaign,
            attempt_number=attempt_number,
            status=DunningAttemptStatus.PROCESSING,
            started_at=now,
        )

        if DunningAction.RETRY_PAYMENT in actions:
            result = SubscriptionLedger.redeem(subscription.id, now=now, include_dunning=True)
        else:
            result = None

        if result is not None and result.outcome == RedemptionOutcome.SKIPPED:
            attempt.delete()
            cls._release(campaign)
            logger.info("Dunning retry deferred", extra={**log_context, "reason": result.reason})
            return CampaignOutcome.DEFERRED

        if result is not None and result.outcome == RedemptionOutcome.EXPIRED:
            attempt.status = DunningAttemptStatus.FAILED
            attempt.payment_error = result.reason
            attempt.completed_at = now
            attempt.save()
            cls._close(campaign, DunningCampaignStatus.CANCELLED, now)
            return CampaignOutcome.CLOSED

        if result is not None and result.succeeded:
            attempt.status = DunningAttemptStatus.SUCCESS
            attempt.transaction_hash = result.tx_hash or ""
            attempt.completed_at = now
            attempt.save()

            campaign.current_attempt = attempt_number
            campaign.last_retry_at = now
            campaign.recovered = True
            campaign.recovered_at = now
            campaign.recovered_amount_cents = campaign.original_amount_cents
            cls._close(campaign, DunningCampaignStatus.COMPLETED, now)
            logger.info("Dunning campaign recovered", extra={**log_context, "attempt": attempt_number})
            return CampaignOutcome.RECOVERED

        attempt.status = DunningAttemptStatus.FAILED
        attempt.payment_error = result.error.message if result is not None else "payment retry not scheduled"
        attempt.completed_at = now

        campaign.current_attempt = attempt_number
        campaign.last_retry_at = now
        if cls._exhausted(campaign, subscription):
            campaign.next_retry_at = max(now, cls._grace_deadline(subscription, configuration, now))
        else:
            campaign.next_retry_at = now + configuration.retry_delay(attempt_number + 1)
        campaign.locked_until = None
        campaign.save()

        cls._communicate(campaign, attempt, actions)
        attempt.save()

        logger.warning(
            "Dunning retry failed",
            extra={**log_context, "attempt": attempt_number, "error": attempt.payment_error},
        )

        if cls._exhausted(campaign, subscription):
            return cls._apply_final_action_if_due(campaign, subscription, now)
        return CampaignOutcome.RETRY_FAILED

    @staticmethod
    def _grace_deadline(subscription: Subscription, configuration: DunningConfiguration, now: datetime) -> datetime:
        overdue_since = subscription.overdue_since or now
        return overdue_since + timedelta(hours=configuration.grace_period_hours)

    @staticmethod
    def _failed_retries(campaign: DunningCampaign, subscription: Subscription) -> int:
        """Redemption failures logged since the campaign opened."""
        at_open = campaign.metadata.get("failures_at_open")
        if at_open is None:
            return campaign.current_attempt
        return max(0, EventRecorder.consecutive_failures(subscription) - at_open)

    @classmethod
    def _exhausted(cls, campaign: DunningCampaign, subscription: Subscription) -> bool:
        """
        Retries are used up by attempt count, or by failures in the event log.

        The log also sees failures the campaign did not drive itself, such
        as a reverted redemption.
        """
        if campaign.attempts_exhausted:
            return True
        return cls._failed_retries(campaign, subscription) >= campaign.configuration.max_retry_attempts

    @classmethod
    def _apply_final_action_if_due(cls, campaign: DunningCampaign, subscription: Subscription, now: datetime) -> str:
        configuration = campaign.configuration
        deadline = cls._grace_deadline(subscription, configuration, now)
        if now < deadline:
            campaign.next_retry_at = deadline
            campaign.locked_until = None
            campaign.save(update_fields=["next_retry_at", "locked_until", "updated_at"])
            return CampaignOutcome.WAITING_GRACE

        final_action = configuration.final_action
        with transaction.atomic():
            locked = DunningCampaign.objects.select_for_update().get(id=campaign.id)
            if not locked.is_active:
                return CampaignOutcome.SKIPPED
            campaign.final_action_taken = final_action
            campaign.final_action_at = now
            cls._close(campaign, DunningCampaignStatus.COMPLETED, now)

            if final_action == DunningFinalAction.CANCEL:
                SubscriptionLedger.cancel(subscription.id, reason="dunning_exhausted", now=now)
            elif final_action == DunningFinalAction.SUSPEND:
                SubscriptionLedger.suspend(subscription.id, reason="dunning_exhausted", now=now)
            else:
                cls._reschedule_after_notice(subscription, now)

        DunningNotifier.send_final_notice(campaign, final_action)
        cls.get_logger().warning(
            "Dunning final action applied",
            extra={
                "campaign_id": str(campaign.id),
                "subscription_id": str(subscription.id),
                "final_action": final_action,
            },
        )
        return CampaignOutcome.FINAL_ACTION

    @staticmethod
    def _reschedule_after_notice(subscription: Subscription, now: datetime) -> None:
        """notify_only: stay overdue and try again one interval from now."""
        subscription = Subscription.objects.select_for_update().select_related("price").get(id=subscription.id)
        if subscription.status != SubscriptionStatus.OVERDUE:
            return
        interval = subscription.price.interval_type
        subscription.next_redemption_date = add_interval(now, interval) if interval else now
        subscription.save(update_fields=["next_redemption_date"])

    @classmethod
    def _communicate(cls, campaign: DunningCampaign, attempt: DunningAttempt, actions: list[str]) -> None:
        """Record the attempt's customer communication on the attempt row."""
        if DunningAction.EMAIL in actions:
            sent, error = DunningNotifier.send_payment_failed(campaign, attempt.attempt_number)
            attempt.communication_type = CommunicationType.EMAIL
            attempt.communication_sent = sent
            attempt.communication_error = error
        elif DunningAction.IN_APP in actions:
            attempt.communication_type = CommunicationType.IN_APP
            attempt.communication_sent = True

    @staticmethod
    def _close(campaign: DunningCampaign, status: str, now: datetime) -> None:
        campaign.status = status
        campaign.completed_at = now
        campaign.next_retry_at = None
        campaign.locked_until = None
        campaign.save()

    @staticmethod
    def _release(campaign: DunningCampaign) -> None:
        DunningCampaign.objects.filter(id=campaign.id).update(locked_until=None)

    # =========================================================================
    # Reminders & Cleanup
    # =========================================================================

    @classmethod
    def send_pre_dunning_reminders(cls, now: datetime | None = None, limit: int | None = None) -> int:
        """
        Remind customers before the first retry. At most once per campaign:
        the sent timestamp is claimed before the email goes out.
        """
        now = now or timezone.now()
        limit = limit or getattr(settings, "DUNNING_BATCH_SIZE", 100)

        due_ids = list(
            DunningCampaign.objects.filter(
                status=DunningCampaignStatus.ACTIVE,
                current_attempt=0,
                pre_dunning_reminder_at__lte=now,
                pre_dunning_reminder_sent_at__isnull=True,
            ).values_list("id", flat=True)[:limit]
        )

        sent = 0
        for campaign_id in due_ids:
            claimed = DunningCampaign.objects.filter(
                id=campaign_id,
                pre_dunning_reminder_sent_at__isnull=True,
            ).update(pre_dunning_reminder_sent_at=now)
            if not claimed:
                continue
            campaign = DunningCampaign.objects.select_related(
                "configuration", "subscription__customer", "subscription__product"
            ).get(id=campaign_id)
            ok, _error = DunningNotifier.send_pre_dunning_reminder(campaign)
            if ok:
                sent += 1
        return sent

    @classmethod
    def close_campaigns_for_cancelled(cls, now: datetime | None = None) -> int:
        """Close active campaigns whose subscription ended outside dunning."""
        now = now or timezone.now()
        closed = (
            DunningCampaign.objects.filter(status=DunningCampaignStatus.ACTIVE)
            .exclude(subscription__status__in=LIVE)
            .update(
                status=DunningCampaignStatus.CANCELLED,
                completed_at=now,
                next_retry_at=None,
                locked_until=None,
            )
        )
        if closed:
            cls.get_logger().info("Closed campaigns for ended subscriptions", extra={"count": closed})
        return closed
