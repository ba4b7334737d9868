"""
Tests for DunningEngine.

Tests cover:
- Opening campaigns (once per overdue episode, respecting configuration)
- Retry schedule measured from the previous failure
- Exhaustion and the final action (cancel, suspend, notify_only), applied once
- Exhaustion counted from the event log
- Grace period before the final action
- Recovery (a late one starts a fresh period), deferral on claim contention,
  closing ended subscriptions
- Pre-dunning reminders sent at most once
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from billing.intervals import add_interval
from billing.models import DunningAttempt, DunningCampaign, DunningConfiguration, Subscription
from billing.services import DunningEngine, EventRecorder, SubscriptionLedger
from billing.services.dunning_engine import CampaignOutcome
from billing.state_machines import (
    CommunicationType,
    DunningAttemptStatus,
    DunningCampaignStatus,
    DunningFinalAction,
    IntervalType,
    SubscriptionEventType,
    SubscriptionStatus,
)
from billing.tests.factories import (
    DelegationRecordFactory,
    DunningCampaignFactory,
    DunningConfigurationFactory,
    PriceFactory,
    SubscriptionFactory,
)


def get_fresh(subscription) -> Subscription:
    return Subscription.objects.get(id=subscription.id)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def started_at():
    return timezone.now()


@pytest.fixture
def overdue_subscription(workspace, customer, started_at):
    return SubscriptionFactory(
        workspace=workspace,
        customer=customer,
        status=SubscriptionStatus.OVERDUE,
        overdue_since=started_at,
        next_redemption_date=started_at,
    )


@pytest.fixture
def open_campaign(overdue_subscription, dunning_configuration, started_at):
    def open_():
        return DunningEngine.handle_redemption_failure(
            overdue_subscription,
            SubscriptionEventType.FAILED_REDEMPTION,
            "insufficient allowance",
            now=started_at,
        )

    return open_


# =============================================================================
# Opening Campaigns
# =============================================================================


@pytest.mark.django_db
class TestHandleRedemptionFailure:
    """Tests for handle_redemption_failure."""

    def test_opens_campaign(self, open_campaign, overdue_subscription, started_at):
        """Should schedule the first retry one interval after the failure."""
        campaign = open_campaign()

        assert campaign.status == DunningCampaignStatus.ACTIVE
        assert campaign.current_attempt == 0
        assert campaign.next_retry_at == started_at + timedelta(days=1)
        assert campaign.pre_dunning_reminder_at == started_at
        assert campaign.original_failure_reason == "insufficient allowance"
        assert campaign.original_amount_cents == 1000

    def test_one_campaign_per_episode(self, open_campaign):
        """Should return the active campaign instead of opening another."""
        first = open_campaign()
        second = open_campaign()

        assert first == second
        assert DunningCampaign.objects.count() == 1

    def test_not_overdue(self, subscription, dunning_configuration):
        """Should ignore subscriptions that are not overdue."""
        assert DunningEngine.handle_redemption_failure(subscription, SubscriptionEventType.FAILED_REDEMPTION) is None

    def test_processor_owned(self, workspace, dunning_configuration):
        """Should never dun processor-owned subscriptions."""
        subscription = SubscriptionFactory(
            workspace=workspace,
            processor_owned=True,
            status=SubscriptionStatus.OVERDUE,
        )

        assert DunningEngine.handle_redemption_failure(subscription, SubscriptionEventType.FAILED_REDEMPTION) is None

    def test_inactive_configuration(self, overdue_subscription, workspace):
        """Should not open a campaign when dunning is disabled."""
        DunningConfigurationFactory(workspace=workspace, is_active=False)

        result = DunningEngine.handle_redemption_failure(
            overdue_subscription, SubscriptionEventType.FAILED_TRANSACTION
        )

        assert result is None

    def test_default_configuration_created(self, overdue_subscription, workspace):
        """Should create a stock configuration on first use."""
        campaign = DunningEngine.handle_redemption_failure(
            overdue_subscription, SubscriptionEventType.FAILED_TRANSACTION
        )

        configuration = DunningConfiguration.objects.get(workspace=workspace)
        assert configuration.is_default
        assert campaign.configuration == configuration

    def test_open_missing_campaigns(self, overdue_subscription, dunning_configuration):
        """Should open campaigns for overdue subscriptions without one."""
        assert DunningEngine.open_missing_campaigns() == 1
        assert DunningEngine.open_missing_campaigns() == 0
        assert DunningCampaign.objects.filter(subscription=overdue_subscription).exists()


# =============================================================================
# Retry Schedule & Exhaustion
# =============================================================================


@pytest.mark.django_db
class TestRetrySchedule:
    """Tests for retries and the final action."""

    def test_exhaustion_cancels_once(self, open_campaign, overdue_subscription, redeemer, started_at, mailoutbox):
        """Should retry exactly three times, then cancel once."""
        campaign = open_campaign()
        redeemer.reject().reject().reject()

        first = started_at + timedelta(days=1)
        assert DunningEngine.process_campaign(campaign, first) == CampaignOutcome.RETRY_FAILED
        campaign.refresh_from_db()
        assert campaign.next_retry_at == first + timedelta(days=2)

        second = first + timedelta(days=2)
        assert DunningEngine.process_campaign(campaign, second) == CampaignOutcome.RETRY_FAILED
        campaign.refresh_from_db()
        assert campaign.next_retry_at == second + timedelta(days=4)

        third = second + timedelta(days=4)
        assert DunningEngine.process_campaign(campaign, third) == CampaignOutcome.FINAL_ACTION
        assert DunningEngine.process_campaign(campaign, third) == CampaignOutcome.SKIPPED

        campaign.refresh_from_db()
        assert campaign.status == DunningCampaignStatus.COMPLETED
        assert campaign.final_action_taken == DunningFinalAction.CANCEL
        assert campaign.current_attempt == 3
        assert not campaign.recovered

        subscription = get_fresh(overdue_subscription)
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.cancellation_reason == "dunning_exhausted"

        assert redeemer.call_count == 3
        assert DunningAttempt.objects.filter(campaign=campaign, status=DunningAttemptStatus.FAILED).count() == 3
        subjects = [message.subject for message in mailoutbox]
        assert sum(subject.startswith("Payment failed") for subject in subjects) == 3
        assert sum(subject.startswith("Action required") for subject in subjects) == 1

    def test_attempt_records_communication(self, open_campaign, redeemer, started_at, mailoutbox):
        """Should note the email on the attempt row."""
        campaign = open_campaign()
        redeemer.reject("insufficient allowance")

        DunningEngine.process_campaign(campaign, started_at + timedelta(days=1))

        attempt = DunningAttempt.objects.get(campaign=campaign)
        assert attempt.attempt_number == 1
        assert attempt.payment_error == "insufficient allowance"
        assert attempt.communication_type == CommunicationType.EMAIL
        assert attempt.communication_sent
        assert mailoutbox[0].to == [get_fresh(campaign.subscription).customer.email]

    def test_recovery(self, open_campaign, overdue_subscription, redeemer, started_at):
        """Should close the campaign as recovered when a retry redeems."""
        campaign = open_campaign()
        redeemer.reject().succeed("0xrecovered")

        DunningEngine.process_campaign(campaign, started_at + timedelta(days=1))
        outcome = DunningEngine.process_campaign(campaign, started_at + timedelta(days=3))

        assert outcome == CampaignOutcome.RECOVERED
        campaign.refresh_from_db()
        assert campaign.status == DunningCampaignStatus.COMPLETED
        assert campaign.recovered
        assert campaign.recovered_amount_cents == 1000
        subscription = get_fresh(overdue_subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.overdue_since is None
        assert DunningAttempt.objects.get(campaign=campaign, attempt_number=2).transaction_hash == "0xrecovered"

    def test_late_recovery_schedules_next_period_ahead(self, workspace, customer, dunning_configuration, redeemer):
        """Should schedule the next weekly charge a week after recovery, with no backlog."""
        missed_at = timezone.now() - timedelta(days=20)
        subscription = SubscriptionFactory(
            workspace=workspace,
            customer=customer,
            price=PriceFactory(product__workspace=workspace, interval_type=IntervalType.WEEK),
            status=SubscriptionStatus.OVERDUE,
            overdue_since=missed_at,
            next_redemption_date=missed_at,
        )
        campaign = DunningEngine.handle_redemption_failure(
            subscription, SubscriptionEventType.FAILED_REDEMPTION, now=missed_at
        )
        recovered_at = missed_at + timedelta(days=19)

        assert DunningEngine.process_campaign(campaign, recovered_at) == CampaignOutcome.RECOVERED

        subscription = get_fresh(subscription)
        assert subscription.current_period_start == recovered_at
        assert subscription.next_redemption_date == recovered_at + timedelta(days=7)
        assert subscription.next_redemption_date > recovered_at
        assert SubscriptionLedger.schedule_due(recovered_at + timedelta(minutes=1)) == []
        assert redeemer.call_count == 1

    def test_failures_at_open_recorded(self, overdue_subscription, dunning_configuration, started_at):
        """Should note the failures already logged when the campaign opens."""
        EventRecorder.record_event(
            overdue_subscription, SubscriptionEventType.FAILED_REDEMPTION, occurred_at=started_at
        )

        campaign = DunningEngine.handle_redemption_failure(
            overdue_subscription, SubscriptionEventType.FAILED_REDEMPTION, now=started_at
        )

        assert campaign.metadata["failures_at_open"] == 1

    def test_exhaustion_from_event_log(self, open_campaign, overdue_subscription, redeemer, started_at, mailoutbox):
        """Should apply the final action once the log holds enough failures since opening."""
        campaign = open_campaign()
        for hours in (1, 2, 3):
            EventRecorder.record_event(
                overdue_subscription,
                SubscriptionEventType.FAILED_TRANSACTION,
                occurred_at=started_at + timedelta(hours=hours),
            )

        outcome = DunningEngine.process_campaign(campaign, started_at + timedelta(days=1))

        assert outcome == CampaignOutcome.FINAL_ACTION
        assert redeemer.call_count == 0
        campaign.refresh_from_db()
        assert campaign.current_attempt == 0
        assert campaign.final_action_taken == DunningFinalAction.CANCEL
        assert get_fresh(overdue_subscription).status == SubscriptionStatus.CANCELED

    def test_grace_period(self, overdue_subscription, workspace, redeemer, started_at):
        """Should hold the final action until the grace period ends."""
        DunningConfigurationFactory(workspace=workspace, max_retry_attempts=1, grace_period_hours=72)
        campaign = DunningEngine.handle_redemption_failure(
            overdue_subscription, SubscriptionEventType.FAILED_REDEMPTION, now=started_at
        )
        redeemer.reject()

        outcome = DunningEngine.process_campaign(campaign, started_at + timedelta(days=1))

        assert outcome == CampaignOutcome.WAITING_GRACE
        campaign.refresh_from_db()
        assert campaign.next_retry_at == started_at + timedelta(hours=72)
        assert get_fresh(overdue_subscription).status == SubscriptionStatus.OVERDUE

        outcome = DunningEngine.process_campaign(campaign, started_at + timedelta(hours=72))

        assert outcome == CampaignOutcome.FINAL_ACTION
        assert redeemer.call_count == 1
        assert get_fresh(overdue_subscription).status == SubscriptionStatus.CANCELED

    def test_suspend_final_action(self, overdue_subscription, workspace, redeemer, started_at):
        """Should suspend instead of cancelling."""
        DunningConfigurationFactory(workspace=workspace, max_retry_attempts=1, final_action=DunningFinalAction.SUSPEND)
        campaign = DunningEngine.handle_redemption_failure(
            overdue_subscription, SubscriptionEventType.FAILED_REDEMPTION, now=started_at
        )
        redeemer.reject()

        DunningEngine.process_campaign(campaign, started_at + timedelta(days=1))

        assert get_fresh(overdue_subscription).status == SubscriptionStatus.SUSPENDED

    def test_notify_only_final_action(self, overdue_subscription, workspace, redeemer, started_at):
        """Should stay overdue, retry an interval later and not reopen dunning."""
        DunningConfigurationFactory(
            workspace=workspace,
            max_retry_attempts=1,
            final_action=DunningFinalAction.NOTIFY_ONLY,
        )
        campaign = DunningEngine.handle_redemption_failure(
            overdue_subscription, SubscriptionEventType.FAILED_REDEMPTION, now=started_at
        )
        redeemer.reject()
        now = started_at + timedelta(days=1)

        DunningEngine.process_campaign(campaign, now)

        subscription = get_fresh(overdue_subscription)
        assert subscription.status == SubscriptionStatus.OVERDUE
        assert subscription.next_redemption_date == add_interval(now, IntervalType.MONTH)
        assert DunningEngine.handle_redemption_failure(subscription, SubscriptionEventType.FAILED_REDEMPTION) is None
        assert DunningEngine.open_missing_campaigns() == 0

    def test_retry_without_payment_action(self, open_campaign, redeemer, started_at):
        """Should only communicate when the attempt has no retry_payment action."""
        campaign = open_campaign()
        campaign.configuration.attempt_actions = [{"attempt": 1, "actions": ["email"]}]
        campaign.configuration.save()

        outcome = DunningEngine.process_campaign(campaign, started_at + timedelta(days=1))

        assert outcome == CampaignOutcome.RETRY_FAILED
        assert redeemer.call_count == 0

    def test_process_due_campaigns(self, open_campaign, redeemer, started_at):
        """Should run only campaigns whose retry is due."""
        open_campaign()
        redeemer.reject()

        assert DunningEngine.process_due_campaigns(started_at) == {}
        assert DunningEngine.process_due_campaigns(started_at + timedelta(days=1)) == {
            CampaignOutcome.RETRY_FAILED: 1
        }


# =============================================================================
# Deferral & Closing
# =============================================================================


@pytest.mark.django_db
class TestDeferAndClose:
    """Tests for claim contention and ended subscriptions."""

    def test_claim_contention_defers(self, open_campaign, overdue_subscription, redeemer, started_at):
        """Should drop the attempt and keep the schedule when the claim is held."""
        campaign = open_campaign()
        now = started_at + timedelta(days=1)
        SubscriptionLedger.claim(overdue_subscription.id, now, include_dunning=True)

        outcome = DunningEngine.process_campaign(campaign, now)

        assert outcome == CampaignOutcome.DEFERRED
        assert not DunningAttempt.objects.exists()
        campaign.refresh_from_db()
        assert campaign.current_attempt == 0
        assert campaign.locked_until is None

    def test_ended_subscription_closes_campaign(self, workspace, dunning_configuration, redeemer):
        """Should close the campaign without retrying."""
        subscription = SubscriptionFactory(
            workspace=workspace,
            status=SubscriptionStatus.CANCELED,
            next_redemption_date=None,
        )
        campaign = DunningCampaignFactory(subscription=subscription, configuration=dunning_configuration)

        assert DunningEngine.process_campaign(campaign) == CampaignOutcome.CLOSED
        campaign.refresh_from_db()
        assert campaign.status == DunningCampaignStatus.CANCELLED
        assert redeemer.call_count == 0

    def test_expired_delegation_closes_campaign(self, workspace, dunning_configuration, redeemer, started_at):
        """Should close the campaign when the delegation window has closed."""
        delegation = DelegationRecordFactory(
            workspace=workspace,
            caveats=[{"kind": "time_window", "not_after": int(started_at.timestamp())}],
        )
        subscription = SubscriptionFactory(
            workspace=workspace,
            delegation=delegation,
            status=SubscriptionStatus.OVERDUE,
            overdue_since=started_at,
            next_redemption_date=started_at,
        )
        campaign = DunningEngine.handle_redemption_failure(
            subscription, SubscriptionEventType.FAILED_REDEMPTION, now=started_at
        )

        outcome = DunningEngine.process_campaign(campaign, started_at + timedelta(days=1))

        assert outcome == CampaignOutcome.CLOSED
        assert get_fresh(subscription).status == SubscriptionStatus.EXPIRED
        assert DunningAttempt.objects.get(campaign=campaign).status == DunningAttemptStatus.FAILED

    def test_close_campaigns_for_cancelled(self, workspace, dunning_configuration):
        """Should close active campaigns of subscriptions that ended elsewhere."""
        live = DunningCampaignFactory(subscription__workspace=workspace, configuration=dunning_configuration)
        ended = DunningCampaignFactory(
            subscription=SubscriptionFactory(
                workspace=workspace,
                status=SubscriptionStatus.SUSPENDED,
                next_redemption_date=None,
            ),
            configuration=dunning_configuration,
        )

        assert DunningEngine.close_campaigns_for_cancelled() == 1
        live.refresh_from_db()
        ended.refresh_from_db()
        assert live.status == DunningCampaignStatus.ACTIVE
        assert ended.status == DunningCampaignStatus.CANCELLED


# =============================================================================
# Reminders
# =============================================================================


@pytest.mark.django_db
class TestPreDunningReminders:
    """Tests for send_pre_dunning_reminders."""

    def test_sent_once(self, open_campaign, started_at, mailoutbox):
        """Should remind before the first retry, exactly once."""
        campaign = open_campaign()

        assert DunningEngine.send_pre_dunning_reminders(started_at) == 1
        assert DunningEngine.send_pre_dunning_reminders(started_at + timedelta(hours=1)) == 0

        assert len(mailoutbox) == 1
        assert mailoutbox[0].subject.startswith("Upcoming payment retry")
        assert "$10.00" in mailoutbox[0].body
        campaign.refresh_from_db()
        assert campaign.pre_dunning_reminder_sent_at == started_at

    def test_not_before_reminder_time(self, workspace, overdue_subscription, started_at, mailoutbox):
        """Should wait until the reminder is due."""
        DunningConfigurationFactory(workspace=workspace, retry_interval_days=[5], pre_dunning_days=2)
        DunningEngine.handle_redemption_failure(
            overdue_subscription, SubscriptionEventType.FAILED_REDEMPTION, now=started_at
        )

        assert DunningEngine.send_pre_dunning_reminders(started_at) == 0
        assert DunningEngine.send_pre_dunning_reminders(started_at + timedelta(days=3)) == 1

    def test_disabled(self, workspace, overdue_subscription, started_at, mailoutbox):
        """Should not schedule reminders when the configuration turns them off."""
        DunningConfigurationFactory(workspace=workspace, send_pre_dunning_reminder=False)
        campaign = DunningEngine.handle_redemption_failure(
            overdue_subscription, SubscriptionEventType.FAILED_REDEMPTION, now=started_at
        )

        assert campaign.pre_dunning_reminder_at is None
        assert DunningEngine.send_pre_dunning_reminders(started_at + timedelta(days=5)) == 0
        assert mailoutbox == []
