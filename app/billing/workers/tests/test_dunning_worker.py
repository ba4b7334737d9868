"""
Tests for the dunning worker tasks.

Tests cover:
- Running due campaigns (and closing those of ended subscriptions)
- Pre-dunning reminders
- Opening campaigns missed by a crashed worker
- Scheduled cancellations and resumptions
"""

from datetime import timedelta

import pytest
from django.utils import timezone
from freezegun import freeze_time

from billing.models import DunningCampaign, Subscription
from billing.services import DunningEngine, SubscriptionLedger
from billing.services.dunning_engine import CampaignOutcome
from billing.state_machines import DunningCampaignStatus, SubscriptionEventType, SubscriptionStatus
from billing.tests.factories import DunningCampaignFactory, SubscriptionFactory
from billing.workers.dunning_worker import (
    open_missing_dunning_campaigns,
    process_dunning_campaigns,
    process_scheduled_cancellations,
    process_scheduled_resumptions,
    send_pre_dunning_reminders,
)


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
def campaign(overdue_subscription, dunning_configuration, started_at):
    return DunningEngine.handle_redemption_failure(
        overdue_subscription,
        SubscriptionEventType.FAILED_REDEMPTION,
        "insufficient allowance",
        now=started_at,
    )


# =============================================================================
# Campaign Processing Tests
# =============================================================================


@pytest.mark.django_db
class TestProcessDunningCampaigns:
    """Tests for process_dunning_campaigns task."""

    def test_nothing_due(self, campaign, redeemer):
        """Should not retry before the first retry date."""
        result = process_dunning_campaigns()

        assert result == {"outcomes": {}, "closed_count": 0}
        assert redeemer.call_count == 0

    def test_failed_retry(self, campaign, redeemer, started_at, mailoutbox):
        """Should run the due retry and email the customer."""
        redeemer.reject()

        with freeze_time(started_at + timedelta(days=1, minutes=1)):
            result = process_dunning_campaigns()

        assert result["outcomes"] == {CampaignOutcome.RETRY_FAILED: 1}
        campaign.refresh_from_db()
        assert campaign.current_attempt == 1
        assert len(mailoutbox) == 1

    def test_recovered(self, campaign, overdue_subscription, redeemer, started_at):
        """Should recover the subscription when the retry redeems."""
        redeemer.succeed("0xrecovered")

        with freeze_time(started_at + timedelta(days=1, minutes=1)):
            result = process_dunning_campaigns()

        assert result["outcomes"] == {CampaignOutcome.RECOVERED: 1}
        assert Subscription.objects.get(id=overdue_subscription.id).status == SubscriptionStatus.ACTIVE

    def test_closes_campaigns_for_ended_subscriptions(self, workspace, dunning_configuration, redeemer):
        """Should close campaigns whose subscription was cancelled elsewhere."""
        ended = DunningCampaignFactory(
            subscription=SubscriptionFactory(
                workspace=workspace,
                status=SubscriptionStatus.CANCELED,
                next_redemption_date=None,
            ),
            configuration=dunning_configuration,
        )

        result = process_dunning_campaigns()

        assert result["closed_count"] == 1
        ended.refresh_from_db()
        assert ended.status == DunningCampaignStatus.CANCELLED
        assert redeemer.call_count == 0


# =============================================================================
# Reminder & Recovery Tests
# =============================================================================


@pytest.mark.django_db
class TestSendPreDunningReminders:
    """Tests for send_pre_dunning_reminders task."""

    def test_sends_once(self, campaign, mailoutbox):
        """Should remind each campaign at most once."""
        assert send_pre_dunning_reminders() == {"sent_count": 1}
        assert send_pre_dunning_reminders() == {"sent_count": 0}
        assert len(mailoutbox) == 1


@pytest.mark.django_db
class TestOpenMissingDunningCampaigns:
    """Tests for open_missing_dunning_campaigns task."""

    def test_opens_for_orphaned_overdue(self, overdue_subscription, dunning_configuration):
        """Should open a campaign for an overdue subscription without one."""
        result = open_missing_dunning_campaigns()

        assert result == {"opened_count": 1}
        assert DunningCampaign.objects.filter(
            subscription=overdue_subscription,
            status=DunningCampaignStatus.ACTIVE,
        ).exists()

    def test_existing_campaign_left_alone(self, campaign):
        """Should not open a second campaign."""
        assert open_missing_dunning_campaigns() == {"opened_count": 0}
        assert DunningCampaign.objects.count() == 1


@pytest.mark.django_db
class TestProcessScheduledCancellations:
    """Tests for process_scheduled_cancellations task."""

    def test_cancels_past_cancel_at(self, workspace):
        """Should cancel subscriptions whose cancel_at has passed."""
        due = SubscriptionFactory(workspace=workspace, cancel_at=timezone.now() - timedelta(minutes=1))
        later = SubscriptionFactory(workspace=workspace, cancel_at=timezone.now() + timedelta(days=1))

        assert process_scheduled_cancellations() == {"cancelled_count": 1}
        assert Subscription.objects.get(id=due.id).status == SubscriptionStatus.CANCELED
        assert Subscription.objects.get(id=later.id).status == SubscriptionStatus.ACTIVE


@pytest.mark.django_db
class TestProcessScheduledResumptions:
    """Tests for process_scheduled_resumptions task."""

    def test_resumes_ended_pause(self, workspace):
        """Should resume subscriptions whose pause has ended."""
        ended = SubscriptionFactory(workspace=workspace)
        SubscriptionLedger.suspend(ended.id, pause_until=timezone.now() - timedelta(minutes=1))
        paused = SubscriptionFactory(workspace=workspace)
        SubscriptionLedger.suspend(paused.id, pause_until=timezone.now() + timedelta(days=1))

        assert process_scheduled_resumptions() == {"resumed_count": 1}
        resumed = Subscription.objects.get(id=ended.id)
        assert resumed.status == SubscriptionStatus.ACTIVE
        assert resumed.next_redemption_date is not None
        assert Subscription.objects.get(id=paused.id).status == SubscriptionStatus.SUSPENDED
