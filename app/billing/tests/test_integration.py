"""
Integration tests for subscription lifecycles.

These tests drive the system the way production does: signup through the
ledger, then periodic Celery tasks on a moving clock, with only the chain
redeemer and the processor API scripted.

Test Organization:
    - TestRecoveryLifecycle: Signup -> renewal fails -> dunning -> recovery
    - TestExhaustionLifecycle: Signup -> renewal fails -> retries exhausted -> cancel
    - TestProcessorSyncLifecycle: Initial sync -> webhook renewals of a processor-owned subscription

Note:
    The clock is moved with freezegun; Celery runs eagerly, so a sweep
    redeems inline.
"""

import json
from datetime import datetime, timedelta, timezone as dt_timezone
from unittest.mock import patch

import pytest
from django.test import Client
from freezegun import freeze_time

from billing.models import DunningCampaign, Subscription, SubscriptionEvent
from billing.services import SubscriptionLedger
from billing.services.subscription_ledger import CreateSubscriptionParams
from billing.state_machines import DunningCampaignStatus, SubscriptionEventType, SubscriptionStatus
from billing.tests.factories import address, delegation_payload
from billing.workers import process_dunning_campaigns, run_payment_sync_session, run_redemption_sweep

SIGNUP_AT = datetime(2026, 1, 15, 12, 0, tzinfo=dt_timezone.utc)


def get_fresh(subscription) -> Subscription:
    return Subscription.objects.get(id=subscription.id)


def count_events(subscription, event_type) -> int:
    return SubscriptionEvent.objects.filter(subscription=subscription, event_type=event_type).count()


@pytest.fixture
def signed_up(workspace, customer, monthly_price, product_token, dunning_configuration, redeemer):
    """A $10/month, twelve-period subscription whose first period was redeemed at SIGNUP_AT."""
    product = monthly_price.product
    params = CreateSubscriptionParams(
        workspace=workspace,
        product=product,
        price=monthly_price,
        product_token=product_token,
        delegation=delegation_payload(product.wallet.address, product_token.token.contract_address),
        token_amount=10_000_000,
        customer=customer,
        wallet_address=address(90, "b"),
    )
    redeemer.succeed()
    with freeze_time(SIGNUP_AT):
        result = SubscriptionLedger.create_subscription(params)
    assert result.success
    return result.data.subscription


# =============================================================================
# Delegated Lifecycle
# =============================================================================


@pytest.mark.django_db
class TestRecoveryLifecycle:
    """A failed renewal recovered by the second dunning retry."""

    def test_failed_renewal_recovers(self, signed_up, redeemer, mailoutbox):
        """Should recover on the second retry and resume the schedule."""
        subscription = get_fresh(signed_up)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.total_redemptions == 1
        assert subscription.next_redemption_date == datetime(2026, 2, 15, 12, 0, tzinfo=dt_timezone.utc)

        # Period 2 fails
        failed_at = subscription.next_redemption_date + timedelta(minutes=1)
        redeemer.reject("insufficient allowance")
        with freeze_time(failed_at):
            assert run_redemption_sweep() == {"queued_count": 1}

        subscription = get_fresh(signed_up)
        assert subscription.status == SubscriptionStatus.OVERDUE
        campaign = DunningCampaign.objects.get(subscription=subscription, status=DunningCampaignStatus.ACTIVE)

        # Overdue with an open campaign: the sweep leaves it to dunning
        with freeze_time(failed_at + timedelta(hours=1)):
            assert run_redemption_sweep() == {"queued_count": 0}

        # Retry 1 fails
        first_retry_at = failed_at + timedelta(days=1, minutes=1)
        redeemer.reject("insufficient allowance")
        with freeze_time(first_retry_at):
            process_dunning_campaigns()
        campaign.refresh_from_db()
        assert campaign.current_attempt == 1
        assert campaign.status == DunningCampaignStatus.ACTIVE

        # Retry 2 succeeds
        redeemer.succeed("0x" + "2" * 64)
        with freeze_time(first_retry_at + timedelta(days=2, minutes=1)):
            process_dunning_campaigns()

        campaign.refresh_from_db()
        assert campaign.status == DunningCampaignStatus.COMPLETED
        assert campaign.recovered
        subscription = get_fresh(signed_up)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.total_redemptions == 2
        assert subscription.total_amount_in_cents == 2000
        assert subscription.overdue_since is None
        assert count_events(subscription, SubscriptionEventType.REDEEMED) == 2
        assert redeemer.call_count == 4


@pytest.mark.django_db
class TestExhaustionLifecycle:
    """A failed renewal that never recovers."""

    def test_retries_exhausted_cancels(self, signed_up, redeemer, mailoutbox):
        """Should cancel once after the third failed retry."""
        subscription = get_fresh(signed_up)
        now = subscription.next_redemption_date + timedelta(minutes=1)
        redeemer.reject().reject().reject().reject()

        with freeze_time(now):
            run_redemption_sweep()

        # Retries after 1, 2 and 4 days
        for delay_days in (1, 2, 4):
            now += timedelta(days=delay_days, minutes=1)
            with freeze_time(now):
                process_dunning_campaigns()

        subscription = get_fresh(signed_up)
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.next_redemption_date is None
        assert subscription.total_redemptions == 1
        campaign = DunningCampaign.objects.get(subscription=subscription)
        assert campaign.status == DunningCampaignStatus.COMPLETED
        assert not campaign.recovered
        assert sum(m.subject.startswith("Action required") for m in mailoutbox) == 1

        # Nothing left to do
        with freeze_time(now + timedelta(days=30)):
            assert run_redemption_sweep() == {"queued_count": 0}
            assert process_dunning_campaigns()["outcomes"] == {}


# =============================================================================
# Processor Lifecycle
# =============================================================================


@pytest.mark.django_db
class TestProcessorSyncLifecycle:
    """A processor-owned subscription imported by batch sync and kept current by webhooks."""

    CATALOG = {
        "customer": [{"id": "cus_9", "email": "stripe-payer@example.com"}],
        "product": [{"id": "prod_9", "name": "Legacy plan"}],
        "price": [{"id": "price_9", "product": "prod_9", "unit_amount": 2500, "recurring": {"interval": "month"}}],
        "subscription": [
            {
                "id": "sub_9",
                "object": "subscription",
                "customer": "cus_9",
                "status": "active",
                "items": {"data": [{"price": {"id": "price_9"}}]},
            }
        ],
    }

    def list_catalog(self, entity_type, provider_account_id, created_after=None):
        return iter(self.CATALOG[entity_type])

    def post_webhook(self, event):
        with patch("billing.adapters.stripe_adapter.StripeAdapter.verify_webhook_signature", return_value=event):
            return Client().post(
                "/api/v1/billing/webhooks/stripe/",
                data=json.dumps(event),
                content_type="application/json",
                HTTP_STRIPE_SIGNATURE="t=1,v1=test",
            )

    def test_sync_then_webhooks(self, workspace, provider_account, redeemer):
        """Should import the subscription and follow processor invoices."""
        with patch("billing.adapters.stripe_adapter.StripeAdapter.iter_objects", side_effect=self.list_catalog):
            result = run_payment_sync_session(str(workspace.id), "stripe")
        assert result["progress"]["applied"] == 4

        subscription = Subscription.objects.get(workspace=workspace, external_id="sub_9")
        assert not subscription.is_delegation_backed
        assert subscription.next_redemption_date is None

        failed = {
            "id": "evt_failed",
            "type": "invoice.payment_failed",
            "account": "acct_live_1",
            "livemode": True,
            "data": {"object": {"id": "in_1", "subscription": "sub_9", "amount_due": 2500}},
        }
        assert self.post_webhook(failed).status_code == 200
        assert get_fresh(subscription).status == SubscriptionStatus.OVERDUE

        paid = {**failed, "id": "evt_paid", "type": "invoice.paid"}
        paid["data"] = {"object": {"id": "in_1", "subscription": "sub_9", "amount_paid": 2500}}
        assert self.post_webhook(paid).status_code == 200
        assert self.post_webhook(paid).content == b"Already processed"

        subscription = get_fresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.total_redemptions == 1
        assert subscription.total_amount_in_cents == 2500

        # The sweeper never touches processor-owned subscriptions
        assert run_redemption_sweep() == {"queued_count": 0}
        assert redeemer.call_count == 0
