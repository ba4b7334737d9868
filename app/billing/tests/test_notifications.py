"""
Tests for dunning notifications.
"""

import pytest

from billing.notifications import DunningNotifier, format_amount
from billing.tests.factories import CustomerFactory, DunningCampaignFactory, SubscriptionFactory


@pytest.mark.parametrize(
    "amount_cents,currency,expected",
    [
        (1000, "USD", "$10.00"),
        (123456, "usd", "$1,234.56"),
        (999, "EUR", "€9.99"),
        (1000, "JPY", "10.00 JPY"),
        (5, "", "0.05"),
    ],
)
def test_format_amount(amount_cents, currency, expected):
    """Should render minor units with the currency symbol where known."""
    assert format_amount(amount_cents, currency) == expected


@pytest.mark.django_db
class TestDunningNotifier:
    """Tests for DunningNotifier."""

    def test_payment_failed(self, mailoutbox):
        """Should email the customer with the amount and attempt."""
        campaign = DunningCampaignFactory(current_attempt=1)

        sent, error = DunningNotifier.send_payment_failed(campaign, attempt_number=1)

        assert sent is True
        assert error == ""
        message = mailoutbox[0]
        assert message.subject == f"Payment failed for {campaign.subscription.product.name}"
        assert message.to == [campaign.subscription.customer.email]
        assert "$10.00" in message.body

    def test_final_notice(self, mailoutbox):
        """Should send the final notice with its own subject."""
        campaign = DunningCampaignFactory()

        sent, _ = DunningNotifier.send_final_notice(campaign, "cancel")

        assert sent
        assert mailoutbox[0].subject.startswith("Action required")

    def test_customer_without_email(self, workspace, mailoutbox):
        """Should report instead of raising when there is nobody to email."""
        subscription = SubscriptionFactory(
            workspace=workspace,
            customer=CustomerFactory(workspace=workspace, email=""),
        )
        campaign = DunningCampaignFactory(subscription=subscription)

        assert DunningNotifier.send_pre_dunning_reminder(campaign) == (False, "customer has no email address")
        assert mailoutbox == []
