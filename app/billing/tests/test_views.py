"""
Tests for the subscription API.

Tests cover:
- Authentication required
- List and detail (no claim or retry internals exposed)
- Event history, oldest first
- Cancel now, cancel at period end, idempotent cancel
- Reactivate, pause (optionally until a date) and resume
"""

from datetime import timedelta

import pytest
from django.utils import timezone
from rest_framework.test import APIClient

from billing.models import SubscriptionEvent
from billing.state_machines import SubscriptionEventType, SubscriptionStatus
from billing.tests.factories import SubscriptionEventFactory, SubscriptionFactory


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def api_client(db, django_user_model):
    user = django_user_model.objects.create_user(username="merchant-admin", password="testpass123")
    client = APIClient()
    client.force_authenticate(user=user)
    return client


def detail_url(subscription, suffix=""):
    return f"/api/v1/billing/subscriptions/{subscription.id}/{suffix}"


# =============================================================================
# Read Tests
# =============================================================================


@pytest.mark.django_db
class TestSubscriptionRead:
    """Tests for listing and retrieving subscriptions."""

    def test_requires_authentication(self, subscription):
        """Should refuse anonymous callers."""
        response = APIClient().get("/api/v1/billing/subscriptions/")

        assert response.status_code == 403

    def test_list(self, api_client, subscription):
        """Should return a paginated list."""
        response = api_client.get("/api/v1/billing/subscriptions/")

        assert response.status_code == 200
        assert response.data["count"] == 1
        assert response.data["results"][0]["id"] == str(subscription.id)

    def test_filter_by_status(self, api_client, workspace):
        """Should filter on status."""
        SubscriptionFactory(workspace=workspace)
        overdue = SubscriptionFactory(workspace=workspace, status=SubscriptionStatus.OVERDUE)

        response = api_client.get("/api/v1/billing/subscriptions/", {"status": "overdue"})

        assert [row["id"] for row in response.data["results"]] == [str(overdue.id)]

    def test_detail_shows_schedule_not_internals(self, api_client, subscription):
        """Should expose status and counters but no claim markers."""
        response = api_client.get(detail_url(subscription))

        assert response.status_code == 200
        assert response.data["status"] == SubscriptionStatus.ACTIVE
        assert response.data["amount_display"] == "$10.00"
        assert response.data["is_delegation_backed"] is True
        assert response.data["delegation_expires_at"] is None
        for internal in ("processing_token", "processing_claimed_until", "version", "delegation"):
            assert internal not in response.data

    def test_detail_not_found(self, api_client, db):
        """Should return 404 for unknown ids."""
        response = api_client.get("/api/v1/billing/subscriptions/00000000-0000-0000-0000-000000000000/")

        assert response.status_code == 404

    def test_events_oldest_first(self, api_client, subscription):
        """Should list events in occurrence order."""
        now = timezone.now()
        SubscriptionEventFactory(
            subscription=subscription,
            event_type=SubscriptionEventType.REDEEMED,
            occurred_at=now,
            transaction_hash="0x" + "1" * 64,
        )
        SubscriptionEventFactory(subscription=subscription, occurred_at=now - timedelta(minutes=1))

        response = api_client.get(detail_url(subscription, "events/"))

        assert response.status_code == 200
        types = [row["event_type"] for row in response.data["results"]]
        assert types == [SubscriptionEventType.CREATED, SubscriptionEventType.REDEEMED]


# =============================================================================
# Cancel Tests
# =============================================================================


@pytest.mark.django_db
class TestSubscriptionCancel:
    """Tests for the cancel action."""

    def test_cancel_now(self, api_client, subscription):
        """Should cancel immediately and clear the schedule."""
        response = api_client.post(detail_url(subscription, "cancel/"), {"reason": "too expensive"}, format="json")

        assert response.status_code == 200
        assert response.data["status"] == SubscriptionStatus.CANCELED
        assert response.data["next_redemption_date"] is None
        assert response.data["cancellation_reason"] == "too expensive"
        assert SubscriptionEvent.objects.filter(
            subscription=subscription,
            event_type=SubscriptionEventType.CANCELED,
        ).exists()

    def test_cancel_at_period_end(self, api_client, subscription):
        """Should keep the subscription active until the period ends."""
        response = api_client.post(detail_url(subscription, "cancel/"), {"at_period_end": True}, format="json")

        assert response.status_code == 200
        assert response.data["status"] == SubscriptionStatus.ACTIVE
        assert response.data["cancel_at"] is not None

    def test_cancel_twice_is_idempotent(self, api_client, subscription):
        """Should succeed again without a second event."""
        api_client.post(detail_url(subscription, "cancel/"), {}, format="json")
        response = api_client.post(detail_url(subscription, "cancel/"), {}, format="json")

        assert response.status_code == 200
        assert (
            SubscriptionEvent.objects.filter(
                subscription=subscription,
                event_type=SubscriptionEventType.CANCELED,
            ).count()
            == 1
        )

    def test_cancel_completed_refused(self, api_client, workspace):
        """Should return 400 for a subscription that cannot be canceled."""
        subscription = SubscriptionFactory(
            workspace=workspace,
            status=SubscriptionStatus.COMPLETED,
            next_redemption_date=None,
        )

        response = api_client.post(detail_url(subscription, "cancel/"), {}, format="json")

        assert response.status_code == 400
        assert response.data["error_code"] == "INVALID_STATE_TRANSITION"

    def test_reactivate(self, api_client, subscription):
        """Should withdraw a cancellation scheduled for the period end."""
        api_client.post(detail_url(subscription, "cancel/"), {"at_period_end": True}, format="json")

        response = api_client.post(detail_url(subscription, "reactivate/"), format="json")

        assert response.status_code == 200
        assert response.data["cancel_at"] is None

    def test_reactivate_without_schedule(self, api_client, subscription):
        """Should return 400 when nothing is scheduled."""
        response = api_client.post(detail_url(subscription, "reactivate/"), format="json")

        assert response.status_code == 400
        assert response.data["error_code"] == "CANCELLATION_NOT_SCHEDULED"


# =============================================================================
# Pause & Resume Tests
# =============================================================================


@pytest.mark.django_db
class TestSubscriptionPause:
    """Tests for the pause and resume actions."""

    def test_pause_until(self, api_client, subscription):
        """Should suspend and report when the pause ends."""
        until = timezone.now() + timedelta(days=7)

        response = api_client.post(
            detail_url(subscription, "pause/"),
            {"reason": "holiday", "pause_until": until.isoformat()},
            format="json",
        )

        assert response.status_code == 200
        assert response.data["status"] == SubscriptionStatus.SUSPENDED
        assert response.data["next_redemption_date"] is None
        assert response.data["pause_ends_at"] is not None

    def test_pause_until_in_past_rejected(self, api_client, subscription):
        """Should validate that the pause ends in the future."""
        response = api_client.post(
            detail_url(subscription, "pause/"),
            {"pause_until": (timezone.now() - timedelta(days=1)).isoformat()},
            format="json",
        )

        assert response.status_code == 400
        assert "pause_until" in response.data

    def test_resume(self, api_client, subscription):
        """Should resume a paused subscription and schedule it again."""
        api_client.post(detail_url(subscription, "pause/"), {}, format="json")

        response = api_client.post(detail_url(subscription, "resume/"), format="json")

        assert response.status_code == 200
        assert response.data["status"] == SubscriptionStatus.ACTIVE
        assert response.data["next_redemption_date"] is not None
        assert SubscriptionEvent.objects.filter(
            subscription=subscription,
            event_type=SubscriptionEventType.RESUMED,
        ).exists()

    def test_resume_canceled_refused(self, api_client, subscription):
        """Should return 400 for a canceled subscription."""
        api_client.post(detail_url(subscription, "cancel/"), {}, format="json")

        response = api_client.post(detail_url(subscription, "resume/"), format="json")

        assert response.status_code == 400
        assert response.data["error_code"] == "INVALID_STATE_TRANSITION"
