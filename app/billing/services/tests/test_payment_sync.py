"""
Tests for PaymentSyncCoordinator.

Tests cover:
- Routing processor accounts to workspaces (not found, ambiguous)
- Idempotent recording and application of webhook deliveries
- Rejected signatures never applied and never reserving a key
- Failed projections, bounded retries, late routing
- Batch sync sessions: ordering, re-runs, failure and resume, delta syncs
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from django.utils import timezone

from billing.adapters import NormalizedEvent
from billing.exceptions import AmbiguousProviderAccountError, ProcessorAPIError, ProviderAccountNotFoundError
from billing.models import Customer, PaymentSyncEvent, Price, Subscription
from billing.services import PaymentSyncCoordinator
from billing.services.payment_sync import ApplyOutcome, idempotency_key
from billing.state_machines import (
    PaymentSyncEventStatus,
    PaymentSyncSessionStatus,
    PaymentSyncSessionType,
    ProviderEnvironment,
    SubscriptionStatus,
)
from billing.tests.factories import (
    PaymentSyncEventFactory,
    PaymentSyncSessionFactory,
    WorkspaceFactory,
    WorkspaceProviderAccountFactory,
)


def make_event(event_type="customer.created", obj=None, event_id="evt_1", account="acct_live_1", **overrides):
    obj = obj if obj is not None else {"id": "cus_1", "email": "payer@example.com", "name": "Payer"}
    values = {
        "provider_name": "stripe",
        "provider_account_id": account,
        "environment": ProviderEnvironment.LIVE,
        "event_type": event_type,
        "webhook_event_id": event_id,
        "entity_type": event_type.split(".")[0],
        "external_id": obj.get("id", ""),
        "payload": {"id": event_id, "type": event_type, "data": {"object": obj}},
    }
    values.update(overrides)
    return NormalizedEvent(**values)


# =============================================================================
# Routing Tests
# =============================================================================


@pytest.mark.django_db
class TestRouteInbound:
    """Tests for route_inbound."""

    def test_routes_to_workspace(self, provider_account, workspace):
        """Should return the mapped workspace."""
        assert PaymentSyncCoordinator.route_inbound("acct_live_1", "stripe", "live") == workspace.id

    def test_unknown_account(self, db):
        """Should refuse to guess for an unmapped account."""
        with pytest.raises(ProviderAccountNotFoundError):
            PaymentSyncCoordinator.route_inbound("acct_missing", "stripe", "live")

    def test_inactive_mapping_ignored(self, provider_account):
        """Should not route through a deactivated mapping."""
        provider_account.is_active = False
        provider_account.save()

        with pytest.raises(ProviderAccountNotFoundError):
            PaymentSyncCoordinator.route_inbound("acct_live_1", "stripe", "live")

    def test_ambiguous_without_environment(self, provider_account):
        """Should refuse when the account is mapped in several environments."""
        other = WorkspaceFactory()
        WorkspaceProviderAccountFactory(
            workspace=other,
            provider_account_id="acct_live_1",
            environment=ProviderEnvironment.TEST,
        )

        with pytest.raises(AmbiguousProviderAccountError):
            PaymentSyncCoordinator.route_inbound("acct_live_1", "stripe")
        assert PaymentSyncCoordinator.route_inbound("acct_live_1", "stripe", "test") == other.id

    def test_idempotency_key(self):
        """Should hash workspace, account and event id."""
        key = idempotency_key("ws", "acct", "evt")

        assert len(key) == 64
        assert key == idempotency_key("ws", "acct", "evt")
        assert key != idempotency_key("ws", "acct", "evt_2")


# =============================================================================
# Apply Tests
# =============================================================================


@pytest.mark.django_db
class TestApplyEvent:
    """Tests for apply_event and apply_recorded."""

    def test_applies_once(self, provider_account, workspace):
        """Should apply a delivery once and skip its redelivery."""
        first = PaymentSyncCoordinator.apply_event(workspace.id, make_event())
        second = PaymentSyncCoordinator.apply_event(workspace.id, make_event())

        assert first.outcome == ApplyOutcome.APPLIED
        assert second.outcome == ApplyOutcome.SKIPPED
        assert PaymentSyncEvent.objects.count() == 1
        record = PaymentSyncEvent.objects.get()
        assert record.status == PaymentSyncEventStatus.APPLIED
        assert record.idempotency_key == idempotency_key(workspace.id, "acct_live_1", "evt_1")
        assert record.event_message == "customer created"
        assert Customer.objects.get(workspace=workspace, external_id="cus_1").email == "payer@example.com"

    def test_rejected_signature(self, provider_account, workspace):
        """Should store a forged delivery without applying it or taking its key."""
        forged = PaymentSyncCoordinator.apply_event(workspace.id, make_event(signature_valid=False))
        genuine = PaymentSyncCoordinator.apply_event(workspace.id, make_event())

        assert forged.outcome == ApplyOutcome.REJECTED
        assert forged.event.idempotency_key is None
        assert not forged.event.signature_valid
        assert genuine.outcome == ApplyOutcome.APPLIED
        assert PaymentSyncCoordinator.apply_recorded(forged.event.id).outcome == ApplyOutcome.REJECTED

    def test_projection_failure_then_retry(self, provider_account, workspace):
        """Should record the failure and apply once the dependency exists."""
        price_event = make_event(
            "price.created",
            {"id": "price_1", "product": "prod_1", "unit_amount": 1000, "currency": "usd"},
            event_id="evt_price",
        )

        failed = PaymentSyncCoordinator.apply_event(workspace.id, price_event)

        assert failed.outcome == ApplyOutcome.FAILED
        assert failed.event.error_details["error_code"] == "DEPENDENCY_NOT_SYNCED"
        assert failed.event.processing_attempts == 1
        assert list(PaymentSyncCoordinator.retryable_failed_events()) == [failed.event]

        PaymentSyncCoordinator.apply_event(
            workspace.id,
            make_event("product.created", {"id": "prod_1", "name": "Pro"}, event_id="evt_product"),
        )
        retried = PaymentSyncCoordinator.apply_recorded(failed.event.id)

        assert retried.outcome == ApplyOutcome.APPLIED
        assert retried.event.processing_attempts == 2
        assert Price.objects.get(external_id="price_1").unit_amount_in_pennies == 1000

    def test_handler_exception(self, provider_account, workspace):
        """Should record an exception raised by a projection."""
        with patch("billing.webhooks.handlers.dispatch_projection", side_effect=RuntimeError("boom")):
            result = PaymentSyncCoordinator.apply_event(workspace.id, make_event())

        assert result.outcome == ApplyOutcome.FAILED
        assert result.error == "RuntimeError: boom"
        assert not Customer.objects.filter(external_id="cus_1").exists()

    def test_attempts_exhausted(self, workspace):
        """Should stop retrying after the maximum number of attempts."""
        record = PaymentSyncEventFactory(
            workspace=workspace,
            status=PaymentSyncEventStatus.FAILED,
            processing_attempts=5,
        )

        result = PaymentSyncCoordinator.apply_recorded(record.id)

        assert result.outcome == ApplyOutcome.FAILED
        assert result.error == "processing attempts exhausted"
        assert list(PaymentSyncCoordinator.retryable_failed_events()) == []

    def test_unknown_event_type_applied(self, provider_account, workspace):
        """Should mark events without a projection as applied."""
        result = PaymentSyncCoordinator.apply_event(workspace.id, make_event("coupon.created", {"id": "co_1"}))

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.event.event_message == "no projection for event type"


# =============================================================================
# Unroutable Delivery Tests
# =============================================================================


@pytest.mark.django_db
class TestUnroutable:
    """Tests for deliveries that arrive before their account mapping."""

    def test_late_routing(self, workspace):
        """Should route and apply once the mapping exists."""
        event = make_event(account="acct_new")
        record = PaymentSyncCoordinator.record_unroutable(
            event, ProviderAccountNotFoundError("No workspace for provider account")
        )

        assert record.workspace_id is None
        assert record.status == PaymentSyncEventStatus.FAILED
        assert PaymentSyncCoordinator.apply_recorded(record.id).outcome == ApplyOutcome.FAILED

        WorkspaceProviderAccountFactory(workspace=workspace, provider_account_id="acct_new")
        result = PaymentSyncCoordinator.apply_recorded(record.id)

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.event.workspace_id == workspace.id
        assert result.event.idempotency_key == idempotency_key(workspace.id, "acct_new", "evt_1")

    def test_late_routing_duplicate(self, workspace):
        """Should retire the early copy when a redelivery was applied first."""
        event = make_event(account="acct_new")
        early = PaymentSyncCoordinator.record_unroutable(event, ProviderAccountNotFoundError("unmapped"))
        WorkspaceProviderAccountFactory(workspace=workspace, provider_account_id="acct_new")
        PaymentSyncCoordinator.apply_event(workspace.id, event)

        result = PaymentSyncCoordinator.apply_recorded(early.id)

        assert result.outcome == ApplyOutcome.SKIPPED
        early.refresh_from_db()
        assert early.processing_attempts == 5
        assert early not in PaymentSyncCoordinator.retryable_failed_events()


# =============================================================================
# Batch Session Tests
# =============================================================================

CATALOG = {
    "customer": [{"id": "cus_1", "email": "payer@example.com"}],
    "product": [{"id": "prod_1", "name": "Pro"}],
    "price": [
        {
            "id": "price_1",
            "product": "prod_1",
            "unit_amount": 1000,
            "currency": "usd",
            "recurring": {"interval": "month", "interval_count": 1},
        }
    ],
    "subscription": [
        {
            "id": "sub_1",
            "object": "subscription",
            "customer": "cus_1",
            "status": "active",
            "current_period_start": 1735689600,
            "current_period_end": 1738368000,
            "items": {"data": [{"price": {"id": "price_1"}}]},
        }
    ],
}


def list_catalog(entity_type, provider_account_id, created_after=None):
    return iter(CATALOG[entity_type])


@pytest.mark.django_db
class TestRunSession:
    """Tests for batch sync sessions."""

    def test_initial_sync(self, provider_account, workspace):
        """Should sync parents before children and complete."""
        with patch("billing.adapters.stripe_adapter.StripeAdapter.iter_objects", side_effect=list_catalog):
            session = PaymentSyncCoordinator.run_session(workspace.id, "stripe")

        assert session.status == PaymentSyncSessionStatus.COMPLETED
        assert session.progress["processed"] == 4
        assert session.progress["applied"] == 4
        subscription = Subscription.objects.get(external_id="sub_1")
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.next_redemption_date is None
        assert not subscription.is_delegation_backed

    def test_rerun_skips_unchanged(self, provider_account, workspace):
        """Should skip objects that have not changed since the last sync."""
        with patch("billing.adapters.stripe_adapter.StripeAdapter.iter_objects", side_effect=list_catalog):
            PaymentSyncCoordinator.run_session(workspace.id, "stripe")
            session = PaymentSyncCoordinator.run_session(workspace.id, "stripe")

        assert session.progress["skipped"] == 4
        assert session.progress["applied"] == 0

    def test_failure_and_resume(self, provider_account, workspace):
        """Should fail resumably on a processor outage and finish on resume."""
        outage = ProcessorAPIError("Stripe service unavailable", error_code="STRIPE_UNAVAILABLE", is_retryable=True)
        with patch("billing.adapters.stripe_adapter.StripeAdapter.iter_objects", side_effect=outage):
            failed = PaymentSyncCoordinator.run_session(workspace.id, "stripe")

        assert failed.status == PaymentSyncSessionStatus.FAILED
        assert failed.error_summary[-1] == {
            "error": "Stripe service unavailable",
            "error_code": "STRIPE_UNAVAILABLE",
            "retryable": True,
        }

        with patch("billing.adapters.stripe_adapter.StripeAdapter.iter_objects", side_effect=list_catalog):
            resumed = PaymentSyncCoordinator.run_session(workspace.id, "stripe", session_id=failed.id)

        assert resumed.id == failed.id
        assert resumed.status == PaymentSyncSessionStatus.COMPLETED

    def test_completed_session_not_rerun(self, provider_account, workspace):
        """Should return a completed session untouched."""
        session = PaymentSyncSessionFactory(workspace=workspace, status=PaymentSyncSessionStatus.COMPLETED)

        with patch("billing.adapters.stripe_adapter.StripeAdapter.iter_objects") as mock_iter:
            result = PaymentSyncCoordinator.run_session(workspace.id, "stripe", session_id=session.id)

        assert result.status == PaymentSyncSessionStatus.COMPLETED
        mock_iter.assert_not_called()

    def test_delta_sync_since_last_completed(self, provider_account, workspace):
        """Should only list objects created since the last completed session started."""
        last_started = timezone.now() - timedelta(days=1)
        PaymentSyncSessionFactory(
            workspace=workspace,
            status=PaymentSyncSessionStatus.COMPLETED,
            started_at=last_started,
        )

        with patch(
            "billing.adapters.stripe_adapter.StripeAdapter.iter_objects",
            side_effect=list_catalog,
        ) as mock_iter:
            PaymentSyncCoordinator.run_session(
                workspace.id,
                "stripe",
                session_type=PaymentSyncSessionType.DELTA_SYNC,
                entity_types=["customer"],
            )

        mock_iter.assert_called_once_with("customer", "acct_live_1", last_started)

    def test_invalid_sessions(self, workspace):
        """Should refuse webhook sessions and unknown providers."""
        with pytest.raises(ValueError, match="Webhook"):
            PaymentSyncCoordinator.run_session(workspace.id, "stripe", session_type=PaymentSyncSessionType.WEBHOOK)
        with pytest.raises(ValueError, match="Unsupported provider"):
            PaymentSyncCoordinator.run_session(workspace.id, "paypal")

    def test_start_session_orders_entities(self, workspace):
        """Should order entity types parents first."""
        session = PaymentSyncCoordinator.start_session(workspace.id, "stripe", entity_types=["subscription", "customer"])

        assert session.entity_types == ["customer", "subscription"]
        assert session.status == PaymentSyncSessionStatus.PENDING
