"""
Tests for billing models.

Tests cover:
- Database constraints (schedule only while live, one default
  configuration, one active campaign, price interval shape)
- Append-only audit tables
- Delegation immutability and soft delete
- Optimistic locking version counter
- DunningConfiguration retry schedule helpers
"""

from datetime import timedelta

import pytest
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction

from core.exceptions import ConflictError

from billing.models import (
    Customer,
    DelegationRecord,
    DunningCampaign,
    FailedSubscriptionAttempt,
    Subscription,
    SubscriptionEvent,
)
from billing.state_machines import (
    DunningAction,
    DunningCampaignStatus,
    IntervalType,
    PriceType,
    SubscriptionStatus,
)
from billing.tests.factories import (
    CustomerFactory,
    DelegationRecordFactory,
    DunningCampaignFactory,
    DunningConfigurationFactory,
    FailedSubscriptionAttemptFactory,
    PaymentSyncEventFactory,
    PriceFactory,
    SubscriptionEventFactory,
    SubscriptionFactory,
)


# =============================================================================
# Subscription Tests
# =============================================================================


@pytest.mark.django_db
class TestSubscriptionModel:
    """Tests for the Subscription model."""

    def test_schedule_requires_live_status(self):
        """Should refuse a next_redemption_date on a terminal subscription."""
        subscription = SubscriptionFactory()

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                Subscription.objects.filter(pk=subscription.pk).update(status=SubscriptionStatus.CANCELED)

    def test_terminal_without_schedule_allowed(self):
        """Should accept a terminal subscription with no schedule."""
        subscription = SubscriptionFactory(status=SubscriptionStatus.COMPLETED, next_redemption_date=None)

        assert subscription.pk is not None

    def test_external_id_unique_per_provider(self):
        """Should allow one live row per (workspace, external_id, provider)."""
        first = SubscriptionFactory(processor_owned=True, external_id="sub_1")

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                SubscriptionFactory(
                    processor_owned=True,
                    workspace=first.workspace,
                    customer=first.customer,
                    external_id="sub_1",
                )

    def test_external_id_reusable_after_soft_delete(self):
        """Should free the external id once the row is soft deleted."""
        first = SubscriptionFactory(processor_owned=True, external_id="sub_1")
        first.soft_delete()

        second = SubscriptionFactory(
            processor_owned=True,
            workspace=first.workspace,
            customer=first.customer,
            external_id="sub_1",
        )

        assert second.pk != first.pk

    def test_version_increments_on_save(self):
        """Should bump the optimistic locking version on every update."""
        subscription = SubscriptionFactory()
        assert subscription.version == 1

        subscription.cancellation_reason = "testing"
        subscription.save()

        assert subscription.version == 2

    def test_version_increments_with_update_fields(self):
        """Should bump the version even for partial saves."""
        subscription = SubscriptionFactory()

        subscription.cancellation_reason = "testing"
        subscription.save(update_fields=["cancellation_reason"])

        subscription.refresh_from_db()
        assert subscription.version == 2

    def test_term_reached(self):
        """Should report completion once total_redemptions hits the term."""
        price = PriceFactory(term_length=3)
        subscription = SubscriptionFactory(price=price, workspace=price.product.workspace, total_redemptions=2)
        assert not subscription.term_reached

        subscription.total_redemptions = 3
        assert subscription.term_reached

    def test_open_ended_price_never_reaches_term(self):
        """Should treat a null term length as open-ended."""
        subscription = SubscriptionFactory(total_redemptions=500)

        assert not subscription.term_reached

    def test_delegation_backed(self):
        """Should distinguish delegation-backed from processor-owned rows."""
        assert SubscriptionFactory().is_delegation_backed
        assert not SubscriptionFactory(processor_owned=True).is_delegation_backed


# =============================================================================
# Price Tests
# =============================================================================


@pytest.mark.django_db
class TestPriceModel:
    """Tests for the Price model."""

    def test_recurring_requires_interval(self):
        """Should refuse a recurring price without an interval."""
        with pytest.raises(IntegrityError):
            with transaction.atomic():
                PriceFactory(interval_type=None)

    def test_one_time_forbids_interval(self):
        """Should refuse a one-time price with an interval."""
        with pytest.raises(IntegrityError):
            with transaction.atomic():
                PriceFactory(price_type=PriceType.ONE_TIME, interval_type=IntervalType.MONTH)

    def test_one_time_without_interval(self):
        """Should accept a one-time price with no interval."""
        price = PriceFactory(price_type=PriceType.ONE_TIME, interval_type=None)

        assert not price.is_recurring
        assert str(price) == "10.00 USD"


# =============================================================================
# Soft Delete Tests
# =============================================================================


@pytest.mark.django_db
class TestSoftDelete:
    """Tests for the soft delete manager on catalogue rows."""

    def test_soft_deleted_hidden_from_default_manager(self):
        """Should exclude soft-deleted customers from objects."""
        customer = CustomerFactory()
        customer.soft_delete()

        assert not Customer.objects.filter(pk=customer.pk).exists()
        assert Customer.all_objects.filter(pk=customer.pk).exists()
        assert Customer.objects.deleted().filter(pk=customer.pk).exists()

    def test_queryset_delete_is_soft(self):
        """Should flag rows instead of removing them."""
        customer = CustomerFactory()

        count, _ = Customer.objects.filter(pk=customer.pk).delete()

        assert count == 1
        assert Customer.all_objects.get(pk=customer.pk).is_deleted

    def test_restore(self):
        """Should bring a soft-deleted row back."""
        customer = CustomerFactory()
        customer.soft_delete()
        customer.restore()

        assert Customer.objects.filter(pk=customer.pk).exists()


# =============================================================================
# Delegation Tests
# =============================================================================


@pytest.mark.django_db
class TestDelegationRecord:
    """Tests for DelegationRecord immutability."""

    def test_update_refused(self):
        """Should refuse any change to a stored delegation."""
        record = DelegationRecordFactory()
        record.signature = "0x" + "cd" * 65

        with pytest.raises(ConflictError) as exc_info:
            record.save()

        assert exc_info.value.error_code == "DELEGATION_IMMUTABLE"

    def test_partial_update_of_signed_fields_refused(self):
        """Should refuse update_fields touching signed data."""
        record = DelegationRecordFactory()

        with pytest.raises(ConflictError):
            record.save(update_fields=["caveats", "updated_at"])

    def test_soft_delete_allowed(self):
        """Should allow superseding through soft delete."""
        record = DelegationRecordFactory()

        record.soft_delete()

        assert DelegationRecord.all_objects.get(pk=record.pk).is_deleted
        assert not DelegationRecord.objects.filter(pk=record.pk).exists()

    def test_parsed_caveats(self):
        """Should parse stored caveats into the tagged union."""
        record = DelegationRecordFactory()

        assert [c.kind for c in record.parsed_caveats()] == ["amount_cap"]


# =============================================================================
# Append-Only Tests
# =============================================================================


@pytest.mark.django_db
class TestAppendOnly:
    """Tests for the append-only audit tables."""

    def test_event_update_refused(self):
        """Should refuse saving an existing event."""
        event = SubscriptionEventFactory()
        event.error_message = "rewritten"

        with pytest.raises(ConflictError) as exc_info:
            event.save()

        assert exc_info.value.error_code == "APPEND_ONLY"

    def test_event_delete_refused(self):
        """Should refuse deleting an event."""
        event = SubscriptionEventFactory()

        with pytest.raises(ConflictError):
            event.delete()

        assert SubscriptionEvent.objects.filter(pk=event.pk).exists()

    def test_event_bulk_update_refused(self):
        """Should refuse queryset updates."""
        event = SubscriptionEventFactory()

        with pytest.raises(ConflictError):
            SubscriptionEvent.objects.filter(pk=event.pk).update(amount_in_cents=1)

    def test_event_bulk_delete_refused(self):
        """Should refuse queryset deletes."""
        event = SubscriptionEventFactory()

        with pytest.raises(ConflictError):
            SubscriptionEvent.objects.filter(pk=event.pk).delete()

    def test_failed_attempt_append_only(self):
        """Should apply the same rules to failed signups."""
        attempt = FailedSubscriptionAttemptFactory()

        with pytest.raises(ConflictError):
            attempt.delete()
        with pytest.raises(ConflictError):
            FailedSubscriptionAttempt.objects.filter(pk=attempt.pk).update(error_message="")


# =============================================================================
# Dunning Configuration Tests
# =============================================================================


@pytest.mark.django_db
class TestDunningConfiguration:
    """Tests for the retry policy model."""

    def test_retry_delay_by_attempt(self):
        """Should index retry_interval_days by attempt number."""
        configuration = DunningConfigurationFactory(retry_interval_days=[1, 2, 4])

        assert configuration.retry_delay(1) == timedelta(days=1)
        assert configuration.retry_delay(2) == timedelta(days=2)
        assert configuration.retry_delay(3) == timedelta(days=4)

    def test_retry_delay_repeats_last_interval(self):
        """Should reuse the last interval when attempts outnumber intervals."""
        configuration = DunningConfigurationFactory(retry_interval_days=[3, 7], max_retry_attempts=4)

        assert configuration.retry_delay(4) == timedelta(days=7)

    def test_actions_default_to_retry(self):
        """Should retry payment when no actions are configured for an attempt."""
        configuration = DunningConfigurationFactory(attempt_actions=[])

        assert configuration.actions_for(2) == [DunningAction.RETRY_PAYMENT]

    def test_actions_for_configured_attempt(self):
        """Should return the configured actions for the attempt."""
        configuration = DunningConfigurationFactory(attempt_actions=[{"attempt": 2, "actions": ["email"]}])

        assert configuration.actions_for(2) == ["email"]

    def test_clean_rejects_empty_intervals(self):
        """Should require at least one interval."""
        configuration = DunningConfigurationFactory.build(retry_interval_days=[])

        with pytest.raises(DjangoValidationError):
            configuration.clean()

    def test_clean_rejects_negative_days(self):
        """Should require non-negative integer days."""
        configuration = DunningConfigurationFactory.build(retry_interval_days=[1, -2])

        with pytest.raises(DjangoValidationError):
            configuration.clean()

    def test_one_default_per_workspace(self):
        """Should refuse a second default configuration in a workspace."""
        configuration = DunningConfigurationFactory()

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                type(configuration).objects.create(workspace=configuration.workspace, is_default=True)


@pytest.mark.django_db
class TestDunningCampaignModel:
    """Tests for DunningCampaign constraints."""

    def test_one_active_campaign_per_subscription(self):
        """Should refuse a second active campaign for a subscription."""
        campaign = DunningCampaignFactory()

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                DunningCampaignFactory(subscription=campaign.subscription, configuration=campaign.configuration)

    def test_closed_campaigns_do_not_block(self):
        """Should allow a new campaign once the previous one closed."""
        campaign = DunningCampaignFactory(status=DunningCampaignStatus.COMPLETED)

        DunningCampaignFactory(subscription=campaign.subscription, configuration=campaign.configuration)

        assert DunningCampaign.objects.filter(subscription=campaign.subscription).count() == 2

    def test_attempts_exhausted(self):
        """Should compare attempts made with the configured maximum."""
        campaign = DunningCampaignFactory(current_attempt=2)
        assert not campaign.attempts_exhausted

        campaign.current_attempt = 3
        assert campaign.attempts_exhausted


# =============================================================================
# Payment Sync Event Tests
# =============================================================================


@pytest.mark.django_db
class TestPaymentSyncEvent:
    """Tests for PaymentSyncEvent."""

    def test_idempotency_key_unique(self):
        """Should refuse a second row with the same key."""
        event = PaymentSyncEventFactory()

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                PaymentSyncEventFactory(idempotency_key=event.idempotency_key)

    def test_null_keys_do_not_collide(self):
        """Should allow many rejected rows without a key."""
        PaymentSyncEventFactory(idempotency_key=None)
        PaymentSyncEventFactory(idempotency_key=None)

    def test_get_object(self):
        """Should return the processor object from the payload."""
        event = PaymentSyncEventFactory(external_id="cus_42")

        assert event.get_object()["id"] == "cus_42"

    def test_get_object_tolerates_bad_payload(self):
        """Should return an empty dict for payloads without an object."""
        event = PaymentSyncEventFactory(payload={"data": "nope"})

        assert event.get_object() == {}
