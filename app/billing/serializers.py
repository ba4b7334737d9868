"""
Serializers for the billing API.

Serializers:
    SubscriptionSerializer: Read-only status, schedule and counters
    SubscriptionEventSerializer: One lifecycle event
    CancelSubscriptionSerializer: Cancel request body
    PauseSubscriptionSerializer: Pause request body

The API shows what a billing UI needs and nothing of the retry machinery:
claim markers, versions and dunning internals are never serialized.

Usage:
    from billing.serializers import SubscriptionSerializer

    serializer = SubscriptionSerializer(subscription)
    data = serializer.data
"""

from __future__ import annotations

from django.utils import timezone
from rest_framework import serializers

from billing.caveats import delegation_expires_at
from billing.models import Subscription, SubscriptionEvent
from billing.notifications import format_amount


class SubscriptionSerializer(serializers.ModelSerializer):
    """
    Read-only serializer for Subscription.

    Includes product and price details flattened for display, plus the
    per-period amount formatted in the price currency.
    """

    product_name = serializers.CharField(source="product.name", read_only=True)
    currency = serializers.CharField(source="price.currency", read_only=True)
    interval_type = serializers.CharField(source="price.interval_type", read_only=True, allow_null=True)
    amount_display = serializers.SerializerMethodField()
    is_delegation_backed = serializers.BooleanField(read_only=True)
    delegation_expires_at = serializers.SerializerMethodField()

    class Meta:
        model = Subscription
        fields = [
            "id",
            "workspace",
            "customer",
            "product",
            "product_name",
            "price",
            "currency",
            "interval_type",
            "amount_display",
            "status",
            "current_period_start",
            "current_period_end",
            "next_redemption_date",
            "total_redemptions",
            "total_amount_in_cents",
            "cancel_at",
            "cancelled_at",
            "cancellation_reason",
            "pause_ends_at",
            "is_delegation_backed",
            "delegation_expires_at",
            "external_id",
            "payment_provider",
            "created_at",
        ]
        read_only_fields = fields

    def get_amount_display(self, obj: Subscription) -> str:
        return format_amount(obj.price.unit_amount_in_pennies, obj.price.currency)

    def get_delegation_expires_at(self, obj: Subscription) -> str | None:
        if not obj.is_delegation_backed:
            return None
        expires_at = delegation_expires_at(obj.delegation.parsed_caveats())
        return serializers.DateTimeField().to_representation(expires_at) if expires_at else None


class SubscriptionEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = SubscriptionEvent
        fields = [
            "id",
            "event_type",
            "transaction_hash",
            "amount_in_cents",
            "error_message",
            "metadata",
            "occurred_at",
        ]
        read_only_fields = fields


class CancelSubscriptionSerializer(serializers.Serializer):
    """
    Request body for cancelling a subscription.

    Fields:
        reason: Free-text reason stored on the subscription
        at_period_end: Keep the subscription running until its current period ends
    """

    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    at_period_end = serializers.BooleanField(required=False, default=False)


class PauseSubscriptionSerializer(serializers.Serializer):
    """
    Request body for pausing a subscription.

    Fields:
        reason: Free-text reason recorded on the suspended event
        pause_until: Resume automatically at this time; omit to pause until resumed
    """

    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    pause_until = serializers.DateTimeField(required=False, allow_null=True, default=None)

    def validate_pause_until(self, value):
        if value is not None and value <= timezone.now():
            raise serializers.ValidationError("pause_until must be in the future")
        return value
