"""
Views for the billing API.

ViewSets:
    SubscriptionViewSet: ReadOnlyModelViewSet with event history and lifecycle actions

Endpoints:
    GET /api/v1/billing/subscriptions/ - List subscriptions (paginated, filtered)
    GET /api/v1/billing/subscriptions/{id}/ - Subscription status and schedule
    GET /api/v1/billing/subscriptions/{id}/events/ - Lifecycle event history
    POST /api/v1/billing/subscriptions/{id}/cancel/ - Cancel now or at period end
    POST /api/v1/billing/subscriptions/{id}/reactivate/ - Withdraw a scheduled cancellation
    POST /api/v1/billing/subscriptions/{id}/pause/ - Suspend, optionally until a date
    POST /api/v1/billing/subscriptions/{id}/resume/ - Resume a paused subscription

Webhook ingress lives in billing.webhooks.views.
"""

from __future__ import annotations

from django_filters.rest_framework import DjangoFilterBackend
from drf_spectacular.utils import (
    OpenApiResponse,
    extend_schema,
    extend_schema_view,
)
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from billing.filters import SubscriptionFilter
from billing.models import Subscription
from billing.serializers import (
    CancelSubscriptionSerializer,
    PauseSubscriptionSerializer,
    SubscriptionEventSerializer,
    SubscriptionSerializer,
)
from billing.services import EventRecorder, SubscriptionLedger


@extend_schema_view(
    list=extend_schema(
        operation_id="list_subscriptions",
        summary="List subscriptions",
        description=(
            "Paginated list of subscriptions. Filter by workspace, customer, "
            "product, status, or due date."
        ),
        tags=["Billing - Subscriptions"],
    ),
    retrieve=extend_schema(
        operation_id="get_subscription",
        summary="Get subscription",
        description="Status, schedule and counters of one subscription.",
        tags=["Billing - Subscriptions"],
    ),
)
class SubscriptionViewSet(viewsets.ReadOnlyModelViewSet):
    """
    ViewSet for subscription reads and lifecycle changes.

    Provides:
    - list: GET / - List subscriptions with filtering
    - retrieve: GET /{id}/ - Subscription detail
    - events: GET /{id}/events/ - Event history, oldest first
    - cancel: POST /{id}/cancel/ - Cancel (idempotent)
    - reactivate: POST /{id}/reactivate/ - Undo cancel at period end
    - pause: POST /{id}/pause/ - Suspend (idempotent)
    - resume: POST /{id}/resume/ - Resume (idempotent)
    """

    permission_classes = [IsAuthenticated]
    serializer_class = SubscriptionSerializer
    filter_backends = [DjangoFilterBackend]
    filterset_class = SubscriptionFilter

    def get_queryset(self):
        return Subscription.objects.select_related("product", "price", "delegation")

    @extend_schema(
        operation_id="list_subscription_events",
        summary="List subscription events",
        description="Append-only lifecycle events of the subscription, oldest first.",
        responses={200: SubscriptionEventSerializer(many=True)},
        tags=["Billing - Subscriptions"],
    )
    @action(detail=True, methods=["get"])
    def events(self, request, pk=None):
        subscription = self.get_object()
        queryset = EventRecorder.history(subscription)

        page = self.paginate_queryset(queryset)
        if page is not None:
            serializer = SubscriptionEventSerializer(page, many=True)
            return self.get_paginated_response(serializer.data)

        serializer = SubscriptionEventSerializer(queryset, many=True)
        return Response(serializer.data)

    @extend_schema(
        operation_id="cancel_subscription",
        summary="Cancel subscription",
        description=(
            "Cancel immediately, or at the end of the current period with "
            "at_period_end. Cancelling a canceled subscription succeeds."
        ),
        request=CancelSubscriptionSerializer,
        responses={
            200: SubscriptionSerializer,
            400: OpenApiResponse(description="Subscription cannot be canceled from its status"),
            404: OpenApiResponse(description="Subscription not found"),
        },
        tags=["Billing - Subscriptions"],
    )
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        subscription = self.get_object()
        serializer = CancelSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = SubscriptionLedger.cancel(
            subscription.id,
            reason=serializer.validated_data["reason"],
            at_period_end=serializer.validated_data["at_period_end"],
        )
        if not result.success:
            return Response(result.to_response(), status=status.HTTP_400_BAD_REQUEST)

        return Response(SubscriptionSerializer(result.data).data)

    @extend_schema(
        operation_id="reactivate_subscription",
        summary="Reactivate subscription",
        description="Withdraw a cancellation scheduled for the end of the current period.",
        request=None,
        responses={
            200: SubscriptionSerializer,
            400: OpenApiResponse(description="No cancellation is scheduled"),
            404: OpenApiResponse(description="Subscription not found"),
        },
        tags=["Billing - Subscriptions"],
    )
    @action(detail=True, methods=["post"])
    def reactivate(self, request, pk=None):
        subscription = self.get_object()

        result = SubscriptionLedger.reactivate(subscription.id)
        if not result.success:
            return Response(result.to_response(), status=status.HTTP_400_BAD_REQUEST)

        return Response(SubscriptionSerializer(result.data).data)

    @extend_schema(
        operation_id="pause_subscription",
        summary="Pause subscription",
        description=(
            "Suspend redemptions. With pause_until the subscription resumes "
            "on its own at that time; otherwise it stays paused until resumed."
        ),
        request=PauseSubscriptionSerializer,
        responses={
            200: SubscriptionSerializer,
            400: OpenApiResponse(description="Subscription cannot be paused from its status"),
            404: OpenApiResponse(description="Subscription not found"),
        },
        tags=["Billing - Subscriptions"],
    )
    @action(detail=True, methods=["post"])
    def pause(self, request, pk=None):
        subscription = self.get_object()
        serializer = PauseSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = SubscriptionLedger.suspend(
            subscription.id,
            reason=serializer.validated_data["reason"],
            pause_until=serializer.validated_data["pause_until"],
        )
        if not result.success:
            return Response(result.to_response(), status=status.HTTP_400_BAD_REQUEST)

        return Response(SubscriptionSerializer(result.data).data)

    @extend_schema(
        operation_id="resume_subscription",
        summary="Resume subscription",
        description=(
            "Resume a paused subscription. The next redemption is due at once "
            "and starts a fresh period."
        ),
        request=None,
        responses={
            200: SubscriptionSerializer,
            400: OpenApiResponse(description="Subscription cannot be resumed from its status"),
            404: OpenApiResponse(description="Subscription not found"),
        },
        tags=["Billing - Subscriptions"],
    )
    @action(detail=True, methods=["post"])
    def resume(self, request, pk=None):
        subscription = self.get_object()

        result = SubscriptionLedger.resume(subscription.id, reason="api")
        if not result.success:
            return Response(result.to_response(), status=status.HTTP_400_BAD_REQUEST)

        return Response(SubscriptionSerializer(result.data).data)
