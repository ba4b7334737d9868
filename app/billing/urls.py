"""
URL configuration for the billing app.

Routes:
    - /subscriptions/ - Subscription reads and cancellation (SubscriptionViewSet)
    - POST /webhooks/<provider_name>/ - Payment processor webhook endpoint

All routes are prefixed with /api/v1/billing/ when included in the main URLconf.
"""

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from billing.views import SubscriptionViewSet
from billing.webhooks.views import provider_webhook

app_name = "billing"

router = DefaultRouter()
router.register(r"subscriptions", SubscriptionViewSet, basename="subscription")

urlpatterns = [
    # Webhook endpoints
    path("webhooks/<str:provider_name>/", provider_webhook, name="provider_webhook"),
    path("", include(router.urls)),
]
