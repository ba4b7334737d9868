"""
Webhook endpoint for payment processors.

The view:
1. Verifies the signature through the provider adapter
2. Normalizes the event and routes it to a workspace
3. Records the delivery (idempotent via idempotency_key)
4. Queues it for async application
5. Returns immediately

Every delivery is recorded, including forged and unroutable ones, so the
PaymentSyncEvent table is a complete audit of what reached the endpoint.

Usage:
    # In urls.py
    from billing.webhooks.views import provider_webhook

    urlpatterns = [
        path("webhooks/<str:provider_name>/", provider_webhook, name="provider_webhook"),
    ]
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from billing.adapters import get_provider_adapter
from billing.exceptions import RoutingError, WebhookSignatureError
from billing.services import PaymentSyncCoordinator

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def provider_webhook(request: HttpRequest, provider_name: str) -> HttpResponse:
    """
    Receive, record and queue a processor webhook.

    Returns:
        HttpResponse with status:
        - 200: Event accepted (new or duplicate)
        - 400: Invalid signature or payload (recorded as rejected)
        - 404: Unknown provider, or account not mapped to a workspace
    """
    adapter = get_provider_adapter(provider_name)
    if adapter is None:
        logger.warning("Webhook for unknown provider", extra={"provider_name": provider_name})
        return HttpResponse("Unknown provider", status=404)

    payload = request.body
    signature = request.headers.get(adapter.signature_header, "")

    # Step 1: Verify signature
    try:
        event_data = adapter.verify_webhook_signature(payload, signature)
    except WebhookSignatureError as e:
        event = adapter.normalize_event(adapter.parse_unverified(payload), signature_valid=False)
        PaymentSyncCoordinator.record_rejected(event, e.message)
        return HttpResponse("Invalid signature", status=400)

    event = adapter.normalize_event(event_data)
    if not event.webhook_event_id or not event.event_type:
        logger.warning("Webhook missing required fields", extra={"provider_name": provider_name})
        return HttpResponse("Invalid event", status=400)

    log_context = {
        "provider_name": provider_name,
        "webhook_event_id": event.webhook_event_id,
        "event_type": event.event_type,
        "provider_account_id": event.provider_account_id,
    }
    logger.info(f"Received {provider_name} webhook: {event.event_type}", extra=log_context)

    # Step 2: Route to a workspace
    try:
        workspace_id = PaymentSyncCoordinator.route_inbound(
            event.provider_account_id,
            event.provider_name,
            event.environment,
        )
    except RoutingError as e:
        PaymentSyncCoordinator.record_unroutable(event, e)
        logger.warning("Webhook could not be routed", extra={**log_context, "error_code": e.error_code})
        return HttpResponse("Unknown account", status=404)

    # Step 3: Record (idempotent)
    record, created = PaymentSyncCoordinator.record_delivery(workspace_id, event)
    if not created and record.is_applied:
        logger.info("Webhook already applied, returning success", extra=log_context)
        return HttpResponse("Already processed", status=200)

    # Step 4: Queue for async application
    try:
        from billing.tasks import process_sync_event

        process_sync_event.delay(str(record.id))
        logger.info(
            "Webhook queued for processing",
            extra={**log_context, "payment_sync_event_id": str(record.id)},
        )
    except Exception as e:
        # The retry sweep picks up pending events
        logger.error(
            f"Failed to queue webhook: {type(e).__name__}",
            extra=log_context,
            exc_info=True,
        )

    return HttpResponse("Accepted", status=200)
