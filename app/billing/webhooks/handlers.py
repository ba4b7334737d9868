"""
Projection handlers for processor events.

Each handler projects one normalized event type onto local entities and
returns a ServiceResult whose data is a short description of what changed.
Handlers run inside a savepoint opened by PaymentSyncCoordinator; raising
or returning a failure leaves no partial writes.

Ownership rules for subscriptions:
    - Delegation-backed (delegation set): the on-chain path owns status,
      schedule and counters. A processor event only touches
      payment_sync_status, payment_synced_at, payment_sync_version and a
      missing external_id.
    - Processor-owned (no delegation): the processor is authoritative for
      status and periods; next_redemption_date always stays null.

Usage:
    from billing.webhooks.handlers import dispatch_projection, register_handler

    @register_handler("coupon.created")
    def handle_coupon_created(event: PaymentSyncEvent) -> ServiceResult:
        ...
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone as dt_timezone
from typing import Any, Callable

from django.utils import timezone

from core.services import ServiceResult

from billing.models import Customer, PaymentSyncEvent, Price, Product, Subscription
from billing.services.event_recorder import EventRecorder
from billing.state_machines import (
    IntervalType,
    PaymentSyncStatus,
    PriceType,
    SubscriptionEventType,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


PROJECTION_HANDLERS: dict[str, Callable[[PaymentSyncEvent], ServiceResult]] = {}


def register_handler(*event_types: str) -> Callable:
    """
    Decorator to register a projection for one or more event types.

    Usage:
        @register_handler("customer.created", "customer.updated")
        def handle_customer_upsert(event: PaymentSyncEvent) -> ServiceResult:
            ...
    """

    def decorator(func: Callable[[PaymentSyncEvent], ServiceResult]) -> Callable:
        for event_type in event_types:
            PROJECTION_HANDLERS[event_type] = func
            logger.debug(f"Registered projection handler for {event_type}")
        return func

    return decorator


def dispatch_projection(event: PaymentSyncEvent) -> ServiceResult:
    """
    Run the handler registered for the event type.

    Unknown types succeed without touching anything, so new processor
    event types never pile up as failures.
    """
    handler = PROJECTION_HANDLERS.get(event.event_type)
    if not handler:
        logger.info(
            f"No projection registered for event type: {event.event_type}",
            extra={"payment_sync_event_id": str(event.id)},
        )
        return ServiceResult.success("no projection for event type")
    return handler(event)


# Processor subscription status -> local status
SUBSCRIPTION_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.OVERDUE,
    "incomplete": SubscriptionStatus.OVERDUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.SUSPENDED,
    "paused": SubscriptionStatus.SUSPENDED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}

# Processor recurring interval -> local interval (interval_count 1 only)
INTERVAL_MAP = {
    "day": IntervalType.DAILY,
    "week": IntervalType.WEEK,
    "month": IntervalType.MONTH,
    "year": IntervalType.YEAR,
}


# =============================================================================
# Helpers
# =============================================================================


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=dt_timezone.utc)
    return None


def _sync_fields(instance, now: datetime) -> list[str]:
    instance.payment_sync_status = PaymentSyncStatus.SYNCED
    instance.payment_synced_at = now
    return ["payment_sync_status", "payment_synced_at"]


def _find_synced(model, event: PaymentSyncEvent, external_id: str):
    return model.objects.filter(
        workspace_id=event.workspace_id,
        external_id=external_id,
        payment_provider=event.provider_name,
    ).first()


def _first_item_price_id(obj: dict) -> str | None:
    items = (obj.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price")
    if isinstance(price, dict):
        return price.get("id")
    return price


def _period_bounds(obj: dict) -> tuple[datetime | None, datetime | None]:
    start, end = obj.get("current_period_start"), obj.get("current_period_end")
    if start is None:
        items = (obj.get("items") or {}).get("data") or []
        if items:
            start, end = items[0].get("current_period_start"), items[0].get("current_period_end")
    return _timestamp(start), _timestamp(end)


# =============================================================================
# Customer & Catalog Handlers
# =============================================================================


@register_handler("customer.created", "customer.updated")
def handle_customer_upsert(event: PaymentSyncEvent) -> ServiceResult:
    obj = event.get_object()
    external_id = obj.get("id")
    if not external_id:
        return ServiceResult.failure("Customer event without id", error_code="INVALID_PAYLOAD")

    now = timezone.now()
    customer = _find_synced(Customer, event, external_id)
    created = customer is None
    if created:
        customer = Customer(
            workspace_id=event.workspace_id,
            external_id=external_id,
            payment_provider=event.provider_name,
        )
    customer.email = obj.get("email") or ""
    customer.name = obj.get("name") or ""
    customer.set_meta("processor_metadata", obj.get("metadata") or {}, save=False)
    _sync_fields(customer, now)
    customer.save()
    return ServiceResult.success(f"customer {'created' if created else 'updated'}")


@register_handler("customer.deleted")
def handle_customer_deleted(event: PaymentSyncEvent) -> ServiceResult:
    customer = _find_synced(Customer, event, event.get_object().get("id", ""))
    if customer is None:
        return ServiceResult.success("customer not found locally")
    customer.soft_delete()
    return ServiceResult.success("customer deleted")


@register_handler("product.created", "product.updated")
def handle_product_upsert(event: PaymentSyncEvent) -> ServiceResult:
    obj = event.get_object()
    external_id = obj.get("id")
    if not external_id:
        return ServiceResult.failure("Product event without id", error_code="INVALID_PAYLOAD")

    now = timezone.now()
    product = _find_synced(Product, event, external_id)
    created = product is None
    if created:
        product = Product(
            workspace_id=event.workspace_id,
            external_id=external_id,
            payment_provider=event.provider_name,
        )
    product.name = obj.get("name") or external_id
    product.description = obj.get("description") or ""
    product.is_active = bool(obj.get("active", True))
    _sync_fields(product, now)
    product.save()
    return ServiceResult.success(f"product {'created' if created else 'updated'}")


@register_handler("product.deleted")
def handle_product_deleted(event: PaymentSyncEvent) -> ServiceResult:
    product = _find_synced(Product, event, event.get_object().get("id", ""))
    if product is None:
        return ServiceResult.success("product not found locally")
    product.soft_delete()
    return ServiceResult.success("product deleted")


@register_handler("price.created", "price.updated")
def handle_price_upsert(event: PaymentSyncEvent) -> ServiceResult:
    obj = event.get_object()
    external_id = obj.get("id")
    product_ref = obj.get("product")
    if isinstance(product_ref, dict):
        product_ref = product_ref.get("id")
    if not external_id or not product_ref:
        return ServiceResult.failure("Price event without id or product", error_code="INVALID_PAYLOAD")

    product = _find_synced(Product, event, product_ref)
    if product is None:
        # Retried later; the product event may still be in flight
        return ServiceResult.failure(f"Product {product_ref} not synced yet", error_code="DEPENDENCY_NOT_SYNCED")

    recurring = obj.get("recurring") or None
    interval_type = INTERVAL_MAP.get(recurring.get("interval")) if recurring else None
    if recurring and interval_type is None:
        return ServiceResult.failure(
            f"Unsupported interval {recurring.get('interval')!r}", error_code="UNSUPPORTED_INTERVAL"
        )

    # Redemptions run once per single interval; a price billed every N
    # intervals would be charged N times too often.
    interval_count = recurring.get("interval_count") if recurring else None
    if interval_count not in (None, 1):
        return ServiceResult.failure(
            f"Unsupported interval count {interval_count!r}", error_code="UNSUPPORTED_INTERVAL"
        )

    now = timezone.now()
    price = Price.objects.filter(
        product=product,
        external_id=external_id,
        payment_provider=event.provider_name,
    ).first()
    created = price is None
    if created:
        price = Price(product=product, external_id=external_id, payment_provider=event.provider_name)

    term_length = (obj.get("metadata") or {}).get("term_length")
    price.price_type = PriceType.RECURRING if recurring else PriceType.ONE_TIME
    price.interval_type = interval_type
    price.currency = str(obj.get("currency") or "usd").upper()
    price.unit_amount_in_pennies = int(obj.get("unit_amount") or 0)
    price.term_length = int(term_length) if term_length else None
    price.is_active = bool(obj.get("active", True))
    _sync_fields(price, now)
    price.save()
    return ServiceResult.success(f"price {'created' if created else 'updated'}")


# =============================================================================
# Subscription Handlers
# =============================================================================


def _find_subscription(event: PaymentSyncEvent, obj: dict) -> Subscription | None:
    external_id = obj.get("id") if obj.get("object", "subscription") == "subscription" else None
    if external_id:
        subscription = _find_synced(Subscription, event, external_id)
        if subscription is not None:
            return subscription
    local_id = (obj.get("metadata") or {}).get("subscription_id")
    if local_id:
        return Subscription.objects.filter(workspace_id=event.workspace_id, id=local_id).first()
    return None


def _touch_sync_metadata(subscription: Subscription, event: PaymentSyncEvent, external_id: str | None) -> None:
    """The only writes a processor may make to a delegation-backed subscription."""
    update_fields = _sync_fields(subscription, timezone.now())
    subscription.payment_sync_version += 1
    update_fields.append("payment_sync_version")
    if external_id and not subscription.external_id:
        subscription.external_id = external_id
        subscription.payment_provider = event.provider_name
        update_fields += ["external_id", "payment_provider"]
    subscription.save(update_fields=update_fields)


@register_handler("subscription.created", "subscription.updated", "subscription.deleted")
def handle_subscription_event(event: PaymentSyncEvent) -> ServiceResult:
    obj = event.get_object()
    external_id = obj.get("id")
    if not external_id:
        return ServiceResult.failure("Subscription event without id", error_code="INVALID_PAYLOAD")

    subscription = _find_subscription(event, obj)

    if subscription is not None and subscription.is_delegation_backed:
        _touch_sync_metadata(subscription, event, external_id)
        return ServiceResult.success("delegation-backed subscription: sync metadata only")

    processor_status = "canceled" if event.event_type == "subscription.deleted" else obj.get("status")
    status = SUBSCRIPTION_STATUS_MAP.get(processor_status)
    period_start, period_end = _period_bounds(obj)

    if subscription is None:
        return _create_processor_subscription(event, obj, status, period_start, period_end)

    if status is not None and status != subscription.status:
        subscription.apply_processor_status(status)
    subscription.next_redemption_date = None
    subscription.current_period_start = period_start or subscription.current_period_start
    subscription.current_period_end = period_end or subscription.current_period_end
    subscription.cancel_at = _timestamp(obj.get("cancel_at"))
    subscription.payment_sync_version += 1
    _sync_fields(subscription, timezone.now())
    subscription.save()
    return ServiceResult.success(f"processor subscription updated to {subscription.status}")


def _create_processor_subscription(
    event: PaymentSyncEvent,
    obj: dict,
    status: str | None,
    period_start: datetime | None,
    period_end: datetime | None,
) -> ServiceResult:
    customer_ref = obj.get("customer")
    price_ref = _first_item_price_id(obj)
    customer = _find_synced(Customer, event, customer_ref) if customer_ref else None
    price = (
        Price.objects.select_related("product")
        .filter(
            product__workspace_id=event.workspace_id,
            external_id=price_ref,
            payment_provider=event.provider_name,
        )
        .first()
        if price_ref
        else None
    )
    if customer is None or price is None:
        return ServiceResult.failure(
            "Customer or price not synced yet",
            error_code="DEPENDENCY_NOT_SYNCED",
            errors={"customer": customer_ref, "price": price_ref},
        )

    now = timezone.now()
    subscription = Subscription.objects.create(
        workspace_id=event.workspace_id,
        customer=customer,
        product=price.product,
        price=price,
        status=status or SubscriptionStatus.ACTIVE,
        current_period_start=period_start,
        current_period_end=period_end,
        next_redemption_date=None,
        cancelled_at=now if status == SubscriptionStatus.CANCELED else None,
        external_id=obj["id"],
        payment_provider=event.provider_name,
        payment_sync_status=PaymentSyncStatus.SYNCED,
        payment_synced_at=now,
        payment_sync_version=1,
    )
    EventRecorder.record_event(
        subscription,
        SubscriptionEventType.CREATED,
        metadata={"source": event.provider_name},
        occurred_at=event.occurred_at or now,
    )
    return ServiceResult.success(f"processor subscription created as {subscription.status}")


# =============================================================================
# Invoice Handlers
# =============================================================================


def _invoice_subscription(event: PaymentSyncEvent, invoice: dict) -> Subscription | None:
    subscription_ref = invoice.get("subscription")
    if isinstance(subscription_ref, dict):
        subscription_ref = subscription_ref.get("id")
    if not subscription_ref:
        parent = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription_ref = parent.get("subscription")
    if not subscription_ref:
        return None
    return _find_synced(Subscription, event, subscription_ref)


@register_handler("invoice.paid")
def handle_invoice_paid(event: PaymentSyncEvent) -> ServiceResult:
    invoice = event.get_object()
    subscription = _invoice_subscription(event, invoice)
    if subscription is None:
        return ServiceResult.success("invoice not linked to a local subscription")

    if subscription.is_delegation_backed:
        _touch_sync_metadata(subscription, event, None)
        return ServiceResult.success("delegation-backed subscription: sync metadata only")

    amount = int(invoice.get("amount_paid") or 0)
    subscription.total_redemptions += 1
    subscription.total_amount_in_cents += amount
    if subscription.status == SubscriptionStatus.OVERDUE:
        subscription.apply_processor_status(SubscriptionStatus.ACTIVE)
        subscription.overdue_since = None
    subscription.payment_sync_version += 1
    _sync_fields(subscription, timezone.now())
    subscription.save()

    EventRecorder.record_event(
        subscription,
        SubscriptionEventType.RENEWED,
        amount_in_cents=amount,
        metadata={"invoice_id": invoice.get("id"), "source": event.provider_name},
        occurred_at=event.occurred_at,
    )
    return ServiceResult.success("processor renewal recorded")


@register_handler("invoice.payment_failed")
def handle_invoice_payment_failed(event: PaymentSyncEvent) -> ServiceResult:
    invoice = event.get_object()
    subscription = _invoice_subscription(event, invoice)
    if subscription is None:
        return ServiceResult.success("invoice not linked to a local subscription")

    if subscription.is_delegation_backed:
        _touch_sync_metadata(subscription, event, None)
        return ServiceResult.success("delegation-backed subscription: sync metadata only")

    if subscription.status == SubscriptionStatus.ACTIVE:
        subscription.apply_processor_status(SubscriptionStatus.OVERDUE)
        subscription.overdue_since = subscription.overdue_since or timezone.now()
    subscription.payment_sync_version += 1
    _sync_fields(subscription, timezone.now())
    subscription.save()

    EventRecorder.record_event(
        subscription,
        SubscriptionEventType.FAILED,
        amount_in_cents=int(invoice.get("amount_due") or 0),
        error_message=(invoice.get("last_finalization_error") or {}).get("message") or "processor payment failed",
        metadata={"invoice_id": invoice.get("id"), "source": event.provider_name},
        occurred_at=event.occurred_at,
    )
    return ServiceResult.success("processor payment failure recorded")
