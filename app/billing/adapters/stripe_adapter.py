"""
Stripe adapter for the payment sync layer.

Encapsulates every Stripe SDK interaction the billing app makes:
webhook signature verification, normalization of Stripe events into
processor-neutral NormalizedEvent values, and paging through objects for
batch syncs.

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_MAX_RETRIES: SDK network retries (default: 3)
- STRIPE_PLATFORM_ACCOUNT_ID: Account id used for events without `account`

Usage:
    from billing.adapters import StripeAdapter

    event_data = StripeAdapter.verify_webhook_signature(payload, signature)
    event = StripeAdapter.normalize_event(event_data)
"""

from __future__ import annotations

import hashlib
import json
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import TYPE_CHECKING, Any

import stripe
from django.conf import settings

from billing.exceptions import ProcessorAPIError, WebhookSignatureError
from billing.state_machines import ProviderEnvironment

if TYPE_CHECKING:
    from collections.abc import Iterator


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class NormalizedEvent:
    """
    A processor event in processor-neutral form.

    Attributes:
        provider_name: Processor name (e.g., 'stripe')
        provider_account_id: Processor account the event belongs to
        environment: live, test or sandbox
        event_type: Normalized type (e.g., 'subscription.updated')
        webhook_event_id: Processor event id; stable across redeliveries
        entity_type: Object kind (customer, product, price, subscription, invoice)
        external_id: Processor id of the object
        payload: Full event as received
        occurred_at: When the processor says it happened
        signature_valid: Result of signature verification
    """

    provider_name: str
    provider_account_id: str
    environment: str
    event_type: str
    webhook_event_id: str
    entity_type: str = ""
    external_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime | None = None
    signature_valid: bool = True

    @property
    def data_object(self) -> dict[str, Any]:
        data = self.payload.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        return obj if isinstance(obj, dict) else {}


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)

    Returns:
        Delay in seconds with jitter (0-25% of calculated delay)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


# Stripe type prefix -> normalized prefix
EVENT_TYPE_ALIASES = {
    "customer.subscription.": "subscription.",
}

SYNCABLE_OBJECTS = {
    "customer": stripe.Customer,
    "product": stripe.Product,
    "price": stripe.Price,
    "subscription": stripe.Subscription,
}


def normalize_event_type(stripe_type: str) -> str:
    for prefix, replacement in EVENT_TYPE_ALIASES.items():
        if stripe_type.startswith(prefix):
            return replacement + stripe_type[len(prefix):]
    return stripe_type


def content_hash(obj: dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(obj, sort_keys=True, default=str).encode()).hexdigest()[:16]


# =============================================================================
# Stripe Adapter
# =============================================================================


class StripeAdapter:
    """
    Adapter for Stripe operations used by payment sync.

    All methods are class methods - no instance state is maintained.
    Thread-safe for use from Celery workers.
    """

    provider_name = "stripe"
    signature_header = "Stripe-Signature"

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = getattr(settings, "STRIPE_MAX_RETRIES", 3)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    @classmethod
    def verify_webhook_signature(cls, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and parse a Stripe webhook event.

        Raises:
            WebhookSignatureError: Missing or invalid signature, or unparseable payload
        """
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError("Invalid webhook signature", details={"error": str(e)})
        except ValueError as e:
            raise WebhookSignatureError("Invalid webhook payload", details={"error": str(e)})
        return event.to_dict()

    @staticmethod
    def parse_unverified(payload: bytes) -> dict[str, Any]:
        """Best-effort parse of a payload whose signature failed, for the audit record."""
        try:
            data = json.loads(payload)
        except (TypeError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    # =========================================================================
    # Normalization
    # =========================================================================

    @classmethod
    def normalize_event(cls, event: dict[str, Any], signature_valid: bool = True) -> NormalizedEvent:
        """
        Convert a Stripe event dict into a NormalizedEvent.

        The provider account is the event's connected `account`, or the
        platform account when absent. livemode selects live or test.
        """
        event_type = normalize_event_type(str(event.get("type") or ""))
        data = event.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        obj = obj if isinstance(obj, dict) else {}
        created = event.get("created")

        return NormalizedEvent(
            provider_name=cls.provider_name,
            provider_account_id=event.get("account") or settings.STRIPE_PLATFORM_ACCOUNT_ID,
            environment=ProviderEnvironment.LIVE if event.get("livemode") else ProviderEnvironment.TEST,
            event_type=event_type,
            webhook_event_id=str(event.get("id") or ""),
            entity_type=event_type.split(".", 1)[0] if event_type else "",
            external_id=str(obj.get("id") or ""),
            payload=event,
            occurred_at=datetime.fromtimestamp(created, tz=dt_timezone.utc) if isinstance(created, int) else None,
            signature_valid=signature_valid,
        )

    @classmethod
    def sync_event(
        cls,
        entity_type: str,
        obj: dict[str, Any],
        provider_account_id: str,
        environment: str,
    ) -> NormalizedEvent:
        """
        Wrap an object fetched during a batch sync as an event.

        The event id embeds a content hash, so re-running a sync skips
        objects that have not changed since they were last applied.
        """
        external_id = str(obj.get("id") or "")
        return NormalizedEvent(
            provider_name=cls.provider_name,
            provider_account_id=provider_account_id,
            environment=environment,
            event_type=f"{entity_type}.updated",
            webhook_event_id=f"sync:{entity_type}:{external_id}:{content_hash(obj)}",
            entity_type=entity_type,
            external_id=external_id,
            payload={"type": f"{entity_type}.updated", "data": {"object": obj}},
            occurred_at=None,
        )

    # =========================================================================
    # Batch Sync
    # =========================================================================

    @classmethod
    def iter_objects(
        cls,
        entity_type: str,
        provider_account_id: str,
        created_after: datetime | None = None,
    ) -> Iterator[dict[str, Any]]:
        """
        Page through every object of entity_type on the account.

        Raises:
            ValueError: entity_type is not syncable
            ProcessorAPIError: Stripe call failed
        """
        resource = SYNCABLE_OBJECTS.get(entity_type)
        if resource is None:
            raise ValueError(f"Unsupported entity type: {entity_type}")

        cls._configure_stripe()
        logger = cls.get_logger()

        params: dict[str, Any] = {"limit": 100}
        if created_after is not None:
            params["created"] = {"gte": int(created_after.timestamp())}
        if entity_type == "subscription":
            params["status"] = "all"
        if provider_account_id and provider_account_id != settings.STRIPE_PLATFORM_ACCOUNT_ID:
            params["stripe_account"] = provider_account_id

        log_context = {
            "operation": f"list_{entity_type}",
            "provider_account_id": provider_account_id,
        }
        start_time = time.time()
        logger.info("Starting Stripe listing", extra=log_context)

        count = 0
        try:
            for item in resource.list(**params).auto_paging_iter():
                count += 1
                yield item.to_dict()
        except stripe.StripeError as e:
            cls._handle_stripe_error(e, log_context, (time.time() - start_time) * 1000)

        logger.info(
            "Stripe listing completed",
            extra={**log_context, "count": count, "duration_ms": (time.time() - start_time) * 1000},
        )

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(cls, error: Exception, log_context: dict[str, Any], duration_ms: float) -> None:
        """
        Translate Stripe SDK errors into ProcessorAPIError.

        Raises:
            ProcessorAPIError: Always; is_retryable set for transient errors
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise ProcessorAPIError("Stripe rate limit exceeded", error_code="STRIPE_RATE_LIMIT", is_retryable=True)

        if isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            logger.error("Stripe unavailable", extra=log_context, exc_info=True)
            raise ProcessorAPIError("Stripe service unavailable", error_code="STRIPE_UNAVAILABLE", is_retryable=True)

        if isinstance(error, stripe.AuthenticationError):
            logger.critical("Stripe authentication failed - check API key", extra=log_context)
            raise ProcessorAPIError("Stripe authentication failed", error_code="STRIPE_AUTHENTICATION")

        logger.error("Stripe request failed", extra={**log_context, "error": str(error)})
        raise ProcessorAPIError(str(error), error_code="STRIPE_ERROR")


# =============================================================================
# Provider Registry
# =============================================================================

PROVIDER_ADAPTERS: dict[str, type[StripeAdapter]] = {
    StripeAdapter.provider_name: StripeAdapter,
}


def get_provider_adapter(provider_name: str) -> type[StripeAdapter] | None:
    return PROVIDER_ADAPTERS.get(provider_name)
