"""
Payment sync coordinator.

Reconciles local catalog and subscription state with external payment
processors, from webhooks and from batch syncs.

Idempotency:
    Every routable event gets idempotency_key =
    sha256("{workspace_id}:{provider_account_id}:{webhook_event_id}"). The
    key is unique in PaymentSyncEvent, so a redelivered webhook can only
    ever be recorded once; application happens under a row lock on that
    record and is skipped once the record is APPLIED.

Security:
    Events whose signature failed are stored REJECTED without a key (a
    forged delivery must not reserve the key of a genuine one) and are
    never applied or retried.

Usage:
    from billing.services import PaymentSyncCoordinator

    workspace_id = PaymentSyncCoordinator.route_inbound("acct_123", "stripe", "live")
    result = PaymentSyncCoordinator.apply_event(workspace_id, normalized_event)
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from core.services import BaseService

from billing.adapters import get_provider_adapter
from billing.exceptions import (
    AmbiguousProviderAccountError,
    ProcessorAPIError,
    ProviderAccountNotFoundError,
    RoutingError,
)
from billing.models import PaymentSyncEvent, PaymentSyncSession, WorkspaceProviderAccount
from billing.models.payment_sync import empty_progress
from billing.state_machines import (
    PaymentSyncEventStatus,
    PaymentSyncSessionStatus,
    PaymentSyncSessionType,
)
from billing.webhooks import handlers as projections

if TYPE_CHECKING:
    from billing.adapters import NormalizedEvent

# Objects are synced parents first so foreign keys resolve
SYNC_ENTITY_ORDER = ["customer", "product", "price", "subscription"]
MAX_ERROR_SUMMARY = 50


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass
class ApplyResult:
    outcome: ApplyOutcome
    event: PaymentSyncEvent | None = None
    error: str = ""

    @property
    def applied(self) -> bool:
        return self.outcome == ApplyOutcome.APPLIED


def idempotency_key(workspace_id: Any, provider_account_id: str, webhook_event_id: str) -> str:
    raw = f"{workspace_id}:{provider_account_id}:{webhook_event_id}"
    return hashlib.sha256(raw.encode()).hexdigest()


class PaymentSyncCoordinator(BaseService):
    """
    Routes, records and applies processor events.

    All methods are class methods - no instance state is maintained.
    """

    # =========================================================================
    # Routing
    # =========================================================================

    @classmethod
    def route_inbound(
        cls,
        provider_account_id: str,
        provider_name: str,
        environment: str | None = None,
    ) -> uuid.UUID:
        """
        Map a processor account to its workspace.

        Without environment, a mapping that exists in several
        environments is ambiguous. Never guesses.

        Raises:
            ProviderAccountNotFoundError: No active mapping
            AmbiguousProviderAccountError: More than one mapping matches
        """
        accounts = WorkspaceProviderAccount.objects.filter(
            provider_name=provider_name,
            provider_account_id=provider_account_id,
            is_active=True,
        )
        if environment:
            accounts = accounts.filter(environment=environment)

        details = {
            "provider_name": provider_name,
            "provider_account_id": provider_account_id,
            "environment": environment,
        }
        workspace_ids = list(accounts.values_list("workspace_id", flat=True)[:2])
        if not workspace_ids:
            raise ProviderAccountNotFoundError("No workspace for provider account", details=details)
        if len(workspace_ids) > 1:
            raise AmbiguousProviderAccountError("Provider account maps to several workspaces", details=details)
        return workspace_ids[0]

    # =========================================================================
    # Recording
    # =========================================================================

    @classmethod
    def _event_fields(cls, event: NormalizedEvent) -> dict[str, Any]:
        return {
            "provider_name": event.provider_name,
            "provider_account_id": event.provider_account_id,
            "environment": event.environment,
            "entity_type": event.entity_type,
            "external_id": event.external_id,
            "event_type": event.event_type,
            "webhook_event_id": event.webhook_event_id,
            "signature_valid": event.signature_valid,
            "payload": event.payload,
            "occurred_at": event.occurred_at,
        }

    @classmethod
    def record_rejected(
        cls,
        event: NormalizedEvent,
        reason: str,
        workspace_id: uuid.UUID | None = None,
    ) -> PaymentSyncEvent:
        """Store a delivery that failed signature verification. Never applied."""
        record = PaymentSyncEvent.objects.create(
            workspace_id=workspace_id,
            status=PaymentSyncEventStatus.REJECTED,
            idempotency_key=None,
            error_details={"reason": reason},
            processed_at=timezone.now(),
            **{**cls._event_fields(event), "signature_valid": False},
        )
        cls.get_logger().warning(
            "Rejected processor event with invalid signature",
            extra={
                "payment_sync_event_id": str(record.id),
                "provider_name": event.provider_name,
                "webhook_event_id": event.webhook_event_id,
            },
        )
        return record

    @classmethod
    def record_unroutable(cls, event: NormalizedEvent, error: RoutingError) -> PaymentSyncEvent:
        """Store a delivery no workspace claims; retried later in case a mapping appears."""
        return PaymentSyncEvent.objects.create(
            workspace=None,
            status=PaymentSyncEventStatus.FAILED,
            idempotency_key=None,
            error_details=error.to_dict(),
            **cls._event_fields(event),
        )

    @classmethod
    def record_delivery(
        cls,
        workspace_id: uuid.UUID,
        event: NormalizedEvent,
        session: PaymentSyncSession | None = None,
    ) -> tuple[PaymentSyncEvent, bool]:
        """
        Persist a routed event as PENDING.

        Returns (record, created). A redelivery returns the record of the
        first delivery.
        """
        if not event.signature_valid:
            return cls.record_rejected(event, "invalid signature", workspace_id), True

        key = idempotency_key(workspace_id, event.provider_account_id, event.webhook_event_id)
        try:
            with transaction.atomic():
                record = PaymentSyncEvent.objects.create(
                    workspace_id=workspace_id,
                    session=session,
                    idempotency_key=key,
                    status=PaymentSyncEventStatus.PENDING,
                    **cls._event_fields(event),
                )
        except IntegrityError:
            return PaymentSyncEvent.objects.get(idempotency_key=key), False
        return record, True

    # =========================================================================
    # Application
    # =========================================================================

    @classmethod
    def max_processing_attempts(cls) -> int:
        return getattr(settings, "PAYMENT_SYNC_MAX_PROCESSING_ATTEMPTS", 5)

    @classmethod
    def apply_event(
        cls,
        workspace_id: uuid.UUID,
        event: NormalizedEvent,
        session: PaymentSyncSession | None = None,
    ) -> ApplyResult:
        """Record and apply in one call. Duplicates come back SKIPPED."""
        if not event.signature_valid:
            record = cls.record_rejected(event, "invalid signature", workspace_id)
            return ApplyResult(ApplyOutcome.REJECTED, record)

        record, _created = cls.record_delivery(workspace_id, event, session=session)
        return cls.apply_recorded(record.id)

    @classmethod
    def apply_recorded(cls, event_id: uuid.UUID) -> ApplyResult:
        """
        Apply a recorded event under a row lock.

        The projection runs in a savepoint: a failing handler rolls back its
        own writes while the failure is still recorded on the event.
        """
        logger = cls.get_logger()
        max_attempts = cls.max_processing_attempts()

        with transaction.atomic():
            record = PaymentSyncEvent.objects.select_for_update().get(id=event_id)
            log_context = {
                "payment_sync_event_id": str(record.id),
                "event_type": record.event_type,
                "idempotency_key": record.idempotency_key,
            }

            if record.status == PaymentSyncEventStatus.APPLIED:
                logger.info("Processor event already applied", extra=log_context)
                return ApplyResult(ApplyOutcome.SKIPPED, record)
            if record.status == PaymentSyncEventStatus.REJECTED or not record.signature_valid:
                return ApplyResult(ApplyOutcome.REJECTED, record)
            if record.processing_attempts >= max_attempts:
                return ApplyResult(ApplyOutcome.FAILED, record, error="processing attempts exhausted")

            record.processing_attempts += 1

            if record.workspace_id is None:
                routed = cls._route_recorded(record)
                if isinstance(routed, ApplyResult):
                    return routed

            try:
                with transaction.atomic():
                    result = projections.dispatch_projection(record)
            except Exception as e:
                logger.exception("Processor event projection raised", extra=log_context)
                return cls._fail(record, f"{type(e).__name__}: {e}")

            if not result.success:
                return cls._fail(record, result.error or "Projection failed", result.error_code)

            record.status = PaymentSyncEventStatus.APPLIED
            record.processed_at = timezone.now()
            record.event_message = str(result.data or "")
            record.error_details = {}
            record.save()

        logger.info("Processor event applied", extra=log_context)
        return ApplyResult(ApplyOutcome.APPLIED, record)

    @classmethod
    def _route_recorded(cls, record: PaymentSyncEvent) -> ApplyResult | None:
        """Late routing for a delivery that arrived before its account mapping."""
        try:
            workspace_id = cls.route_inbound(record.provider_account_id, record.provider_name, record.environment)
        except RoutingError as e:
            record.status = PaymentSyncEventStatus.FAILED
            record.error_details = e.to_dict()
            record.save()
            return ApplyResult(ApplyOutcome.FAILED, record, error=e.message)

        key = idempotency_key(workspace_id, record.provider_account_id, record.webhook_event_id)
        duplicate = PaymentSyncEvent.objects.filter(idempotency_key=key).exclude(id=record.id).first()
        if duplicate is not None:
            # A later delivery of the same event was routed and recorded first
            record.status = PaymentSyncEventStatus.FAILED
            record.processing_attempts = cls.max_processing_attempts()
            record.error_details = {"duplicate_of": str(duplicate.id)}
            record.save()
            return ApplyResult(ApplyOutcome.SKIPPED, record)

        record.workspace_id = workspace_id
        record.idempotency_key = key
        record.save(update_fields=["workspace", "idempotency_key", "processing_attempts", "updated_at"])
        return None

    @classmethod
    def _fail(cls, record: PaymentSyncEvent, error: str, error_code: str | None = None) -> ApplyResult:
        record.status = PaymentSyncEventStatus.FAILED
        record.error_details = {
            "error": error,
            "error_code": error_code,
            "attempt": record.processing_attempts,
        }
        record.save()
        cls.get_logger().warning(
            "Processor event failed",
            extra={
                "payment_sync_event_id": str(record.id),
                "event_type": record.event_type,
                "attempt": record.processing_attempts,
                "error": error,
            },
        )
        return ApplyResult(ApplyOutcome.FAILED, record, error=error)

    @classmethod
    def retryable_failed_events(cls, limit: int = 100):
        return PaymentSyncEvent.objects.filter(
            status=PaymentSyncEventStatus.FAILED,
            signature_valid=True,
            processing_attempts__lt=cls.max_processing_attempts(),
        ).order_by("created_at")[:limit]

    # =========================================================================
    # Batch Sessions
    # =========================================================================

    @classmethod
    def start_session(
        cls,
        workspace_id: uuid.UUID,
        provider_name: str,
        session_type: str = PaymentSyncSessionType.INITIAL_SYNC,
        entity_types: list[str] | None = None,
        config: dict[str, Any] | None = None,
    ) -> PaymentSyncSession:
        return PaymentSyncSession.objects.create(
            workspace_id=workspace_id,
            provider_name=provider_name,
            session_type=session_type,
            entity_types=[e for e in SYNC_ENTITY_ORDER if e in (entity_types or SYNC_ENTITY_ORDER)],
            config=config or {},
        )

    @classmethod
    def run_session(
        cls,
        workspace_id: uuid.UUID,
        provider_name: str,
        session_type: str = PaymentSyncSessionType.INITIAL_SYNC,
        entity_types: list[str] | None = None,
        config: dict[str, Any] | None = None,
        session_id: uuid.UUID | None = None,
    ) -> PaymentSyncSession:
        """
        Pull objects from the processor and apply each as an event.

        Pass session_id to resume a failed or interrupted session. Items
        already applied are skipped through their idempotency keys, so a
        resumed run only does the remaining work.
        """
        logger = cls.get_logger()

        if session_type == PaymentSyncSessionType.WEBHOOK:
            raise ValueError("Webhook sessions are not run in batch")

        adapter = get_provider_adapter(provider_name)
        if adapter is None:
            raise ValueError(f"Unsupported provider: {provider_name}")

        if session_id is not None:
            session = PaymentSyncSession.objects.get(id=session_id, workspace_id=workspace_id)
        else:
            session = cls.start_session(workspace_id, provider_name, session_type, entity_types, config)

        if session.status in (PaymentSyncSessionStatus.COMPLETED, PaymentSyncSessionStatus.CANCELLED):
            return session

        session.status = PaymentSyncSessionStatus.RUNNING
        session.started_at = session.started_at or timezone.now()
        session.progress = {**empty_progress(), **(session.progress or {})}
        session.save()

        log_context = {"session_id": str(session.id), "workspace_id": str(workspace_id), "provider": provider_name}
        logger.info("Payment sync session started", extra=log_context)

        accounts = WorkspaceProviderAccount.objects.filter(
            workspace_id=workspace_id,
            provider_name=provider_name,
            is_active=True,
        )
        created_after = cls._created_after(session)

        try:
            for account in accounts:
                for entity_type in session.entity_types or SYNC_ENTITY_ORDER:
                    for obj in adapter.iter_objects(entity_type, account.provider_account_id, created_after):
                        event = adapter.sync_event(entity_type, obj, account.provider_account_id, account.environment)
                        result = cls.apply_event(workspace_id, event, session=session)
                        cls._tally(session, result, entity_type, event.external_id)
        except ProcessorAPIError as e:
            session.status = PaymentSyncSessionStatus.FAILED
            cls._add_error(session, {"error": e.message, "error_code": e.error_code, "retryable": e.is_retryable})
            session.save()
            logger.error("Payment sync session failed", extra={**log_context, "error": e.message})
            return session

        session.status = PaymentSyncSessionStatus.COMPLETED
        session.completed_at = timezone.now()
        session.save()
        logger.info("Payment sync session completed", extra={**log_context, "progress": session.progress})
        return session

    @classmethod
    def _created_after(cls, session: PaymentSyncSession) -> datetime | None:
        """delta_sync starts where the last completed session of the workspace started."""
        raw = (session.config or {}).get("created_after")
        if raw:
            return parse_datetime(raw)
        if session.session_type != PaymentSyncSessionType.DELTA_SYNC:
            return None
        previous = (
            PaymentSyncSession.objects.filter(
                workspace_id=session.workspace_id,
                provider_name=session.provider_name,
                status=PaymentSyncSessionStatus.COMPLETED,
            )
            .exclude(id=session.id)
            .order_by("-started_at")
            .values_list("started_at", flat=True)
            .first()
        )
        return previous

    @classmethod
    def _tally(cls, session: PaymentSyncSession, result: ApplyResult, entity_type: str, external_id: str) -> None:
        progress = session.progress
        progress["processed"] += 1
        progress[result.outcome.value] += 1
        if result.outcome == ApplyOutcome.FAILED:
            cls._add_error(session, {"entity_type": entity_type, "external_id": external_id, "error": result.error})
        session.save(update_fields=["progress", "error_summary", "updated_at"])

    @staticmethod
    def _add_error(session: PaymentSyncSession, error: dict[str, Any]) -> None:
        session.error_summary = [*(session.error_summary or []), error][-MAX_ERROR_SUMMARY:]
