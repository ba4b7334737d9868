"""
Subscription ledger: the redemption state machine.

Turns a signed delegation into a schedule of on-chain redemptions.

Concurrency:
    There is no global lock. A redemption first takes a claim on the
    subscription with a conditional UPDATE (processing_token +
    processing_claimed_until). Only one worker can hold an unexpired claim,
    so a period is never redeemed twice. A worker that dies mid-call simply
    lets its claim expire; the redeemer's idempotency key (stable per
    period) covers the retry.

    The write after the chain call re-reads the row under SELECT ... FOR
    UPDATE and refuses to move a subscription that was canceled in the
    meantime. A late success is recorded as an event only.

Usage:
    from billing.services import SubscriptionLedger

    for subscription in SubscriptionLedger.schedule_due(now):
        result = SubscriptionLedger.redeem(
            subscription.id, now=now, claim_token=subscription.processing_token
        )
        if result.outcome == RedemptionOutcome.FAILED:
            DunningEngine.handle_redemption_failure(...)
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Exists, F, OuterRef, Q
from django.utils import timezone
from django_fsm import can_proceed

from core.services import BaseService, ServiceResult

from billing.adapters import RedemptionRequest, get_chain_redeemer
from billing.caveats import RedemptionContext, authorize, delegation_expires_at, parse_caveats
from billing.exceptions import (
    ClaimConflictError,
    DelegationValidationError,
    InvalidStateTransitionError,
    RedemptionError,
    RedemptionRejectedError,
    SubscriptionNotFoundError,
)
from billing.intervals import add_interval
from billing.models import Customer, DunningCampaign, Subscription, SubscriptionEvent, Wallet
from billing.models.subscription import LIVE
from billing.services.delegation_store import DelegationStore
from billing.services.event_recorder import EventRecorder
from billing.state_machines import (
    DunningCampaignStatus,
    FailedAttemptErrorType,
    SubscriptionEventType,
    SubscriptionStatus,
)

if TYPE_CHECKING:
    from billing.adapters import ChainRedeemer
    from billing.models import Price, Product, ProductToken, Workspace


# =============================================================================
# Result Types
# =============================================================================


class RedemptionOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    EXPIRED = "expired"


@dataclass
class RedemptionResult:
    """
    Outcome of one redemption attempt.

    Attributes:
        outcome: succeeded, failed, skipped (nothing was attempted) or expired
        subscription: Subscription after the attempt
        tx_hash: Transaction hash on success
        error: The redemption failure, when outcome is failed
        reason: Short explanation for skipped/expired outcomes
        event: SubscriptionEvent recorded for the attempt
    """

    outcome: RedemptionOutcome
    subscription: Subscription | None = None
    tx_hash: str | None = None
    error: RedemptionError | None = None
    reason: str = ""
    event: SubscriptionEvent | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == RedemptionOutcome.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.outcome == RedemptionOutcome.FAILED

    @property
    def is_retryable(self) -> bool:
        return self.error is not None and self.error.is_retryable


@dataclass
class CreateSubscriptionParams:
    """
    Parameters for a delegated signup.

    Either customer or customer_email must be given. customer_wallet is
    looked up (or created) from wallet_address on the token's network when
    not passed.
    """

    workspace: Workspace
    product: Product
    price: Price
    product_token: ProductToken
    delegation: dict[str, Any]
    token_amount: int
    customer: Customer | None = None
    customer_email: str = ""
    customer_wallet: Wallet | None = None
    wallet_address: str = ""
    external_id: str | None = None
    payment_provider: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if int(self.token_amount) <= 0:
            raise ValueError("token_amount must be positive")
        if self.customer is None and not self.customer_email:
            raise ValueError("customer or customer_email is required")


@dataclass
class SubscriptionCreated:
    subscription: Subscription
    redemption: RedemptionResult


@dataclass
class SubscriptionStatusView:
    """What a billing UI may show; no retry or claim internals."""

    id: uuid.UUID
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    next_redemption_date: datetime | None
    total_redemptions: int
    total_amount_in_cents: int
    cancel_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str
    pause_ends_at: datetime | None = None
    delegation_expires_at: datetime | None = None


class SignupFailed(Exception):
    """Internal: a signup step failed before the subscription was committed."""

    def __init__(self, error_type: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.details = details or {}


def redemption_idempotency_key(subscription: Subscription) -> str:
    """Stable per subscription and period number."""
    period = subscription.total_redemptions + 1
    return hashlib.sha256(f"redeem:{subscription.id}:{period}".encode()).hexdigest()


# =============================================================================
# Subscription Ledger
# =============================================================================


class SubscriptionLedger(BaseService):
    """
    Owns subscription status, schedule and redemption counters for
    delegation-backed subscriptions.

    All methods are class methods - no instance state is maintained.
    """

    # =========================================================================
    # Signup
    # =========================================================================

    @classmethod
    def create_subscription(
        cls,
        params: CreateSubscriptionParams,
        now: datetime | None = None,
        redeemer: ChainRedeemer | None = None,
        timeout: float | None = None,
    ) -> ServiceResult[SubscriptionCreated]:
        """
        Validate the delegation, persist it with the subscription, and run
        the first redemption synchronously.

        Failures before the subscription is committed are recorded as a
        FailedSubscriptionAttempt and returned as a failed ServiceResult. A
        failed first redemption still returns success: the subscription
        exists, OVERDUE (retryable) or FAILED (permanent), with the failure
        event recorded.
        """
        now = now or timezone.now()
        logger = cls.get_logger()
        logger.info(
            "Creating subscription",
            extra={
                "workspace_id": str(params.workspace.id),
                "product_id": str(params.product.id),
                "price_id": str(params.price.id),
            },
        )

        try:
            cls._validate_signup(params, now)
            with transaction.atomic():
                subscription = cls._persist_signup(params, now)
        except SignupFailed as failure:
            EventRecorder.record_failed_attempt(
                workspace=params.workspace,
                error_type=failure.error_type,
                error_message=failure.message,
                product=params.product,
                product_token=params.product_token,
                customer=params.customer,
                wallet_address=params.wallet_address,
                delegation_signature=str((params.delegation or {}).get("signature", "")),
                error_details=failure.details,
            )
            return ServiceResult.failure(failure.message, error_code=failure.error_type.upper())

        redemption = cls.redeem(subscription.id, now=now, redeemer=redeemer, timeout=timeout, initial=True)

        if redemption.failed and redemption.subscription.status == SubscriptionStatus.OVERDUE:
            from billing.services.dunning_engine import DunningEngine

            DunningEngine.handle_redemption_failure(
                redemption.subscription,
                redemption.error.event_type,
                redemption.error.message,
                now=now,
            )

        return ServiceResult.success(SubscriptionCreated(subscription=redemption.subscription, redemption=redemption))

    @classmethod
    def _validate_signup(cls, params: CreateSubscriptionParams, now: datetime) -> None:
        product, price, product_token = params.product, params.price, params.product_token

        problems = []
        if product.workspace_id != params.workspace.id:
            problems.append("product does not belong to workspace")
        if price.product_id != product.id:
            problems.append("price does not belong to product")
        if product_token.product_id != product.id:
            problems.append("token is not accepted for product")
        if not (product.is_active and price.is_active and product_token.is_active):
            problems.append("product, price or token is inactive")
        if product.wallet_id is None:
            problems.append("product has no merchant wallet")
        if problems:
            raise SignupFailed(FailedAttemptErrorType.VALIDATION, "; ".join(problems), {"problems": problems})

        try:
            caveats = parse_caveats((params.delegation or {}).get("caveats", []))
        except DelegationValidationError as e:
            raise SignupFailed(FailedAttemptErrorType.VALIDATION, e.message, e.details)

        verdict = authorize(
            caveats,
            RedemptionContext(
                amount=int(params.token_amount),
                recipient=product.wallet.address,
                token=product_token.token.contract_address,
                at=now,
            ),
        )
        if not verdict:
            raise SignupFailed(
                FailedAttemptErrorType.VALIDATION,
                f"Delegation does not authorize this subscription: {verdict.reason}",
                {"caveat": verdict.kind},
            )

        if params.external_id and Subscription.objects.filter(
            workspace=params.workspace,
            external_id=params.external_id,
            payment_provider=params.payment_provider,
        ).exists():
            raise SignupFailed(
                FailedAttemptErrorType.DUPLICATE,
                "Subscription already exists for this external id",
                {"external_id": params.external_id},
            )

    @classmethod
    def _persist_signup(cls, params: CreateSubscriptionParams, now: datetime) -> Subscription:
        """Customer, wallet, delegation, subscription and 'created' event; one transaction."""
        customer = params.customer
        if customer is None:
            try:
                customer, _ = Customer.objects.get_or_create(
                    workspace=params.workspace,
                    email=params.customer_email,
                )
            except DatabaseError as e:
                raise SignupFailed(FailedAttemptErrorType.CUSTOMER_CREATION, "Could not create customer", {"error": str(e)})

        wallet = params.customer_wallet
        if wallet is None and params.wallet_address:
            try:
                wallet, _ = Wallet.objects.get_or_create(
                    workspace=params.workspace,
                    network=params.product_token.token.network,
                    address=params.wallet_address.lower(),
                    defaults={"customer": customer},
                )
            except DatabaseError as e:
                raise SignupFailed(FailedAttemptErrorType.WALLET_CREATION, "Could not create wallet", {"error": str(e)})

        try:
            delegation = DelegationStore.store(params.workspace, params.delegation)
        except DelegationValidationError as e:
            raise SignupFailed(FailedAttemptErrorType.VALIDATION, e.message, e.details)
        except DatabaseError as e:
            raise SignupFailed(
                FailedAttemptErrorType.DELEGATION_STORAGE, "Could not store delegation", {"error": str(e)}
            )

        try:
            with transaction.atomic():
                subscription = Subscription.objects.create(
                    workspace=params.workspace,
                    customer=customer,
                    product=params.product,
                    price=params.price,
                    product_token=params.product_token,
                    delegation=delegation,
                    customer_wallet=wallet,
                    token_amount=int(params.token_amount),
                    status=SubscriptionStatus.ACTIVE,
                    next_redemption_date=now,
                    external_id=params.external_id or None,
                    payment_provider=params.payment_provider,
                    metadata=params.metadata,
                )
        except IntegrityError as e:
            cls.get_logger().error(
                "Duplicate subscription rejected by constraint",
                extra={"external_id": params.external_id, "error": str(e)},
            )
            raise SignupFailed(FailedAttemptErrorType.DUPLICATE, "Duplicate subscription", {"error": str(e)})
        except DatabaseError as e:
            raise SignupFailed(FailedAttemptErrorType.SUBSCRIPTION_DB, "Could not create subscription", {"error": str(e)})

        EventRecorder.record_event(subscription, SubscriptionEventType.CREATED, occurred_at=now)
        return subscription

    # =========================================================================
    # Scheduling & Claims
    # =========================================================================

    @classmethod
    def _claim_ttl(cls) -> timedelta:
        return timedelta(seconds=getattr(settings, "REDEMPTION_CLAIM_TTL_SECONDS", 300))

    @classmethod
    def _claimable(cls, now: datetime, include_dunning: bool = False):
        """
        Delegation-backed, live, due, and not claimed by anyone else.

        Subscriptions scheduled to cancel at or before the due date are
        left to process_scheduled_cancellations.
        """
        queryset = (
            Subscription.objects.filter(
                status__in=LIVE,
                delegation__isnull=False,
                next_redemption_date__lte=now,
            )
            .filter(Q(processing_claimed_until__isnull=True) | Q(processing_claimed_until__lte=now))
            .exclude(cancel_at__isnull=False, cancel_at__lte=F("next_redemption_date"))
        )
        if not include_dunning:
            active_campaign = DunningCampaign.objects.filter(
                subscription=OuterRef("pk"),
                status=DunningCampaignStatus.ACTIVE,
            )
            queryset = queryset.filter(~Exists(active_campaign))
        return queryset

    @classmethod
    def claim(
        cls,
        subscription_id: uuid.UUID,
        now: datetime | None = None,
        include_dunning: bool = False,
    ) -> uuid.UUID | None:
        """
        Take the redemption claim with a conditional UPDATE.

        Returns the claim token, or None when the subscription is not due
        or another worker holds an unexpired claim.
        """
        now = now or timezone.now()
        token = uuid.uuid4()
        updated = (
            cls._claimable(now, include_dunning=include_dunning)
            .filter(id=subscription_id)
            .update(
                processing_token=token,
                processing_claimed_until=now + cls._claim_ttl(),
                version=F("version") + 1,
            )
        )
        return token if updated == 1 else None

    @classmethod
    def release_claim(cls, subscription_id: uuid.UUID, claim_token: uuid.UUID) -> bool:
        updated = Subscription.objects.filter(id=subscription_id, processing_token=claim_token).update(
            processing_token=None,
            processing_claimed_until=None,
            version=F("version") + 1,
        )
        return updated == 1

    @classmethod
    def schedule_due(cls, now: datetime | None = None, limit: int | None = None) -> list[Subscription]:
        """
        Claim due subscriptions, oldest due date first.

        Each returned subscription carries its claim token in
        processing_token. Safe to call from several workers at once.
        """
        now = now or timezone.now()
        limit = limit or getattr(settings, "REDEMPTION_BATCH_SIZE", 100)

        candidates = list(
            cls._claimable(now).order_by("next_redemption_date").values_list("id", flat=True)[:limit]
        )
        claimed = [subscription_id for subscription_id in candidates if cls.claim(subscription_id, now)]
        if not claimed:
            return []

        by_id = {s.id: s for s in Subscription.objects.filter(id__in=claimed)}
        due = [by_id[subscription_id] for subscription_id in claimed if subscription_id in by_id]

        cls.get_logger().info(
            "Claimed due subscriptions",
            extra={"candidates": len(candidates), "claimed": len(due)},
        )
        return due

    # =========================================================================
    # Redemption
    # =========================================================================

    @classmethod
    def redeem(
        cls,
        subscription_id: uuid.UUID,
        now: datetime | None = None,
        claim_token: uuid.UUID | None = None,
        timeout: float | None = None,
        redeemer: ChainRedeemer | None = None,
        initial: bool = False,
        include_dunning: bool = False,
    ) -> RedemptionResult:
        """
        Redeem the current period of a subscription.

        Without claim_token the claim is taken here. A canceled or otherwise
        non-live subscription is a no-op (skipped).

        Raises:
            SubscriptionNotFoundError: Unknown subscription id
        """
        now = now or timezone.now()
        logger = cls.get_logger()
        log_context = {"subscription_id": str(subscription_id)}

        subscription = cls._get(subscription_id)

        if not subscription.is_live:
            return RedemptionResult(
                RedemptionOutcome.SKIPPED, subscription, reason=f"subscription is {subscription.status}"
            )
        if not subscription.is_delegation_backed:
            return RedemptionResult(RedemptionOutcome.SKIPPED, subscription, reason="processor-owned subscription")

        try:
            claim_token = cls._hold_claim(subscription, claim_token, now, include_dunning)
        except ClaimConflictError as e:
            logger.info("Redemption skipped", extra={**log_context, "reason": e.message})
            return RedemptionResult(RedemptionOutcome.SKIPPED, subscription, reason=e.message)

        delegation = subscription.delegation
        product_token = subscription.product_token
        recipient = subscription.product.wallet.address
        amount = int(subscription.token_amount)

        verdict = authorize(
            delegation.parsed_caveats(),
            RedemptionContext(
                amount=amount,
                recipient=recipient,
                token=product_token.token.contract_address,
                at=now,
                redeemed_so_far=amount * subscription.total_redemptions,
                redemptions_so_far=subscription.total_redemptions,
            ),
        )
        if verdict.expired:
            return cls._expire(subscription_id, claim_token, verdict.reason, now)
        if not verdict:
            error = RedemptionRejectedError(
                f"Delegation no longer authorizes redemption: {verdict.reason}",
                error_code="CAVEAT_VIOLATION",
                details={"caveat": verdict.kind},
            )
            return cls._record_failure(subscription_id, claim_token, error, now, initial)

        request = RedemptionRequest.for_delegation(
            delegation,
            recipient=recipient,
            token_address=product_token.token.contract_address,
            amount=amount,
            chain_id=product_token.token.network.chain_id,
            idempotency_key=redemption_idempotency_key(subscription),
        )

        try:
            receipt = (redeemer or get_chain_redeemer()).submit(request, timeout=timeout)
        except RedemptionError as e:
            return cls._record_failure(subscription_id, claim_token, e, now, initial)

        return cls._record_success(subscription_id, claim_token, receipt.tx_hash, now)

    @classmethod
    def _hold_claim(
        cls,
        subscription: Subscription,
        claim_token: uuid.UUID | None,
        now: datetime,
        include_dunning: bool,
    ) -> uuid.UUID:
        """
        Return the claim this redemption runs under, taking it if needed.

        Raises:
            ClaimConflictError: The claim could not be taken or is no longer held
        """
        details = {"subscription_id": str(subscription.id)}
        if claim_token is None:
            claim_token = cls.claim(subscription.id, now, include_dunning=include_dunning)
            if claim_token is None:
                raise ClaimConflictError("claim not acquired", details=details)
        elif subscription.processing_token != claim_token:
            raise ClaimConflictError("claim not held", details=details)
        return claim_token

    @classmethod
    def _record_success(
        cls,
        subscription_id: uuid.UUID,
        claim_token: uuid.UUID,
        tx_hash: str,
        now: datetime,
    ) -> RedemptionResult:
        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().select_related("price").get(id=subscription_id)
            price = subscription.price
            amount_in_cents = price.unit_amount_in_pennies

            already_recorded = SubscriptionEvent.objects.filter(
                subscription=subscription,
                transaction_hash=tx_hash,
                event_type=SubscriptionEventType.REDEEMED,
            ).first()
            if already_recorded is not None:
                # The redeemer deduplicated a resubmission after an expired claim.
                cls._clear_claim(subscription, claim_token)
                return RedemptionResult(
                    RedemptionOutcome.SKIPPED,
                    subscription,
                    tx_hash=tx_hash,
                    reason="transaction already recorded",
                    event=already_recorded,
                )

            if not subscription.is_live:
                # Money moved but the subscription was canceled (or otherwise
                # ended) while the call was in flight.
                cls._clear_claim(subscription, claim_token)
                event = EventRecorder.record_event(
                    subscription,
                    SubscriptionEventType.REDEEMED,
                    amount_in_cents=amount_in_cents,
                    tx_hash=tx_hash,
                    metadata={
                        "after_cancellation": subscription.is_canceled,
                        "status_at_completion": subscription.status,
                    },
                    occurred_at=now,
                )
                cls.get_logger().error(
                    "Redemption succeeded after subscription ended",
                    extra={"subscription_id": str(subscription_id), "tx_hash": tx_hash, "status": subscription.status},
                )
                return RedemptionResult(
                    RedemptionOutcome.SUCCEEDED,
                    subscription,
                    tx_hash=tx_hash,
                    reason="subscription no longer live",
                    event=event,
                )

            # A period paid on time starts at its due date. A late recovery
            # (or one a full interval behind) starts a fresh period now, so
            # missed periods are never billed as a backlog.
            due = subscription.next_redemption_date or now
            if subscription.status == SubscriptionStatus.OVERDUE or (
                price.is_recurring and add_interval(due, price.interval_type) <= now
            ):
                period_start = now
            else:
                period_start = due
            period_end = add_interval(period_start, price.interval_type) if price.is_recurring else None

            subscription.current_period_start = period_start
            subscription.current_period_end = period_end
            subscription.total_redemptions += 1
            subscription.total_amount_in_cents += amount_in_cents
            if subscription.processing_token == claim_token:
                subscription.processing_token = None
                subscription.processing_claimed_until = None
            subscription.mark_redeemed()

            completed = not price.is_recurring or subscription.term_reached
            if completed:
                subscription.complete()
            else:
                subscription.next_redemption_date = period_end
            subscription.save()

            event = EventRecorder.record_event(
                subscription,
                SubscriptionEventType.REDEEMED,
                amount_in_cents=amount_in_cents,
                tx_hash=tx_hash,
                metadata={"period": subscription.total_redemptions, "period_start": period_start.isoformat()},
                occurred_at=now,
            )
            if completed:
                EventRecorder.record_event(subscription, SubscriptionEventType.COMPLETED, occurred_at=now)

        return RedemptionResult(RedemptionOutcome.SUCCEEDED, subscription, tx_hash=tx_hash, event=event)

    @classmethod
    def _record_failure(
        cls,
        subscription_id: uuid.UUID,
        claim_token: uuid.UUID,
        error: RedemptionError,
        now: datetime,
        initial: bool = False,
    ) -> RedemptionResult:
        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().get(id=subscription_id)
            cls._clear_claim(subscription, claim_token)

            if subscription.is_live:
                if initial and not error.is_retryable:
                    subscription.mark_failed()
                else:
                    subscription.mark_overdue(at=now)
                subscription.save()

            event = EventRecorder.record_event(
                subscription,
                error.event_type,
                amount_in_cents=subscription.price.unit_amount_in_pennies,
                tx_hash=error.tx_hash,
                error_message=error.message,
                metadata={"error_code": error.error_code, "retryable": error.is_retryable},
                occurred_at=now,
            )

        return RedemptionResult(RedemptionOutcome.FAILED, subscription, error=error, event=event)

    @classmethod
    def _expire(cls, subscription_id: uuid.UUID, claim_token: uuid.UUID, reason: str, now: datetime) -> RedemptionResult:
        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().get(id=subscription_id)
            cls._clear_claim(subscription, claim_token)
            if subscription.is_live:
                subscription.expire()
                subscription.save()
            event = EventRecorder.record_event(
                subscription,
                SubscriptionEventType.EXPIRED,
                error_message=reason,
                occurred_at=now,
            )
        return RedemptionResult(RedemptionOutcome.EXPIRED, subscription, reason=reason, event=event)

    @staticmethod
    def _clear_claim(subscription: Subscription, claim_token: uuid.UUID) -> None:
        if subscription.processing_token == claim_token:
            subscription.processing_token = None
            subscription.processing_claimed_until = None
            subscription.save(update_fields=["processing_token", "processing_claimed_until"])

    # =========================================================================
    # Cancellation, Pause & Resume
    # =========================================================================

    @staticmethod
    def _lock(subscription_id: uuid.UUID) -> Subscription:
        try:
            return Subscription.objects.select_for_update().select_related("price").get(id=subscription_id)
        except Subscription.DoesNotExist:
            raise SubscriptionNotFoundError(
                "Subscription not found",
                details={"subscription_id": str(subscription_id)},
            )

    @staticmethod
    def _require_transition(subscription: Subscription, method, verb: str) -> None:
        """
        Raises:
            InvalidStateTransitionError: The FSM does not allow the transition
        """
        if not can_proceed(method):
            raise InvalidStateTransitionError(
                f"Cannot {verb} a {subscription.status} subscription",
                details={"subscription_id": str(subscription.id), "current_state": subscription.status},
            )

    @classmethod
    def cancel(
        cls,
        subscription_id: uuid.UUID,
        reason: str = "",
        at_period_end: bool = False,
        now: datetime | None = None,
    ) -> ServiceResult[Subscription]:
        """
        Cancel a subscription. Terminal and idempotent.

        With at_period_end the subscription keeps running until its current
        period ends; process_scheduled_cancellations finishes the job.
        """
        now = now or timezone.now()
        try:
            subscription = cls._get(subscription_id)
            if subscription.is_canceled:
                return ServiceResult.success(subscription)
            cls._require_transition(subscription, subscription.cancel, "cancel")
        except (SubscriptionNotFoundError, InvalidStateTransitionError) as e:
            return ServiceResult.from_exception(e)

        if at_period_end and subscription.is_live:
            subscription.cancel_at = subscription.current_period_end or subscription.next_redemption_date or now
            subscription.cancellation_reason = reason[:255]
            subscription.save(update_fields=["cancel_at", "cancellation_reason"])
            cls.get_logger().info(
                "Subscription cancellation scheduled",
                extra={"subscription_id": str(subscription.id), "cancel_at": subscription.cancel_at.isoformat()},
            )
            return ServiceResult.success(subscription)

        with transaction.atomic():
            subscription = Subscription.objects.select_for_update().get(id=subscription.id)
            if subscription.is_canceled:
                return ServiceResult.success(subscription)
            subscription.cancel(reason=reason, at=now)
            subscription.save()
            EventRecorder.record_event(
                subscription,
                SubscriptionEventType.CANCELED,
                metadata={"reason": reason} if reason else None,
                occurred_at=now,
            )
            DunningCampaign.objects.filter(
                subscription=subscription,
                status=DunningCampaignStatus.ACTIVE,
            ).update(status=DunningCampaignStatus.CANCELLED, completed_at=now, next_retry_at=None)

        return ServiceResult.success(subscription)

    @classmethod
    def reactivate(cls, subscription_id: uuid.UUID) -> ServiceResult[Subscription]:
        """Withdraw a cancellation scheduled with at_period_end."""
        try:
            with transaction.atomic():
                subscription = cls._lock(subscription_id)
                if subscription.cancel_at is None or subscription.is_canceled:
                    return ServiceResult.failure(
                        "No cancellation is scheduled",
                        error_code="CANCELLATION_NOT_SCHEDULED",
                    )
                subscription.cancel_at = None
                subscription.cancellation_reason = ""
                subscription.save(update_fields=["cancel_at", "cancellation_reason"])
        except SubscriptionNotFoundError as e:
            return ServiceResult.from_exception(e)

        cls.get_logger().info("Scheduled cancellation withdrawn", extra={"subscription_id": str(subscription.id)})
        return ServiceResult.success(subscription)

    @classmethod
    def process_scheduled_cancellations(cls, now: datetime | None = None) -> int:
        now = now or timezone.now()
        due = Subscription.objects.filter(
            cancel_at__isnull=False,
            cancel_at__lte=now,
            status__in=[*LIVE, SubscriptionStatus.SUSPENDED],
        ).values_list("id", "cancellation_reason")

        cancelled = 0
        for subscription_id, reason in due:
            result = cls.cancel(subscription_id, reason=reason or "scheduled", now=now)
            if result.success:
                cancelled += 1
        if cancelled:
            cls.get_logger().info("Scheduled cancellations processed", extra={"count": cancelled})
        return cancelled

    @classmethod
    def suspend(
        cls,
        subscription_id: uuid.UUID,
        reason: str = "",
        now: datetime | None = None,
        pause_until: datetime | None = None,
    ) -> ServiceResult[Subscription]:
        """
        Pause a subscription; also the dunning suspend final action.

        Idempotent. With pause_until, process_scheduled_resumptions resumes
        the subscription at that time.
        """
        now = now or timezone.now()
        metadata = {}
        if reason:
            metadata["reason"] = reason
        if pause_until is not None:
            metadata["pause_until"] = pause_until.isoformat()

        try:
            with transaction.atomic():
                subscription = cls._lock(subscription_id)
                if subscription.status == SubscriptionStatus.SUSPENDED:
                    return ServiceResult.success(subscription)
                if not subscription.is_delegation_backed:
                    raise InvalidStateTransitionError(
                        "Processor-owned subscriptions are paused by their processor",
                        details={"subscription_id": str(subscription.id), "current_state": subscription.status},
                    )
                cls._require_transition(subscription, subscription.suspend, "suspend")
                subscription.suspend(until=pause_until)
                subscription.save()
                EventRecorder.record_event(
                    subscription,
                    SubscriptionEventType.SUSPENDED,
                    metadata=metadata or None,
                    occurred_at=now,
                )
        except (SubscriptionNotFoundError, InvalidStateTransitionError) as e:
            return ServiceResult.from_exception(e)
        return ServiceResult.success(subscription)

    @classmethod
    def resume(
        cls,
        subscription_id: uuid.UUID,
        reason: str = "",
        now: datetime | None = None,
    ) -> ServiceResult[Subscription]:
        """
        Resume a suspended subscription.

        The next redemption is due at once and starts a fresh period, so
        the paused time is never billed. Resuming an active subscription
        succeeds without change. Processor-owned subscriptions follow their
        processor and cannot be resumed here.
        """
        now = now or timezone.now()
        try:
            with transaction.atomic():
                subscription = cls._lock(subscription_id)
                if subscription.status == SubscriptionStatus.ACTIVE:
                    return ServiceResult.success(subscription)
                if not subscription.is_delegation_backed:
                    raise InvalidStateTransitionError(
                        "Processor-owned subscriptions are resumed by their processor",
                        details={"subscription_id": str(subscription.id), "current_state": subscription.status},
                    )
                cls._require_transition(subscription, subscription.resume, "resume")
                subscription.resume(at=now)
                subscription.save()
                EventRecorder.record_event(
                    subscription,
                    SubscriptionEventType.RESUMED,
                    metadata={"reason": reason} if reason else None,
                    occurred_at=now,
                )
        except (SubscriptionNotFoundError, InvalidStateTransitionError) as e:
            return ServiceResult.from_exception(e)

        cls.get_logger().info(
            "Subscription resumed",
            extra={"subscription_id": str(subscription.id), "reason": reason},
        )
        return ServiceResult.success(subscription)

    @classmethod
    def process_scheduled_resumptions(cls, now: datetime | None = None) -> int:
        """Resume paused subscriptions whose pause_ends_at has passed."""
        now = now or timezone.now()
        due = Subscription.objects.filter(
            status=SubscriptionStatus.SUSPENDED,
            pause_ends_at__isnull=False,
            pause_ends_at__lte=now,
            delegation__isnull=False,
        ).values_list("id", flat=True)

        resumed = 0
        for subscription_id in due:
            if cls.resume(subscription_id, reason="scheduled", now=now).success:
                resumed += 1
        if resumed:
            cls.get_logger().info("Scheduled resumptions processed", extra={"count": resumed})
        return resumed

    # =========================================================================
    # Confirmation
    # =========================================================================

    @classmethod
    def confirm_redemption(cls, tx_hash: str, confirmed: bool, now: datetime | None = None) -> SubscriptionEvent | None:
        """
        Reconcile an asynchronous chain confirmation.

        A confirmed transaction needs no change. A reverted one appends a
        failed_transaction event and reopens the period it paid for: a live
        subscription goes OVERDUE, is due again from that period's start and
        enters dunning. Counters are never decremented.
        """
        now = now or timezone.now()
        logger = cls.get_logger()
        log_context = {"tx_hash": tx_hash, "confirmed": confirmed}

        redeemed = (
            SubscriptionEvent.objects.filter(transaction_hash=tx_hash, event_type=SubscriptionEventType.REDEEMED)
            .select_related("subscription")
            .first()
        )
        if redeemed is None:
            logger.warning("Confirmation for unknown transaction", extra=log_context)
            return None

        if confirmed:
            logger.info("Redemption confirmed", extra={**log_context, "subscription_id": str(redeemed.subscription_id)})
            return redeemed

        existing = SubscriptionEvent.objects.filter(
            transaction_hash=tx_hash,
            event_type=SubscriptionEventType.FAILED_TRANSACTION,
        ).first()
        if existing is not None:
            return existing

        logger.error(
            "Redeemed transaction reverted on chain",
            extra={**log_context, "subscription_id": str(redeemed.subscription_id)},
        )
        with transaction.atomic():
            subscription = cls._lock(redeemed.subscription_id)
            event = EventRecorder.record_event(
                subscription,
                SubscriptionEventType.FAILED_TRANSACTION,
                amount_in_cents=redeemed.amount_in_cents,
                tx_hash=tx_hash,
                error_message="Transaction reverted after submission",
                metadata={"redeemed_event_id": str(redeemed.id)},
                occurred_at=now,
            )
            reopened = subscription.is_delegation_backed and subscription.is_live
            if reopened:
                subscription.mark_overdue(at=now)
                subscription.next_redemption_date = cls._reverted_period_start(redeemed, subscription, now)
                subscription.save()

        if reopened:
            from billing.services.dunning_engine import DunningEngine

            DunningEngine.handle_redemption_failure(
                subscription,
                SubscriptionEventType.FAILED_TRANSACTION,
                event.error_message,
                now=now,
            )
        else:
            logger.warning(
                "Reverted redemption on a subscription that is no longer live",
                extra={**log_context, "subscription_id": str(subscription.id), "status": subscription.status},
            )
        return event

    @staticmethod
    def _reverted_period_start(redeemed: SubscriptionEvent, subscription: Subscription, now: datetime) -> datetime:
        period_start = (redeemed.metadata or {}).get("period_start")
        if period_start:
            return datetime.fromisoformat(period_start)
        return subscription.current_period_start or now

    # =========================================================================
    # Read APIs
    # =========================================================================

    @classmethod
    def get_status(cls, subscription_id: uuid.UUID) -> SubscriptionStatusView:
        subscription = cls._get(subscription_id)
        return SubscriptionStatusView(
            id=subscription.id,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            next_redemption_date=subscription.next_redemption_date,
            total_redemptions=subscription.total_redemptions,
            total_amount_in_cents=subscription.total_amount_in_cents,
            cancel_at=subscription.cancel_at,
            cancelled_at=subscription.cancelled_at,
            cancellation_reason=subscription.cancellation_reason,
            pause_ends_at=subscription.pause_ends_at,
            delegation_expires_at=(
                delegation_expires_at(subscription.delegation.parsed_caveats())
                if subscription.is_delegation_backed
                else None
            ),
        )

    @classmethod
    def _get(cls, subscription_id: uuid.UUID) -> Subscription:
        try:
            return Subscription.objects.select_related(
                "price",
                "product__wallet",
                "product_token__token__network",
                "delegation",
            ).get(id=subscription_id)
        except Subscription.DoesNotExist:
            raise SubscriptionNotFoundError(
                "Subscription not found",
                details={"subscription_id": str(subscription_id)},
            )
