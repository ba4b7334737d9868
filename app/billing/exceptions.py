"""
Billing-specific exceptions.

Exception Hierarchy:
    BillingError (base for billing domain)
    ├── DelegationValidationError - Malformed delegation or unknown caveat
    ├── SubscriptionNotFoundError - Subscription lookup failures
    ├── RedemptionError - Chain redeemer failures (carries is_retryable)
    │   ├── RedemptionRejectedError - Permanent (revert, bad signature, revoked)
    │   ├── RedemptionTimeoutError - Transient (submission timed out)
    │   └── RedeemerUnavailableError - Transient (service down, circuit open)
    ├── RoutingError - Provider account routing failures
    │   ├── ProviderAccountNotFoundError
    │   └── AmbiguousProviderAccountError
    ├── WebhookSignatureError - Invalid processor webhook signature
    └── ProcessorAPIError - Processor API failure during batch sync

    RedemptionError and ProcessorAPIError also inherit ExternalServiceError.

    ClaimConflictError - Redemption claim not held (inherits ConflictError)
    InvalidStateTransitionError - FSM transition not allowed (inherits ConflictError)

Usage:
    from billing.exceptions import RedemptionError

    try:
        receipt = redeemer.submit(...)
    except RedemptionError as e:
        if e.is_retryable:
            ...  # leave overdue, dunning retries later
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError, ExternalServiceError, NotFoundError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Billing Domain Exceptions
# =============================================================================


class BillingError(BaseApplicationError):
    """Base exception for all billing operations."""

    default_error_code: str = "BILLING_ERROR"


class DelegationValidationError(BillingError):
    """
    Raised when a delegation payload is malformed.

    Unknown caveat kinds raise this too; validation fails closed.
    """

    default_error_code: str = "DELEGATION_INVALID"


class SubscriptionNotFoundError(BillingError, NotFoundError):
    default_error_code: str = "SUBSCRIPTION_NOT_FOUND"


# =============================================================================
# Chain Redeemer Exceptions
# =============================================================================


class RedemptionError(BillingError, ExternalServiceError):
    """
    Base exception for chain redemption failures.

    Use is_retryable to decide what happens next:
    - True: Transient (timeout, outage); the subscription stays overdue
    - False: Permanent (revert, revoked delegation); retries will not help

    The subscription event recorded for the failure is chosen by
    event_type: failed_redemption for a rejection, failed_transaction when
    the submission itself did not complete.
    """

    default_error_code: str = "REDEMPTION_ERROR"
    is_retryable: bool = False
    event_type: str = "failed_redemption"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        tx_hash: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if tx_hash:
            details["tx_hash"] = tx_hash
        super().__init__(message, error_code=error_code, details=details)
        self.tx_hash = tx_hash


class RedemptionRejectedError(RedemptionError):
    """The redeemer or the chain refused the transfer. Permanent."""

    default_error_code: str = "REDEMPTION_REJECTED"
    is_retryable: bool = False
    event_type: str = "failed_redemption"


class RedemptionTimeoutError(RedemptionError):
    """The submission did not complete within the timeout. Transient."""

    default_error_code: str = "REDEMPTION_TIMEOUT"
    is_retryable: bool = True
    event_type: str = "failed_transaction"


class RedeemerUnavailableError(RedemptionError):
    """The redeemer service is unreachable or its circuit is open. Transient."""

    default_error_code: str = "REDEEMER_UNAVAILABLE"
    is_retryable: bool = True
    event_type: str = "failed_transaction"


# =============================================================================
# Sync Exceptions
# =============================================================================


class RoutingError(BillingError):
    """Raised when an inbound processor event cannot be routed to a workspace."""

    default_error_code: str = "ROUTING_ERROR"


class ProviderAccountNotFoundError(RoutingError):
    default_error_code: str = "PROVIDER_ACCOUNT_NOT_FOUND"


class AmbiguousProviderAccountError(RoutingError):
    default_error_code: str = "PROVIDER_ACCOUNT_AMBIGUOUS"


class WebhookSignatureError(BillingError):
    """Invalid webhook signature. A security boundary; never retried."""

    default_error_code: str = "WEBHOOK_SIGNATURE_INVALID"


class ProcessorAPIError(BillingError, ExternalServiceError):
    """
    A payment processor API call failed during batch sync.

    is_retryable is True for rate limits, connection errors and 5xx.
    """

    default_error_code: str = "PROCESSOR_API_ERROR"


# =============================================================================
# Concurrency Exceptions
# =============================================================================


class ClaimConflictError(ConflictError):
    """
    Raised when a redemption claim is not held by the caller.

    Another worker holds the claim, or the subscription is not due.
    """

    default_error_code: str = "CLAIM_CONFLICT"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a status transition is not allowed.

    Example:
        raise InvalidStateTransitionError(
            "Cannot suspend a completed subscription",
            details={"current_state": "completed", "target_state": "suspended"},
        )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"
