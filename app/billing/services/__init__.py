"""
Billing services.

- DelegationStore: write-once storage for signed delegations
- EventRecorder: append-only subscription audit trail
- SubscriptionLedger: signup, redemption, cancellation
- DunningEngine: retry campaigns for failed redemptions
- PaymentSyncCoordinator: processor webhook routing and projection
"""

from billing.services.delegation_store import DelegationStore
from billing.services.event_recorder import EventRecorder
from billing.services.subscription_ledger import (
    CreateSubscriptionParams,
    RedemptionOutcome,
    RedemptionResult,
    SubscriptionCreated,
    SubscriptionLedger,
    SubscriptionStatusView,
)
from billing.services.dunning_engine import CampaignOutcome, DunningEngine
from billing.services.payment_sync import (
    ApplyOutcome,
    ApplyResult,
    PaymentSyncCoordinator,
    idempotency_key,
)

__all__ = [
    "ApplyOutcome",
    "ApplyResult",
    "CampaignOutcome",
    "CreateSubscriptionParams",
    "DelegationStore",
    "DunningEngine",
    "EventRecorder",
    "PaymentSyncCoordinator",
    "RedemptionOutcome",
    "RedemptionResult",
    "SubscriptionCreated",
    "SubscriptionLedger",
    "SubscriptionStatusView",
    "idempotency_key",
]
