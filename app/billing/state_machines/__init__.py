"""
State machine enums for billing models.

Subscription status transitions are enforced with django-fsm; see
billing.models.subscription.
"""

from billing.state_machines.states import (
    REDEMPTION_FAILURE_EVENT_TYPES,
    SUCCESS_EVENT_TYPES,
    CommunicationType,
    DunningAction,
    DunningAttemptStatus,
    DunningAttemptType,
    DunningCampaignStatus,
    DunningFinalAction,
    FailedAttemptErrorType,
    IntervalType,
    PaymentSyncEventStatus,
    PaymentSyncSessionStatus,
    PaymentSyncSessionType,
    PaymentSyncStatus,
    PriceType,
    ProviderEnvironment,
    SubscriptionEventType,
    SubscriptionStatus,
)

__all__ = [
    "CommunicationType",
    "DunningAction",
    "DunningAttemptStatus",
    "DunningAttemptType",
    "DunningCampaignStatus",
    "DunningFinalAction",
    "FailedAttemptErrorType",
    "IntervalType",
    "PaymentSyncEventStatus",
    "PaymentSyncSessionStatus",
    "PaymentSyncSessionType",
    "PaymentSyncStatus",
    "PriceType",
    "ProviderEnvironment",
    "REDEMPTION_FAILURE_EVENT_TYPES",
    "SUCCESS_EVENT_TYPES",
    "SubscriptionEventType",
    "SubscriptionStatus",
]
