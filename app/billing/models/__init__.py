"""
Billing domain models.

- Catalogue: Workspace, Customer, Network, Token, Wallet, Product, Price, ProductToken
- DelegationRecord: Signed spending authorizations
- Subscription: Redemption schedule and lifecycle state
- SubscriptionEvent / FailedSubscriptionAttempt: Append-only audit trail
- DunningConfiguration / DunningCampaign / DunningAttempt: Retry policy and runs
- WorkspaceProviderAccount / PaymentSyncSession / PaymentSyncEvent: Processor sync
"""

from billing.models.catalog import (
    Customer,
    Network,
    Price,
    Product,
    ProductToken,
    Token,
    Wallet,
    Workspace,
)
from billing.models.delegation import DelegationRecord
from billing.models.dunning import DunningAttempt, DunningCampaign, DunningConfiguration
from billing.models.events import FailedSubscriptionAttempt, SubscriptionEvent
from billing.models.payment_sync import (
    PaymentSyncEvent,
    PaymentSyncSession,
    WorkspaceProviderAccount,
)
from billing.models.subscription import Subscription

__all__ = [
    "Customer",
    "DelegationRecord",
    "DunningAttempt",
    "DunningCampaign",
    "DunningConfiguration",
    "FailedSubscriptionAttempt",
    "Network",
    "PaymentSyncEvent",
    "PaymentSyncSession",
    "Price",
    "Product",
    "ProductToken",
    "Subscription",
    "SubscriptionEvent",
    "Token",
    "Wallet",
    "Workspace",
    "WorkspaceProviderAccount",
]
