"""
Adapters for external collaborators.

- ChainRedeemer / HttpChainRedeemer: submits delegated transfers on-chain
- StripeAdapter: webhook verification, event normalization, batch listing
"""

from billing.adapters.chain_redeemer import (
    ChainRedeemer,
    HttpChainRedeemer,
    RedemptionReceipt,
    RedemptionRequest,
    get_chain_redeemer,
)
from billing.adapters.stripe_adapter import (
    NormalizedEvent,
    StripeAdapter,
    backoff_delay,
    get_provider_adapter,
)

__all__ = [
    "ChainRedeemer",
    "HttpChainRedeemer",
    "NormalizedEvent",
    "RedemptionReceipt",
    "RedemptionRequest",
    "StripeAdapter",
    "backoff_delay",
    "get_chain_redeemer",
    "get_provider_adapter",
]
