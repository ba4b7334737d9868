"""
Billing app: delegated crypto subscription lifecycle.

This app handles:
- Signed spending delegations and their caveats
- Subscription creation, scheduled on-chain redemptions and cancellation
- Dunning campaigns for failed redemptions
- Idempotent synchronization with external payment processors (Stripe)

Usage:
    from billing.services import SubscriptionLedger

    result = SubscriptionLedger.create_subscription(
        workspace=workspace,
        customer=customer,
        delegation_payload=payload,
        price=price,
        product_token=product_token,
        customer_wallet=wallet,
        token_amount=10_000_000,
    )
"""
