"""
Pytest fixtures for billing tests.

This module provides fixtures for creating billing test data and a
scriptable chain redeemer, so lifecycle tests never leave the process.

Usage:
    def test_redeems_due_subscription(subscription, redeemer):
        redeemer.succeed("0xabc")
        result = SubscriptionLedger.redeem(subscription.id)
        assert result.succeeded
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from billing.adapters import RedemptionReceipt, RedemptionRequest
from billing.exceptions import RedeemerUnavailableError, RedemptionRejectedError
from billing.tests.factories import (
    CustomerFactory,
    DunningConfigurationFactory,
    PriceFactory,
    ProductTokenFactory,
    SubscriptionFactory,
    WorkspaceFactory,
    WorkspaceProviderAccountFactory,
)


# =============================================================================
# Chain Redeemer Stub
# =============================================================================


class StubRedeemer:
    """
    ChainRedeemer that replays scripted outcomes.

    Each queued outcome is a transaction hash (success) or an exception
    instance (raised). With nothing queued, every call succeeds with a
    fresh hash.
    """

    def __init__(self):
        self.outcomes: list = []
        self.requests: list[RedemptionRequest] = []

    def succeed(self, tx_hash: str | None = None) -> StubRedeemer:
        self.outcomes.append(tx_hash or f"0x{len(self.outcomes) + len(self.requests) + 1:064x}")
        return self

    def reject(self, message: str = "execution reverted") -> StubRedeemer:
        self.outcomes.append(RedemptionRejectedError(message))
        return self

    def fail_transiently(self, message: str = "redeemer unavailable") -> StubRedeemer:
        self.outcomes.append(RedeemerUnavailableError(message))
        return self

    def submit(self, request: RedemptionRequest, timeout: float | None = None) -> RedemptionReceipt:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else f"0x{len(self.requests):064x}"
        if isinstance(outcome, Exception):
            raise outcome
        return RedemptionReceipt(tx_hash=outcome)

    @property
    def call_count(self) -> int:
        return len(self.requests)


@pytest.fixture
def redeemer():
    """StubRedeemer installed as the process-wide chain redeemer."""
    stub = StubRedeemer()
    with patch("billing.services.subscription_ledger.get_chain_redeemer", return_value=stub):
        yield stub


# =============================================================================
# Catalogue Fixtures
# =============================================================================


@pytest.fixture
def workspace(db):
    return WorkspaceFactory()


@pytest.fixture
def customer(db, workspace):
    return CustomerFactory(workspace=workspace)


@pytest.fixture
def monthly_price(db, workspace):
    """$10.00 per month for twelve months."""
    return PriceFactory(
        product__workspace=workspace,
        unit_amount_in_pennies=1000,
        term_length=12,
    )


@pytest.fixture
def product_token(db, monthly_price):
    return ProductTokenFactory(product=monthly_price.product)


# =============================================================================
# Subscription Fixtures
# =============================================================================


@pytest.fixture
def subscription(db, workspace, customer):
    """Active delegation-backed subscription, due now."""
    return SubscriptionFactory(workspace=workspace, customer=customer)


@pytest.fixture
def processor_subscription(db, workspace, customer):
    """Processor-owned subscription mirrored from Stripe."""
    return SubscriptionFactory(
        workspace=workspace,
        customer=customer,
        processor_owned=True,
        external_id="sub_processor_1",
    )


# =============================================================================
# Dunning & Sync Fixtures
# =============================================================================


@pytest.fixture
def dunning_configuration(db, workspace):
    """Three retries after 1, 2 and 4 days, then cancel."""
    return DunningConfigurationFactory(workspace=workspace)


@pytest.fixture
def provider_account(db, workspace):
    return WorkspaceProviderAccountFactory(workspace=workspace, provider_account_id="acct_live_1")
