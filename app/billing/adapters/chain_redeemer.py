"""
Chain redeemer client.

The subscription engine never builds transactions itself. It hands a
stored delegation, recipient, token amount and network to a redemption
service and gets back a transaction hash or a typed failure.

Contract:
    submit(request, timeout) -> RedemptionReceipt
    raises RedemptionRejectedError   (permanent: revert, invalid/expired/revoked delegation)
    raises RedemptionTimeoutError    (transient)
    raises RedeemerUnavailableError  (transient: outage or open circuit)

Configuration (via settings):
- CHAIN_REDEEMER_URL: Base URL of the redemption service
- CHAIN_REDEEMER_API_KEY: Bearer token for the service
- CHAIN_REDEEMER_TIMEOUT_SECONDS: Default submission timeout (default: 30)
- CHAIN_REDEEMER_CIRCUIT_FAILURE_THRESHOLD: Failures that open the circuit (default: 3)
- CHAIN_REDEEMER_CIRCUIT_RECOVERY_TIMEOUT: Seconds before probing again (default: 300)

Usage:
    from billing.adapters import get_chain_redeemer

    receipt = get_chain_redeemer().submit(request)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from django.conf import settings

from core.circuit_breaker import CircuitBreaker, CircuitOpenError

from billing.exceptions import (
    RedeemerUnavailableError,
    RedemptionRejectedError,
    RedemptionTimeoutError,
)

if TYPE_CHECKING:
    from billing.models import DelegationRecord

logger = logging.getLogger(__name__)

# Error codes the redemption service returns for failures retrying cannot fix
PERMANENT_ERROR_CODES = frozenset(
    {
        "invalid_signature",
        "delegation_expired",
        "delegation_revoked",
        "delegation_disabled",
        "caveat_violation",
        "execution_reverted",
        "insufficient_allowance",
        "invalid_request",
    }
)


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class RedemptionRequest:
    """
    One redemption to submit.

    Attributes:
        delegation: Delegation fields as signed
        recipient: Merchant wallet address
        token_address: ERC-20 contract address
        amount: Token base units (sent as a decimal string)
        chain_id: EIP-155 chain id
        idempotency_key: Stable per subscription period so a retried HTTP
            call never produces a second transfer
    """

    delegation: dict[str, Any]
    recipient: str
    token_address: str
    amount: int
    chain_id: int
    idempotency_key: str

    @classmethod
    def for_delegation(
        cls,
        record: DelegationRecord,
        recipient: str,
        token_address: str,
        amount: int,
        chain_id: int,
        idempotency_key: str,
    ) -> RedemptionRequest:
        return cls(
            delegation={
                "delegate": record.delegate,
                "delegator": record.delegator,
                "authority": record.authority,
                "caveats": record.caveats,
                "salt": record.salt,
                "signature": record.signature,
            },
            recipient=recipient,
            token_address=token_address,
            amount=int(amount),
            chain_id=chain_id,
            idempotency_key=idempotency_key,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "delegation": self.delegation,
            "recipient": self.recipient,
            "token_address": self.token_address,
            "amount": str(self.amount),
            "chain_id": self.chain_id,
            "idempotency_key": self.idempotency_key,
        }


@dataclass(frozen=True)
class RedemptionReceipt:
    tx_hash: str
    raw_response: dict[str, Any] = field(default_factory=dict)


class ChainRedeemer(Protocol):
    def submit(self, request: RedemptionRequest, timeout: float | None = None) -> RedemptionReceipt: ...


# =============================================================================
# HTTP Implementation
# =============================================================================


class HttpChainRedeemer:
    """
    Redeems delegations through an HTTP redemption service.

    Every call goes through a cache-backed circuit breaker shared by all
    workers. Rejections do not count against the circuit; timeouts and
    outages do.
    """

    redeem_path = "/api/v1/delegations/redeem"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        breaker: CircuitBreaker | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(
            name="chain-redeemer",
            failure_threshold=getattr(settings, "CHAIN_REDEEMER_CIRCUIT_FAILURE_THRESHOLD", 3),
            recovery_timeout=getattr(settings, "CHAIN_REDEEMER_CIRCUIT_RECOVERY_TIMEOUT", 300),
        )
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(base_url=self.base_url, headers=headers, transport=transport)

    def submit(self, request: RedemptionRequest, timeout: float | None = None) -> RedemptionReceipt:
        log_context = {
            "operation": "redeem_delegation",
            "chain_id": request.chain_id,
            "recipient": request.recipient,
            "idempotency_key": request.idempotency_key,
        }
        start_time = time.time()
        logger.info("Submitting redemption", extra=log_context)

        try:
            with self.breaker.guard(ignore=(RedemptionRejectedError,)):
                receipt = self._post(request, timeout or self.timeout)
        except CircuitOpenError as e:
            logger.warning("Chain redeemer circuit open", extra={**log_context, "retry_in": e.retry_in})
            raise RedeemerUnavailableError(
                "Chain redeemer temporarily unavailable",
                details={"retry_in": e.retry_in},
            )

        logger.info(
            "Redemption submitted",
            extra={
                **log_context,
                "tx_hash": receipt.tx_hash,
                "duration_ms": (time.time() - start_time) * 1000,
            },
        )
        return receipt

    def close(self) -> None:
        self._client.close()

    def _post(self, request: RedemptionRequest, timeout: float) -> RedemptionReceipt:
        try:
            response = self._client.post(self.redeem_path, json=request.to_payload(), timeout=timeout)
        except httpx.TimeoutException as e:
            raise RedemptionTimeoutError(f"Redemption timed out after {timeout}s", details={"error": str(e)})
        except httpx.TransportError as e:
            raise RedeemerUnavailableError("Could not reach chain redeemer", details={"error": str(e)})

        body = self._json(response)

        if response.is_success:
            tx_hash = body.get("tx_hash") or body.get("transaction_hash")
            if not tx_hash:
                raise RedeemerUnavailableError(
                    "Chain redeemer response missing transaction hash",
                    details={"status_code": response.status_code},
                )
            return RedemptionReceipt(tx_hash=tx_hash, raw_response=body)

        error_code = str(body.get("code") or body.get("error_code") or "")
        message = str(body.get("error") or body.get("message") or response.reason_phrase)
        details = {"status_code": response.status_code, "redeemer_code": error_code}

        if response.status_code in (408, 504):
            raise RedemptionTimeoutError(message, details=details, tx_hash=body.get("tx_hash"))
        if error_code in PERMANENT_ERROR_CODES or (400 <= response.status_code < 500 and response.status_code != 429):
            raise RedemptionRejectedError(message, details=details, tx_hash=body.get("tx_hash"))
        raise RedeemerUnavailableError(message, details=details)

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


_default_redeemer: ChainRedeemer | None = None


def get_chain_redeemer() -> ChainRedeemer:
    """Process-wide redeemer built from settings."""
    global _default_redeemer
    if _default_redeemer is None:
        _default_redeemer = HttpChainRedeemer(
            base_url=settings.CHAIN_REDEEMER_URL,
            api_key=settings.CHAIN_REDEEMER_API_KEY,
            timeout=settings.CHAIN_REDEEMER_TIMEOUT_SECONDS,
        )
    return _default_redeemer
