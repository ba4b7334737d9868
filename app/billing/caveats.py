"""
Delegation caveats as a tagged union.

Each caveat is stored as {"kind": "<kind>", ...params}. Parsing maps every
known kind to a frozen dataclass and rejects anything else, so an
unrecognized restriction can never be silently ignored.

Kinds:
    amount_cap        {max_amount}            per-redemption limit (token base units)
    total_cap         {max_total}             lifetime limit (token base units)
    time_window       {not_before, not_after} unix seconds, either optional
    allowed_recipient {address}
    allowed_token     {contract_address}
    period_limit      {max_redemptions}

Usage:
    caveats = parse_caveats(record.caveats)
    verdict = authorize(
        caveats,
        RedemptionContext(amount=10_000_000, recipient=merchant, token=usdc, at=now),
    )
    if not verdict:
        logger.warning(verdict.reason)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import ClassVar, Union

from billing.exceptions import DelegationValidationError


def _int_param(raw: dict, name: str, kind: str, optional: bool = False) -> int | None:
    value = raw.get(name)
    if value is None and optional:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise DelegationValidationError(
            f"Caveat '{kind}' requires integer '{name}'",
            details={"kind": kind, "param": name},
        )
    if number < 0:
        raise DelegationValidationError(
            f"Caveat '{kind}' parameter '{name}' must be non-negative",
            details={"kind": kind, "param": name},
        )
    return number


def _address_param(raw: dict, name: str, kind: str) -> str:
    value = raw.get(name)
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 42:
        raise DelegationValidationError(
            f"Caveat '{kind}' requires a 0x-prefixed 20-byte '{name}'",
            details={"kind": kind, "param": name},
        )
    return value.lower()


@dataclass(frozen=True)
class RedemptionContext:
    """What a single redemption would do, checked against the caveats."""

    amount: int
    recipient: str
    token: str
    at: datetime
    redeemed_so_far: int = 0
    redemptions_so_far: int = 0


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    kind: str | None = None
    reason: str = ""
    expired: bool = False

    def __bool__(self) -> bool:
        return self.allowed


ALLOWED = Verdict(allowed=True)


@dataclass(frozen=True)
class AmountCap:
    kind: ClassVar[str] = "amount_cap"
    max_amount: int

    @classmethod
    def parse(cls, raw: dict) -> AmountCap:
        return cls(max_amount=_int_param(raw, "max_amount", cls.kind))

    def check(self, context: RedemptionContext) -> Verdict:
        if context.amount > self.max_amount:
            return Verdict(False, self.kind, f"amount {context.amount} exceeds cap {self.max_amount}")
        return ALLOWED


@dataclass(frozen=True)
class TotalCap:
    kind: ClassVar[str] = "total_cap"
    max_total: int

    @classmethod
    def parse(cls, raw: dict) -> TotalCap:
        return cls(max_total=_int_param(raw, "max_total", cls.kind))

    def check(self, context: RedemptionContext) -> Verdict:
        total = context.redeemed_so_far + context.amount
        if total > self.max_total:
            return Verdict(False, self.kind, f"lifetime total {total} exceeds cap {self.max_total}")
        return ALLOWED


@dataclass(frozen=True)
class TimeWindow:
    kind: ClassVar[str] = "time_window"
    not_before: int | None = None
    not_after: int | None = None

    @classmethod
    def parse(cls, raw: dict) -> TimeWindow:
        window = cls(
            not_before=_int_param(raw, "not_before", cls.kind, optional=True),
            not_after=_int_param(raw, "not_after", cls.kind, optional=True),
        )
        if window.not_before is None and window.not_after is None:
            raise DelegationValidationError(
                "Caveat 'time_window' needs not_before or not_after",
                details={"kind": cls.kind},
            )
        if window.not_before is not None and window.not_after is not None and window.not_before > window.not_after:
            raise DelegationValidationError(
                "Caveat 'time_window' not_before is after not_after",
                details={"kind": cls.kind},
            )
        return window

    def check(self, context: RedemptionContext) -> Verdict:
        at = int(context.at.timestamp())
        if self.not_before is not None and at < self.not_before:
            return Verdict(False, self.kind, "delegation is not valid yet")
        if self.not_after is not None and at > self.not_after:
            return Verdict(False, self.kind, "delegation has expired", expired=True)
        return ALLOWED

    @property
    def expires_at(self) -> datetime | None:
        if self.not_after is None:
            return None
        return datetime.fromtimestamp(self.not_after, tz=timezone.utc)


@dataclass(frozen=True)
class AllowedRecipient:
    kind: ClassVar[str] = "allowed_recipient"
    address: str

    @classmethod
    def parse(cls, raw: dict) -> AllowedRecipient:
        return cls(address=_address_param(raw, "address", cls.kind))

    def check(self, context: RedemptionContext) -> Verdict:
        if context.recipient.lower() != self.address:
            return Verdict(False, self.kind, f"recipient {context.recipient} is not allowed")
        return ALLOWED


@dataclass(frozen=True)
class AllowedToken:
    kind: ClassVar[str] = "allowed_token"
    contract_address: str

    @classmethod
    def parse(cls, raw: dict) -> AllowedToken:
        return cls(contract_address=_address_param(raw, "contract_address", cls.kind))

    def check(self, context: RedemptionContext) -> Verdict:
        if context.token.lower() != self.contract_address:
            return Verdict(False, self.kind, f"token {context.token} is not allowed")
        return ALLOWED


@dataclass(frozen=True)
class PeriodLimit:
    kind: ClassVar[str] = "period_limit"
    max_redemptions: int

    @classmethod
    def parse(cls, raw: dict) -> PeriodLimit:
        return cls(max_redemptions=_int_param(raw, "max_redemptions", cls.kind))

    def check(self, context: RedemptionContext) -> Verdict:
        if context.redemptions_so_far >= self.max_redemptions:
            return Verdict(False, self.kind, f"redemption limit {self.max_redemptions} reached")
        return ALLOWED


Caveat = Union[AmountCap, TotalCap, TimeWindow, AllowedRecipient, AllowedToken, PeriodLimit]

CAVEAT_KINDS: dict[str, type] = {
    cls.kind: cls
    for cls in (AmountCap, TotalCap, TimeWindow, AllowedRecipient, AllowedToken, PeriodLimit)
}


def parse_caveat(raw: object) -> Caveat:
    if not isinstance(raw, dict):
        raise DelegationValidationError("Caveat must be an object", details={"caveat": repr(raw)})
    kind = raw.get("kind")
    caveat_cls = CAVEAT_KINDS.get(kind)
    if caveat_cls is None:
        raise DelegationValidationError(
            f"Unknown caveat kind: {kind!r}",
            error_code="CAVEAT_UNKNOWN",
            details={"kind": kind},
        )
    return caveat_cls.parse(raw)


def parse_caveats(raw: object) -> list[Caveat]:
    if not isinstance(raw, list):
        raise DelegationValidationError("Caveats must be a list")
    return [parse_caveat(item) for item in raw]


def serialize_caveat(caveat: Caveat) -> dict:
    data = {"kind": caveat.kind}
    data.update({name: value for name, value in vars(caveat).items() if value is not None})
    return data


def authorize(caveats: list[Caveat], context: RedemptionContext) -> Verdict:
    """Return the verdict of the first violated caveat, or ALLOWED."""
    for caveat in caveats:
        verdict = caveat.check(context)
        if not verdict:
            return verdict
    return ALLOWED


def delegation_expires_at(caveats: list[Caveat]) -> datetime | None:
    """Earliest not_after among the time windows, if any."""
    deadlines = [c.expires_at for c in caveats if isinstance(c, TimeWindow) and c.expires_at]
    return min(deadlines) if deadlines else None
