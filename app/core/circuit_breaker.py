"""
Cache-backed circuit breaker for outbound calls.

State is kept in Django's cache (Redis in production) so every Celery worker
and web process sees the same view of a failing dependency.

States:
    - CLOSED: Calls pass through; consecutive failures are counted
    - OPEN: Calls fail fast with CircuitOpenError until recovery_timeout passes
    - HALF_OPEN: One probe call is allowed; its outcome closes or reopens

Usage:
    from core.circuit_breaker import CircuitBreaker, CircuitOpenError

    breaker = CircuitBreaker("chain-redeemer", failure_threshold=3)

    try:
        with breaker.guard():
            receipt = client.post(...)
    except CircuitOpenError:
        # Dependency is known to be down, do not wait on it
        ...

    # Errors the caller owns (bad input, permanent rejection) should not
    # trip the breaker; list them in ignore.
    with breaker.guard(ignore=(PermanentRedemptionError,)):
        ...

Note:
    If the cache itself is unreachable the breaker stays closed, so a cache
    outage never blocks redemptions on its own.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING

from django.core.cache import cache

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised instead of calling a dependency whose circuit is open."""

    def __init__(self, name: str, retry_in: int = 0):
        self.name = name
        self.retry_in = retry_in
        super().__init__(f"Circuit '{name}' is open; retry in {retry_in}s")


class CircuitBreaker:
    """
    Distributed circuit breaker.

    The whole state is a single cached dict:
        {"state": "closed", "failures": 0, "opened_at": None, "probing": False}

    Attributes:
        name: Identifier, also used to build the cache key
        failure_threshold: Consecutive failures that open the circuit
        recovery_timeout: Seconds an open circuit waits before a probe
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        cache_ttl: int = 3600,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.cache_ttl = max(cache_ttl, recovery_timeout * 2)
        self._key = f"circuit:{name}"

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def state(self) -> CircuitState:
        return CircuitState(self._load()["state"])

    def allow_request(self) -> bool:
        """
        Return True if a call may go out now.

        An open circuit whose recovery_timeout has elapsed moves to half-open
        and lets exactly one probe through.
        """
        snapshot = self._load()
        state = snapshot["state"]

        if state == CircuitState.CLOSED.value:
            return True

        if state == CircuitState.OPEN.value:
            if time.time() - (snapshot["opened_at"] or 0) < self.recovery_timeout:
                return False
            snapshot.update(state=CircuitState.HALF_OPEN.value, probing=True)
            self._store(snapshot)
            logger.info("Circuit half-open, sending probe", extra={"circuit": self.name})
            return True

        # Half-open: only the first caller gets to probe
        if snapshot["probing"]:
            return False
        snapshot["probing"] = True
        self._store(snapshot)
        return True

    def record_success(self) -> None:
        snapshot = self._load()
        if snapshot["state"] != CircuitState.CLOSED.value:
            logger.info("Circuit closed", extra={"circuit": self.name})
        self._store(self._closed())

    def record_failure(self) -> None:
        snapshot = self._load()

        if snapshot["state"] == CircuitState.HALF_OPEN.value:
            self._open(snapshot)
            logger.warning("Circuit probe failed, reopening", extra={"circuit": self.name})
            return

        snapshot["failures"] += 1
        if snapshot["failures"] >= self.failure_threshold:
            self._open(snapshot)
            logger.warning(
                "Circuit opened",
                extra={"circuit": self.name, "failure_count": snapshot["failures"]},
            )
            return
        self._store(snapshot)

    def retry_in(self) -> int:
        """Seconds until an open circuit will allow a probe (0 otherwise)."""
        snapshot = self._load()
        if snapshot["state"] != CircuitState.OPEN.value:
            return 0
        remaining = self.recovery_timeout - (time.time() - (snapshot["opened_at"] or 0))
        return max(0, int(remaining))

    @contextmanager
    def guard(self, ignore: tuple[type[BaseException], ...] = ()) -> Generator[None, None, None]:
        """
        Wrap one outbound call.

        Raises CircuitOpenError without running the block when the circuit is
        open. Exceptions listed in ignore propagate without counting as
        failures (and without counting as successes either).
        """
        if not self.allow_request():
            raise CircuitOpenError(self.name, retry_in=self.retry_in())
        try:
            yield
        except ignore:
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()

    def reset(self) -> None:
        self._store(self._closed())

    def get_status(self) -> dict[str, Any]:
        snapshot = self._load()
        return {
            "name": self.name,
            "state": snapshot["state"],
            "failure_count": snapshot["failures"],
            "failure_threshold": self.failure_threshold,
            "retry_in": self.retry_in(),
        }

    # =========================================================================
    # Cache storage
    # =========================================================================

    @staticmethod
    def _closed() -> dict[str, Any]:
        return {"state": CircuitState.CLOSED.value, "failures": 0, "opened_at": None, "probing": False}

    def _open(self, snapshot: dict[str, Any]) -> None:
        snapshot.update(state=CircuitState.OPEN.value, opened_at=time.time(), probing=False)
        self._store(snapshot)

    def _load(self) -> dict[str, Any]:
        try:
            snapshot = cache.get(self._key)
        except Exception as exc:
            logger.warning(
                "Circuit state unreadable, treating as closed: %s",
                exc,
                extra={"circuit": self.name},
            )
            return self._closed()
        return dict(snapshot) if snapshot else self._closed()

    def _store(self, snapshot: dict[str, Any]) -> None:
        try:
            cache.set(self._key, snapshot, timeout=self.cache_ttl)
        except Exception as exc:
            logger.warning(
                "Circuit state not persisted: %s",
                exc,
                extra={"circuit": self.name},
            )

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, state={self.state.value})"
