"""
throttle.py — Cost-based rate-limit bookkeeping for the Jobber GraphQL API

Jobber charges every query a point cost against an account-wide bucket
that refills at `restoreRate` points per second. Each response reports the
bucket state in `extensions.cost.throttleStatus`.

Business Rules:
- Throttle wait = max(min_wait, ceil((needed - available) / restore_rate) + margin)
- Inter-page delay grows toward the refill time when points drop below
  twice the query cost, and shrinks 5% toward the floor when more than 60%
  of the bucket is available
- One ThrottleBudget per run is shared by every pager, since the bucket
  belongs to the account and not to a query stream

Called by: services/pager.py, graphql_client.py
Depends on: nothing (pure functions + asyncio.Lock)
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable

from loguru import logger

PLENTIFUL_RATIO = 0.6
SCARCE_COST_MULTIPLIER = 2
DELAY_DECAY = 0.95


@dataclass(frozen=True)
class ThrottleStatus:
    """Bucket state as reported by the provider on one response."""

    currently_available: float
    maximum_available: float
    restore_rate: float

    @classmethod
    def from_payload(cls, payload) -> "ThrottleStatus | None":
        """Parse `throttleStatus`; None when absent or malformed."""
        if not isinstance(payload, dict):
            return None
        try:
            return cls(
                currently_available=float(payload["currentlyAvailable"]),
                maximum_available=float(payload["maximumAvailable"]),
                restore_rate=float(payload["restoreRate"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class QueryCost:
    requested_query_cost: int | None = None
    actual_query_cost: int | None = None
    throttle: ThrottleStatus | None = None

    @classmethod
    def from_extensions(cls, extensions) -> "QueryCost":
        cost = extensions.get("cost") if isinstance(extensions, dict) else None
        if not isinstance(cost, dict):
            return cls()
        return cls(
            requested_query_cost=_as_int(cost.get("requestedQueryCost")),
            actual_query_cost=_as_int(cost.get("actualQueryCost")),
            throttle=ThrottleStatus.from_payload(cost.get("throttleStatus")),
        )


def _as_int(v) -> int | None:
    try:
        return int(v) if v is not None else None
    except (TypeError, ValueError):
        return None


def compute_throttle_wait(
    points_needed: float,
    currently_available: float,
    restore_rate: float,
    min_wait: float,
    safety_margin: float,
) -> float:
    """Seconds to wait before a query of `points_needed` can be afforded."""
    if restore_rate <= 0:
        return max(min_wait, safety_margin)
    shortfall = max(0.0, points_needed - currently_available)
    return max(min_wait, math.ceil(shortfall / restore_rate) + safety_margin)


def next_page_delay(
    status: ThrottleStatus | None,
    query_cost: float,
    current_delay: float,
    floor: float,
    safety_margin: float,
) -> float:
    """Adapt the inter-page delay to how much of the bucket is left."""
    if status is None:
        return current_delay
    target = query_cost * SCARCE_COST_MULTIPLIER
    if status.currently_available < target:
        refill = compute_throttle_wait(
            target, status.currently_available, status.restore_rate,
            min_wait=floor, safety_margin=safety_margin,
        )
        return max(refill, current_delay)
    if status.maximum_available and status.currently_available > status.maximum_available * PLENTIFUL_RATIO:
        return max(floor, current_delay * DELAY_DECAY)
    return current_delay


class ThrottleBudget:
    """Account-wide view of the point bucket, shared across concurrent pagers.

    Pagers call `observe()` after every response and `wait_time(cost)` before
    every request. The estimate refills linearly from the last observation.
    """

    def __init__(self, safety_margin: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.safety_margin = safety_margin
        self._clock = clock
        self._status: ThrottleStatus | None = None
        self._observed_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def status(self) -> ThrottleStatus | None:
        return self._status

    def observe(self, status: ThrottleStatus | None) -> None:
        if status is None:
            return
        self._status = status
        self._observed_at = self._clock()

    def estimated_available(self) -> float | None:
        if self._status is None or self._observed_at is None:
            return None
        elapsed = max(0.0, self._clock() - self._observed_at)
        refilled = self._status.currently_available + elapsed * self._status.restore_rate
        return min(self._status.maximum_available, refilled)

    def wait_time(self, query_cost: float) -> float:
        """Seconds to hold off before spending `query_cost` points (0 when affordable)."""
        available = self.estimated_available()
        if available is None or available >= query_cost:
            return 0.0
        return compute_throttle_wait(
            query_cost, available, self._status.restore_rate,
            min_wait=0.0, safety_margin=self.safety_margin,
        )

    async def acquire(self, query_cost: float, sleep) -> float:
        """Wait until the bucket can afford `query_cost`, then reserve it.

        Serialized by a lock so two pagers never both spend the same points.
        Returns the seconds waited.
        """
        async with self._lock:
            wait = self.wait_time(query_cost)
            if wait > 0:
                logger.debug("Throttle budget low, holding {:.1f}s before next query", wait)
                await sleep(wait)
            if self._status is not None:
                available = self.estimated_available() or 0.0
                self._status = ThrottleStatus(
                    currently_available=max(0.0, available - query_cost),
                    maximum_available=self._status.maximum_available,
                    restore_rate=self._status.restore_rate,
                )
                self._observed_at = self._clock()
            return wait
