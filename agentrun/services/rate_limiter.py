"""Rate limiter and usage ledger — per-owner daily cost budget.

Budget state per owner and window lives in one counter with two fields,
both integer micro-USD:

- ``consumed``: actual cost recorded in the window.
- ``reserved``: estimates handed out by ``admit`` and not yet settled.

``admit`` checks ``consumed + reserved + estimate <= limit`` and takes the
reservation in the same atomic step, so two concurrent admissions can never
both see the same headroom.  ``record`` adds the actual cost atomically and
then returns the reservation it settles.  Windows are daily,
anchored at ``budget_reset_hour_utc``; the counter key embeds the window
start date, so a new window starts from zero whether or not anything ran at
the boundary.  The counter expires ``budget_counter_ttl_seconds`` after its
first write.

Every recorded turn is also appended to the usage ledger (``UsageRepository``)
for reporting.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

import redis.asyncio as aioredis

from agentrun.config import Settings, get_settings
from agentrun.core.logging import get_logger
from agentrun.repos.interfaces import UsageRepository
from agentrun.schemas.usage import Admission, BudgetWindow, UsageEventRead

logger = get_logger(__name__)

MICROS = 1_000_000
DENIAL_REASON = "Daily spending limit exceeded"


def to_micros(cost: float, *, round_up: bool = False) -> int:
    scaled = cost * MICROS
    return math.ceil(scaled) if round_up else round(scaled)


def from_micros(micros: int) -> float:
    return micros / MICROS


# ── Counter backends ────────────────────────────────────────────────


class BudgetCounter(Protocol):
    async def admit(
        self, owner_id: str, window: str, estimate: int, limit: int
    ) -> tuple[bool, int, int]:
        """Atomically check and reserve.  Returns ``(allowed, consumed, reserved)``."""
        ...

    async def record(self, owner_id: str, window: str, cost: int) -> int:
        """Atomically add actual cost.  Returns the new consumed total."""
        ...

    async def release(self, owner_id: str, window: str, amount: int) -> None:
        ...

    async def read(self, owner_id: str, window: str) -> tuple[int, int]:
        """``(consumed, reserved)``."""
        ...

    async def reset(self, owner_id: str, window: str) -> None:
        ...


_ADMIT_SCRIPT = """
local consumed = tonumber(redis.call('HGET', KEYS[1], 'consumed') or '0')
local reserved = tonumber(redis.call('HGET', KEYS[1], 'reserved') or '0')
local estimate = tonumber(ARGV[1])
if consumed + reserved + estimate > tonumber(ARGV[2]) then
  return {0, consumed, reserved}
end
if estimate > 0 then
  local fresh = redis.call('EXISTS', KEYS[1]) == 0
  reserved = redis.call('HINCRBY', KEYS[1], 'reserved', estimate)
  if fresh then
    redis.call('EXPIRE', KEYS[1], ARGV[3])
  end
end
return {1, consumed, reserved}
"""

_RECORD_SCRIPT = """
local fresh = redis.call('EXISTS', KEYS[1]) == 0
local consumed = redis.call('HINCRBY', KEYS[1], 'consumed', ARGV[1])
if fresh then
  redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return consumed
"""

_RELEASE_SCRIPT = """
local reserved = tonumber(redis.call('HGET', KEYS[1], 'reserved') or '0')
if reserved == 0 then
  return 0
end
local left = reserved - tonumber(ARGV[1])
if left < 0 then
  left = 0
end
redis.call('HSET', KEYS[1], 'reserved', left)
return left
"""


class RedisBudgetCounter:
    """Counter shared by every API and worker process."""

    def __init__(self, redis: aioredis.Redis, *, ttl_seconds: int) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._admit = redis.register_script(_ADMIT_SCRIPT)
        self._record = redis.register_script(_RECORD_SCRIPT)
        self._release = redis.register_script(_RELEASE_SCRIPT)

    @staticmethod
    def key(owner_id: str, window: str) -> str:
        return f"rate_limit:daily_usage:{owner_id}:{window}"

    async def admit(
        self, owner_id: str, window: str, estimate: int, limit: int
    ) -> tuple[bool, int, int]:
        allowed, consumed, reserved = await self._admit(
            keys=[self.key(owner_id, window)], args=[estimate, limit, self._ttl]
        )
        return bool(int(allowed)), int(consumed), int(reserved)

    async def record(self, owner_id: str, window: str, cost: int) -> int:
        consumed = await self._record(keys=[self.key(owner_id, window)], args=[cost, self._ttl])
        return int(consumed)

    async def release(self, owner_id: str, window: str, amount: int) -> None:
        await self._release(keys=[self.key(owner_id, window)], args=[amount])

    async def read(self, owner_id: str, window: str) -> tuple[int, int]:
        consumed, reserved = await self._redis.hmget(
            self.key(owner_id, window), ["consumed", "reserved"]
        )
        return int(consumed or 0), int(reserved or 0)

    async def reset(self, owner_id: str, window: str) -> None:
        await self._redis.delete(self.key(owner_id, window))


class InMemoryBudgetCounter:
    """Single-process counter; the lock gives the same atomicity as the scripts."""

    def __init__(self) -> None:
        self._counters: dict[tuple[str, str], list[int]] = {}
        self._lock = asyncio.Lock()

    async def admit(
        self, owner_id: str, window: str, estimate: int, limit: int
    ) -> tuple[bool, int, int]:
        async with self._lock:
            counter = self._counters.setdefault((owner_id, window), [0, 0])
            consumed, reserved = counter
            if consumed + reserved + estimate > limit:
                return False, consumed, reserved
            counter[1] += estimate
            return True, consumed, counter[1]

    async def record(self, owner_id: str, window: str, cost: int) -> int:
        async with self._lock:
            counter = self._counters.setdefault((owner_id, window), [0, 0])
            counter[0] += cost
            return counter[0]

    async def release(self, owner_id: str, window: str, amount: int) -> None:
        async with self._lock:
            counter = self._counters.get((owner_id, window))
            if counter is not None:
                counter[1] = max(0, counter[1] - amount)

    async def read(self, owner_id: str, window: str) -> tuple[int, int]:
        consumed, reserved = self._counters.get((owner_id, window), (0, 0))
        return consumed, reserved

    async def reset(self, owner_id: str, window: str) -> None:
        async with self._lock:
            self._counters.pop((owner_id, window), None)


# ── Rate limiter ────────────────────────────────────────────────────


class RateLimiter:
    def __init__(
        self,
        counter: BudgetCounter,
        ledger: UsageRepository,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._counter = counter
        self._ledger = ledger
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def limit(self) -> float:
        return self._settings.daily_budget_usd

    def window_bounds(self, now: datetime | None = None) -> tuple[datetime, datetime]:
        """Start and end of the daily window containing ``now``."""
        now = now or self._clock()
        anchor = now.replace(
            hour=self._settings.budget_reset_hour_utc, minute=0, second=0, microsecond=0
        )
        start = anchor if now >= anchor else anchor - timedelta(days=1)
        return start, start + timedelta(days=1)

    def window_key(self, now: datetime | None = None) -> str:
        return self.window_bounds(now)[0].strftime("%Y-%m-%d")

    def _window(self, consumed: int, reserved: int, now: datetime | None = None) -> BudgetWindow:
        start, end = self.window_bounds(now)
        return BudgetWindow(
            window_start=start,
            window_end=end,
            consumed=from_micros(consumed),
            limit=self.limit,
            reserved=from_micros(reserved),
        )

    async def admit(self, owner_id: str, estimated_cost: float | None = None) -> Admission:
        """Check the budget and reserve ``estimated_cost`` in one atomic step.

        The reservation stays held until ``record`` settles it or
        ``release`` returns it.
        """
        estimate = self._settings.turn_cost_floor_usd if estimated_cost is None else estimated_cost
        now = self._clock()
        key = self.window_key(now)

        allowed, consumed, reserved = await self._counter.admit(
            owner_id, key, to_micros(estimate, round_up=True), to_micros(self.limit)
        )
        window = self._window(consumed, reserved, now)

        if not allowed:
            logger.info(
                "budget_admission_denied",
                owner_id=owner_id,
                consumed=window.consumed,
                reserved=window.reserved,
                estimate=estimate,
                limit=window.limit,
            )
            return Admission(
                allowed=False,
                reason=DENIAL_REASON,
                reset_at=window.reset_at,
                window=window,
            )

        logger.debug(
            "budget_admitted",
            owner_id=owner_id,
            consumed=window.consumed,
            reserved=window.reserved,
            estimate=estimate,
        )
        return Admission(allowed=True, reserved=estimate, reset_at=window.reset_at, window=window)

    async def record(
        self,
        owner_id: str,
        run_id: str,
        input_units: int,
        output_units: int,
        actual_cost: float,
        *,
        model: str | None = None,
        reserved: float = 0.0,
        reserved_window: str | None = None,
    ) -> BudgetWindow:
        """Add actual cost to the current window and append a usage event.

        ``reserved``/``reserved_window`` settle the reservation taken by
        the matching ``admit``.
        """
        now = self._clock()
        key = self.window_key(now)

        consumed = await self._counter.record(owner_id, key, to_micros(actual_cost))
        if reserved > 0:
            await self._counter.release(
                owner_id, reserved_window or key, to_micros(reserved, round_up=True)
            )

        await self._ledger.append(
            UsageEventRead(
                owner_id=owner_id,
                run_id=run_id,
                model=model,
                input_units=input_units,
                output_units=output_units,
                cost=actual_cost,
                occurred_at=now,
            )
        )
        logger.info(
            "usage_recorded",
            owner_id=owner_id,
            run_id=run_id,
            input_units=input_units,
            output_units=output_units,
            cost=actual_cost,
            consumed=from_micros(consumed),
        )
        _, still_reserved = await self._counter.read(owner_id, key)
        return self._window(consumed, still_reserved, now)

    async def release(self, owner_id: str, amount: float, window: str | None = None) -> None:
        """Return an unused reservation (run canceled or failed before its turn)."""
        if amount <= 0:
            return
        if window is None:
            window = self.window_key()
        await self._counter.release(owner_id, window, to_micros(amount, round_up=True))

    async def get_usage(self, owner_id: str) -> BudgetWindow:
        """Read-only view of the current window."""
        now = self._clock()
        key = self.window_key(now)
        consumed, reserved = await self._counter.read(owner_id, key)
        return self._window(consumed, reserved, now)

    async def recent_events(self, owner_id: str, limit: int = 20) -> list[UsageEventRead]:
        start, end = self.window_bounds()
        return await self._ledger.list(owner_id, since=start, until=end, limit=limit)

    async def reset(self, owner_id: str) -> None:
        """Admin: clear the owner's current window counter."""
        key = self.window_key()
        await self._counter.reset(owner_id, key)
        logger.info("budget_reset", owner_id=owner_id, window=key)
