"""Tests for the rate limiter, budget counters and model pricing."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentrun.config import Settings
from agentrun.core.pricing import (
    DEFAULT_MODEL,
    calculate_charged_cost,
    calculate_cost,
    extract_model_id,
    get_pricing,
)
from agentrun.repos.memory import InMemoryUsageRepository
from agentrun.services.rate_limiter import (
    DENIAL_REASON,
    InMemoryBudgetCounter,
    RateLimiter,
    RedisBudgetCounter,
    from_micros,
    to_micros,
)

OWNER = "user-1"


class MutableClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _limiter(clock=None, **overrides):
    settings = Settings(_env_file=None, daily_budget_usd=1.0, turn_cost_floor_usd=0.001, **overrides)
    kwargs = {"clock": clock} if clock else {}
    return RateLimiter(InMemoryBudgetCounter(), InMemoryUsageRepository(), settings, **kwargs)


# ─── Admission ───────────────────────────────────────────────────────


class TestAdmission:
    @pytest.mark.asyncio
    async def test_admits_under_limit(self):
        limiter = _limiter()
        admission = await limiter.admit(OWNER)

        assert admission.allowed
        assert admission.reserved == pytest.approx(0.001)
        assert admission.window.reserved == pytest.approx(0.001)
        assert admission.window.consumed == 0

    @pytest.mark.asyncio
    async def test_denies_when_estimate_would_exceed(self):
        limiter = _limiter()
        await limiter.record(OWNER, "run-1", 0, 0, 0.9995)

        admission = await limiter.admit(OWNER)

        assert not admission.allowed
        assert admission.reason == DENIAL_REASON
        assert admission.reserved == 0
        assert admission.reset_at == limiter.window_bounds()[1]

    @pytest.mark.asyncio
    async def test_concurrent_admissions_share_headroom(self):
        limiter = _limiter()
        await limiter.record(OWNER, "run-1", 0, 0, 0.995)

        results = await asyncio.gather(*(limiter.admit(OWNER, 0.004) for _ in range(3)))

        assert [a.allowed for a in results].count(True) == 1
        usage = await limiter.get_usage(OWNER)
        assert usage.consumed + usage.reserved <= usage.limit

    @pytest.mark.asyncio
    async def test_owners_are_independent(self):
        limiter = _limiter()
        await limiter.record(OWNER, "run-1", 0, 0, 1.0)

        assert not (await limiter.admit(OWNER)).allowed
        assert (await limiter.admit("user-2")).allowed


# ─── Recording ───────────────────────────────────────────────────────


class TestRecord:
    @pytest.mark.asyncio
    async def test_record_settles_reservation(self):
        limiter = _limiter()
        admission = await limiter.admit(OWNER, 0.01)

        window = await limiter.record(
            OWNER,
            "run-1",
            1200,
            300,
            0.002,
            model="gpt-5",
            reserved=admission.reserved,
            reserved_window=admission.window.key,
        )

        assert window.consumed == pytest.approx(0.002)
        assert window.reserved == 0
        events = await limiter.recent_events(OWNER)
        assert [(e.run_id, e.input_units, e.output_units, e.model) for e in events] == [
            ("run-1", 1200, 300, "gpt-5")
        ]

    @pytest.mark.asyncio
    async def test_release_returns_reservation(self):
        limiter = _limiter()
        admission = await limiter.admit(OWNER, 0.5)

        await limiter.release(OWNER, admission.reserved, admission.window.key)

        usage = await limiter.get_usage(OWNER)
        assert usage.reserved == 0
        assert usage.remaining == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_release_never_goes_negative(self):
        limiter = _limiter()
        await limiter.release(OWNER, 0.5)
        assert (await limiter.get_usage(OWNER)).reserved == 0

    @pytest.mark.asyncio
    async def test_admin_reset_clears_window(self):
        limiter = _limiter()
        await limiter.record(OWNER, "run-1", 0, 0, 1.5)

        await limiter.reset(OWNER)

        assert (await limiter.get_usage(OWNER)).consumed == 0
        assert (await limiter.admit(OWNER)).allowed


# ─── Windows ─────────────────────────────────────────────────────────


class TestWindows:
    def test_window_anchored_at_reset_hour(self):
        limiter = _limiter(budget_reset_hour_utc=6)

        start, end = limiter.window_bounds(datetime(2026, 3, 10, 3, 0, tzinfo=UTC))
        assert start == datetime(2026, 3, 9, 6, 0, tzinfo=UTC)
        assert end == datetime(2026, 3, 10, 6, 0, tzinfo=UTC)

        start, _ = limiter.window_bounds(datetime(2026, 3, 10, 7, 0, tzinfo=UTC))
        assert start == datetime(2026, 3, 10, 6, 0, tzinfo=UTC)

    def test_window_key_is_start_date(self):
        limiter = _limiter()
        assert limiter.window_key(datetime(2026, 3, 10, 23, 59, tzinfo=UTC)) == "2026-03-10"

    @pytest.mark.asyncio
    async def test_new_window_starts_from_zero(self):
        clock = MutableClock(datetime(2026, 3, 10, 23, 59, tzinfo=UTC))
        limiter = _limiter(clock=clock)
        await limiter.record(OWNER, "run-1", 0, 0, 1.0)
        assert not (await limiter.admit(OWNER)).allowed

        clock.now += timedelta(minutes=2)

        admission = await limiter.admit(OWNER)
        assert admission.allowed
        assert admission.window.consumed == 0
        assert admission.reset_at == datetime(2026, 3, 12, 0, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_reservation_released_in_its_own_window(self):
        clock = MutableClock(datetime(2026, 3, 10, 23, 59, tzinfo=UTC))
        limiter = _limiter(clock=clock)
        admission = await limiter.admit(OWNER, 0.2)

        clock.now += timedelta(minutes=2)
        await limiter.record(
            OWNER, "run-1", 10, 10, 0.01, reserved=0.2, reserved_window=admission.window.key
        )

        counter = limiter._counter
        assert await counter.read(OWNER, "2026-03-10") == (0, 0)
        assert await counter.read(OWNER, "2026-03-11") == (to_micros(0.01), 0)


# ─── Redis counter ───────────────────────────────────────────────────


class TestRedisBudgetCounter:
    def _counter(self, *script_results):
        redis = MagicMock()
        scripts = [AsyncMock(return_value=r) for r in script_results]
        redis.register_script.side_effect = scripts
        return RedisBudgetCounter(redis, ttl_seconds=172800), redis, scripts

    @pytest.mark.asyncio
    async def test_admit_runs_script_on_window_key(self):
        counter, _, (admit, _, _) = self._counter([1, 0, 1000], 0, 0)

        result = await counter.admit(OWNER, "2026-03-10", 1000, 1_000_000)

        assert result == (True, 0, 1000)
        admit.assert_awaited_once_with(
            keys=["rate_limit:daily_usage:user-1:2026-03-10"], args=[1000, 1_000_000, 172800]
        )

    @pytest.mark.asyncio
    async def test_admit_denied(self):
        counter, _, _ = self._counter([0, 999_500, 0], 0, 0)
        assert await counter.admit(OWNER, "2026-03-10", 1000, 1_000_000) == (False, 999_500, 0)

    @pytest.mark.asyncio
    async def test_record_and_release(self):
        counter, _, (_, record, release) = self._counter([1, 0, 0], 2500, 0)

        assert await counter.record(OWNER, "2026-03-10", 2500) == 2500
        await counter.release(OWNER, "2026-03-10", 1000)

        record.assert_awaited_once_with(
            keys=["rate_limit:daily_usage:user-1:2026-03-10"], args=[2500, 172800]
        )
        release.assert_awaited_once_with(
            keys=["rate_limit:daily_usage:user-1:2026-03-10"], args=[1000]
        )

    @pytest.mark.asyncio
    async def test_read_and_reset(self):
        counter, redis, _ = self._counter(0, 0, 0)
        redis.hmget = AsyncMock(return_value=[b"1250", None])
        redis.delete = AsyncMock()

        assert await counter.read(OWNER, "2026-03-10") == (1250, 0)
        await counter.reset(OWNER, "2026-03-10")
        redis.delete.assert_awaited_once_with("rate_limit:daily_usage:user-1:2026-03-10")


# ─── Pricing ─────────────────────────────────────────────────────────


class TestPricing:
    def test_cost_per_million(self):
        assert calculate_cost("gpt-5", 1_000_000, 1_000_000) == pytest.approx(11.25)

    def test_provider_prefix_stripped(self):
        assert extract_model_id("openai:gpt-5.2") == "gpt-5.2"
        assert extract_model_id("gpt-4o") == "gpt-4o"
        assert get_pricing("openai:gpt-4o").input_per_million == 2.50

    def test_unknown_model_falls_back(self):
        assert get_pricing("mystery-model") == get_pricing(DEFAULT_MODEL)
        assert get_pricing(None) == get_pricing(DEFAULT_MODEL)

    def test_charged_cost_applies_markup(self):
        actual = calculate_cost("gpt-5-mini", 500_000, 100_000)
        assert calculate_charged_cost("gpt-5-mini", 500_000, 100_000) == pytest.approx(actual * 1.6)

    def test_micros_round_trip(self):
        assert to_micros(0.0000014, round_up=True) == 2
        assert from_micros(to_micros(0.25)) == 0.25
