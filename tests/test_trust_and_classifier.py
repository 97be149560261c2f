"""Tests for the trust store and the tool invocation classifier."""

import asyncio

import pytest

from agentrun.core.classifier import classify
from agentrun.repos.memory import InMemoryTrustRepository
from agentrun.schemas.trust import TrustScope, TrustSnapshot
from agentrun.services.trust import TrustStore

from tests.conftest import OWNER, call


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# ─── Classifier ──────────────────────────────────────────────────────


class TestClassify:
    def test_splits_by_tool_or_integration_trust(self):
        trust = TrustSnapshot(
            owner_id=OWNER,
            tools=frozenset({"search_docs"}),
            integrations=frozenset({"calendar"}),
        )
        calls = [
            call("c1", "send_email", "gmail"),
            call("c2", "search_docs"),
            call("c3", "create_event", "calendar"),
            call("c4", "delete_files"),
        ]

        result = classify(calls, trust)

        assert [c.call_id for c in result.auto_approved] == ["c2", "c3"]
        assert [c.call_id for c in result.needs_approval] == ["c1", "c4"]

    def test_nothing_trusted(self):
        result = classify([call("c1", "search_docs")], TrustSnapshot(owner_id=OWNER))
        assert result.auto_approved == []
        assert [c.call_id for c in result.needs_approval] == ["c1"]

    def test_empty_turn(self):
        result = classify([], TrustSnapshot(owner_id=OWNER, tools=frozenset({"x"})))
        assert result.auto_approved == [] and result.needs_approval == []

    def test_integration_trust_needs_an_integration(self):
        trust = TrustSnapshot(owner_id=OWNER, integrations=frozenset({"gmail"}))
        result = classify([call("c1", "send_email", None)], trust)
        assert [c.call_id for c in result.needs_approval] == ["c1"]


# ─── Trust store ─────────────────────────────────────────────────────


class TestTrustStore:
    @pytest.mark.asyncio
    async def test_grant_is_idempotent(self):
        repo = InMemoryTrustRepository()
        store = TrustStore(repo, cache_ttl=0)

        first = await store.grant(OWNER, TrustScope.TOOL, "send_email")
        second = await store.grant(OWNER, TrustScope.TOOL, "send_email")

        assert first.granted_at == second.granted_at
        assert len(repo._records) == 1

    @pytest.mark.asyncio
    async def test_snapshot_only_reports_keys_in_play(self):
        repo = InMemoryTrustRepository()
        store = TrustStore(repo, cache_ttl=0)
        await store.grant(OWNER, TrustScope.TOOL, "search_docs")
        await store.grant(OWNER, TrustScope.TOOL, "unrelated")
        await store.grant(OWNER, TrustScope.INTEGRATION, "gmail")

        snapshot = await store.snapshot(
            OWNER, [call("c1", "search_docs"), call("c2", "send_email", "gmail")]
        )

        assert snapshot.tools == frozenset({"search_docs"})
        assert snapshot.integrations == frozenset({"gmail"})

    @pytest.mark.asyncio
    async def test_grants_are_per_owner(self):
        store = TrustStore(InMemoryTrustRepository(), cache_ttl=0)
        await store.grant(OWNER, TrustScope.TOOL, "send_email")

        assert await store.is_trusted(OWNER, "send_email", None)
        assert not await store.is_trusted("someone-else", "send_email", None)

    @pytest.mark.asyncio
    async def test_without_cache_every_snapshot_queries(self):
        repo = InMemoryTrustRepository()
        store = TrustStore(repo, cache_ttl=0)

        await store.snapshot(OWNER, [call("c1", "search_docs")])
        await store.snapshot(OWNER, [call("c1", "search_docs")])

        assert repo.lookups == 2

    @pytest.mark.asyncio
    async def test_cache_serves_repeat_lookups(self):
        repo = InMemoryTrustRepository()
        store = TrustStore(repo, cache_ttl=5, clock=FakeClock())

        await store.snapshot(OWNER, [call("c1", "search_docs")])
        await store.snapshot(OWNER, [call("c2", "search_docs")])

        assert repo.lookups == 1

    @pytest.mark.asyncio
    async def test_cache_fetches_only_missing_keys(self):
        repo = InMemoryTrustRepository()
        store = TrustStore(repo, cache_ttl=5, clock=FakeClock())

        await store.snapshot(OWNER, [call("c1", "search_docs")])
        await store.snapshot(OWNER, [call("c1", "search_docs"), call("c2", "send_email", "gmail")])
        await store.snapshot(OWNER, [call("c3", "send_email", "gmail")])

        assert repo.lookups == 2

    @pytest.mark.asyncio
    async def test_local_grant_is_visible_immediately(self):
        repo = InMemoryTrustRepository()
        store = TrustStore(repo, cache_ttl=5, clock=FakeClock())

        assert not await store.is_trusted(OWNER, "send_email", "gmail")
        await store.grant(OWNER, TrustScope.TOOL, "send_email")

        assert await store.is_trusted(OWNER, "send_email", "gmail")

    @pytest.mark.asyncio
    async def test_remote_grant_visible_after_ttl(self):
        repo = InMemoryTrustRepository()
        clock = FakeClock()
        here = TrustStore(repo, cache_ttl=5, clock=clock)
        elsewhere = TrustStore(repo, cache_ttl=5, clock=clock)

        assert not await here.is_trusted(OWNER, "send_email", None)
        await elsewhere.grant(OWNER, TrustScope.TOOL, "send_email")

        # Cached negative answer until the entry expires.
        assert not await here.is_trusted(OWNER, "send_email", None)
        clock.now += 5
        assert await here.is_trusted(OWNER, "send_email", None)

    @pytest.mark.asyncio
    async def test_invalidate(self):
        repo = InMemoryTrustRepository()
        store = TrustStore(repo, cache_ttl=60, clock=FakeClock())
        await store.snapshot(OWNER, [call("c1", "search_docs")])

        store.invalidate(OWNER)
        await store.snapshot(OWNER, [call("c1", "search_docs")])

        assert repo.lookups == 2

    @pytest.mark.asyncio
    async def test_revoke(self):
        repo = InMemoryTrustRepository()
        store = TrustStore(repo, cache_ttl=0)
        await store.grant(OWNER, TrustScope.INTEGRATION, "gmail")

        assert await repo.revoke(OWNER, TrustScope.INTEGRATION, "gmail")
        assert not await store.is_trusted(OWNER, "send_email", "gmail")

    @pytest.mark.asyncio
    async def test_grant_during_lookup_does_not_cache_stale_negative(self):
        class GatedRepository(InMemoryTrustRepository):
            def __init__(self):
                super().__init__()
                self.read_done = asyncio.Event()
                self.release = asyncio.Event()

            async def matching(self, owner_id, *, tool_names, integration_ids):
                found = await super().matching(
                    owner_id, tool_names=tool_names, integration_ids=integration_ids
                )
                self.read_done.set()
                await self.release.wait()
                return found

        repo = GatedRepository()
        store = TrustStore(repo, cache_ttl=60, clock=FakeClock())

        lookup = asyncio.create_task(store.is_trusted(OWNER, "send_email", None))
        await repo.read_done.wait()
        await store.grant(OWNER, TrustScope.TOOL, "send_email")
        repo.release.set()

        # The overlapping lookup answers from its own read.
        assert not await lookup
        assert await store.is_trusted(OWNER, "send_email", None)
