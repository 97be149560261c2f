"""Trust store — per-owner "always allow" grants for tools and integrations.

Reads happen on every turn for every proposed call, so lookups are point
queries for just the keys in play.  An optional per-owner cache keeps
positive and negative answers for ``trust_cache_ttl_seconds``; it is an
optimisation only: a miss or an expired entry always goes back to the
repository, and a grant made through this store drops the owner's entry.
Grants made by another process become visible here within the TTL.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from agentrun.config import get_settings
from agentrun.core.logging import get_logger
from agentrun.repos.interfaces import TrustRepository
from agentrun.schemas.agent_run import ToolCallRequest
from agentrun.schemas.trust import TrustRecordRead, TrustScope, TrustSnapshot

logger = get_logger(__name__)

_Key = tuple[TrustScope, str]


@dataclass
class _OwnerCache:
    expires_at: float
    entries: dict[_Key, bool] = field(default_factory=dict)


class TrustStore:
    def __init__(
        self,
        repo: TrustRepository,
        *,
        cache_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repo = repo
        self._ttl = get_settings().trust_cache_ttl_seconds if cache_ttl is None else cache_ttl
        self._clock = clock
        self._cache: dict[str, _OwnerCache] = {}
        # Per-owner count of grants and invalidations; a lookup that overlaps one caches only positives.
        self._generation: dict[str, int] = {}

    # ── Writes ──────────────────────────────────────────────────

    async def grant(self, owner_id: str, scope: TrustScope, key: str) -> TrustRecordRead:
        """Idempotent: granting an existing scope/key returns the existing record."""
        record = await self._repo.grant(owner_id, scope, key)
        self.invalidate(owner_id)
        logger.info("trust_granted", owner_id=owner_id, scope=scope.value, key=key)
        return record

    def invalidate(self, owner_id: str | None = None) -> None:
        owners = set(self._cache) | set(self._generation) if owner_id is None else {owner_id}
        for owner in owners:
            self._cache.pop(owner, None)
            self._generation[owner] = self._generation.get(owner, 0) + 1

    # ── Reads ───────────────────────────────────────────────────

    async def is_trusted(self, owner_id: str, tool_name: str, integration_id: str | None) -> bool:
        snapshot = await self.snapshot(
            owner_id, [ToolCallRequest(call_id="", tool_name=tool_name, integration_id=integration_id)]
        )
        return snapshot.trusts(tool_name, integration_id)

    async def snapshot(self, owner_id: str, calls: Iterable[ToolCallRequest]) -> TrustSnapshot:
        """Trust state for exactly the tools and integrations these calls touch."""
        wanted: set[_Key] = set()
        for call in calls:
            wanted.add((TrustScope.TOOL, call.tool_name))
            if call.integration_id:
                wanted.add((TrustScope.INTEGRATION, call.integration_id))

        known = self._cached(owner_id)
        missing = wanted - known.keys()
        if missing:
            generation = self._generation.get(owner_id, 0)
            records = await self._repo.matching(
                owner_id,
                tool_names=[k for s, k in missing if s == TrustScope.TOOL],
                integration_ids=[k for s, k in missing if s == TrustScope.INTEGRATION],
            )
            found = {(r.scope, r.key) for r in records}
            fetched = {key: key in found for key in missing}
            known.update(fetched)
            if self._ttl > 0:
                if self._generation.get(owner_id, 0) != generation:
                    fetched = {k: v for k, v in fetched.items() if v}
                self._store(owner_id, fetched)

        trusted = {key for key in wanted if known.get(key)}
        return TrustSnapshot(
            owner_id=owner_id,
            tools=frozenset(k for s, k in trusted if s == TrustScope.TOOL),
            integrations=frozenset(k for s, k in trusted if s == TrustScope.INTEGRATION),
        )

    # ── Cache ───────────────────────────────────────────────────

    def _cached(self, owner_id: str) -> dict[_Key, bool]:
        if self._ttl <= 0:
            return {}
        entry = self._cache.get(owner_id)
        if entry is None or entry.expires_at <= self._clock():
            self._cache.pop(owner_id, None)
            return {}
        return dict(entry.entries)

    def _store(self, owner_id: str, fetched: dict[_Key, bool]) -> None:
        entry = self._cache.get(owner_id)
        if entry is None or entry.expires_at <= self._clock():
            entry = _OwnerCache(expires_at=self._clock() + self._ttl)
            self._cache[owner_id] = entry
        entry.entries.update(fetched)
