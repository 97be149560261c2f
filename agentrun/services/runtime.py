"""Assembly of the run engine and its collaborators.

The API process and the arq worker build the same object graph: SQL
repositories on the shared session factory, the Redis budget counter, the
OpenAI-compatible provider and the registry-backed tool executor.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentrun.config import Settings, get_settings
from agentrun.core.provider import ModelProvider, OpenAIModelProvider
from agentrun.core.run_engine import RunEngine
from agentrun.core.tool_registry import tool_registry
from agentrun.core.tools.executor import RegistryToolExecutor
from agentrun.database import async_session_maker
from agentrun.repos.sql import (
    SqlAgentCatalog,
    SqlRunRepository,
    SqlToolCallRepository,
    SqlTrustRepository,
    SqlUsageRepository,
    SqlWorkflowTaskRepository,
)
from agentrun.services.rate_limiter import RateLimiter, RedisBudgetCounter
from agentrun.services.trust import TrustStore
from agentrun.services.workflow_bridge import WorkflowTaskBridge


def build_rate_limiter(
    redis: aioredis.Redis,
    session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
    settings: Settings | None = None,
) -> RateLimiter:
    settings = settings or get_settings()
    counter = RedisBudgetCounter(redis, ttl_seconds=settings.budget_counter_ttl_seconds)
    return RateLimiter(counter, SqlUsageRepository(session_factory), settings)


def build_engine(
    redis: aioredis.Redis,
    *,
    session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
    provider: ModelProvider | None = None,
    settings: Settings | None = None,
) -> RunEngine:
    settings = settings or get_settings()
    return RunEngine(
        runs=SqlRunRepository(session_factory),
        tool_calls=SqlToolCallRepository(session_factory),
        catalog=SqlAgentCatalog(session_factory),
        trust=TrustStore(
            SqlTrustRepository(session_factory), cache_ttl=settings.trust_cache_ttl_seconds
        ),
        limiter=build_rate_limiter(redis, session_factory, settings),
        provider=provider or OpenAIModelProvider(settings=settings),
        executor=RegistryToolExecutor(tool_registry, settings),
        registry=tool_registry,
        settings=settings,
    )


def build_workflow_bridge(
    engine: RunEngine,
    session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
) -> WorkflowTaskBridge:
    return WorkflowTaskBridge(engine, SqlWorkflowTaskRepository(session_factory), engine.settings)
