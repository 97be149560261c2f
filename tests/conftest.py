"""Shared fixtures: an in-memory run engine with a scripted model provider."""

import asyncio
from dataclasses import dataclass

import pytest

from agentrun.config import Settings
from agentrun.core.provider import TextDelta, TurnComplete, TurnUsage
from agentrun.core.run_engine import RunEngine
from agentrun.core.tool_registry import ToolDefinition, ToolRegistry
from agentrun.core.tools.executor import RegistryToolExecutor
from agentrun.repos.memory import (
    InMemoryAgentCatalog,
    InMemoryRunRepository,
    InMemoryToolCallRepository,
    InMemoryTrustRepository,
    InMemoryUsageRepository,
)
from agentrun.schemas.agent import AgentDefinition, ThreadRead
from agentrun.schemas.agent_run import ToolCallRequest
from agentrun.schemas.trust import TrustScope
from agentrun.services.rate_limiter import InMemoryBudgetCounter, RateLimiter
from agentrun.services.trust import TrustStore

OWNER = "user-1"
AGENT_ID = "agent-1"
THREAD_ID = "thread-1"


# ─── Scripted provider ───────────────────────────────────────────────


class FakeProvider:
    """Replays scripted turns.

    Each turn is a list of items: ``TextDelta``/``TurnComplete`` are yielded,
    an ``Exception`` is raised and a ``float`` sleeps that many seconds.
    """

    def __init__(self, turns=None):
        self.turns = list(turns or [])
        self.calls = []
        self.closed = 0

    async def stream_turn(self, *, system_prompt, messages, tools, trust_hints=(), model=None):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "messages": [dict(m) for m in messages],
                "tools": [t.name for t in tools],
                "trust_hints": list(trust_hints),
                "model": model,
            }
        )
        items = self.turns.pop(0)
        try:
            for item in items:
                if isinstance(item, Exception):
                    raise item
                if isinstance(item, float):
                    await asyncio.sleep(item)
                    continue
                yield item
        finally:
            self.closed += 1


class ListSink:
    def __init__(self):
        self.events = []

    async def emit(self, kind, payload):
        self.events.append((kind, payload))

    def kinds(self):
        return [k for k, _ in self.events]

    def of(self, kind):
        return [p for k, p in self.events if k == kind]


def call(call_id, tool_name, integration_id=None, **arguments):
    return ToolCallRequest(
        call_id=call_id, tool_name=tool_name, integration_id=integration_id, arguments=arguments
    )


def text_turn(text, input_units=100, output_units=20):
    return [
        TextDelta(text),
        TurnComplete(text=text, usage=TurnUsage(input_units, output_units)),
    ]


def tool_turn(*calls, text="", input_units=50, output_units=10):
    return [TurnComplete(text=text, tool_calls=list(calls), usage=TurnUsage(input_units, output_units))]


# ─── Tools ───────────────────────────────────────────────────────────


async def _search_docs(args, owner_id):
    return {"results": [f"doc about {args.get('query', '')}"]}


async def _send_email(args, owner_id):
    return {"sent": True, "to": args.get("to")}


async def _create_event(args, owner_id):
    return {"event_id": "evt-1"}


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register(
        ToolDefinition(name="search_docs", description="Search the owner's documents"),
        handler=_search_docs,
    )
    reg.register(
        ToolDefinition(
            name="send_email",
            description="Send an email",
            integration_id="gmail",
            retryable=False,
        ),
        handler=_send_email,
    )
    reg.register(
        ToolDefinition(name="create_event", description="Create an event", integration_id="calendar"),
        handler=_create_event,
    )
    return reg


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        daily_budget_usd=1.0,
        turn_cost_floor_usd=0.001,
        trust_cache_ttl_seconds=0,
        agent_delta_batch_ms=0,
        agent_max_rounds=5,
        provider_turn_timeout_seconds=1.0,
        tool_timeout_seconds=1,
        tool_max_attempts=2,
        tool_max_failures_per_call=3,
    )


# ─── Engine harness ──────────────────────────────────────────────────


@dataclass
class Harness:
    engine: RunEngine
    provider: FakeProvider
    runs: InMemoryRunRepository
    tool_calls: InMemoryToolCallRepository
    catalog: InMemoryAgentCatalog
    trust_repo: InMemoryTrustRepository
    counter: InMemoryBudgetCounter
    ledger: InMemoryUsageRepository
    limiter: RateLimiter

    async def start(self, message="Summarise my week"):
        return await self.engine.start(
            owner_id=OWNER, thread_id=THREAD_ID, agent_id=AGENT_ID, message=message
        )

    async def trust_tool(self, name):
        await self.engine.trust.grant(OWNER, TrustScope.TOOL, name)


@pytest.fixture
def harness(settings, registry):
    catalog = InMemoryAgentCatalog()
    catalog.add_agent(
        AgentDefinition(
            id=AGENT_ID,
            owner_id=OWNER,
            name="Assistant",
            system_prompt="You are helpful.",
            model="gpt-5",
            tool_names=["search_docs", "send_email", "create_event"],
        )
    )
    catalog.add_thread(ThreadRead(id=THREAD_ID, owner_id=OWNER, agent_id=AGENT_ID))

    runs = InMemoryRunRepository()
    tool_calls = InMemoryToolCallRepository()
    trust_repo = InMemoryTrustRepository()
    counter = InMemoryBudgetCounter()
    ledger = InMemoryUsageRepository()
    limiter = RateLimiter(counter, ledger, settings)
    provider = FakeProvider()

    engine = RunEngine(
        runs=runs,
        tool_calls=tool_calls,
        catalog=catalog,
        trust=TrustStore(trust_repo, cache_ttl=0),
        limiter=limiter,
        provider=provider,
        executor=RegistryToolExecutor(registry, settings),
        registry=registry,
        settings=settings,
    )
    return Harness(
        engine=engine,
        provider=provider,
        runs=runs,
        tool_calls=tool_calls,
        catalog=catalog,
        trust_repo=trust_repo,
        counter=counter,
        ledger=ledger,
        limiter=limiter,
    )


@pytest.fixture
def sink():
    return ListSink()
