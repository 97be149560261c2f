"""In-process repository implementations.

Used for single-process deployments, local development and tests.  Every
mutation runs under one ``asyncio.Lock`` per repository, so the guarded
updates keep the same all-or-nothing semantics as the SQL versions.
Snapshots handed out are deep copies; callers never alias stored state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Collection
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from agentrun.schemas.agent import AgentDefinition, ThreadMessageRead, ThreadRead
from agentrun.schemas.agent_run import (
    TERMINAL_STATUSES,
    AgentRunRead,
    RunStatus,
    ToolCallDisposition,
    ToolCallRead,
    ToolCallRequest,
)
from agentrun.schemas.trust import TrustRecordRead, TrustScope
from agentrun.schemas.usage import UsageEventRead
from agentrun.schemas.workflow import WorkflowTaskRead


def _now() -> datetime:
    return datetime.now(UTC)


class InMemoryRunRepository:
    def __init__(self) -> None:
        self._runs: dict[str, AgentRunRead] = {}
        self._updated: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def create(self, run: AgentRunRead) -> AgentRunRead:
        async with self._lock:
            stored = run.model_copy(deep=True, update={"created_at": run.created_at or _now()})
            self._runs[stored.id] = stored
            self._updated[stored.id] = _now()
            return stored.model_copy(deep=True)

    async def get(self, run_id: str) -> AgentRunRead | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def compare_and_set(
        self,
        run_id: str,
        *,
        expected: Collection[RunStatus],
        expected_version: int | None = None,
        **changes: Any,
    ) -> AgentRunRead | None:
        async with self._lock:
            current = self._runs.get(run_id)
            if current is None or current.status not in expected:
                return None
            if expected_version is not None and current.version != expected_version:
                return None
            updated = AgentRunRead.model_validate(
                {**current.model_dump(), **changes, "version": current.version + 1}
            ).model_copy(deep=True)
            self._runs[run_id] = updated
            self._updated[run_id] = _now()
            return updated.model_copy(deep=True)

    async def request_cancel(self, run_id: str) -> AgentRunRead | None:
        non_terminal = [s for s in RunStatus if s not in TERMINAL_STATUSES]
        return await self.compare_and_set(run_id, expected=non_terminal, cancel_requested=True)

    async def find_stuck(self, status: RunStatus, updated_before: datetime) -> list[AgentRunRead]:
        return [
            r.model_copy(deep=True)
            for r in self._runs.values()
            if r.status == status and self._updated[r.id] < updated_before
        ]


class InMemoryToolCallRepository:
    def __init__(self) -> None:
        self._calls: dict[str, dict[str, ToolCallRead]] = {}
        self._lock = asyncio.Lock()

    async def add(self, run_id: str, calls: list[ToolCallRequest], *, round: int) -> None:
        async with self._lock:
            bucket = self._calls.setdefault(run_id, {})
            for call in calls:
                bucket[call.call_id] = ToolCallRead(
                    run_id=run_id,
                    call_id=call.call_id,
                    tool_name=call.tool_name,
                    integration_id=call.integration_id,
                    arguments=call.arguments,
                    round=round,
                )

    async def resolve(
        self,
        run_id: str,
        call_id: str,
        *,
        disposition: ToolCallDisposition,
        result: str | None = None,
    ) -> None:
        async with self._lock:
            call = self._calls.get(run_id, {}).get(call_id)
            if call is not None:
                call.disposition = disposition
                call.result = result

    async def supersede_pending(self, run_id: str) -> int:
        async with self._lock:
            count = 0
            for call in self._calls.get(run_id, {}).values():
                if call.disposition == ToolCallDisposition.PENDING:
                    call.disposition = ToolCallDisposition.SUPERSEDED
                    count += 1
            return count

    async def list(self, run_id: str) -> list[ToolCallRead]:
        return [c.model_copy() for c in self._calls.get(run_id, {}).values()]


class InMemoryTrustRepository:
    def __init__(self) -> None:
        self._records: dict[tuple[str, str, str], TrustRecordRead] = {}
        self._lock = asyncio.Lock()
        self.lookups = 0

    async def grant(self, owner_id: str, scope: TrustScope, key: str) -> TrustRecordRead:
        async with self._lock:
            ident = (owner_id, scope.value, key)
            if ident not in self._records:
                self._records[ident] = TrustRecordRead(
                    owner_id=owner_id, scope=scope, key=key, granted_at=_now()
                )
            return self._records[ident]

    async def matching(
        self,
        owner_id: str,
        *,
        tool_names: Collection[str],
        integration_ids: Collection[str],
    ) -> list[TrustRecordRead]:
        self.lookups += 1
        found = []
        for name in tool_names:
            rec = self._records.get((owner_id, TrustScope.TOOL.value, name))
            if rec:
                found.append(rec)
        for integration_id in integration_ids:
            rec = self._records.get((owner_id, TrustScope.INTEGRATION.value, integration_id))
            if rec:
                found.append(rec)
        return found

    async def revoke(self, owner_id: str, scope: TrustScope, key: str) -> bool:
        async with self._lock:
            return self._records.pop((owner_id, scope.value, key), None) is not None


class InMemoryUsageRepository:
    def __init__(self) -> None:
        self._events: list[UsageEventRead] = []

    async def append(self, event: UsageEventRead) -> None:
        self._events.append(event)

    async def list(
        self,
        owner_id: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[UsageEventRead]:
        events = [
            e for e in self._events
            if e.owner_id == owner_id
            and (since is None or e.occurred_at >= since)
            and (until is None or e.occurred_at < until)
        ]
        return events[-limit:]


class InMemoryAgentCatalog:
    def __init__(self) -> None:
        self._agents: dict[str, AgentDefinition] = {}
        self._threads: dict[str, ThreadRead] = {}

    def add_agent(self, agent: AgentDefinition) -> AgentDefinition:
        self._agents[agent.id] = agent
        return agent

    def add_thread(self, thread: ThreadRead) -> ThreadRead:
        self._threads[thread.id] = thread
        return thread

    async def get_agent(self, agent_id: str, owner_id: str) -> AgentDefinition | None:
        agent = self._agents.get(agent_id)
        return agent if agent and agent.owner_id == owner_id else None

    async def get_thread(self, thread_id: str, owner_id: str) -> ThreadRead | None:
        thread = self._threads.get(thread_id)
        return thread.model_copy(deep=True) if thread and thread.owner_id == owner_id else None

    async def create_thread(self, owner_id: str, agent_id: str) -> ThreadRead:
        return self.add_thread(ThreadRead(id=str(uuid4()), owner_id=owner_id, agent_id=agent_id))

    async def append_message(
        self,
        thread_id: str,
        *,
        role: str,
        content: str,
        run_id: str | None = None,
    ) -> None:
        self._threads[thread_id].messages.append(
            ThreadMessageRead(role=role, content=content, created_at=_now())
        )


class InMemoryWorkflowTaskRepository:
    def __init__(self) -> None:
        self._tasks: dict[str, WorkflowTaskRead] = {}

    def add(self, task: WorkflowTaskRead) -> WorkflowTaskRead:
        self._tasks[task.id] = task
        return task

    async def get(self, task_id: str) -> WorkflowTaskRead | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def update(self, task_id: str, **changes: Any) -> WorkflowTaskRead | None:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        updated = task.model_copy(update=changes)
        self._tasks[task_id] = updated
        return updated.model_copy(deep=True)

    async def find_by_run(self, run_id: str) -> WorkflowTaskRead | None:
        for task in self._tasks.values():
            if task.run_id == run_id:
                return task.model_copy(deep=True)
        return None
