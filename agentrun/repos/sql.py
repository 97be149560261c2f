"""SQLAlchemy-backed repositories.

Each repository opens a short-lived session per call from the shared
``async_sessionmaker``; nothing holds a session across an await on the
model provider or a tool.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel
from sqlalchemy import delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from agentrun.models import (
    Agent,
    AgentRun,
    Thread,
    ThreadMessage,
    ToolCall,
    TrustRecord,
    UsageEvent,
    WorkflowTask,
)
from agentrun.schemas.agent import AgentDefinition, ThreadRead
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


def _column_value(value: Any) -> Any:
    """Pydantic values become JSON-compatible structures for JSONB columns."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list) and value and isinstance(value[0], BaseModel):
        return [v.model_dump(mode="json") for v in value]
    return value


@dataclass
class SqlRunRepository:
    session_factory: async_sessionmaker[AsyncSession]

    async def create(self, run: AgentRunRead) -> AgentRunRead:
        data = run.model_dump(exclude={"created_at"})
        async with self.session_factory() as db:
            row = AgentRun(**data)
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return AgentRunRead.model_validate(row)

    async def get(self, run_id: str) -> AgentRunRead | None:
        async with self.session_factory() as db:
            row = await db.get(AgentRun, run_id)
            return AgentRunRead.model_validate(row) if row else None

    async def compare_and_set(
        self,
        run_id: str,
        *,
        expected: Collection[RunStatus],
        expected_version: int | None = None,
        **changes: Any,
    ) -> AgentRunRead | None:
        values = {k: _column_value(v) for k, v in changes.items()}
        stmt = (
            update(AgentRun)
            .where(AgentRun.id == run_id)
            .where(AgentRun.status.in_([s.value for s in expected]))
        )
        if expected_version is not None:
            stmt = stmt.where(AgentRun.version == expected_version)
        stmt = (
            stmt.values(version=AgentRun.version + 1, **values)
            .returning(AgentRun)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            await db.commit()
            return AgentRunRead.model_validate(row) if row else None

    async def request_cancel(self, run_id: str) -> AgentRunRead | None:
        non_terminal = [s for s in RunStatus if s not in TERMINAL_STATUSES]
        return await self.compare_and_set(run_id, expected=non_terminal, cancel_requested=True)

    async def find_stuck(self, status: RunStatus, updated_before: datetime) -> list[AgentRunRead]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(AgentRun)
                .where(AgentRun.status == status.value)
                .where(AgentRun.updated_at < updated_before)
            )
            return [AgentRunRead.model_validate(r) for r in result.scalars().all()]


@dataclass
class SqlToolCallRepository:
    session_factory: async_sessionmaker[AsyncSession]

    async def add(self, run_id: str, calls: list[ToolCallRequest], *, round: int) -> None:
        if not calls:
            return
        rows = [
            {
                "run_id": run_id,
                "call_id": c.call_id,
                "tool_name": c.tool_name,
                "integration_id": c.integration_id,
                "arguments": c.arguments,
                "round": round,
            }
            for c in calls
        ]
        stmt = pg_insert(ToolCall).values(rows).on_conflict_do_nothing(
            index_elements=["run_id", "call_id"]
        )
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()

    async def resolve(
        self,
        run_id: str,
        call_id: str,
        *,
        disposition: ToolCallDisposition,
        result: str | None = None,
    ) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(ToolCall)
                .where(ToolCall.run_id == run_id, ToolCall.call_id == call_id)
                .values(
                    disposition=disposition.value,
                    result=result,
                    resolved_at=datetime.now(UTC),
                )
            )
            await db.commit()

    async def supersede_pending(self, run_id: str) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                update(ToolCall)
                .where(ToolCall.run_id == run_id)
                .where(ToolCall.disposition == ToolCallDisposition.PENDING.value)
                .values(
                    disposition=ToolCallDisposition.SUPERSEDED.value,
                    resolved_at=datetime.now(UTC),
                )
            )
            await db.commit()
            return result.rowcount or 0

    async def list(self, run_id: str) -> list[ToolCallRead]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ToolCall).where(ToolCall.run_id == run_id).order_by(ToolCall.id)
            )
            return [ToolCallRead.model_validate(r) for r in result.scalars().all()]


@dataclass
class SqlTrustRepository:
    session_factory: async_sessionmaker[AsyncSession]

    async def grant(self, owner_id: str, scope: TrustScope, key: str) -> TrustRecordRead:
        stmt = pg_insert(TrustRecord).values(
            owner_id=owner_id, scope=scope.value, key=key
        ).on_conflict_do_nothing(index_elements=["owner_id", "scope", "key"])
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()
            row = (
                await db.execute(
                    select(TrustRecord).where(
                        TrustRecord.owner_id == owner_id,
                        TrustRecord.scope == scope.value,
                        TrustRecord.key == key,
                    )
                )
            ).scalar_one()
            return TrustRecordRead.model_validate(row)

    async def matching(
        self,
        owner_id: str,
        *,
        tool_names: Collection[str],
        integration_ids: Collection[str],
    ) -> list[TrustRecordRead]:
        clauses = []
        if tool_names:
            clauses.append(
                (TrustRecord.scope == TrustScope.TOOL.value) & TrustRecord.key.in_(list(tool_names))
            )
        if integration_ids:
            clauses.append(
                (TrustRecord.scope == TrustScope.INTEGRATION.value)
                & TrustRecord.key.in_(list(integration_ids))
            )
        if not clauses:
            return []
        async with self.session_factory() as db:
            result = await db.execute(
                select(TrustRecord).where(TrustRecord.owner_id == owner_id).where(or_(*clauses))
            )
            return [TrustRecordRead.model_validate(r) for r in result.scalars().all()]

    async def revoke(self, owner_id: str, scope: TrustScope, key: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(TrustRecord).where(
                    TrustRecord.owner_id == owner_id,
                    TrustRecord.scope == scope.value,
                    TrustRecord.key == key,
                )
            )
            await db.commit()
            return bool(result.rowcount)


@dataclass
class SqlUsageRepository:
    session_factory: async_sessionmaker[AsyncSession]

    async def append(self, event: UsageEventRead) -> None:
        async with self.session_factory() as db:
            db.add(UsageEvent(**event.model_dump()))
            await db.commit()

    async def list(
        self,
        owner_id: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[UsageEventRead]:
        stmt = (
            select(UsageEvent)
            .where(UsageEvent.owner_id == owner_id)
            .order_by(UsageEvent.occurred_at.desc())
            .limit(limit)
        )
        if since is not None:
            stmt = stmt.where(UsageEvent.occurred_at >= since)
        if until is not None:
            stmt = stmt.where(UsageEvent.occurred_at < until)
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            events = [UsageEventRead.model_validate(r) for r in result.scalars().all()]
        events.reverse()
        return events


@dataclass
class SqlAgentCatalog:
    session_factory: async_sessionmaker[AsyncSession]

    async def get_agent(self, agent_id: str, owner_id: str) -> AgentDefinition | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Agent).where(Agent.id == agent_id, Agent.owner_id == owner_id)
            )
            row = result.scalar_one_or_none()
            return AgentDefinition.model_validate(row) if row else None

    async def get_thread(self, thread_id: str, owner_id: str) -> ThreadRead | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Thread)
                .options(selectinload(Thread.messages))
                .where(Thread.id == thread_id, Thread.owner_id == owner_id)
            )
            row = result.scalar_one_or_none()
            return ThreadRead.model_validate(row) if row else None

    async def create_thread(self, owner_id: str, agent_id: str) -> ThreadRead:
        async with self.session_factory() as db:
            row = Thread(owner_id=owner_id, agent_id=agent_id)
            db.add(row)
            await db.commit()
            return ThreadRead(id=row.id, owner_id=owner_id, agent_id=agent_id)

    async def append_message(
        self,
        thread_id: str,
        *,
        role: str,
        content: str,
        run_id: str | None = None,
    ) -> None:
        async with self.session_factory() as db:
            db.add(ThreadMessage(thread_id=thread_id, role=role, content=content, run_id=run_id))
            await db.commit()


@dataclass
class SqlWorkflowTaskRepository:
    session_factory: async_sessionmaker[AsyncSession]

    async def get(self, task_id: str) -> WorkflowTaskRead | None:
        async with self.session_factory() as db:
            row = await db.get(WorkflowTask, task_id)
            return WorkflowTaskRead.model_validate(row) if row else None

    async def update(self, task_id: str, **changes: Any) -> WorkflowTaskRead | None:
        values = {k: _column_value(v) for k, v in changes.items()}
        async with self.session_factory() as db:
            result = await db.execute(
                update(WorkflowTask)
                .where(WorkflowTask.id == task_id)
                .values(**values)
                .returning(WorkflowTask)
                .execution_options(synchronize_session=False)
            )
            row = result.scalar_one_or_none()
            await db.commit()
            return WorkflowTaskRead.model_validate(row) if row else None

    async def find_by_run(self, run_id: str) -> WorkflowTaskRead | None:
        async with self.session_factory() as db:
            result = await db.execute(select(WorkflowTask).where(WorkflowTask.run_id == run_id))
            row = result.scalar_one_or_none()
            return WorkflowTaskRead.model_validate(row) if row else None
