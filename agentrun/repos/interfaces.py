"""Repository interface contracts.

The run engine, trust store, rate limiter and workflow bridge depend on
these Protocols instead of concrete persistence.

Contract guidelines
-------------------

- All methods are async and return pydantic snapshots, never ORM rows.
- ``RunRepository.compare_and_set`` is the only way a run changes.  It
  applies ``changes`` only if the run is currently in one of the
  ``expected`` statuses (and, when given, at ``expected_version``), bumps
  the version, and returns the new snapshot; otherwise it returns ``None``
  and nothing is written.
- Usage events are append-only.
- ``TrustRepository.grant`` is idempotent.
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import datetime
from typing import Any, Protocol

from agentrun.schemas.agent import AgentDefinition, ThreadRead
from agentrun.schemas.agent_run import (
    AgentRunRead,
    RunStatus,
    ToolCallDisposition,
    ToolCallRead,
    ToolCallRequest,
)
from agentrun.schemas.trust import TrustRecordRead, TrustScope
from agentrun.schemas.usage import UsageEventRead
from agentrun.schemas.workflow import WorkflowTaskRead


class RunRepository(Protocol):
    """Persist and guard the lifecycle of runs."""

    async def create(self, run: AgentRunRead) -> AgentRunRead:
        """Insert a new run and return the stored snapshot."""
        ...

    async def get(self, run_id: str) -> AgentRunRead | None:
        ...

    async def compare_and_set(
        self,
        run_id: str,
        *,
        expected: Collection[RunStatus],
        expected_version: int | None = None,
        **changes: Any,
    ) -> AgentRunRead | None:
        """Guarded update.

        Args:
            run_id: Run to update.
            expected: Statuses the run must currently be in.
            expected_version: Version the caller read, or None to skip the check.
            **changes: Column values (pydantic values are serialised).

        Returns:
            The updated snapshot, or None when the guard did not match.
        """
        ...

    async def request_cancel(self, run_id: str) -> AgentRunRead | None:
        """Set the cooperative cancel flag on a non-terminal run."""
        ...

    async def find_stuck(self, status: RunStatus, updated_before: datetime) -> list[AgentRunRead]:
        """Runs sitting in ``status`` since before ``updated_before`` (watchdog)."""
        ...


class ToolCallRepository(Protocol):
    """Audit trail of every proposed tool call and its disposition."""

    async def add(self, run_id: str, calls: list[ToolCallRequest], *, round: int) -> None:
        ...

    async def resolve(
        self,
        run_id: str,
        call_id: str,
        *,
        disposition: ToolCallDisposition,
        result: str | None = None,
    ) -> None:
        ...

    async def supersede_pending(self, run_id: str) -> int:
        """Mark every still-pending call of a run as superseded."""
        ...

    async def list(self, run_id: str) -> list[ToolCallRead]:
        ...


class TrustRepository(Protocol):
    """Persisted per-owner trust grants."""

    async def grant(self, owner_id: str, scope: TrustScope, key: str) -> TrustRecordRead:
        """Create the grant if missing; return the stored record either way."""
        ...

    async def matching(
        self,
        owner_id: str,
        *,
        tool_names: Collection[str],
        integration_ids: Collection[str],
    ) -> list[TrustRecordRead]:
        """Point lookup of grants for the given keys only."""
        ...

    async def revoke(self, owner_id: str, scope: TrustScope, key: str) -> bool:
        ...


class UsageRepository(Protocol):
    """Append-only usage ledger."""

    async def append(self, event: UsageEventRead) -> None:
        ...

    async def list(
        self,
        owner_id: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[UsageEventRead]:
        ...


class AgentCatalog(Protocol):
    """Read side of the agent/thread store the engine depends on."""

    async def get_agent(self, agent_id: str, owner_id: str) -> AgentDefinition | None:
        ...

    async def get_thread(self, thread_id: str, owner_id: str) -> ThreadRead | None:
        ...

    async def create_thread(self, owner_id: str, agent_id: str) -> ThreadRead:
        ...

    async def append_message(
        self,
        thread_id: str,
        *,
        role: str,
        content: str,
        run_id: str | None = None,
    ) -> None:
        ...


class WorkflowTaskRepository(Protocol):
    """Workflow task store (owned by the workflow service)."""

    async def get(self, task_id: str) -> WorkflowTaskRead | None:
        ...

    async def update(self, task_id: str, **changes: Any) -> WorkflowTaskRead | None:
        ...

    async def find_by_run(self, run_id: str) -> WorkflowTaskRead | None:
        """The task bridged onto ``run_id``, if any."""
        ...
