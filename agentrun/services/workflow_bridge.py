"""Workflow task bridge — runs one workflow task as one agent run.

Nobody watches a workflow run live, so what happens when the agent
proposes an untrusted tool call is a per-task choice
(``config.approval_policy``, default ``Settings.workflow_approval_policy``):

- ``require_approval``: leave the run interrupted; the task stays
  ``pending`` until someone resumes it through the normal API.
- ``deny_untrusted``: trusted calls run, every other call is denied.
- ``approve_all``: every pending call is approved once.

The task mirrors the run: ``pending`` while the run is live, ``completed``
with the run output, or ``failed`` with its failure reason.
"""

from __future__ import annotations

from datetime import UTC, datetime

from agentrun.config import Settings, get_settings
from agentrun.core.errors import AdmissionError, NotFound
from agentrun.core.logging import get_logger
from agentrun.core.run_engine import RunEngine
from agentrun.core.streams import EventSink
from agentrun.repos.interfaces import WorkflowTaskRepository
from agentrun.schemas.agent_run import (
    AgentRunRead,
    ApprovalDecision,
    ApprovalOutcome,
    RunStatus,
)
from agentrun.schemas.workflow import TaskStatus, WorkflowApprovalPolicy, WorkflowTaskRead

logger = get_logger(__name__)

_AUTO_OUTCOME = {
    WorkflowApprovalPolicy.DENY_UNTRUSTED: ApprovalOutcome.DENY,
    WorkflowApprovalPolicy.APPROVE_ALL: ApprovalOutcome.APPROVE_ONCE,
}


def task_status_for(status: RunStatus) -> TaskStatus:
    if status == RunStatus.COMPLETED:
        return TaskStatus.COMPLETED
    if status in (RunStatus.FAILED, RunStatus.CANCELED):
        return TaskStatus.FAILED
    return TaskStatus.PENDING


class WorkflowTaskBridge:
    def __init__(
        self,
        engine: RunEngine,
        tasks: WorkflowTaskRepository,
        settings: Settings | None = None,
    ) -> None:
        self._engine = engine
        self._tasks = tasks
        self._settings = settings or get_settings()

    def policy_for(self, task: WorkflowTaskRead) -> WorkflowApprovalPolicy:
        configured = task.config.get("approval_policy") or self._settings.workflow_approval_policy
        return WorkflowApprovalPolicy(configured)

    async def execute(self, task_id: str, sink: EventSink) -> WorkflowTaskRead:
        """Start the task's run and drive it as far as the policy allows."""
        task = await self._tasks.get(task_id)
        if task is None:
            raise NotFound("task", task_id)
        policy = self.policy_for(task)

        try:
            thread_id = task.thread_id or (
                await self._engine.catalog.create_thread(task.owner_id, task.agent_id)
            ).id
            run = await self._engine.start(
                owner_id=task.owner_id,
                thread_id=thread_id,
                agent_id=task.agent_id,
                message=task.prompt,
            )
        except AdmissionError as e:
            logger.warning("workflow_task_not_admitted", task_id=task_id, error_code=e.code)
            return await self._update(
                task_id,
                status=TaskStatus.FAILED,
                error=e.message,
                completed_at=datetime.now(UTC),
            )

        await self._update(task_id, status=TaskStatus.PENDING, run_id=run.id, thread_id=thread_id)
        logger.info("workflow_task_started", task_id=task_id, run_id=run.id, policy=policy.value)

        run = await self._engine.drive(run.id, sink)
        while run.status == RunStatus.INTERRUPTED and policy in _AUTO_OUTCOME:
            outcome = _AUTO_OUTCOME[policy]
            decisions = [
                ApprovalDecision(call_id=c.call_id, outcome=outcome) for c in run.pending_tool_calls
            ]
            logger.info(
                "workflow_task_auto_decided",
                task_id=task_id,
                run_id=run.id,
                outcome=outcome.value,
                calls=len(decisions),
            )
            await self._engine.resume(run.id, run.owner_id, decisions)
            run = await self._engine.drive(run.id, sink)

        return await self.sync(task_id, run)

    async def sync(self, task_id: str, run: AgentRunRead) -> WorkflowTaskRead:
        """Copy the run's state onto the task."""
        status = task_status_for(run.status)
        changes: dict = {"status": status}
        if status == TaskStatus.COMPLETED:
            changes.update(output=run.accumulated_output, completed_at=run.completed_at)
        elif status == TaskStatus.FAILED:
            reason = run.failure_reason or f"Run {run.status.value}"
            changes.update(error=reason, completed_at=run.completed_at)
        task = await self._update(task_id, **changes)
        logger.info("workflow_task_synced", task_id=task_id, run_id=run.id, status=status.value)
        return task

    async def sync_run(self, run: AgentRunRead) -> WorkflowTaskRead | None:
        """Sync the task bridged onto ``run``, if there is one."""
        task = await self._tasks.find_by_run(run.id)
        if task is None:
            return None
        return await self.sync(task.id, run)

    async def _update(self, task_id: str, **changes) -> WorkflowTaskRead:
        task = await self._tasks.update(task_id, **changes)
        if task is None:
            raise NotFound("task", task_id)
        return task
