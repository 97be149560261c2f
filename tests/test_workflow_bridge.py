"""Tests for running workflow tasks as agent runs."""

import pytest

from agentrun.repos.memory import InMemoryWorkflowTaskRepository
from agentrun.schemas.agent_run import (
    ApprovalDecision,
    ApprovalOutcome,
    RunStatus,
    ToolCallDisposition,
)
from agentrun.schemas.workflow import TaskStatus, WorkflowTaskRead
from agentrun.services.workflow_bridge import WorkflowTaskBridge, task_status_for

from tests.conftest import AGENT_ID, OWNER, THREAD_ID, call, text_turn, tool_turn


@pytest.fixture
def tasks():
    return InMemoryWorkflowTaskRepository()


@pytest.fixture
def bridge(harness, tasks, settings):
    return WorkflowTaskBridge(harness.engine, tasks, settings)


def _task(tasks, task_id="task-1", **config):
    config.setdefault("prompt", "Email the weekly report to the team")
    return tasks.add(
        WorkflowTaskRead(id=task_id, owner_id=OWNER, agent_id=AGENT_ID, config=config)
    )


def _email_then_done(harness):
    harness.provider.turns = [
        tool_turn(call("c1", "send_email", "gmail", to="team@example.com")),
        text_turn("Done"),
    ]


class TestTaskStatus:
    def test_mapping(self):
        assert task_status_for(RunStatus.COMPLETED) == TaskStatus.COMPLETED
        assert task_status_for(RunStatus.FAILED) == TaskStatus.FAILED
        assert task_status_for(RunStatus.CANCELED) == TaskStatus.FAILED
        for status in (RunStatus.CREATED, RunStatus.STREAMING, RunStatus.INTERRUPTED, RunStatus.RESUMED):
            assert task_status_for(status) == TaskStatus.PENDING


class TestPolicies:
    def test_default_policy_from_settings(self, bridge, tasks):
        task = _task(tasks)
        assert bridge.policy_for(task).value == "deny_untrusted"

    @pytest.mark.asyncio
    async def test_deny_untrusted(self, harness, bridge, tasks, sink):
        _email_then_done(harness)
        _task(tasks)

        task = await bridge.execute("task-1", sink)

        assert task.status == TaskStatus.COMPLETED
        assert "Done" in task.output
        assert task.completed_at is not None
        [record] = await harness.tool_calls.list(task.run_id)
        assert record.disposition == ToolCallDisposition.DENIED
        assert "end" in sink.kinds()

    @pytest.mark.asyncio
    async def test_trusted_calls_still_run_under_deny(self, harness, bridge, tasks, sink):
        _email_then_done(harness)
        await harness.trust_tool("send_email")
        _task(tasks)

        task = await bridge.execute("task-1", sink)

        [record] = await harness.tool_calls.list(task.run_id)
        assert record.disposition == ToolCallDisposition.EXECUTED

    @pytest.mark.asyncio
    async def test_approve_all(self, harness, bridge, tasks, sink):
        _email_then_done(harness)
        _task(tasks, approval_policy="approve_all")

        task = await bridge.execute("task-1", sink)

        assert task.status == TaskStatus.COMPLETED
        [record] = await harness.tool_calls.list(task.run_id)
        assert record.disposition == ToolCallDisposition.EXECUTED
        # Approve-once never writes trust.
        assert not await harness.engine.trust.is_trusted(OWNER, "send_email", "gmail")

    @pytest.mark.asyncio
    async def test_require_approval_leaves_task_pending(self, harness, bridge, tasks, sink):
        _email_then_done(harness)
        _task(tasks, approval_policy="require_approval")

        task = await bridge.execute("task-1", sink)

        assert task.status == TaskStatus.PENDING
        assert task.run_id is not None
        assert task.thread_id is not None
        run = await harness.runs.get(task.run_id)
        assert run.status == RunStatus.INTERRUPTED

        await harness.engine.resume(
            run.id, OWNER, [ApprovalDecision(call_id="c1", outcome=ApprovalOutcome.APPROVE_ONCE)]
        )
        run = await harness.engine.drive(run.id, sink)
        synced = await bridge.sync_run(run)

        assert synced.status == TaskStatus.COMPLETED
        assert "Done" in synced.output


class TestExecution:
    @pytest.mark.asyncio
    async def test_uses_task_thread(self, harness, bridge, tasks, sink):
        harness.provider.turns = [text_turn("Hi")]
        tasks.add(
            WorkflowTaskRead(
                id="task-1",
                owner_id=OWNER,
                agent_id=AGENT_ID,
                thread_id=THREAD_ID,
                config={"prompt": "Say hi"},
            )
        )

        task = await bridge.execute("task-1", sink)

        assert task.thread_id == THREAD_ID
        assert harness.provider.calls[0]["messages"][-1] == {"role": "user", "content": "Say hi"}

    @pytest.mark.asyncio
    async def test_budget_exhausted_fails_task(self, harness, bridge, tasks, sink):
        await harness.limiter.record(OWNER, "earlier", 0, 0, 1.0)
        _task(tasks)

        task = await bridge.execute("task-1", sink)

        assert task.status == TaskStatus.FAILED
        assert task.run_id is None
        assert task.error
        assert harness.provider.calls == []

    @pytest.mark.asyncio
    async def test_failed_run_fails_task(self, harness, bridge, tasks, sink):
        harness.provider.turns = [[RuntimeError("boom")]]
        _task(tasks)

        task = await bridge.execute("task-1", sink)

        assert task.status == TaskStatus.FAILED
        assert task.error == "The run stopped because of an internal error."

    @pytest.mark.asyncio
    async def test_sync_run_without_task(self, harness, bridge, sink):
        harness.provider.turns = [text_turn("Hi")]
        run = await harness.start()
        run = await harness.engine.drive(run.id, sink)

        assert await bridge.sync_run(run) is None
