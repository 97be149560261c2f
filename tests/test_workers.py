"""Tests for the arq worker tasks (engine built in-memory, Redis mocked)."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from agentrun.config import Settings
from agentrun.repos.memory import InMemoryWorkflowTaskRepository
from agentrun.schemas.agent_run import RunStatus
from agentrun.schemas.workflow import TaskStatus, WorkflowTaskRead
from agentrun.services.workflow_bridge import WorkflowTaskBridge
from agentrun.workers.agent_tasks import (
    drive_run,
    execute_workflow_task,
    on_job_abort,
    watchdog_stuck_runs,
)
from agentrun.workers.settings import drive_job_timeout

from tests.conftest import AGENT_ID, OWNER, call, text_turn, tool_turn


@pytest.fixture
def stream_redis():
    redis = AsyncMock()
    redis.xadd = AsyncMock(return_value=b"1-0")
    redis.expire = AsyncMock()
    redis.xrevrange = AsyncMock(return_value=[])
    return redis


@pytest.fixture
def tasks():
    return InMemoryWorkflowTaskRepository()


@pytest.fixture
def ctx(harness, tasks, settings, stream_redis):
    return {
        "engine": harness.engine,
        "bridge": WorkflowTaskBridge(harness.engine, tasks, settings),
        "stream_redis": stream_redis,
    }


def _published(redis):
    """(key, type, data) for every xadd call."""
    out = []
    for c in redis.xadd.call_args_list:
        key, fields = c[0]
        out.append((key, fields["type"], json.loads(fields["data"])))
    return out


async def _make_streaming(harness, age=timedelta(hours=1)):
    run = await harness.start()
    run = await harness.runs.compare_and_set(
        run.id, expected=[RunStatus.CREATED], status=RunStatus.STREAMING
    )
    harness.runs._updated[run.id] = datetime.now(UTC) - age
    return run


class TestDriveRun:
    @pytest.mark.asyncio
    async def test_drives_and_publishes_segment(self, harness, ctx, stream_redis):
        harness.provider.turns = [text_turn("Hi there")]
        run = await harness.start()

        result = await drive_run(ctx, run.id)

        assert result == {"run_id": run.id, "status": "completed"}
        published = _published(stream_redis)
        assert {key for key, _, _ in published} == {f"agent:{run.id}:1"}
        assert published[-1][1:] == ("end", {"status": "completed"})

    @pytest.mark.asyncio
    async def test_missing_run(self, ctx, stream_redis):
        result = await drive_run(ctx, "nope")

        assert result == {"run_id": "nope", "status": None}
        stream_redis.xadd.assert_not_called()

    @pytest.mark.asyncio
    async def test_syncs_bridged_task(self, harness, ctx, tasks):
        harness.provider.turns = [text_turn("Report sent")]
        run = await harness.start()
        tasks.add(
            WorkflowTaskRead(id="task-1", owner_id=OWNER, agent_id=AGENT_ID, run_id=run.id)
        )

        await drive_run(ctx, run.id)

        task = await tasks.get("task-1")
        assert task.status == TaskStatus.COMPLETED
        assert task.output == "Report sent"


class TestExecuteWorkflowTask:
    @pytest.mark.asyncio
    async def test_each_segment_gets_its_own_stream(self, harness, ctx, tasks, stream_redis):
        harness.provider.turns = [
            tool_turn(call("c1", "send_email", "gmail", to="team@example.com")),
            text_turn("Skipped the email"),
        ]
        tasks.add(
            WorkflowTaskRead(
                id="task-1", owner_id=OWNER, agent_id=AGENT_ID, config={"prompt": "Send it"}
            )
        )

        result = await execute_workflow_task(ctx, "task-1")

        assert result["status"] == "completed"
        run_id = result["run_id"]
        ends = [key for key, kind, _ in _published(stream_redis) if kind == "end"]
        assert ends == [f"agent:{run_id}:1", f"agent:{run_id}:2"]


class TestAbort:
    @pytest.mark.asyncio
    async def test_fails_streaming_run(self, harness, ctx, stream_redis):
        run = await _make_streaming(harness)

        await on_job_abort(ctx, run.id)

        failed = await harness.runs.get(run.id)
        assert failed.status == RunStatus.FAILED
        assert failed.error_code == "worker_aborted"
        kinds = [kind for _, kind, _ in _published(stream_redis)]
        assert kinds == ["error", "end"]

    @pytest.mark.asyncio
    async def test_leaves_finished_run_alone(self, harness, ctx, stream_redis):
        harness.provider.turns = [text_turn("Hi")]
        run = await harness.start()
        await harness.engine.drive(run.id, AsyncMock())

        await on_job_abort(ctx, run.id)

        assert (await harness.runs.get(run.id)).status == RunStatus.COMPLETED
        stream_redis.xadd.assert_not_called()


class TestWatchdog:
    @pytest.mark.asyncio
    async def test_fails_stuck_streaming_runs(self, harness, ctx, tasks):
        run = await _make_streaming(harness)
        tasks.add(WorkflowTaskRead(id="task-1", owner_id=OWNER, agent_id=AGENT_ID, run_id=run.id))

        assert await watchdog_stuck_runs(ctx) == 1

        failed = await harness.runs.get(run.id)
        assert failed.status == RunStatus.FAILED
        assert failed.error_code == "watchdog_timeout"
        assert (await tasks.get("task-1")).status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_recent_streaming_run_untouched(self, harness, ctx):
        run = await _make_streaming(harness, age=timedelta(seconds=5))

        assert await watchdog_stuck_runs(ctx) == 0
        assert (await harness.runs.get(run.id)).status == RunStatus.STREAMING

    @pytest.mark.asyncio
    async def test_interrupted_runs_never_time_out(self, harness, ctx):
        run = await harness.start()
        await harness.runs.compare_and_set(
            run.id, expected=[RunStatus.CREATED], status=RunStatus.INTERRUPTED
        )
        harness.runs._updated[run.id] = datetime.now(UTC) - timedelta(days=2)

        assert await watchdog_stuck_runs(ctx) == 0
        assert (await harness.runs.get(run.id)).status == RunStatus.INTERRUPTED


class TestWorkerSettings:
    def test_job_timeout_covers_every_round(self):
        settings = Settings(
            _env_file=None,
            agent_max_rounds=50,
            provider_turn_timeout_seconds=60,
            tool_timeout_seconds=30,
            tool_max_attempts=2,
            agent_stuck_run_threshold=600,
        )

        timeout = drive_job_timeout(settings)

        assert timeout >= 50 * (60 + 30 * 2)
        assert timeout > settings.agent_stuck_run_threshold
