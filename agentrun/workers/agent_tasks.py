"""Agent worker tasks — drive runs and publish their events to Redis Streams."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import redis.asyncio as aioredis

from agentrun.config import get_settings
from agentrun.core.errors import StuckRun, WorkerAborted
from agentrun.core.logging import bind_run_context, get_logger, job_id_var, run_id_var
from agentrun.core.run_engine import RunEngine
from agentrun.core.streams import EVENT_END, RunStreamPublisher
from agentrun.schemas.agent_run import RunStatus
from agentrun.services.runtime import build_engine, build_workflow_bridge
from agentrun.services.workflow_bridge import WorkflowTaskBridge

settings = get_settings()
logger = get_logger(__name__)


async def _get_stream_redis(ctx: dict) -> aioredis.Redis:
    """Get or create a redis.asyncio client for streams (separate from Arq's pool)."""
    if "stream_redis" not in ctx:
        ctx["stream_redis"] = aioredis.from_url(
            settings.redis_url,
            decode_responses=False,
        )
    return ctx["stream_redis"]


async def _get_engine(ctx: dict) -> RunEngine:
    if "engine" not in ctx:
        ctx["engine"] = build_engine(await _get_stream_redis(ctx))
    return ctx["engine"]


async def _get_bridge(ctx: dict) -> WorkflowTaskBridge:
    if "bridge" not in ctx:
        ctx["bridge"] = build_workflow_bridge(await _get_engine(ctx))
    return ctx["bridge"]


async def _publisher(ctx: dict, run_id: str, segment: int) -> RunStreamPublisher:
    pub = RunStreamPublisher(await _get_stream_redis(ctx), run_id, segment)
    await pub.setup(ttl=settings.agent_stream_ttl, maxlen=settings.agent_stream_maxlen)
    return pub


async def drive_run(ctx: dict, run_id: str) -> dict:
    """Arq task: drive a created or resumed run until it stops.

    Events go to the segment the run was started or resumed on.  A bridged
    workflow task is synced with the outcome.
    """
    job_id_var.set(ctx.get("job_id"))
    bind_run_context(run_id)
    engine = await _get_engine(ctx)

    run = await engine.runs.get(run_id)
    if run is None:
        logger.warning("drive_run_missing", run_id=run_id)
        return {"run_id": run_id, "status": None}

    pub = await _publisher(ctx, run_id, run.checkpoint.segment)
    try:
        run = await engine.drive(run_id, pub)
    except asyncio.CancelledError:
        await asyncio.shield(on_job_abort(ctx, run_id))
        raise

    await (await _get_bridge(ctx)).sync_run(run)
    return {"run_id": run_id, "status": run.status.value}


async def execute_workflow_task(ctx: dict, task_id: str) -> dict:
    """Arq task: run one workflow task as an agent run under its approval policy."""
    job_id_var.set(ctx.get("job_id"))
    bridge = await _get_bridge(ctx)
    task = await bridge.execute(task_id, _SegmentSink(ctx))
    return {"task_id": task_id, "status": task.status.value, "run_id": task.run_id}


class _SegmentSink:
    """Routes a workflow run's events to whichever segment it is on.

    The bridge drives several segments in one job; each ``end`` closes the
    current publisher so the next event opens the new segment's stream.
    """

    def __init__(self, ctx: dict) -> None:
        self._ctx = ctx
        self._pub: RunStreamPublisher | None = None

    async def emit(self, kind: str, payload: dict) -> None:
        if self._pub is None:
            run_id = run_id_var.get()
            engine = await _get_engine(self._ctx)
            run = await engine.runs.get(run_id)
            self._pub = await _publisher(self._ctx, run_id, run.checkpoint.segment)
        await self._pub.emit(kind, payload)
        if kind == EVENT_END:
            self._pub = None


async def on_job_abort(ctx: dict, run_id: str) -> None:
    """Fail a run whose drive job was cancelled (worker shutdown, job timeout)."""
    logger.warning("agent_job_aborted", run_id=run_id)
    engine = await _get_engine(ctx)
    run = await engine.runs.get(run_id)
    if run is None:
        return
    pub = await _publisher(ctx, run_id, run.checkpoint.segment)
    await engine.abort(run_id, WorkerAborted(), pub)


# ── Watchdog for stuck runs ──────────────────────────────────────────


async def watchdog_stuck_runs(ctx: dict) -> int:
    """Cron task: fail runs stuck in STREAMING.

    Interrupted runs wait on a person and are never timed out.  Returns the
    number of runs failed.
    """
    threshold = datetime.now(UTC) - timedelta(seconds=settings.agent_stuck_run_threshold)
    engine = await _get_engine(ctx)
    timed_out = 0

    for run in await engine.runs.find_stuck(RunStatus.STREAMING, threshold):
        logger.warning("watchdog_timeout_run", run_id=run.id, started_at=str(run.started_at))
        pub = await _publisher(ctx, run.id, run.checkpoint.segment)
        failed = await engine.abort(run.id, StuckRun(settings.agent_stuck_run_threshold), pub)
        if failed is not None:
            await (await _get_bridge(ctx)).sync_run(failed)
            timed_out += 1

    return timed_out
