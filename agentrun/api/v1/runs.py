"""Agent run endpoints — start, resume, cancel, state fetch and event streams.

Runs are driven by the ``drive_run`` arq job; these endpoints only move
the state machine and relay the run's Redis stream to the caller as SSE.
"""

from arq.connections import create_pool
from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from agentrun.config import get_settings
from agentrun.core.logging import get_logger
from agentrun.core.streams import RunStreamConsumer, sse_frames
from agentrun.deps import CurrentUser, Engine, StreamRedis
from agentrun.schemas.agent_run import (
    ResumeRequest,
    ResumeResponse,
    RunStartRequest,
    RunSummary,
    ToolCallRead,
)
from agentrun.workers.settings import redis_settings

settings = get_settings()
logger = get_logger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _enqueue_drive(run_id: str) -> None:
    pool = await create_pool(redis_settings)
    try:
        await pool.enqueue_job("drive_run", run_id)
    finally:
        await pool.aclose()
    logger.info("run_drive_enqueued", run_id=run_id)


def _stream(redis, run_id: str, segment: int, last_event_id: str | None = None) -> StreamingResponse:
    consumer = RunStreamConsumer(
        redis,
        run_id,
        segment,
        last_id=last_event_id or "0-0",
        heartbeat_interval=settings.agent_sse_heartbeat_interval,
        idle_timeout=settings.agent_sse_idle_timeout,
    )
    return StreamingResponse(
        sse_frames(consumer),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Run-Id": run_id, "X-Run-Segment": str(segment)},
    )


@router.post("/threads/{thread_id}/runs")
async def start_run(
    thread_id: str,
    request: RunStartRequest,
    user: CurrentUser,
    engine: Engine,
    redis: StreamRedis,
) -> StreamingResponse:
    """Start a run on a thread and stream its first segment (SSE).

    Flow:
    1. Admit and create the run (404 / 429 before anything exists)
    2. Enqueue drive_run
    3. Return SSE that reads segment 1 from Redis Streams
    """
    run = await engine.start(
        owner_id=user,
        thread_id=thread_id,
        agent_id=request.agent_id,
        message=request.message,
    )
    await _enqueue_drive(run.id)
    return _stream(redis, run.id, run.checkpoint.segment)


@router.get("/runs/{run_id}", response_model=RunSummary)
async def get_run(run_id: str, user: CurrentUser, engine: Engine) -> RunSummary:
    """Current state for a caller that (re)connects."""
    return RunSummary.from_run(await engine.get(run_id, user))


@router.get("/runs/{run_id}/tool-calls", response_model=list[ToolCallRead])
async def list_tool_calls(run_id: str, user: CurrentUser, engine: Engine) -> list[ToolCallRead]:
    await engine.get(run_id, user)
    return await engine.tool_calls.list(run_id)


@router.get("/runs/{run_id}/events")
async def stream_events(
    run_id: str,
    user: CurrentUser,
    engine: Engine,
    redis: StreamRedis,
    segment: int | None = Query(default=None, ge=1),
    last_event_id: str | None = Query(default=None),
) -> StreamingResponse:
    """Subscribe to a segment of the run's events, the latest by default."""
    run = await engine.get(run_id, user)
    return _stream(redis, run.id, segment or run.checkpoint.segment, last_event_id)


@router.post("/runs/{run_id}/resume", response_model=ResumeResponse)
async def resume_run(
    run_id: str,
    request: ResumeRequest,
    user: CurrentUser,
    engine: Engine,
) -> ResumeResponse:
    """Record approval decisions.

    When every pending call is decided the run is re-driven and the response
    carries the segment to subscribe to; otherwise ``segment`` is null and
    the run stays interrupted.
    """
    response = await engine.resume(run_id, user, request.decisions)
    if response.segment is not None:
        await _enqueue_drive(run_id)
    return response


@router.post("/runs/{run_id}/cancel", response_model=RunSummary)
async def cancel_run(run_id: str, user: CurrentUser, engine: Engine) -> RunSummary:
    return RunSummary.from_run(await engine.cancel(run_id, user))
