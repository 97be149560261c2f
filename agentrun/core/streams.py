"""Redis Streams transport for run events.

Each drive of a run (the initial start, then one per accepted resume) is a
*segment* with its own stream ``agent:{run_id}:{segment}``.  A subscription
reads one segment from its first event to its ``end`` event and is never
restarted: a caller who reconnects fetches the run state instead of
replaying history.  Events carry sequential IDs so clients can drop
duplicates.

Wire format (SSE): ``event: <kind>`` followed by ``data: <json>`` lines and
a blank line per frame; idle keep-alives are SSE comment lines.
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from typing import Any, Protocol

import redis.asyncio as aioredis

from agentrun.config import get_settings

# ── Event kinds ──────────────────────────────────────────────────────

EVENT_MESSAGE_DELTA = "message-delta"  # assistant text chunk (batched)
EVENT_TOOL_CALL_PROPOSED = "tool-call-proposed"
EVENT_TOOL_CALL_RESULT = "tool-call-result"
EVENT_INTERRUPT = "interrupt"  # full pending_tool_calls list
EVENT_USAGE_UPDATE = "usage-update"
EVENT_RATE_LIMIT = "rate-limit"  # budget denied the next turn
EVENT_ERROR = "error"
EVENT_END = "end"  # closes the subscription

HEARTBEAT = "heartbeat"  # consumer-side keep-alive, never stored


def stream_key(run_id: str, segment: int) -> str:
    return f"agent:{run_id}:{segment}"


class EventSink(Protocol):
    """Where the run engine writes events, in production order."""

    async def emit(self, kind: str, payload: dict[str, Any]) -> None:
        ...


# ── Publisher ────────────────────────────────────────────────────────


class RunStreamPublisher:
    """Publishes the events of one run segment to a Redis Stream.

    Usage::

        pub = RunStreamPublisher(redis, run_id, segment)
        await pub.setup(ttl=600)
        await pub.emit("message-delta", {"text": "Here is the summary"})
        await pub.emit("end", {"status": "completed"})
    """

    def __init__(self, redis: aioredis.Redis, run_id: str, segment: int) -> None:
        self._redis = redis
        self._key = stream_key(run_id, segment)
        self._seq = 0
        self._ttl = 600
        self._maxlen = 2000

    @property
    def key(self) -> str:
        return self._key

    async def setup(self, ttl: int = 600, maxlen: int = 2000) -> None:
        """Set TTL/trim limits and continue numbering after any earlier writer."""
        self._ttl = ttl
        self._maxlen = maxlen
        last = await self._redis.xrevrange(self._key, count=1)
        if last:
            _msg_id, fields = last[0]
            self._seq = int(_decode(fields).get("seq") or 0)

    async def emit(self, kind: str, payload: dict[str, Any]) -> None:
        self._seq += 1
        fields = {
            "seq": str(self._seq),
            "type": kind,
            "ts": str(time.time()),
            "data": json.dumps(payload, default=str),
        }
        await self._redis.xadd(self._key, fields, maxlen=self._maxlen, approximate=True)
        # Refresh TTL periodically and on the closing event
        if self._seq == 1 or self._seq % 10 == 0 or kind == EVENT_END:
            await self._redis.expire(self._key, self._ttl)


# ── Delta batching ───────────────────────────────────────────────────


class DeltaBatcher:
    """Coalesces ``message-delta`` text; any other event flushes first.

    Only adjacent deltas are merged, so relative order across event kinds
    is what the engine produced.
    """

    def __init__(self, sink: EventSink, *, batch_ms: int | None = None) -> None:
        self._sink = sink
        self._batch_s = (get_settings().agent_delta_batch_ms if batch_ms is None else batch_ms) / 1000
        self._buffer = ""
        self._last_flush = time.monotonic()

    async def delta(self, text: str) -> None:
        self._buffer += text
        now = time.monotonic()
        if now - self._last_flush >= self._batch_s:
            await self.flush()

    async def flush(self) -> None:
        if self._buffer:
            text, self._buffer = self._buffer, ""
            await self._sink.emit(EVENT_MESSAGE_DELTA, {"text": text})
        self._last_flush = time.monotonic()

    async def emit(self, kind: str, payload: dict[str, Any]) -> None:
        await self.flush()
        await self._sink.emit(kind, payload)


# ── Consumer ─────────────────────────────────────────────────────────


def _decode(fields: dict) -> dict[str, str]:
    decoded = {}
    for k, v in fields.items():
        key = k.decode() if isinstance(k, bytes) else k
        val = v.decode() if isinstance(v, bytes) else v
        decoded[key] = val
    return decoded


class RunStreamConsumer:
    """Async iterator over one segment's events.

    Yields ``{"seq", "type", "ts", "data"}`` dicts with ``data`` already
    parsed.  While the stream is quiet it yields a ``heartbeat`` item every
    ``heartbeat_interval`` seconds; after ``idle_timeout`` seconds without
    a real event it yields an ``error`` then an ``end`` and stops.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        run_id: str,
        segment: int,
        *,
        last_id: str = "0-0",
        block_ms: int = 500,
        heartbeat_interval: float = 15.0,
        idle_timeout: float = 180.0,
    ) -> None:
        self._redis = redis
        self._key = stream_key(run_id, segment)
        self._last_id = last_id
        self._block_ms = block_ms
        self._heartbeat_interval = heartbeat_interval
        self._idle_timeout = idle_timeout

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._consume()

    @staticmethod
    def _synthetic(kind: str, data: dict[str, Any]) -> dict[str, Any]:
        return {"seq": "-1", "type": kind, "ts": str(time.time()), "data": data}

    async def _consume(self) -> AsyncIterator[dict[str, Any]]:
        last_event_time = time.monotonic()
        last_beat_time = last_event_time

        while True:
            result = await self._redis.xread(
                {self._key: self._last_id},
                block=self._block_ms,
                count=50,
            )

            if not result:
                now = time.monotonic()
                if now - last_event_time >= self._idle_timeout:
                    yield self._synthetic(
                        EVENT_ERROR, {"code": "idle_timeout", "message": "Stream timeout"}
                    )
                    yield self._synthetic(EVENT_END, {"status": None})
                    return
                if now - last_beat_time >= self._heartbeat_interval:
                    yield self._synthetic(HEARTBEAT, {})
                    last_beat_time = now
                continue

            for _stream_name, messages in result:
                for msg_id, fields in messages:
                    self._last_id = msg_id
                    last_event_time = last_beat_time = time.monotonic()

                    event = _decode(fields)
                    try:
                        event["data"] = json.loads(event.get("data") or "{}")
                    except json.JSONDecodeError:
                        event["data"] = {"raw": event.get("data")}
                    yield event

                    if event.get("type") == EVENT_END:
                        return


# ── SSE framing ──────────────────────────────────────────────────────


def format_sse(event: str, data: str) -> str:
    """Format SSE message with multi-line support."""
    lines = data.split("\n")
    data_lines = "\n".join(f"data: {line}" for line in lines)
    return f"event: {event}\n{data_lines}\n\n"


async def sse_frames(events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    """Render consumer items as SSE frames, dropping duplicate sequence numbers."""
    seen: set[str] = set()
    async for event in events:
        kind = event.get("type", "")
        if kind == HEARTBEAT:
            yield ": heartbeat\n\n"
            continue
        seq = event.get("seq", "")
        if seq != "-1":
            if seq in seen:
                continue
            seen.add(seq)
        yield format_sse(kind, json.dumps(event.get("data", {}), default=str))


# ── Redis connection pool (singleton) ────────────────────────────────

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    """Get or create the shared async Redis connection pool."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            decode_responses=False,  # We handle decoding in consumer
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool (call on shutdown)."""
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
