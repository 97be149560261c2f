"""FastAPI dependencies.

Authentication happens upstream; the gateway forwards the caller's id in
``x-user-id``.
"""

from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends, Header, HTTPException, status

from agentrun.config import get_settings
from agentrun.core.run_engine import RunEngine
from agentrun.core.streams import get_redis
from agentrun.services.rate_limiter import RateLimiter
from agentrun.services.runtime import build_engine

_engine: RunEngine | None = None


async def get_current_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing x-user-id header",
        )
    return x_user_id


async def get_admin_user_id(user_id: Annotated[str, Depends(get_current_user_id)]) -> str:
    if user_id not in get_settings().admin_user_ids:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user_id


async def get_stream_redis() -> aioredis.Redis:
    return await get_redis()


async def get_engine() -> RunEngine:
    """Process-wide engine (the trust cache lives on it)."""
    global _engine
    if _engine is None:
        _engine = build_engine(await get_redis())
    return _engine


async def get_rate_limiter(engine: Annotated[RunEngine, Depends(get_engine)]) -> RateLimiter:
    return engine.limiter


CurrentUser = Annotated[str, Depends(get_current_user_id)]
AdminUser = Annotated[str, Depends(get_admin_user_id)]
Engine = Annotated[RunEngine, Depends(get_engine)]
Limiter = Annotated[RateLimiter, Depends(get_rate_limiter)]
StreamRedis = Annotated[aioredis.Redis, Depends(get_stream_redis)]
