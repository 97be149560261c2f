"""FastAPI application."""

from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from agentrun.api.v1.router import api_router
from agentrun.config import get_settings
from agentrun.core.errors import (
    AgentRunError,
    BudgetExceeded,
    InvalidState,
    NotFound,
    UnknownCall,
)
from agentrun.core.logging import get_logger, setup_logging
from agentrun.core.middleware import ObservabilityMiddleware
from agentrun.core.streams import close_redis

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("api_starting", debug=settings.debug)
    yield
    await close_redis()
    logger.info("api_stopped")


app = FastAPI(title="agentrun", version="0.1.0", lifespan=lifespan)
app.add_middleware(ObservabilityMiddleware)


_STATUS_BY_ERROR: list[tuple[type[AgentRunError], int]] = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (BudgetExceeded, status.HTTP_429_TOO_MANY_REQUESTS),
    (InvalidState, status.HTTP_409_CONFLICT),
    (UnknownCall, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


@app.exception_handler(AgentRunError)
async def agent_run_error_handler(request: Request, exc: AgentRunError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    body: dict = {"code": exc.code, "detail": exc.message}
    headers = None
    if isinstance(exc, BudgetExceeded):
        body["reset_at"] = exc.reset_at.isoformat()
        headers = {"Retry-After": str(max(0, int((exc.reset_at - datetime.now(UTC)).total_seconds())))}
    elif isinstance(exc, UnknownCall):
        body["call_ids"] = exc.call_ids
    logger.info("request_rejected", path=request.url.path, error_code=exc.code, status_code=status_code)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
