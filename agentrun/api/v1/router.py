"""API v1 router."""

from fastapi import APIRouter

from agentrun.api.v1 import runs, usage

api_router = APIRouter()

api_router.include_router(runs.router, tags=["Runs"])
api_router.include_router(usage.router, prefix="/usage", tags=["Usage"])
