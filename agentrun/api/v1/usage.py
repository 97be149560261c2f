"""Budget usage endpoints."""

from fastapi import APIRouter, status

from agentrun.core.logging import get_logger
from agentrun.deps import AdminUser, CurrentUser, Limiter
from agentrun.schemas.usage import UsageRead

logger = get_logger(__name__)

router = APIRouter()


@router.get("", response_model=UsageRead)
async def get_usage(user: CurrentUser, limiter: Limiter) -> UsageRead:
    """Consumption in the current window plus its ledger entries."""
    window = await limiter.get_usage(user)
    return UsageRead(
        consumed=window.consumed,
        limit=window.limit,
        remaining=window.remaining,
        reset_at=window.reset_at,
        recent_events=await limiter.recent_events(user),
    )


@router.delete("/{owner_id}", status_code=status.HTTP_204_NO_CONTENT)
async def reset_usage(owner_id: str, admin: AdminUser, limiter: Limiter) -> None:
    await limiter.reset(owner_id)
    logger.info("budget_reset_by_admin", owner_id=owner_id, admin_id=admin)
